"""
Ledger signing exception hierarchy.

Provides typed exceptions for device sessions, signing operations and the
RPC-facing provider so callers can tell a user rejection apart from a locked
device or a transport failure.
"""

from __future__ import annotations

from enum import IntEnum
from typing import Any, Dict, Optional


class StatusWord(IntEnum):
    """Status words returned by the Ledger dashboard and Ethereum app."""

    OK = 0x9000
    USER_REJECTED = 0x6985
    USER_REFUSED_ON_DEVICE = 0x5501
    LOCKED_DEVICE = 0x5515
    SECURITY_STATUS_NOT_SATISFIED = 0x6982
    APP_NOT_INSTALLED = 0x6807
    CLA_NOT_SUPPORTED = 0x6E00
    INS_NOT_SUPPORTED = 0x6D00
    INVALID_DATA = 0x6A80


REJECTION_STATUS_WORDS = frozenset({StatusWord.USER_REJECTED, StatusWord.USER_REFUSED_ON_DEVICE})
LOCKED_STATUS_WORDS = frozenset({StatusWord.LOCKED_DEVICE, StatusWord.SECURITY_STATUS_NOT_SATISFIED})
REJECTION_MARKERS = ("rejected", "denied")


class LedgerError(Exception):
    """Base exception for all Ledger-related errors.

    Attributes:
        message: Human-readable error description
        code: Stable machine-readable error code
        details: Additional context about the error
    """

    code = "LEDGER_ERROR"
    default_message = "Ledger error"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}


# ==================== Session Errors ====================


class DeviceNotConnectedError(LedgerError):
    """Raised when no device session is active or discovery/connection failed."""

    code = "DEVICE_NOT_CONNECTED"
    default_message = "Ledger device not connected"


class AppNotOpenError(LedgerError):
    """Raised when the device is locked or the signing application could not be opened."""

    code = "APP_NOT_OPEN"
    default_message = "Ethereum app is not open on the Ledger device"


# ==================== Signing Errors ====================


class UserRejectedError(LedgerError):
    """Raised when the device holder declines the request on the device."""

    code = "USER_REJECTED"
    default_message = "User rejected the request on the Ledger device"


class CommandFailedError(LedgerError):
    """Raised for any other device or transport failure."""

    code = "COMMAND_FAILED"
    default_message = "Ledger command failed"


class DeviceStatusError(CommandFailedError):
    """Raised when a device answers with a status word other than 0x9000."""

    def __init__(self, status_word: int, message: Optional[str] = None, **kwargs: Any) -> None:
        self.status_word = status_word
        try:
            label = StatusWord(status_word).name.lower().replace("_", " ")
        except ValueError:
            label = "unexpected status"
        super().__init__(message or f"Device returned status 0x{status_word:04x} ({label})", **kwargs)


class DeviceLockedError(DeviceStatusError):
    """Raised when the device reports that it is locked."""

    code = "DEVICE_LOCKED"


class DeviceActionTimeoutError(CommandFailedError):
    """Raised when a device action does not reach a terminal state in time."""

    code = "ACTION_TIMEOUT"
    default_message = "Device action timed out"


# ==================== Provider Errors ====================


class UnknownAccountError(LedgerError):
    """Raised when an RPC call references an address this provider does not manage."""

    code = "UNKNOWN_ACCOUNT"

    def __init__(self, address: Optional[str] = None, message: Optional[str] = None, **kwargs: Any) -> None:
        self.address = address
        super().__init__(message or f"Account {address} not found in Ledger accounts", **kwargs)


class InvalidTransactionError(LedgerError):
    """Raised when a transaction request cannot be turned into a signable payload."""

    code = "INVALID_TRANSACTION"


class RpcError(LedgerError):
    """Raised when the upstream JSON-RPC endpoint returns an error."""

    code = "RPC_ERROR"

    def __init__(
        self,
        message: str,
        rpc_code: Optional[int] = None,
        data: Any = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.rpc_code = rpc_code
        self.data = data


# ==================== Configuration Errors ====================


class ConfigurationError(LedgerError):
    """Raised when Ledger network configuration is invalid."""

    code = "INVALID_CONFIG"


# ==================== Utility Functions ====================


def is_rejection(exc: BaseException) -> bool:
    """Check whether an error signals that the user declined on the device.

    The status word is authoritative when present; otherwise the message is
    matched against known rejection markers.
    """
    if isinstance(exc, UserRejectedError):
        return True
    status_word = getattr(exc, "status_word", None)
    if status_word is not None and status_word in REJECTION_STATUS_WORDS:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in REJECTION_MARKERS)


def is_locked(exc: BaseException) -> bool:
    """Check whether an error signals a locked device."""
    if isinstance(exc, DeviceLockedError):
        return True
    status_word = getattr(exc, "status_word", None)
    return status_word is not None and status_word in LOCKED_STATUS_WORDS


def get_error_context(exc: Exception) -> Dict[str, Any]:
    """Extract error context from an exception for logging.

    Args:
        exc: The exception to extract context from

    Returns:
        Dictionary containing error type, message, and any additional details
    """
    context: Dict[str, Any] = {
        "error_type": type(exc).__name__,
        "error_message": str(exc),
    }

    if isinstance(exc, LedgerError):
        context["code"] = exc.code
        if exc.details:
            context["details"] = exc.details

    status_word = getattr(exc, "status_word", None)
    if status_word is not None:
        context["status_word"] = f"0x{status_word:04x}"

    if isinstance(exc, RpcError) and exc.rpc_code is not None:
        context["rpc_code"] = exc.rpc_code

    return context
