"""
Ethereum signing through a Ledger device session.

Each operation builds a device action, waits for its terminal result and maps
failures onto the signing error taxonomy:

- the device holder declined        -> UserRejectedError
- no active session                 -> DeviceNotConnectedError (nothing sent)
- anything else                     -> CommandFailedError with the device message

Private keys never leave the device; this module only formats requests and
normalizes the returned signatures.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Union

from eth_utils import to_checksum_address

from ledger_provider.core.apdu import (
    AppConfiguration,
    DeviceAction,
    GetAddressAction,
    GetAppConfigurationAction,
    SignatureResponse,
    SignPersonalMessageAction,
    SignTransactionAction,
    SignTypedDataHashAction,
)
from ledger_provider.core.device_session import Completed, DeviceSession
from ledger_provider.core.ledger_exceptions import (
    CommandFailedError,
    DeviceNotConnectedError,
    LedgerError,
    UserRejectedError,
    get_error_context,
    is_rejection,
)
from ledger_provider.core.typed_data import hash_typed_data

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SignatureComponents:
    """
    ECDSA signature as returned by the device.

    Attributes:
        r: 64 lowercase hex digits, zero-padded, no prefix
        s: 64 lowercase hex digits, zero-padded, no prefix
        v: recovery/parity byte exactly as the device produced it
    """

    r: str
    s: str
    v: int

    @classmethod
    def from_values(cls, v: int, r: Union[int, bytes, str], s: Union[int, bytes, str]) -> "SignatureComponents":
        return cls(r=_to_hex32(r), s=_to_hex32(s), v=int(v))

    @property
    def r_int(self) -> int:
        return int(self.r, 16)

    @property
    def s_int(self) -> int:
        return int(self.s, 16)

    def to_bytes(self) -> bytes:
        """65-byte ``r || s || v`` form used by message signatures."""
        return bytes.fromhex(self.r) + bytes.fromhex(self.s) + (self.v & 0xFF).to_bytes(1, "big")

    def to_hex(self) -> str:
        return "0x" + self.to_bytes().hex()


def _to_hex32(value: Union[int, bytes, str]) -> str:
    if isinstance(value, int):
        value = value.to_bytes(32, "big")
    elif isinstance(value, str):
        digits = value[2:] if value.startswith(("0x", "0X")) else value
        value = bytes.fromhex(digits.rjust(64, "0"))
    if len(value) > 32:
        raise ValueError("Signature component longer than 32 bytes")
    return value.rjust(32, b"\x00").hex()


@dataclass(frozen=True)
class DerivedAddress:
    address: str
    public_key: str


class LedgerSigner:
    """Ethereum operations over a DeviceSession."""

    def __init__(self, session: DeviceSession):
        self.session = session

    def is_connected(self) -> bool:
        return self.session.is_connected()

    async def _perform(self, action: DeviceAction, failure_message: str) -> Any:
        if not self.session.is_connected():
            raise DeviceNotConnectedError()

        result = await self.session.execute(action)
        if isinstance(result, Completed):
            return result.output

        error = result.error
        if is_rejection(error):
            logger.info(
                "User rejected request on device",
                extra={"event": "ledger.signer.rejected", "action": action.name},
            )
            raise UserRejectedError() from error
        logger.warning(
            "%s",
            failure_message,
            extra={"event": "ledger.signer.failed", "action": action.name, **get_error_context(error)},
        )
        if isinstance(error, (CommandFailedError, DeviceNotConnectedError)):
            raise error
        if isinstance(error, LedgerError):
            raise CommandFailedError(f"{failure_message}: {error.message}") from error
        raise CommandFailedError(f"{failure_message}: {error}" if str(error) else failure_message) from error

    async def get_address(self, derivation_path: str, confirm_on_device: bool = False) -> DerivedAddress:
        """
        Derive the address at ``derivation_path`` on the device.

        Args:
            derivation_path: BIP32 path, with or without the ``m/`` prefix
            confirm_on_device: Ask the user to verify the address on screen

        Returns:
            DerivedAddress with EIP-55 checksum address and 0x public key
        """
        output = await self._perform(
            GetAddressAction(derivation_path, confirm_on_device=confirm_on_device),
            "Failed to get address",
        )
        address = output.address if output.address.startswith("0x") else "0x" + output.address
        return DerivedAddress(address=to_checksum_address(address), public_key="0x" + output.public_key.hex())

    async def sign_transaction(self, derivation_path: str, unsigned_transaction: bytes) -> SignatureComponents:
        """Sign a serialized unsigned transaction (legacy EIP-155 RLP or typed envelope)."""
        output: SignatureResponse = await self._perform(
            SignTransactionAction(derivation_path, bytes(unsigned_transaction)),
            "Failed to sign transaction",
        )
        return SignatureComponents.from_values(output.v, output.r, output.s)

    async def sign_message(self, derivation_path: str, message: Union[str, bytes]) -> SignatureComponents:
        """Sign an EIP-191 personal message; text is UTF-8 encoded."""
        payload = message.encode("utf-8") if isinstance(message, str) else bytes(message)
        output: SignatureResponse = await self._perform(
            SignPersonalMessageAction(derivation_path, payload),
            "Failed to sign message",
        )
        return SignatureComponents.from_values(output.v, output.r, output.s)

    async def sign_typed_data(
        self,
        derivation_path: str,
        domain: Mapping[str, Any],
        types: Mapping[str, Any],
        value: Mapping[str, Any],
    ) -> SignatureComponents:
        """Sign EIP-712 typed data from its domain separator and struct hash."""
        if not self.session.is_connected():
            raise DeviceNotConnectedError()
        hashes = hash_typed_data(domain, types, value)
        logger.debug(
            "Signing typed data digest",
            extra={"event": "ledger.signer.typed_data", "digest": "0x" + hashes.digest.hex()},
        )
        output: SignatureResponse = await self._perform(
            SignTypedDataHashAction(derivation_path, hashes.domain_hash, hashes.message_hash),
            "Failed to sign typed data",
        )
        return SignatureComponents.from_values(output.v, output.r, output.s)

    async def get_app_configuration(self) -> AppConfiguration:
        return await self._perform(GetAppConfigurationAction(), "Failed to read app configuration")
