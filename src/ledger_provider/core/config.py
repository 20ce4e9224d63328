"""
Ledger network configuration.

Each network of the host configuration may carry two Ledger fields:

- ``ledgerAccounts``: account selectors (indices, numeric strings or full
  derivation paths)
- ``ledgerOptions``: connection timeout, device filter, transport type and
  derivation function

Defaults are read from the environment so deployments can tune timeouts and
the transport without touching project configuration.
"""

from __future__ import annotations

import logging
import os
from typing import Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ledger_provider.core.ledger_exceptions import ConfigurationError

logger = logging.getLogger(__name__)

TRUTHY_VALUES = {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning(
            "Ignoring non-integer value for %s",
            name,
            extra={"event": "config.invalid_env", "env_var": name},
        )
        return default


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").strip().lower() in TRUTHY_VALUES


DEFAULT_CONNECTION_TIMEOUT_MS = _env_int("LEDGER_CONNECTION_TIMEOUT_MS", 30000)
DEFAULT_ACTION_TIMEOUT_MS = _env_int("LEDGER_ACTION_TIMEOUT_MS", 60000)
DEFAULT_TRANSPORT = os.getenv("LEDGER_TRANSPORT", "usb").strip().lower() or "usb"
ETHEREUM_APP_NAME = "Ethereum"
BIP44_ETHEREUM_PATH = "m/44'/60'/0'/0/{index}"

TransportType = Literal["usb", "ble", "mock"]
AccountSelector = Union[int, str]


def allow_mock_device() -> bool:
    """Whether the simulated device may be selected (tests only)."""
    return _env_flag("LEDGER_ALLOW_MOCK_DEVICE")


def default_derivation_path(index: int) -> str:
    """Standard BIP44 Ethereum path for an account index."""
    return BIP44_ETHEREUM_PATH.format(index=index)


class DeviceFilter(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", frozen=True)

    device_id: Optional[str] = Field(default=None, alias="deviceId")
    model_id: Optional[str] = Field(default=None, alias="modelId")


class LedgerOptions(BaseModel):
    """Per-network device options."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    connection_timeout: int = Field(default=DEFAULT_CONNECTION_TIMEOUT_MS, alias="connectionTimeout", gt=0)
    action_timeout: int = Field(default=DEFAULT_ACTION_TIMEOUT_MS, alias="actionTimeout", gt=0)
    device_filter: DeviceFilter = Field(default_factory=DeviceFilter, alias="deviceFilter")
    transport_type: TransportType = Field(default=DEFAULT_TRANSPORT, alias="transportType")
    derivation_function: Callable[[int], str] = Field(
        default=default_derivation_path, alias="derivationFunction"
    )

    @property
    def connection_timeout_seconds(self) -> float:
        return self.connection_timeout / 1000.0

    @property
    def action_timeout_seconds(self) -> float:
        return self.action_timeout / 1000.0


class LedgerNetworkConfig(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    accounts: list[AccountSelector] = Field(default_factory=list, alias="ledgerAccounts")
    options: LedgerOptions = Field(default_factory=LedgerOptions, alias="ledgerOptions")

    @field_validator("options", mode="before")
    @classmethod
    def _default_options(cls, value: Any) -> Any:
        return {} if value is None else value

    @field_validator("accounts", mode="before")
    @classmethod
    def _default_accounts(cls, value: Any) -> Any:
        return [] if value is None else value


def load_network_config(network_name: str, network_config: dict[str, Any]) -> Optional[LedgerNetworkConfig]:
    """Validate the Ledger fields of one network.

    Returns None when the network does not configure any Ledger accounts.

    Raises:
        ConfigurationError: If the Ledger fields are malformed
    """
    if not network_config.get("ledgerAccounts"):
        return None
    try:
        return LedgerNetworkConfig.model_validate(network_config)
    except ValidationError as exc:
        raise ConfigurationError(
            f"Invalid Ledger configuration for network '{network_name}': {exc}",
            details={"network": network_name, "errors": exc.errors(include_url=False)},
        ) from exc


def resolve_user_config(user_config: dict[str, Any]) -> dict[str, LedgerNetworkConfig]:
    """Merge and validate Ledger settings for every network of a user config."""
    resolved: dict[str, LedgerNetworkConfig] = {}
    for name, network in (user_config.get("networks") or {}).items():
        ledger_config = load_network_config(name, network or {})
        if ledger_config is not None:
            resolved[name] = ledger_config
    logger.debug(
        "Resolved Ledger network configuration",
        extra={"event": "config.resolved", "networks": sorted(resolved)},
    )
    return resolved
