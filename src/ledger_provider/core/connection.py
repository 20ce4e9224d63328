"""
Network connection hooks.

``new_connection`` wraps the provider of a freshly opened network connection
with a LedgerSigningProvider when the network configures Ledger accounts;
``connection_closed`` tears the device session down again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional, Union

from ledger_provider.core.account_registry import Account
from ledger_provider.core.config import LedgerNetworkConfig, load_network_config
from ledger_provider.core.device_session import DeviceSession
from ledger_provider.core.ledger_signer import LedgerSigner
from ledger_provider.core.rpc_transport import RpcTransport
from ledger_provider.core.signing_provider import LedgerSigningProvider
from ledger_provider.core.transport import Transport, create_transport

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str], Transport]


@dataclass
class LedgerConnectionInfo:
    session: DeviceSession = field(repr=False)
    device_id: Optional[str]
    model_id: Optional[str]
    accounts: list[Account]

    @property
    def is_connected(self) -> bool:
        return self.session.is_connected()

    def to_dict(self) -> dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "modelId": self.model_id,
            "accounts": [account.to_dict() for account in self.accounts],
            "isConnected": self.is_connected,
        }


@dataclass
class NetworkConnection:
    network_name: str
    provider: RpcTransport
    ledger: Optional[LedgerConnectionInfo] = None


async def new_connection(
    connection: NetworkConnection,
    network_config: Union[dict[str, Any], LedgerNetworkConfig, None],
    transport_factory: TransportFactory = create_transport,
) -> NetworkConnection:
    """
    Attach a Ledger-backed provider to a connection.

    Args:
        connection: Connection whose provider talks to the node
        network_config: Raw network config (``ledgerAccounts``/``ledgerOptions``)
            or an already validated LedgerNetworkConfig
        transport_factory: Builds the device transport from its type name

    Returns:
        The connection unchanged when no Ledger accounts are configured,
        otherwise a copy whose provider signs with the device

    Raises:
        ConfigurationError: If the Ledger fields are malformed
        DeviceNotConnectedError: If no device is found in time
        AppNotOpenError: If the Ethereum app cannot be opened
    """
    if isinstance(network_config, LedgerNetworkConfig):
        ledger_config: Optional[LedgerNetworkConfig] = network_config if network_config.accounts else None
    else:
        ledger_config = load_network_config(connection.network_name, network_config or {})
    if ledger_config is None:
        return connection

    options = ledger_config.options
    session = DeviceSession(
        transport_factory(options.transport_type),
        connection_timeout=options.connection_timeout_seconds,
        action_timeout=options.action_timeout_seconds,
        device_filter=options.device_filter,
    )
    provider = LedgerSigningProvider(
        connection.provider,
        session,
        accounts=ledger_config.accounts,
        derivation_function=options.derivation_function,
        signer=LedgerSigner(session),
    )
    try:
        accounts = await provider.initialize()
    except Exception:
        await provider.disconnect()
        raise

    logger.info(
        "Ledger provider attached to network",
        extra={
            "event": "ledger.connection.opened",
            "network": connection.network_name,
            "device_id": session.device_id,
            "account_count": len(accounts),
        },
    )
    return replace(
        connection,
        provider=provider,
        ledger=LedgerConnectionInfo(
            session=session,
            device_id=session.device_id,
            model_id=session.model_id,
            accounts=accounts,
        ),
    )


async def connection_closed(connection: NetworkConnection) -> None:
    """Disconnect the device of a Ledger-backed connection; other connections are left alone."""
    if connection.ledger is None or not isinstance(connection.provider, LedgerSigningProvider):
        return
    await connection.provider.disconnect()
    logger.info(
        "Ledger provider detached from network",
        extra={"event": "ledger.connection.closed", "network": connection.network_name},
    )
