"""
RPC-intercepting signing provider backed by a Ledger device.

Methods that need a private key are answered here:

| method                                   | behavior                                         |
|------------------------------------------|--------------------------------------------------|
| eth_accounts, eth_requestAccounts        | cached account addresses in registry order       |
| eth_sendTransaction                      | sign, then eth_sendRawTransaction upstream       |
| eth_signTransaction                      | sign, return the raw signed transaction          |
| personal_sign, eth_sign                  | EIP-191 message signature (65 bytes hex)         |
| eth_signTypedData(_v3/_v4)               | EIP-712 signature (65 bytes hex)                 |

Every other method is forwarded unchanged to the upstream transport.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Optional, Sequence, Union

from eth_utils import is_address, is_hexstr

from ledger_provider.core.account_registry import Account, AccountRegistry, DerivationFunction
from ledger_provider.core.config import ETHEREUM_APP_NAME, default_derivation_path
from ledger_provider.core.device_session import DeviceSession
from ledger_provider.core.ledger_exceptions import (
    DeviceNotConnectedError,
    InvalidTransactionError,
    RpcError,
    UnknownAccountError,
)
from ledger_provider.core.ledger_signer import LedgerSigner, SignatureComponents
from ledger_provider.core.rpc_transport import RpcTransport
from ledger_provider.core.transactions import (
    UnsignedTransaction,
    normalize_access_list,
    to_data,
    to_hex_quantity,
    to_quantity,
)
from ledger_provider.core.typed_data import parse_typed_data_payload

logger = logging.getLogger(__name__)

ACCOUNT_METHODS = frozenset({"eth_accounts", "eth_requestAccounts"})
MESSAGE_METHODS = frozenset({"personal_sign", "eth_sign"})
TYPED_DATA_METHODS = frozenset({"eth_signTypedData", "eth_signTypedData_v3", "eth_signTypedData_v4"})

# Priority fee used when the node does not implement eth_maxPriorityFeePerGas
DEFAULT_PRIORITY_FEE = 1_000_000_000
INVALID_PARAMS = -32602


@dataclass(frozen=True)
class FeeData:
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None


def _invalid_params(message: str) -> RpcError:
    return RpcError(message, rpc_code=INVALID_PARAMS)


def _message_bytes(message: Any) -> bytes:
    if isinstance(message, (bytes, bytearray)):
        return bytes(message)
    if not isinstance(message, str):
        raise _invalid_params("Message must be a string")
    if message.startswith(("0x", "0X")) and is_hexstr(message) and len(message) % 2 == 0:
        return bytes.fromhex(message[2:])
    return message.encode("utf-8")


def format_signature(signature: SignatureComponents) -> str:
    """``0x || r(32) || s(32) || v(1)`` with ``v`` in the 27/28 convention."""
    v = signature.v + 27 if signature.v < 27 else signature.v
    return SignatureComponents(r=signature.r, s=signature.s, v=v).to_hex()


class LedgerSigningProvider:
    """
    Wraps an upstream RPC transport and answers signing calls with a Ledger.

    Owns its DeviceSession: the session is connected by ``initialize`` and torn
    down by ``disconnect``; it is never shared with another provider.
    """

    def __init__(
        self,
        upstream: RpcTransport,
        session: DeviceSession,
        accounts: Optional[Iterable[Union[int, str]]] = None,
        derivation_function: Optional[DerivationFunction] = None,
        signer: Optional[LedgerSigner] = None,
        app_name: str = ETHEREUM_APP_NAME,
    ):
        self.upstream = upstream
        self.session = session
        self.signer = signer or LedgerSigner(session)
        self.registry = AccountRegistry(self.signer)
        self.account_config = list(accounts or [])
        self.derivation_function = derivation_function or default_derivation_path
        self.app_name = app_name
        self._handlers: dict[str, Callable[[list[Any]], Awaitable[Any]]] = {
            "eth_sendTransaction": self._handle_send_transaction,
            "eth_signTransaction": self._handle_sign_transaction,
        }
        self._handlers.update({method: self._handle_sign_message for method in MESSAGE_METHODS})
        self._handlers.update({method: self._handle_sign_typed_data for method in TYPED_DATA_METHODS})

    # ------------------------------------------------------------- lifecycle

    async def initialize(self) -> list[Account]:
        """Connect the device, open the Ethereum app and derive the configured accounts."""
        await self.session.connect()
        await self.session.open_application(self.app_name)
        return await self.registry.resolve(self.account_config, self.derivation_function)

    async def disconnect(self) -> None:
        await self.session.disconnect()
        self.registry.clear()

    def is_connected(self) -> bool:
        return self.session.is_connected()

    @property
    def accounts(self) -> list[Account]:
        return self.registry.accounts

    # --------------------------------------------------------------- request

    async def request(self, method: str, params: Optional[Sequence[Any]] = None) -> Any:
        params = list(params or [])
        if method in ACCOUNT_METHODS:
            return self.registry.addresses
        handler = self._handlers.get(method)
        if handler is None:
            return await self.upstream.request(method, params)
        if not self.session.is_connected():
            raise DeviceNotConnectedError()
        logger.debug("Handling %s on Ledger", method, extra={"event": "ledger.provider.intercept", "method": method})
        return await handler(params)

    def _require_account(self, address: Any) -> Account:
        account = self.registry.find(address)
        if account is None:
            if not address:
                raise UnknownAccountError(message="Transaction request has no 'from' address")
            raise UnknownAccountError(address)
        return account

    # ---------------------------------------------------------- transactions

    async def get_chain_id(self) -> int:
        return to_quantity(await self.upstream.request("eth_chainId", []), "chainId")

    async def get_fee_data(self) -> FeeData:
        """Current gas price plus fee-market fields when the latest block has a base fee."""
        try:
            gas_price = to_quantity(await self.upstream.request("eth_gasPrice", []), "gasPrice")
        except RpcError:
            gas_price = None
        block = await self.upstream.request("eth_getBlockByNumber", ["latest", False])
        base_fee = to_quantity((block or {}).get("baseFeePerGas"), "baseFeePerGas")
        if not base_fee:
            return FeeData(gas_price=gas_price)
        try:
            priority_fee = to_quantity(await self.upstream.request("eth_maxPriorityFeePerGas", []), "maxPriorityFeePerGas")
        except RpcError:
            priority_fee = None
        if priority_fee is None:
            priority_fee = DEFAULT_PRIORITY_FEE
        return FeeData(
            gas_price=gas_price,
            max_fee_per_gas=base_fee * 2 + priority_fee,
            max_priority_fee_per_gas=priority_fee,
        )

    async def _select_fees(self, tx_request: dict[str, Any]) -> dict[str, int]:
        max_fee = to_quantity(tx_request.get("maxFeePerGas"), "maxFeePerGas")
        max_priority_fee = to_quantity(tx_request.get("maxPriorityFeePerGas"), "maxPriorityFeePerGas")
        gas_price = to_quantity(tx_request.get("gasPrice"), "gasPrice")
        if max_fee is not None and max_priority_fee is not None:
            return {"max_fee_per_gas": max_fee, "max_priority_fee_per_gas": max_priority_fee}
        if gas_price is not None:
            return {"gas_price": gas_price}
        fee_data = await self.get_fee_data()
        if fee_data.max_fee_per_gas is not None and fee_data.max_priority_fee_per_gas is not None:
            return {
                "max_fee_per_gas": fee_data.max_fee_per_gas,
                "max_priority_fee_per_gas": fee_data.max_priority_fee_per_gas,
            }
        return {"gas_price": fee_data.gas_price or 0}

    async def build_transaction(self, tx_request: dict[str, Any]) -> tuple[Account, UnsignedTransaction]:
        """Fill chain id, nonce, gas limit and fees for a transaction request."""
        if not isinstance(tx_request, dict):
            raise _invalid_params("Transaction request must be an object")
        account = self._require_account(tx_request.get("from"))

        chain_id = await self.get_chain_id()
        requested_chain_id = to_quantity(tx_request.get("chainId"), "chainId")
        if requested_chain_id is not None and requested_chain_id != chain_id:
            raise InvalidTransactionError(
                f"Transaction chainId {requested_chain_id} does not match network chainId {chain_id}"
            )

        to = tx_request.get("to") or None
        value = to_quantity(tx_request.get("value"), "value") or 0
        data = to_data(tx_request.get("data", tx_request.get("input")))

        nonce = to_quantity(tx_request.get("nonce"), "nonce")
        if nonce is None:
            nonce = to_quantity(
                await self.upstream.request("eth_getTransactionCount", [account.address, "pending"]),
                "nonce",
            )

        gas_limit = to_quantity(tx_request.get("gasLimit"), "gasLimit")
        if gas_limit is None:
            gas_limit = to_quantity(tx_request.get("gas"), "gas")
        if gas_limit is None:
            call: dict[str, Any] = {
                "from": account.address,
                "value": to_hex_quantity(value),
                "data": "0x" + data.hex(),
            }
            if to:
                call["to"] = to
            gas_limit = to_quantity(await self.upstream.request("eth_estimateGas", [call]), "gas")

        fees = await self._select_fees(tx_request)
        transaction = UnsignedTransaction(
            chain_id=chain_id,
            sender=account.address,
            nonce=nonce,
            gas_limit=gas_limit,
            value=value,
            data=data,
            to=to,
            access_list=normalize_access_list(tx_request.get("accessList")),
            **fees,
        )
        return account, transaction

    async def sign_transaction(self, tx_request: dict[str, Any]) -> str:
        account, transaction = await self.build_transaction(tx_request)
        logger.info(
            "Signing transaction on Ledger",
            extra={
                "event": "ledger.provider.sign_transaction",
                "from": account.address,
                "tx_type": int(transaction.type),
                "chain_id": transaction.chain_id,
                "nonce": transaction.nonce,
            },
        )
        signature = await self.signer.sign_transaction(account.derivation_path, transaction.serialize_unsigned())
        return "0x" + transaction.serialize_signed(signature).hex()

    async def _handle_sign_transaction(self, params: list[Any]) -> str:
        if not params:
            raise _invalid_params("eth_signTransaction expects a transaction object")
        return await self.sign_transaction(params[0])

    async def _handle_send_transaction(self, params: list[Any]) -> Any:
        if not params:
            raise _invalid_params("eth_sendTransaction expects a transaction object")
        raw_transaction = await self.sign_transaction(params[0])
        return await self.upstream.request("eth_sendRawTransaction", [raw_transaction])

    # -------------------------------------------------------------- messages

    async def _handle_sign_message(self, params: list[Any]) -> str:
        if len(params) < 2:
            raise _invalid_params("Message signing expects an address and a message")
        first, second = params[0], params[1]
        account, message = self.registry.find(second), first
        if account is None:
            account, message = self.registry.find(first), second
        if account is None:
            candidate = next((p for p in (second, first) if isinstance(p, str) and is_address(p)), None)
            if candidate is None:
                raise UnknownAccountError(message="Message signing params contain no address")
            raise UnknownAccountError(candidate)

        signature = await self.signer.sign_message(account.derivation_path, _message_bytes(message))
        return format_signature(signature)

    async def _handle_sign_typed_data(self, params: list[Any]) -> str:
        if len(params) < 2:
            raise _invalid_params("Typed data signing expects an address and a payload")
        address, payload = params[0], params[1]
        if self.registry.find(address) is None and isinstance(payload, str) and is_address(payload):
            address, payload = payload, address
        account = self._require_account(address)
        try:
            typed_data = parse_typed_data_payload(payload)
        except ValueError as exc:
            raise _invalid_params(f"Invalid typed data: {exc}") from exc

        signature = await self.signer.sign_typed_data(
            account.derivation_path,
            typed_data["domain"],
            typed_data["types"],
            typed_data["message"],
        )
        return format_signature(signature)
