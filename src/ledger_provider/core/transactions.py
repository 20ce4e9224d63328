"""
Unsigned transaction model and wire serialization.

Two fee schemes are supported and exactly one is populated per transaction:

- legacy (type 0, EIP-155):
    unsigned = rlp([nonce, gasPrice, gas, to, value, data, chainId, 0, 0])
    signed   = rlp([nonce, gasPrice, gas, to, value, data, v, r, s]),  v = chainId * 2 + 35 + yParity
- fee market (type 2, EIP-1559):
    unsigned = 0x02 || rlp([chainId, nonce, maxPriorityFee, maxFee, gas, to, value, data, accessList])
    signed   = 0x02 || rlp([... , yParity, r, s])
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Any, Iterable, Optional, Union

import rlp
from eth_utils import is_address, to_bytes, to_canonical_address

from ledger_provider.core.ledger_exceptions import CommandFailedError, InvalidTransactionError
from ledger_provider.core.ledger_signer import SignatureComponents

Quantity = Union[int, str, None]


class TransactionType(IntEnum):
    LEGACY = 0
    FEE_MARKET = 2


def to_quantity(value: Quantity, field: str = "value") -> Optional[int]:
    """Parse an RPC quantity given as int, 0x-hex or decimal string. None stays None."""
    if value is None:
        return None
    if isinstance(value, bool):
        raise InvalidTransactionError(f"Invalid {field}: {value!r}")
    if isinstance(value, int):
        result = value
    elif isinstance(value, str):
        text = value.strip()
        try:
            result = int(text, 16) if text.lower().startswith("0x") else int(text, 10)
        except ValueError as exc:
            raise InvalidTransactionError(f"Invalid {field}: {value!r}") from exc
    else:
        raise InvalidTransactionError(f"Invalid {field}: {value!r}")
    if result < 0:
        raise InvalidTransactionError(f"Invalid {field}: must not be negative")
    return result


def to_hex_quantity(value: int) -> str:
    return hex(value)


def to_data(value: Union[str, bytes, None]) -> bytes:
    if value is None:
        return b""
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    try:
        return to_bytes(hexstr=value)
    except ValueError as exc:
        raise InvalidTransactionError(f"Invalid data: {value!r}") from exc


def normalize_access_list(entries: Optional[Iterable[Any]]) -> tuple:
    """Turn ``[{"address", "storageKeys"}]`` into ``((address_bytes, (key_bytes, ...)), ...)``."""
    normalized = []
    for entry in entries or ():
        if isinstance(entry, dict):
            address, keys = entry.get("address"), entry.get("storageKeys", [])
        else:
            address, keys = entry
        if not is_address(address):
            raise InvalidTransactionError(f"Invalid access list address: {address!r}")
        storage_keys = tuple(to_data(key).rjust(32, b"\x00") for key in keys)
        normalized.append((to_canonical_address(address), storage_keys))
    return tuple(normalized)


@dataclass(frozen=True)
class UnsignedTransaction:
    """A fully populated transaction ready to be signed."""

    chain_id: int
    sender: str
    nonce: int
    gas_limit: int
    value: int = 0
    data: bytes = b""
    to: Optional[str] = None
    gas_price: Optional[int] = None
    max_fee_per_gas: Optional[int] = None
    max_priority_fee_per_gas: Optional[int] = None
    access_list: tuple = ()

    def __post_init__(self) -> None:
        legacy = self.gas_price is not None
        fee_market = self.max_fee_per_gas is not None or self.max_priority_fee_per_gas is not None
        if legacy == fee_market:
            raise InvalidTransactionError("Exactly one fee scheme (gasPrice or maxFeePerGas/maxPriorityFeePerGas) is required")
        if fee_market and (self.max_fee_per_gas is None or self.max_priority_fee_per_gas is None):
            raise InvalidTransactionError("Fee-market transactions need both maxFeePerGas and maxPriorityFeePerGas")
        if legacy and self.access_list:
            raise InvalidTransactionError("Access lists require a fee-market transaction")
        if self.to is not None and not is_address(self.to):
            raise InvalidTransactionError(f"Invalid recipient address: {self.to!r}")

    @property
    def type(self) -> TransactionType:
        return TransactionType.LEGACY if self.gas_price is not None else TransactionType.FEE_MARKET

    @property
    def recipient_bytes(self) -> bytes:
        return to_canonical_address(self.to) if self.to else b""

    def _rlp_access_list(self) -> list:
        return [[address, list(keys)] for address, keys in self.access_list]

    def _fields(self) -> list:
        if self.type is TransactionType.LEGACY:
            return [self.nonce, self.gas_price, self.gas_limit, self.recipient_bytes, self.value, self.data]
        return [
            self.chain_id,
            self.nonce,
            self.max_priority_fee_per_gas,
            self.max_fee_per_gas,
            self.gas_limit,
            self.recipient_bytes,
            self.value,
            self.data,
            self._rlp_access_list(),
        ]

    def serialize_unsigned(self) -> bytes:
        """Payload the device signs."""
        if self.type is TransactionType.LEGACY:
            return rlp.encode(self._fields() + [self.chain_id, 0, 0])
        return bytes([TransactionType.FEE_MARKET]) + rlp.encode(self._fields())

    def y_parity(self, v: int) -> int:
        """Recover the signature parity from the device's ``v`` byte."""
        if self.type is TransactionType.LEGACY:
            parity = (v - (self.chain_id * 2 + 35)) & 0xFF
            if parity not in (0, 1) and v in (27, 28):
                parity = v - 27
        else:
            parity = v - 27 if v in (27, 28) else v
        if parity not in (0, 1):
            raise CommandFailedError(f"Unexpected signature v value {v} for chain {self.chain_id}")
        return parity

    def serialize_signed(self, signature: SignatureComponents) -> bytes:
        parity = self.y_parity(signature.v)
        if self.type is TransactionType.LEGACY:
            v = self.chain_id * 2 + 35 + parity
            return rlp.encode(self._fields() + [v, signature.r_int, signature.s_int])
        return bytes([TransactionType.FEE_MARKET]) + rlp.encode(
            self._fields() + [parity, signature.r_int, signature.s_int]
        )
