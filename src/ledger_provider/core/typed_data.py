"""
EIP-712 typed-data hashing.

digest = keccak256(0x1901 || hashDomain(domain) || hashStruct(primaryType, value))

The Ledger Ethereum app signs typed data from the two 32-byte hashes, so both
are kept alongside the final digest.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, Mapping

from eth_account.messages import encode_typed_data
from eth_utils import keccak

EIP712_DOMAIN_TYPE = "EIP712Domain"
EIP712_PREFIX = b"\x19\x01"


@dataclass(frozen=True)
class TypedDataHashes:
    domain_hash: bytes
    message_hash: bytes

    @property
    def digest(self) -> bytes:
        return keccak(EIP712_PREFIX + self.domain_hash + self.message_hash)


def hash_typed_data(
    domain: Mapping[str, Any],
    types: Mapping[str, Any],
    value: Mapping[str, Any],
) -> TypedDataHashes:
    """Hash domain and message; an ``EIP712Domain`` entry in ``types`` is ignored."""
    message_types = {name: fields for name, fields in types.items() if name != EIP712_DOMAIN_TYPE}
    signable = encode_typed_data(
        domain_data=dict(domain),
        message_types=message_types,
        message_data=dict(value),
    )
    return TypedDataHashes(domain_hash=bytes(signable.header), message_hash=bytes(signable.body))


def parse_typed_data_payload(payload: Any) -> dict[str, Any]:
    """Accept an ``eth_signTypedData`` payload as a JSON string or a mapping."""
    if isinstance(payload, (str, bytes)):
        payload = json.loads(payload)
    if not isinstance(payload, Mapping):
        raise ValueError("Typed data payload must be a JSON object")
    missing = [key for key in ("domain", "types", "message") if key not in payload]
    if missing:
        raise ValueError(f"Typed data payload is missing {', '.join(missing)}")
    return dict(payload)
