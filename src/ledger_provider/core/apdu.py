"""
APDU encoding and device actions for the Ledger Ethereum application.

A device action is one discrete operation (derive an address, sign a
transaction, ...) that may need several APDU round-trips. Actions receive an
``exchange`` coroutine that sends one APDU and returns the response data, or
raises DeviceStatusError when the status word is not 0x9000.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from ledger_provider.core.ledger_exceptions import CommandFailedError

Exchange = Callable[[bytes], Awaitable[bytes]]
AppSwitchHook = Callable[[], Awaitable[None]]

CLA_ETH = 0xE0
CLA_DASHBOARD = 0xB0

INS_GET_ADDRESS = 0x02
INS_SIGN_TX = 0x04
INS_GET_APP_CONFIGURATION = 0x06
INS_SIGN_PERSONAL_MESSAGE = 0x08
INS_SIGN_EIP712 = 0x0C
INS_GET_APP_AND_VERSION = 0x01
INS_OPEN_APP = 0xD8
INS_CLOSE_APP = 0xA7

P1_FIRST_CHUNK = 0x00
P1_MORE_CHUNKS = 0x80
P1_NO_CONFIRM = 0x00
P1_CONFIRM = 0x01

MAX_CHUNK_SIZE = 255
DASHBOARD_APP_NAMES = {"BOLOS", "OLOS\x00"}


def encode_derivation_path(path: str) -> bytes:
    """Encode ``m/44'/60'/0'/0/0`` as ``count || index(4)*``; the ``m/`` prefix is optional."""
    if path.startswith("m/"):
        path = path[2:]
    elif path == "m":
        path = ""
    elements = [element for element in path.split("/") if element]
    if len(elements) > 10:
        raise ValueError("BIP32 path has too many components")
    result = len(elements).to_bytes(1, "big")
    for element in elements:
        hardened = element[-1] in "'hH"
        index_str = element[:-1] if hardened else element
        if not index_str.isdigit():
            raise ValueError(f"Invalid component in BIP32 path: {element!r}")
        index = int(index_str)
        if index >= 0x80000000:
            raise ValueError("Invalid index in BIP32 path")
        if hardened:
            index |= 0x80000000
        result += index.to_bytes(4, "big")
    return result


def build_apdu(cla: int, ins: int, p1: int = 0, p2: int = 0, data: bytes = b"") -> bytes:
    if len(data) > MAX_CHUNK_SIZE:
        raise ValueError("APDU data exceeds 255 bytes")
    return bytes([cla, ins, p1, p2, len(data)]) + data


def chunk_payload(prefix: bytes, payload: bytes) -> list[bytes]:
    """Split ``prefix || payload`` into APDU-sized chunks; the prefix always lands in the first chunk."""
    data = prefix + payload
    chunks = [data[i : i + MAX_CHUNK_SIZE] for i in range(0, len(data), MAX_CHUNK_SIZE)]
    return chunks or [b""]


def parse_signature(data: bytes) -> tuple[int, bytes, bytes]:
    """Split a ``v(1) || r(32) || s(32)`` response."""
    if len(data) < 65:
        raise CommandFailedError(f"Signature response too short ({len(data)} bytes)")
    return data[0], bytes(data[1:33]), bytes(data[33:65])


@dataclass(frozen=True)
class AddressResponse:
    public_key: bytes
    address: str
    chain_code: bytes | None = None


@dataclass(frozen=True)
class SignatureResponse:
    v: int
    r: bytes
    s: bytes


@dataclass(frozen=True)
class AppInfo:
    name: str
    version: str


@dataclass(frozen=True)
class AppConfiguration:
    flags: int
    version: str


class DeviceAction:
    """One discrete device operation with a single terminal result."""

    name = "device-action"

    async def run(self, exchange: Exchange) -> Any:
        raise NotImplementedError

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}>"


class GetAddressAction(DeviceAction):
    name = "get-address"

    def __init__(self, derivation_path: str, confirm_on_device: bool = False):
        self.derivation_path = derivation_path
        self.confirm_on_device = confirm_on_device

    async def run(self, exchange: Exchange) -> AddressResponse:
        p1 = P1_CONFIRM if self.confirm_on_device else P1_NO_CONFIRM
        data = await exchange(build_apdu(CLA_ETH, INS_GET_ADDRESS, p1, 0, encode_derivation_path(self.derivation_path)))
        try:
            offset = 0
            public_key = bytes(data[offset + 1 : offset + 1 + data[offset]])
            offset += 1 + data[offset]
            address = bytes(data[offset + 1 : offset + 1 + data[offset]]).decode("ascii")
            offset += 1 + data[offset]
        except (IndexError, UnicodeDecodeError) as exc:
            raise CommandFailedError(f"Malformed get-address response: {exc}") from exc
        chain_code = bytes(data[offset : offset + 32]) or None
        return AddressResponse(public_key=public_key, address=address, chain_code=chain_code)


class SignTransactionAction(DeviceAction):
    name = "sign-transaction"

    def __init__(self, derivation_path: str, unsigned_transaction: bytes):
        self.derivation_path = derivation_path
        self.unsigned_transaction = unsigned_transaction

    async def run(self, exchange: Exchange) -> SignatureResponse:
        chunks = chunk_payload(encode_derivation_path(self.derivation_path), self.unsigned_transaction)
        response = b""
        for index, chunk in enumerate(chunks):
            p1 = P1_FIRST_CHUNK if index == 0 else P1_MORE_CHUNKS
            response = await exchange(build_apdu(CLA_ETH, INS_SIGN_TX, p1, 0, chunk))
        return SignatureResponse(*parse_signature(response))


class SignPersonalMessageAction(DeviceAction):
    name = "sign-message"

    def __init__(self, derivation_path: str, message: bytes):
        self.derivation_path = derivation_path
        self.message = message

    async def run(self, exchange: Exchange) -> SignatureResponse:
        prefix = encode_derivation_path(self.derivation_path) + len(self.message).to_bytes(4, "big")
        response = b""
        for index, chunk in enumerate(chunk_payload(prefix, self.message)):
            p1 = P1_FIRST_CHUNK if index == 0 else P1_MORE_CHUNKS
            response = await exchange(build_apdu(CLA_ETH, INS_SIGN_PERSONAL_MESSAGE, p1, 0, chunk))
        return SignatureResponse(*parse_signature(response))


class SignTypedDataHashAction(DeviceAction):
    name = "sign-typed-data"

    def __init__(self, derivation_path: str, domain_hash: bytes, message_hash: bytes):
        if len(domain_hash) != 32 or len(message_hash) != 32:
            raise ValueError("EIP-712 domain and message hashes must be 32 bytes")
        self.derivation_path = derivation_path
        self.domain_hash = domain_hash
        self.message_hash = message_hash

    async def run(self, exchange: Exchange) -> SignatureResponse:
        data = encode_derivation_path(self.derivation_path) + self.domain_hash + self.message_hash
        response = await exchange(build_apdu(CLA_ETH, INS_SIGN_EIP712, 0, 0, data))
        return SignatureResponse(*parse_signature(response))


class GetAppConfigurationAction(DeviceAction):
    name = "get-app-configuration"

    async def run(self, exchange: Exchange) -> AppConfiguration:
        data = await exchange(build_apdu(CLA_ETH, INS_GET_APP_CONFIGURATION))
        if len(data) < 4:
            raise CommandFailedError("Malformed app configuration response")
        return AppConfiguration(flags=data[0], version=f"{data[1]}.{data[2]}.{data[3]}")


class GetAppAndVersionAction(DeviceAction):
    name = "get-app-and-version"

    async def run(self, exchange: Exchange) -> AppInfo:
        data = await exchange(build_apdu(CLA_DASHBOARD, INS_GET_APP_AND_VERSION))
        try:
            name_length = data[1]
            name = bytes(data[2 : 2 + name_length]).decode("ascii")
            version_length = data[2 + name_length]
            start = 3 + name_length
            version = bytes(data[start : start + version_length]).decode("ascii")
        except (IndexError, UnicodeDecodeError) as exc:
            raise CommandFailedError(f"Malformed app-and-version response: {exc}") from exc
        return AppInfo(name=name, version=version)


class OpenApplicationAction(DeviceAction):
    """
    Bring ``app_name`` to the foreground, closing any other running app first.

    Switching apps makes a USB device re-enumerate, so the connection the
    session holds goes stale; ``on_app_switch`` runs after each close or open
    to re-attach before the next APDU is sent.
    """

    name = "open-app"

    def __init__(self, app_name: str, settle_delay: float = 0.5, on_app_switch: Optional[AppSwitchHook] = None):
        self.app_name = app_name
        self.settle_delay = settle_delay
        self.on_app_switch = on_app_switch

    async def _switched(self) -> None:
        await asyncio.sleep(self.settle_delay)
        if self.on_app_switch is not None:
            await self.on_app_switch()

    async def run(self, exchange: Exchange) -> AppInfo:
        current = await GetAppAndVersionAction().run(exchange)
        if current.name == self.app_name:
            return current
        if current.name not in DASHBOARD_APP_NAMES:
            await exchange(build_apdu(CLA_DASHBOARD, INS_CLOSE_APP))
            await self._switched()
        await exchange(build_apdu(CLA_ETH, INS_OPEN_APP, 0, 0, self.app_name.encode("ascii")))
        await self._switched()
        return AppInfo(name=self.app_name, version="")
