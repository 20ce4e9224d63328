"""
Simulated Ledger device for TESTING ONLY.

MockLedgerTransport answers the dashboard and Ethereum application APDUs the
way a real device does, using deterministic keys derived from a fixed seed and
the requested derivation path. Signatures are genuine secp256k1 signatures, so
transactions and messages it signs recover to the addresses it reports.

Security Note:
    The keys live in process memory, which defeats the purpose of a hardware
    wallet. Selecting this transport through configuration requires
    LEDGER_ALLOW_MOCK_DEVICE=1.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Optional

import rlp
from eth_keys import keys
from eth_utils import big_endian_to_int, keccak

from ledger_provider.core.apdu import encode_derivation_path
from ledger_provider.core.ledger_exceptions import StatusWord
from ledger_provider.core.transport import DiscoveredDevice

logger = logging.getLogger(__name__)

_SEED = keccak(b"LEDGER_PROVIDER_MOCK_DEVICE_SEED_V1")
_CURVE_ORDER = int("FFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141", 16)
_PERSONAL_PREFIX = b"\x19Ethereum Signed Message:\n"


class _DeviceStatus(Exception):
    def __init__(self, status_word: int):
        super().__init__(f"0x{status_word:04x}")
        self.status_word = status_word


def _private_key_for(path_bytes: bytes) -> keys.PrivateKey:
    value = int.from_bytes(keccak(_SEED + path_bytes), "big") % _CURVE_ORDER
    if value == 0:
        value = 1
    return keys.PrivateKey(value.to_bytes(32, "big"))


def _split_path(data: bytes) -> tuple[bytes, bytes]:
    if not data:
        raise _DeviceStatus(StatusWord.INVALID_DATA)
    end = 1 + 4 * data[0]
    if len(data) < end:
        raise _DeviceStatus(StatusWord.INVALID_DATA)
    return bytes(data[:end]), bytes(data[end:])


def _rlp_complete(payload: bytes) -> bool:
    body = payload[1:] if payload and payload[0] <= 0x7F else payload
    if not body:
        return False
    prefix = body[0]
    if prefix >= 0xF8:
        length_size = prefix - 0xF7
        if len(body) < 1 + length_size:
            return False
        total = 1 + length_size + int.from_bytes(body[1 : 1 + length_size], "big")
    elif prefix >= 0xC0:
        total = 1 + prefix - 0xC0
    else:
        raise _DeviceStatus(StatusWord.INVALID_DATA)
    return len(body) >= total


def _default_devices() -> list[DiscoveredDevice]:
    return [DiscoveredDevice(device_id="mock-0001", model_id="nanoX", name="Mock Ledger")]


@dataclass
class MockLedgerTransport:
    """
    In-process Ledger emulator implementing the Transport protocol.

    Attributes:
        devices: What discovery reports
        locked: Answer every command with the locked-device status
        reject: Decline every signing or on-device confirmation request
        running_app: Application currently in the foreground
        installed_apps: Applications that can be opened
        latency: Seconds to wait before answering each frame
        address_overrides: Fixed address (hex) to report for a derivation path
        fail_connect / fail_disconnect: Raise from connect / disconnect
        reenumerate_on_open: Drop the connection when an app is opened, as USB
            devices do
    """

    devices: list[DiscoveredDevice] = field(default_factory=_default_devices)
    locked: bool = False
    reject: bool = False
    running_app: str = "BOLOS"
    installed_apps: tuple[str, ...] = ("Ethereum",)
    app_version: str = "1.10.4"
    latency: float = 0.0
    address_overrides: dict[str, str] = field(default_factory=dict)
    fail_connect: bool = False
    fail_disconnect: bool = False
    reenumerate_on_open: bool = False
    name: str = field(default="mock", init=False)
    connected_device: Optional[DiscoveredDevice] = field(default=None, init=False)
    connect_count: int = field(default=0, init=False)
    frames: list[bytes] = field(default_factory=list, init=False, repr=False)
    _pending: bytes = field(default=b"", init=False, repr=False)
    _pending_path: bytes = field(default=b"", init=False, repr=False)
    _message_length: int = field(default=0, init=False, repr=False)

    def __post_init__(self) -> None:
        self._overrides = {
            encode_derivation_path(path): address[2:] if address.startswith("0x") else address
            for path, address in self.address_overrides.items()
        }
        logger.warning(
            "MockLedgerTransport initialized - FOR TESTING ONLY",
            extra={"event": "ledger_mock.init", "device_count": len(self.devices)},
        )

    # --------------------------------------------------------------- helpers

    @staticmethod
    def private_key_for_path(derivation_path: str) -> keys.PrivateKey:
        return _private_key_for(encode_derivation_path(derivation_path))

    @classmethod
    def address_for_path(cls, derivation_path: str) -> str:
        return cls.private_key_for_path(derivation_path).public_key.to_checksum_address()

    # ------------------------------------------------------------- transport

    async def discover(self) -> list[DiscoveredDevice]:
        if self.latency:
            await asyncio.sleep(self.latency)
        return list(self.devices)

    async def connect(self, device: DiscoveredDevice) -> None:
        if self.fail_connect:
            raise ConnectionError("Mock device refused the connection")
        self.connect_count += 1
        self.connected_device = device

    async def disconnect(self) -> None:
        self.connected_device = None
        if self.fail_disconnect:
            raise ConnectionError("Mock device failed to close")

    async def send_frame(self, apdu: bytes) -> bytes:
        if self.connected_device is None:
            raise ConnectionError("Mock device is not connected")
        self.frames.append(bytes(apdu))
        if self.latency:
            await asyncio.sleep(self.latency)
        if len(apdu) < 5:
            return StatusWord.INVALID_DATA.to_bytes(2, "big")
        cla, ins, p1 = apdu[0], apdu[1], apdu[2]
        data = bytes(apdu[5 : 5 + apdu[4]])
        try:
            if self.locked:
                raise _DeviceStatus(StatusWord.LOCKED_DEVICE)
            response = self._dispatch(cla, ins, p1, data)
        except _DeviceStatus as status:
            return status.status_word.to_bytes(2, "big")
        return response + StatusWord.OK.to_bytes(2, "big")

    # ------------------------------------------------------------- emulation

    def _dispatch(self, cla: int, ins: int, p1: int, data: bytes) -> bytes:
        if cla == 0xB0 and ins == 0x01:
            return self._app_and_version()
        if cla == 0xB0 and ins == 0xA7:
            self.running_app = "BOLOS"
            return b""
        if cla == 0xE0 and ins == 0xD8:
            return self._open_app(data.decode("ascii", errors="replace"))
        if self.running_app != "Ethereum":
            raise _DeviceStatus(StatusWord.CLA_NOT_SUPPORTED)
        if cla != 0xE0:
            raise _DeviceStatus(StatusWord.CLA_NOT_SUPPORTED)
        handlers = {
            0x02: self._get_address,
            0x04: self._sign_transaction,
            0x06: self._app_configuration,
            0x08: self._sign_personal_message,
            0x0C: self._sign_typed_data,
        }
        handler = handlers.get(ins)
        if handler is None:
            raise _DeviceStatus(StatusWord.INS_NOT_SUPPORTED)
        return handler(p1, data)

    def _app_and_version(self) -> bytes:
        app = self.running_app.encode("ascii")
        version = (self.app_version if self.running_app == "Ethereum" else "2.1.0").encode("ascii")
        return b"\x01" + bytes([len(app)]) + app + bytes([len(version)]) + version + b"\x01\x00"

    def _open_app(self, app_name: str) -> bytes:
        if app_name not in self.installed_apps:
            raise _DeviceStatus(StatusWord.APP_NOT_INSTALLED)
        if self.reject:
            raise _DeviceStatus(StatusWord.USER_REFUSED_ON_DEVICE)
        self.running_app = app_name
        if self.reenumerate_on_open:
            self.connected_device = None
        return b""

    def _get_address(self, p1: int, data: bytes) -> bytes:
        path_bytes, _ = _split_path(data)
        if p1 == 0x01 and self.reject:
            raise _DeviceStatus(StatusWord.USER_REJECTED)
        public_key = b"\x04" + _private_key_for(path_bytes).public_key.to_bytes()
        address = self._overrides.get(path_bytes)
        if address is None:
            address = _private_key_for(path_bytes).public_key.to_checksum_address()[2:]
        encoded = address.encode("ascii")
        return bytes([len(public_key)]) + public_key + bytes([len(encoded)]) + encoded

    def _app_configuration(self, _p1: int, _data: bytes) -> bytes:
        major, minor, patch = (int(part) for part in self.app_version.split("."))
        return bytes([0x0F, major, minor, patch])

    def _sign(self, path_bytes: bytes, digest: bytes) -> tuple[int, int, int]:
        if self.reject:
            raise _DeviceStatus(StatusWord.USER_REJECTED)
        signature = _private_key_for(path_bytes).sign_msg_hash(digest)
        return signature.v, signature.r, signature.s

    @staticmethod
    def _encode_signature(v: int, r: int, s: int) -> bytes:
        return bytes([v & 0xFF]) + r.to_bytes(32, "big") + s.to_bytes(32, "big")

    def _sign_transaction(self, p1: int, data: bytes) -> bytes:
        if p1 == 0x00:
            self._pending_path, self._pending = _split_path(data)
        else:
            self._pending += data
        if not _rlp_complete(self._pending):
            return b""
        payload, self._pending = self._pending, b""
        parity, r, s = self._sign(self._pending_path, keccak(payload))
        if payload[0] <= 0x7F:
            return self._encode_signature(parity, r, s)
        chain_id = big_endian_to_int(rlp.decode(payload)[6])
        return self._encode_signature(chain_id * 2 + 35 + parity, r, s)

    def _sign_personal_message(self, p1: int, data: bytes) -> bytes:
        if p1 == 0x00:
            self._pending_path, rest = _split_path(data)
            self._message_length = int.from_bytes(rest[:4], "big")
            self._pending = rest[4:]
        else:
            self._pending += data
        if len(self._pending) < self._message_length:
            return b""
        message, self._pending = self._pending, b""
        digest = keccak(_PERSONAL_PREFIX + str(len(message)).encode("ascii") + message)
        parity, r, s = self._sign(self._pending_path, digest)
        return self._encode_signature(27 + parity, r, s)

    def _sign_typed_data(self, _p1: int, data: bytes) -> bytes:
        path_bytes, hashes = _split_path(data)
        if len(hashes) != 64:
            raise _DeviceStatus(StatusWord.INVALID_DATA)
        parity, r, s = self._sign(path_bytes, keccak(b"\x19\x01" + hashes))
        return self._encode_signature(27 + parity, r, s)
