"""
Bluetooth LE transport for Ledger devices.

Ledger BLE devices expose one GATT service with a write characteristic and a
notify characteristic. APDUs are split into MTU-sized packets:

    first packet:  0x05 | seq(2) | apdu_len(2) | data
    next packets:  0x05 | seq(2) | data

Responses arrive as notifications using the same framing.

Dependencies:
- bleak
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

try:
    from bleak import BleakClient, BleakScanner
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError("bleak is required for Ledger Bluetooth support. pip install bleak") from exc

from ledger_provider.core.ledger_exceptions import CommandFailedError, DeviceNotConnectedError
from ledger_provider.core.transport import DiscoveredDevice

logger = logging.getLogger(__name__)

TAG_APDU = 0x05
TAG_MTU = 0x08
DEFAULT_MTU = 20
HEADER_SIZE = 3
RESPONSE_TIMEOUT = 120.0


@dataclass(frozen=True)
class BleService:
    model_id: str
    service_uuid: str
    notify_uuid: str
    write_uuid: str


BLE_SERVICES = (
    BleService(
        "nanoX",
        "13d63400-2c97-0004-0000-4c6564676572",
        "13d63400-2c97-0004-0001-4c6564676572",
        "13d63400-2c97-0004-0002-4c6564676572",
    ),
    BleService(
        "stax",
        "13d63400-2c97-6004-0000-4c6564676572",
        "13d63400-2c97-6004-0001-4c6564676572",
        "13d63400-2c97-6004-0002-4c6564676572",
    ),
    BleService(
        "flex",
        "13d63400-2c97-3004-0000-4c6564676572",
        "13d63400-2c97-3004-0001-4c6564676572",
        "13d63400-2c97-3004-0002-4c6564676572",
    ),
)


def frame_apdu(apdu: bytes, mtu: int) -> list[bytes]:
    """Split an APDU into BLE packets of at most ``mtu`` bytes."""
    packets = []
    sequence = 0
    remaining = len(apdu).to_bytes(2, "big") + apdu
    while remaining or sequence == 0:
        chunk_size = mtu - HEADER_SIZE
        chunk, remaining = remaining[:chunk_size], remaining[chunk_size:]
        packets.append(bytes([TAG_APDU]) + sequence.to_bytes(2, "big") + chunk)
        sequence += 1
    return packets


class ResponseAssembler:
    """Reassembles one response APDU from notification packets."""

    def __init__(self) -> None:
        self.expected_length: Optional[int] = None
        self.sequence = 0
        self.buffer = b""

    def feed(self, packet: bytes) -> Optional[bytes]:
        if len(packet) < HEADER_SIZE or packet[0] != TAG_APDU:
            raise CommandFailedError(f"Unexpected BLE packet tag 0x{packet[0]:02x}" if packet else "Empty BLE packet")
        sequence = int.from_bytes(packet[1:3], "big")
        if sequence != self.sequence:
            raise CommandFailedError(f"BLE packet out of order: expected {self.sequence}, got {sequence}")
        body = packet[HEADER_SIZE:]
        if sequence == 0:
            self.expected_length = int.from_bytes(body[:2], "big")
            body = body[2:]
        self.sequence += 1
        self.buffer += body
        if self.expected_length is not None and len(self.buffer) >= self.expected_length:
            return self.buffer[: self.expected_length]
        return None


class BleTransport:
    name = "ble"

    def __init__(self, scan_timeout: float = 5.0):
        self.scan_timeout = scan_timeout
        self._client: BleakClient | None = None
        self._service: BleService | None = None
        self._notifications: asyncio.Queue[bytes] = asyncio.Queue()
        self.mtu = DEFAULT_MTU

    async def discover(self) -> list[DiscoveredDevice]:
        by_service = {service.service_uuid: service for service in BLE_SERVICES}
        found = await BleakScanner.discover(
            timeout=self.scan_timeout,
            service_uuids=list(by_service),
            return_adv=True,
        )
        devices = []
        for ble_device, advertisement in found.values():
            service = next(
                (by_service[uuid] for uuid in advertisement.service_uuids if uuid in by_service),
                None,
            )
            if service is None:
                continue
            devices.append(
                DiscoveredDevice(
                    device_id=ble_device.address,
                    model_id=service.model_id,
                    name=ble_device.name or "Ledger Device",
                    path=(ble_device, service),
                )
            )
        return devices

    def _on_notify(self, _sender: object, data: bytearray) -> None:
        self._notifications.put_nowait(bytes(data))

    async def connect(self, device: DiscoveredDevice) -> None:
        ble_device, service = device.path
        client = BleakClient(ble_device)
        await client.connect()
        self._client = client
        self._service = service
        self._notifications = asyncio.Queue()
        await client.start_notify(service.notify_uuid, self._on_notify)
        self.mtu = await self._negotiate_mtu()
        logger.debug(
            "Opened Ledger BLE channel",
            extra={"event": "ledger.ble.open", "device_id": device.device_id, "mtu": self.mtu},
        )

    async def _negotiate_mtu(self) -> int:
        await self._client.write_gatt_char(self._service.write_uuid, bytes([TAG_MTU, 0, 0, 0, 0]), response=True)
        reply = await asyncio.wait_for(self._notifications.get(), timeout=5.0)
        if len(reply) >= 6 and reply[0] == TAG_MTU:
            return reply[5]
        return DEFAULT_MTU

    async def send_frame(self, apdu: bytes) -> bytes:
        if self._client is None or self._service is None:
            raise DeviceNotConnectedError("BLE transport is not open")
        for packet in frame_apdu(apdu, self.mtu):
            await self._client.write_gatt_char(self._service.write_uuid, packet, response=True)
        assembler = ResponseAssembler()
        while True:
            packet = await asyncio.wait_for(self._notifications.get(), timeout=RESPONSE_TIMEOUT)
            response = assembler.feed(packet)
            if response is not None:
                return response

    async def disconnect(self) -> None:
        client, self._client = self._client, None
        self._service = None
        if client is not None:
            await client.disconnect()
