"""
USB HID transport for Ledger devices.

Enumerates Ledger HID interfaces with hidapi and exchanges APDUs through
ledgerblue's HID dongle, which handles the HID channel framing. Blocking HID
calls run in a worker thread so the event loop keeps serving other requests.

Dependencies:
- ledgerblue (HID framing)
- hidapi (device enumeration)
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

try:
    import hid
    from ledgerblue.commException import CommException
    from ledgerblue.commHID import HIDDongleHIDAPI
except ImportError as exc:  # pragma: no cover - optional dependency
    raise ImportError("ledgerblue is required for Ledger USB support. pip install ledgerblue hidapi") from exc

from ledger_provider.core.ledger_exceptions import DeviceNotConnectedError
from ledger_provider.core.transport import LEDGER_VENDOR_ID, DiscoveredDevice, model_id_from_product_id

logger = logging.getLogger(__name__)

# Ledger exposes the APDU channel on interface 0 / usage page 0xffa0
APDU_INTERFACE = 0
APDU_USAGE_PAGE = 0xFFA0


def _is_apdu_interface(info: dict[str, Any]) -> bool:
    return info.get("interface_number") == APDU_INTERFACE or info.get("usage_page") == APDU_USAGE_PAGE


class UsbHidTransport:
    name = "usb"

    def __init__(self, debug: bool = False):
        self.debug = debug
        self._dongle: HIDDongleHIDAPI | None = None

    def _enumerate(self) -> list[DiscoveredDevice]:
        devices: list[DiscoveredDevice] = []
        seen: set[str] = set()
        for info in hid.enumerate(LEDGER_VENDOR_ID, 0):
            if not _is_apdu_interface(info):
                continue
            path = info["path"]
            device_id = path.decode(errors="replace") if isinstance(path, bytes) else str(path)
            if device_id in seen:
                continue
            seen.add(device_id)
            devices.append(
                DiscoveredDevice(
                    device_id=device_id,
                    model_id=model_id_from_product_id(info.get("product_id", 0)),
                    name=info.get("product_string") or "Ledger Device",
                    path=path,
                )
            )
        return devices

    async def discover(self) -> list[DiscoveredDevice]:
        return await asyncio.to_thread(self._enumerate)

    def _open(self, device: DiscoveredDevice) -> HIDDongleHIDAPI:
        handle = hid.device()
        handle.open_path(device.path)
        handle.set_nonblocking(True)
        return HIDDongleHIDAPI(handle, True, self.debug)

    async def connect(self, device: DiscoveredDevice) -> None:
        self._dongle = await asyncio.to_thread(self._open, device)
        logger.debug(
            "Opened Ledger HID interface",
            extra={"event": "ledger.usb.open", "device_id": device.device_id, "model_id": device.model_id},
        )

    def _exchange(self, apdu: bytes) -> bytes:
        if self._dongle is None:
            raise DeviceNotConnectedError("USB transport is not open")
        try:
            data = self._dongle.exchange(apdu)
        except CommException as exc:
            # ledgerblue raises for every non-0x9000 status; hand back the raw frame
            payload = bytes(exc.data or b"")
            return payload + int(exc.sw).to_bytes(2, "big")
        return bytes(data) + b"\x90\x00"

    async def send_frame(self, apdu: bytes) -> bytes:
        return await asyncio.to_thread(self._exchange, apdu)

    async def disconnect(self) -> None:
        dongle, self._dongle = self._dongle, None
        if dongle is not None:
            await asyncio.to_thread(dongle.close)
