"""
Transport interface for Ledger devices.

A transport moves raw APDU frames between the host and one physical device.
It knows nothing about Ethereum; device actions and session bookkeeping live
in ``apdu`` and ``device_session``.

Supported transports (via separate modules):
- USB HID: transport_usb.py (ledgerblue + hidapi)
- Bluetooth LE: transport_ble.py (bleak)
- Simulated device for tests: mock_device.py
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from ledger_provider.core.config import allow_mock_device

logger = logging.getLogger(__name__)

LEDGER_VENDOR_ID = 0x2C97

# USB product id high byte -> device model
USB_MODEL_IDS = {
    0x10: "nanoS",
    0x40: "nanoX",
    0x50: "nanoSP",
    0x60: "stax",
    0x70: "flex",
}

# Product ids reported by older firmware
LEGACY_USB_MODEL_IDS = {
    0x0001: "nanoS",
    0x0004: "nanoX",
    0x0005: "nanoSP",
    0x0006: "stax",
    0x0007: "flex",
}


def model_id_from_product_id(product_id: int) -> str:
    if product_id in LEGACY_USB_MODEL_IDS:
        return LEGACY_USB_MODEL_IDS[product_id]
    return USB_MODEL_IDS.get(product_id >> 8, "unknown")


@dataclass(frozen=True)
class DiscoveredDevice:
    """A device seen during discovery but not yet connected."""

    device_id: str
    model_id: str
    name: str = "Ledger Device"
    path: Any = field(default=None, compare=False, repr=False)


@runtime_checkable
class Transport(Protocol):
    """
    Protocol every physical transport implements.

    All methods are coroutines; blocking I/O must be moved off the event loop.
    """

    name: str

    async def discover(self) -> list[DiscoveredDevice]:
        """Run one discovery sweep. An empty list means nothing was found."""
        ...

    async def connect(self, device: DiscoveredDevice) -> None:
        """Open the transport-level channel to ``device``."""
        ...

    async def send_frame(self, apdu: bytes) -> bytes:
        """Send one command APDU and return the response including its status word."""
        ...

    async def disconnect(self) -> None:
        """Close the channel. Safe to call when nothing is open."""
        ...


def create_transport(transport_type: str, **kwargs: Any) -> Transport:
    """
    Build the transport selected by configuration.

    Raises:
        ImportError: If the optional dependency of the transport is missing
        ValueError: For unknown transports, or the mock device without opt-in
    """
    transport_type = (transport_type or "usb").lower()
    if transport_type == "usb":
        try:
            from ledger_provider.core.transport_usb import UsbHidTransport
        except ImportError as exc:
            raise ImportError("USB support requires ledgerblue and hidapi. pip install ledgerblue hidapi") from exc
        return UsbHidTransport(**kwargs)
    if transport_type == "ble":
        try:
            from ledger_provider.core.transport_ble import BleTransport
        except ImportError as exc:
            raise ImportError("Bluetooth support requires bleak. pip install bleak") from exc
        return BleTransport(**kwargs)
    if transport_type == "mock":
        if not allow_mock_device():
            raise ValueError(
                "MockLedgerTransport is disabled for production. "
                "Set LEDGER_ALLOW_MOCK_DEVICE=1 only in test environments."
            )
        from ledger_provider.core.mock_device import MockLedgerTransport

        return MockLedgerTransport(**kwargs)
    raise ValueError(f"Unsupported Ledger transport type: {transport_type}")
