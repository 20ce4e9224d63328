import builtins
import sys

import pytest

from ledger_provider.core.mock_device import MockLedgerTransport
from ledger_provider.core.transport import (
    DiscoveredDevice,
    Transport,
    create_transport,
    model_id_from_product_id,
)


def test_mock_transport_disabled_without_explicit_opt_in(monkeypatch):
    monkeypatch.setenv("LEDGER_ALLOW_MOCK_DEVICE", "0")
    with pytest.raises(ValueError, match="LEDGER_ALLOW_MOCK_DEVICE"):
        create_transport("mock")


def test_mock_transport_allowed_when_opted_in(allow_mock_device):
    transport = create_transport("mock", locked=True)
    assert isinstance(transport, MockLedgerTransport)
    assert isinstance(transport, Transport)
    assert transport.locked


def test_unknown_transport_type():
    with pytest.raises(ValueError, match="Unsupported"):
        create_transport("serial")


def test_usb_transport_missing_dependency(monkeypatch):
    original_import = builtins.__import__

    def fake_import(name, globals=None, locals=None, fromlist=(), level=0):
        if name.startswith("ledgerblue") or name == "hid":
            raise ImportError(f"{name} missing")
        return original_import(name, globals, locals, fromlist, level)

    monkeypatch.setattr(builtins, "__import__", fake_import)
    monkeypatch.delitem(sys.modules, "ledger_provider.core.transport_usb", raising=False)

    with pytest.raises(ImportError) as exc:
        create_transport("usb")
    assert "ledgerblue" in str(exc.value)


def test_ble_transport_missing_dependency(monkeypatch):
    original_import = builtins.__import__

    def fake_import(name, globals=None, locals=None, fromlist=(), level=0):
        if name.startswith("bleak"):
            raise ImportError("bleak missing")
        return original_import(name, globals, locals, fromlist, level)

    monkeypatch.setattr(builtins, "__import__", fake_import)
    monkeypatch.delitem(sys.modules, "ledger_provider.core.transport_ble", raising=False)

    with pytest.raises(ImportError) as exc:
        create_transport("ble")
    assert "bleak" in str(exc.value)


def test_model_id_from_product_id():
    assert model_id_from_product_id(0x4011) == "nanoX"
    assert model_id_from_product_id(0x0001) == "nanoS"
    assert model_id_from_product_id(0xFFFF) == "unknown"


@pytest.mark.asyncio
async def test_mock_transport_discovery_and_frames():
    transport = MockLedgerTransport(devices=[DiscoveredDevice("a", "stax", "Stax")])

    devices = await transport.discover()
    with pytest.raises(ConnectionError):
        await transport.send_frame(b"\xb0\x01\x00\x00\x00")
    await transport.connect(devices[0])
    response = await transport.send_frame(b"\xb0\x01\x00\x00\x00")

    assert devices[0].model_id == "stax"
    assert response[-2:] == b"\x90\x00"
    assert b"BOLOS" in response
