import asyncio

import pytest

from ledger_provider.core.apdu import DeviceAction, GetAddressAction, GetAppConfigurationAction, SignPersonalMessageAction
from ledger_provider.core.config import DeviceFilter
from ledger_provider.core.device_session import (
    Completed,
    DeviceSession,
    Failed,
    Session,
    SessionState,
    find_session_device,
    select_device,
)
from ledger_provider.core.ledger_exceptions import (
    AppNotOpenError,
    DeviceActionTimeoutError,
    DeviceLockedError,
    DeviceNotConnectedError,
)
from ledger_provider.core.mock_device import MockLedgerTransport
from ledger_provider.core.transport import DiscoveredDevice

NANO_S = DiscoveredDevice(device_id="dev-s", model_id="nanoS", name="Nano S")
NANO_X = DiscoveredDevice(device_id="dev-x", model_id="nanoX", name="Nano X")


def test_select_device_prefers_filter_match():
    assert select_device([NANO_S, NANO_X], {"modelId": "nanoX"}) is NANO_X
    assert select_device([NANO_S, NANO_X], DeviceFilter(device_id="dev-s")) is NANO_S


def test_select_device_falls_back_to_first():
    assert select_device([NANO_S, NANO_X], {"modelId": "stax"}) is NANO_S
    assert select_device([NANO_X, NANO_S]) is NANO_X


def test_select_device_without_devices():
    with pytest.raises(DeviceNotConnectedError):
        select_device([])


@pytest.mark.asyncio
async def test_connect_creates_session(session, mock_transport):
    result = await session.connect()

    assert session.is_connected()
    assert session.state is SessionState.CONNECTED
    assert result.device_id == "mock-0001"
    assert session.model_id == "nanoX"
    assert session.session_id == result.session_id
    assert mock_transport.connected_device is not None


@pytest.mark.asyncio
async def test_connect_returns_existing_session(session):
    first = await session.connect()
    second = await session.connect()
    assert first is second


@pytest.mark.asyncio
async def test_connect_applies_device_filter():
    transport = MockLedgerTransport(devices=[NANO_S, NANO_X])
    session = DeviceSession(transport, connection_timeout=1.0, device_filter={"deviceId": "dev-x"})

    await session.connect()

    assert session.device_id == "dev-x"
    assert session.model_id == "nanoX"


@pytest.mark.asyncio
async def test_connect_times_out_without_devices():
    session = DeviceSession(MockLedgerTransport(devices=[]), connection_timeout=0.1)

    with pytest.raises(DeviceNotConnectedError, match="discovery timeout"):
        await session.connect()

    assert session.state is SessionState.DISCONNECTED
    assert not session.is_connected()


@pytest.mark.asyncio
async def test_connect_wraps_transport_failure():
    session = DeviceSession(MockLedgerTransport(fail_connect=True), connection_timeout=1.0)

    with pytest.raises(DeviceNotConnectedError, match="refused"):
        await session.connect()
    assert not session.is_connected()


@pytest.mark.asyncio
async def test_disconnect_is_idempotent(session):
    await session.connect()

    await session.disconnect()
    await session.disconnect()

    assert not session.is_connected()
    assert session.session_id is None


@pytest.mark.asyncio
async def test_disconnect_swallows_transport_errors():
    session = DeviceSession(MockLedgerTransport(fail_disconnect=True), connection_timeout=1.0)
    await session.connect()

    await session.disconnect()

    assert not session.is_connected()


@pytest.mark.asyncio
async def test_execute_requires_session(session, mock_transport):
    with pytest.raises(DeviceNotConnectedError):
        await session.execute(GetAppConfigurationAction())
    assert mock_transport.frames == []


@pytest.mark.asyncio
async def test_execute_returns_completed(session):
    await session.connect()

    result = await session.execute(GetAppConfigurationAction())

    assert isinstance(result, Completed)
    assert result.output.version == "1.10.4"


@pytest.mark.asyncio
async def test_execute_returns_failed_for_locked_device():
    session = DeviceSession(MockLedgerTransport(running_app="Ethereum", locked=True), connection_timeout=1.0)
    await session.connect()

    result = await session.execute(GetAppConfigurationAction())

    assert isinstance(result, Failed)
    assert isinstance(result.error, DeviceLockedError)


@pytest.mark.asyncio
async def test_concurrent_actions_are_serialized():
    transport = MockLedgerTransport(running_app="Ethereum", latency=0.01)
    session = DeviceSession(transport, connection_timeout=1.0)
    await session.connect()
    path = "m/44'/60'/0'/0/0"

    first, second = await asyncio.gather(
        session.execute(SignPersonalMessageAction(path, b"a" * 600)),
        session.execute(SignPersonalMessageAction(path, b"b" * 600)),
    )

    assert isinstance(first, Completed)
    assert isinstance(second, Completed)
    chunk_flags = [frame[2] for frame in transport.frames if frame[1] == 0x08]
    assert chunk_flags == [0x00, 0x80, 0x80, 0x00, 0x80, 0x80]


@pytest.mark.asyncio
async def test_action_timeout_yields_failed_and_next_action_runs():
    transport = MockLedgerTransport(running_app="Ethereum", latency=0.3)
    session = DeviceSession(transport, connection_timeout=1.0, action_timeout=0.05)
    await session.connect()

    result = await session.execute(GetAppConfigurationAction())

    assert isinstance(result, Failed)
    assert isinstance(result.error, DeviceActionTimeoutError)
    assert "timed out" in str(result.error)

    follow_up = await session.execute(GetAppConfigurationAction(), timeout=2.0)
    assert isinstance(follow_up, Completed)


@pytest.mark.asyncio
async def test_open_application_from_dashboard():
    transport = MockLedgerTransport()
    session = DeviceSession(transport, connection_timeout=1.0)
    await session.connect()

    info = await session.open_application("Ethereum")

    assert info.name == "Ethereum"
    assert transport.running_app == "Ethereum"


@pytest.mark.asyncio
async def test_open_application_on_locked_device():
    session = DeviceSession(MockLedgerTransport(locked=True), connection_timeout=1.0)
    await session.connect()

    with pytest.raises(AppNotOpenError, match="locked"):
        await session.open_application("Ethereum")


@pytest.mark.asyncio
async def test_open_application_not_installed():
    session = DeviceSession(MockLedgerTransport(installed_apps=()), connection_timeout=1.0)
    await session.connect()

    with pytest.raises(AppNotOpenError, match="Failed to open Ethereum app"):
        await session.open_application("Ethereum")


@pytest.mark.asyncio
async def test_disconnect_before_connect(session, mock_transport):
    await session.disconnect()

    assert not session.is_connected()
    assert session.state is SessionState.DISCONNECTED


class InstantAction(DeviceAction):
    name = "instant"

    def __init__(self, error=None):
        self.error = error

    async def run(self, exchange):
        if self.error is not None:
            raise self.error
        return "done"


@pytest.mark.asyncio
async def test_result_settled_at_deadline_is_kept(session):
    await session.connect()

    assert await session.execute(InstantAction(), timeout=0) == Completed("done")

    error = ValueError("bad response")
    result = await session.execute(InstantAction(error), timeout=0)
    assert isinstance(result, Failed)
    assert result.error is error


@pytest.mark.asyncio
async def test_concurrent_connect_opens_transport_once():
    transport = MockLedgerTransport(latency=0.01)
    session = DeviceSession(transport, connection_timeout=1.0)

    first, second = await asyncio.gather(session.connect(), session.connect())

    assert first is second
    assert transport.connect_count == 1


@pytest.mark.asyncio
async def test_open_application_reattaches_after_reenumeration():
    transport = MockLedgerTransport(devices=[NANO_S, NANO_X], reenumerate_on_open=True)
    session = DeviceSession(transport, connection_timeout=1.0, device_filter={"deviceId": "dev-x"})
    connected = await session.connect()

    await session.open_application("Ethereum")
    result = await session.execute(GetAddressAction("m/44'/60'/0'/0/0"))

    assert isinstance(result, Completed)
    assert transport.connected_device is NANO_X
    assert transport.connect_count == 2
    assert session.session is connected


@pytest.mark.asyncio
async def test_open_application_drops_session_when_device_does_not_return():
    transport = MockLedgerTransport(reenumerate_on_open=True)
    session = DeviceSession(transport, connection_timeout=0.2)
    await session.connect()
    transport.devices = []

    with pytest.raises(DeviceNotConnectedError, match="did not reappear"):
        await session.open_application("Ethereum")

    assert not session.is_connected()
    assert session.state is SessionState.DISCONNECTED


def test_find_session_device_prefers_id_then_model():
    session = Session(session_id="s", device_id="dev-x", model_id="nanoX")
    renamed = DiscoveredDevice(device_id="dev-x2", model_id="nanoX", name="Nano X")

    assert find_session_device([NANO_S, NANO_X], session) is NANO_X
    assert find_session_device([NANO_S, renamed], session) is renamed
