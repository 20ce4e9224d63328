"""
Device session lifecycle for a single Ledger device.

Owns discovery, the transport-level connection and serialized dispatch of
device actions:

    DISCONNECTED -> DISCOVERING -> CONNECTED -> EXECUTING -> CONNECTED -> ... -> DISCONNECTED

A hardware device cannot process two commands at once, so ``execute`` holds
an asyncio lock for the duration of each action; concurrent callers queue.
Timeouts are cooperative: an action that misses its deadline keeps running
and the next action waits for it to settle before sending its own frames.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Union

from ledger_provider.core.apdu import AppInfo, DeviceAction, OpenApplicationAction
from ledger_provider.core.config import (
    DEFAULT_ACTION_TIMEOUT_MS,
    DEFAULT_CONNECTION_TIMEOUT_MS,
    ETHEREUM_APP_NAME,
    DeviceFilter,
)
from ledger_provider.core.ledger_exceptions import (
    LOCKED_STATUS_WORDS,
    AppNotOpenError,
    CommandFailedError,
    DeviceActionTimeoutError,
    DeviceLockedError,
    DeviceNotConnectedError,
    DeviceStatusError,
    StatusWord,
    get_error_context,
    is_locked,
)
from ledger_provider.core.transport import DiscoveredDevice, Transport

logger = logging.getLogger(__name__)

DISCOVERY_POLL_INTERVAL = 0.25


class SessionState(Enum):
    DISCONNECTED = "disconnected"
    DISCOVERING = "discovering"
    CONNECTED = "connected"
    EXECUTING = "executing"


@dataclass(frozen=True)
class Session:
    """Identity of one connected device; replaced, never mutated."""

    session_id: str
    device_id: str
    model_id: str
    device_name: str = "Ledger Device"


@dataclass(frozen=True)
class Completed:
    output: Any


@dataclass(frozen=True)
class Failed:
    error: Exception


DeviceActionResult = Union[Completed, Failed]


def select_device(
    devices: list[DiscoveredDevice],
    device_filter: DeviceFilter | dict[str, Any] | None = None,
) -> DiscoveredDevice:
    """Pick the first device matching the filter, or the first device when nothing matches."""
    if not devices:
        raise DeviceNotConnectedError("No Ledger devices found")
    if isinstance(device_filter, dict):
        device_filter = DeviceFilter.model_validate(device_filter)
    if device_filter is not None:
        for device in devices:
            if device_filter.device_id and device.device_id != device_filter.device_id:
                continue
            if device_filter.model_id and device.model_id != device_filter.model_id:
                continue
            return device
        logger.info(
            "No discovered device matches the filter, using the first one",
            extra={"event": "ledger.session.filter_miss", "device_count": len(devices)},
        )
    return devices[0]


def find_session_device(devices: list[DiscoveredDevice], session: Session) -> DiscoveredDevice:
    """The device with the session's id, else one of the same model."""
    for device in devices:
        if device.device_id == session.device_id:
            return device
    return select_device(devices, DeviceFilter(model_id=session.model_id))


def _log_late_result(task: asyncio.Future) -> None:
    if task.cancelled():
        return
    error = task.exception()
    logger.debug(
        "Timed-out device action settled",
        extra={"event": "ledger.session.late_result", "failed": error is not None},
    )


class DeviceSession:
    """Connection and dispatch for one device over one transport."""

    def __init__(
        self,
        transport: Transport,
        connection_timeout: float = DEFAULT_CONNECTION_TIMEOUT_MS / 1000.0,
        action_timeout: float = DEFAULT_ACTION_TIMEOUT_MS / 1000.0,
        device_filter: DeviceFilter | dict[str, Any] | None = None,
    ):
        self.transport = transport
        self.connection_timeout = connection_timeout
        self.action_timeout = action_timeout
        self.device_filter = device_filter
        self._session: Optional[Session] = None
        self._state = SessionState.DISCONNECTED
        self._lock = asyncio.Lock()
        self._connect_lock = asyncio.Lock()
        self._inflight: Optional[asyncio.Future] = None

    # ------------------------------------------------------------------ state

    @property
    def session(self) -> Optional[Session]:
        return self._session

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def session_id(self) -> Optional[str]:
        return self._session.session_id if self._session else None

    @property
    def device_id(self) -> Optional[str]:
        return self._session.device_id if self._session else None

    @property
    def model_id(self) -> Optional[str]:
        return self._session.model_id if self._session else None

    def is_connected(self) -> bool:
        return self._session is not None

    def _require_session(self) -> Session:
        if self._session is None:
            raise DeviceNotConnectedError()
        return self._session

    # ------------------------------------------------------------- lifecycle

    async def _discover_until_found(self) -> list[DiscoveredDevice]:
        while True:
            devices = await self.transport.discover()
            if devices:
                return devices
            await asyncio.sleep(DISCOVERY_POLL_INTERVAL)

    async def connect(
        self,
        device_filter: DeviceFilter | dict[str, Any] | None = None,
        timeout: Optional[float] = None,
    ) -> Session:
        """
        Discover a device and open a session with it.

        Args:
            device_filter: Optional deviceId/modelId preference
            timeout: Discovery deadline in seconds (defaults to the session's)

        Returns:
            The active Session

        Raises:
            DeviceNotConnectedError: On discovery timeout or connection failure
        """
        async with self._connect_lock:
            if self._session is not None:
                return self._session
            return await self._connect(device_filter, timeout)

    async def _connect(
        self,
        device_filter: DeviceFilter | dict[str, Any] | None,
        timeout: Optional[float],
    ) -> Session:
        timeout = self.connection_timeout if timeout is None else timeout
        device_filter = self.device_filter if device_filter is None else device_filter
        self._state = SessionState.DISCOVERING
        try:
            devices = await asyncio.wait_for(self._discover_until_found(), timeout)
            device = select_device(devices, device_filter)
            await self.transport.connect(device)
        except asyncio.TimeoutError:
            self._state = SessionState.DISCONNECTED
            logger.warning(
                "Ledger discovery timed out",
                extra={"event": "ledger.session.discovery_timeout", "timeout": timeout, "transport": self.transport.name},
            )
            raise DeviceNotConnectedError("discovery timeout") from None
        except DeviceNotConnectedError:
            self._state = SessionState.DISCONNECTED
            raise
        except Exception as exc:
            self._state = SessionState.DISCONNECTED
            logger.warning(
                "Ledger connection failed",
                extra={"event": "ledger.session.connect_failed", **get_error_context(exc)},
            )
            raise DeviceNotConnectedError(f"Failed to establish device connection: {exc}") from exc

        self._session = Session(
            session_id=uuid.uuid4().hex,
            device_id=device.device_id,
            model_id=device.model_id,
            device_name=device.name,
        )
        self._state = SessionState.CONNECTED
        logger.info(
            "Ledger device connected",
            extra={
                "event": "ledger.session.connected",
                "session_id": self._session.session_id,
                "device_id": device.device_id,
                "model_id": device.model_id,
                "transport": self.transport.name,
            },
        )
        return self._session

    async def open_application(self, name: str = ETHEREUM_APP_NAME) -> AppInfo:
        """
        Make sure ``name`` is the running application.

        Raises:
            DeviceNotConnectedError: If no session is active
            AppNotOpenError: If the device is locked or the app cannot be opened
        """
        result = await self.execute(OpenApplicationAction(name, on_app_switch=self._reattach))
        if isinstance(result, Completed):
            logger.debug(
                "Application ready",
                extra={"event": "ledger.session.app_open", "app": name, "version": result.output.version},
            )
            return result.output
        error = result.error
        if isinstance(error, DeviceNotConnectedError):
            raise error
        if is_locked(error):
            raise AppNotOpenError("device is locked; unlock it and try again") from error
        raise AppNotOpenError(f"Failed to open {name} app: {error}") from error

    async def _reattach(self) -> None:
        """Reconnect the transport to the session's device after it re-enumerated."""
        session = self._require_session()
        try:
            await self.transport.disconnect()
        except Exception as exc:
            logger.debug(
                "Ignoring error while releasing stale connection",
                extra={"event": "ledger.session.release_error", **get_error_context(exc)},
            )
        try:
            devices = await asyncio.wait_for(self._discover_until_found(), self.connection_timeout)
            device = find_session_device(devices, session)
            await self.transport.connect(device)
        except Exception as exc:
            self._session = None
            self._state = SessionState.DISCONNECTED
            logger.warning(
                "Ledger did not come back after switching apps",
                extra={"event": "ledger.session.reattach_failed", "session_id": session.session_id, **get_error_context(exc)},
            )
            if isinstance(exc, asyncio.TimeoutError):
                raise DeviceNotConnectedError("device did not reappear after switching apps") from None
            raise DeviceNotConnectedError(f"Failed to reconnect after switching apps: {exc}") from exc
        logger.debug(
            "Ledger device reattached",
            extra={"event": "ledger.session.reattached", "session_id": session.session_id, "device_id": device.device_id},
        )

    async def disconnect(self) -> None:
        """Close the session. Idempotent; transport errors are logged and dropped."""
        session, self._session = self._session, None
        self._state = SessionState.DISCONNECTED
        self._inflight = None
        if session is None:
            return
        try:
            await self.transport.disconnect()
        except Exception as exc:
            logger.debug(
                "Ignoring error while disconnecting Ledger",
                extra={"event": "ledger.session.disconnect_error", **get_error_context(exc)},
            )
        logger.info(
            "Ledger device disconnected",
            extra={"event": "ledger.session.disconnected", "session_id": session.session_id},
        )

    # -------------------------------------------------------------- dispatch

    async def _exchange(self, apdu: bytes) -> bytes:
        response = await self.transport.send_frame(apdu)
        if len(response) < 2:
            raise CommandFailedError("Truncated device response")
        status_word = int.from_bytes(response[-2:], "big")
        if status_word in LOCKED_STATUS_WORDS:
            raise DeviceLockedError(status_word, "Device is locked")
        if status_word != StatusWord.OK:
            raise DeviceStatusError(status_word)
        return bytes(response[:-2])

    async def _run(self, action: DeviceAction) -> Any:
        pending, self._inflight = self._inflight, None
        if pending is not None and not pending.done():
            logger.info(
                "Waiting for a timed-out device action to settle",
                extra={"event": "ledger.session.drain", "action": action.name},
            )
            try:
                await pending
            except Exception as exc:
                logger.debug(
                    "Timed-out device action failed",
                    extra={"event": "ledger.session.drain_error", **get_error_context(exc)},
                )
        return await action.run(self._exchange)

    async def execute(self, action: DeviceAction, timeout: Optional[float] = None) -> DeviceActionResult:
        """
        Run one device action and wait for its terminal state.

        Raises:
            DeviceNotConnectedError: If no session is active; nothing is sent

        Returns:
            Completed(output) or Failed(error); a missed deadline yields
            Failed(DeviceActionTimeoutError)
        """
        timeout = self.action_timeout if timeout is None else timeout
        async with self._lock:
            session = self._require_session()
            self._state = SessionState.EXECUTING
            task = asyncio.ensure_future(self._run(action))
            try:
                output = await asyncio.wait_for(asyncio.shield(task), timeout)
            except asyncio.TimeoutError:
                if task.done():
                    error = task.exception()
                    return Completed(task.result()) if error is None else Failed(error)
                task.add_done_callback(_log_late_result)
                self._inflight = task
                logger.warning(
                    "Device action timed out",
                    extra={
                        "event": "ledger.session.action_timeout",
                        "action": action.name,
                        "timeout": timeout,
                        "session_id": session.session_id,
                    },
                )
                return Failed(DeviceActionTimeoutError(f"Device action '{action.name}' timed out after {timeout:g}s"))
            except Exception as exc:
                logger.debug(
                    "Device action failed",
                    extra={"event": "ledger.session.action_failed", "action": action.name, **get_error_context(exc)},
                )
                return Failed(exc)
            finally:
                if self._session is not None:
                    self._state = SessionState.CONNECTED
            return Completed(output)
