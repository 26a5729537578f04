"""
Connection and command session for a single ThermSmart sensor.

A `ThermSmartDevice` walks the connect -> discover -> subscribe -> ready
sequence and then exchanges command/response frames over the write and
notify characteristics. While a link exists, a watch task folds the radio
event stream into the session: notifications resolve the pending command,
and a disconnect (or the radio powering off) fails whatever is in flight.
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Awaitable, Dict, List, Optional

from .errors import (
    CommandInProgressError,
    CommandTimeoutError,
    ConnectFailedError,
    ProtocolMismatchError,
    RadioStateChangedError,
    SessionClosedError,
    SessionStateError,
    SubscribeFailedError,
    ThermSmartError,
    UnexpectedDisconnectError,
    WriteFailedError,
)
from .identity import display_name
from .protocol import (
    NO_RESPONSE,
    NOTIFY_CHARACTERISTIC_UUID,
    SERVICE_UUID,
    WRITE_CHARACTERISTIC_UUID,
    ThermSmartCommand,
    TimeOperation,
)
from .radio import (
    POWER_ON_TIMEOUT,
    Disconnected,
    EventChannel,
    Notified,
    Peripheral,
    RadioAdapter,
    RadioState,
    StateChanged,
)
from .scanner import find_device
from .timecodec import decode_timestamp, encode_timestamp
from ..utils.logging import PerformanceMonitor, get_component_logger

DEFAULT_COMMAND_TIMEOUT = 10.0


class SessionState(Enum):
    """Lifecycle of a device session."""
    IDLE = "idle"
    SCANNING = "scanning"
    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    DISCOVERING_SERVICES = "discoveringServices"
    SUBSCRIBING = "subscribing"
    READY = "ready"
    DISCONNECTED = "disconnected"
    FAULTED = "faulted"


TERMINAL_STATES = (SessionState.DISCONNECTED, SessionState.FAULTED)
LINKED_STATES = (
    SessionState.CONNECTING,
    SessionState.DISCOVERING_SERVICES,
    SessionState.SUBSCRIBING,
    SessionState.READY,
)


@dataclass
class PendingCommand:
    """A written command waiting for its response notification."""
    response_code: int
    future: asyncio.Future


def _consume(task: asyncio.Future) -> None:
    if not task.cancelled():
        task.exception()


class ThermSmartDevice:
    """
    Session with one ThermSmart sensor.

    A session is single use: once disconnected or faulted, create a new one
    (or ask a `SessionRegistry`) to reconnect.
    """

    def __init__(self,
                 radio: RadioAdapter,
                 address: Optional[str] = None,
                 peripheral: Optional[Peripheral] = None,
                 command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
                 scan_timeout: Optional[float] = None,
                 ready_timeout: float = POWER_ON_TIMEOUT,
                 logger=None,
                 performance_monitor: Optional[PerformanceMonitor] = None):
        """
        Args:
            radio: Radio adapter the session talks through
            address: Normalized address; None accepts the first sensor found
            peripheral: Already discovered peripheral (skips scanning)
            command_timeout: Seconds to wait for a command response
            scan_timeout: Seconds to scan for the device (None waits indefinitely)
            ready_timeout: Seconds to wait for the radio to power on
            performance_monitor: Receives connect and command timings
        """
        self.radio = radio
        self.logger = logger or get_component_logger()
        self.performance_monitor = performance_monitor or PerformanceMonitor()
        self.command_timeout = command_timeout
        self.scan_timeout = scan_timeout
        self.ready_timeout = ready_timeout

        self.peripheral = peripheral
        self.address = peripheral.address if peripheral is not None else address
        self.state = SessionState.DISCOVERED if peripheral is not None else SessionState.IDLE

        self._write_characteristic = None
        self._notify_characteristic = None

        self._watch_task: Optional[asyncio.Task] = None
        self._watch_channel: Optional[EventChannel] = None
        self._link_lost = asyncio.Event()
        self._link_error: Optional[ThermSmartError] = None

        self._pending: Optional[PendingCommand] = None
        self._command_in_flight = False

    @property
    def name(self) -> str:
        local_name = self.peripheral.name if self.peripheral is not None else None
        return display_name(self.address or "", local_name)

    @property
    def is_ready(self) -> bool:
        return self.state is SessionState.READY

    @property
    def is_closed(self) -> bool:
        return self.state in TERMINAL_STATES

    def _set_state(self, state: SessionState) -> None:
        if state is not self.state:
            self.logger.debug(f"Sensor {self.address}: {self.state.value} -> {state.value}")
            self.state = state

    # Connection

    async def connect(self) -> None:
        """
        Bring the session to the ready state.

        Raises:
            SessionStateError: If the session is closed or already connecting
            DeviceNotFoundError: If no matching sensor was discovered
            ConnectFailedError: If the link could not be opened
            ProtocolMismatchError: If the expected characteristics are missing
            SubscribeFailedError: If notifications could not be enabled
            UnexpectedDisconnectError: If the sensor dropped the link meanwhile
        """
        if self.state is SessionState.READY:
            return
        if self.is_closed:
            raise SessionStateError(
                f"Session is {self.state.value}; create a new session to reconnect"
            )
        if self.state not in (SessionState.IDLE, SessionState.DISCOVERED):
            raise SessionStateError(f"Connect already in progress ({self.state.value})")

        if self.peripheral is None:
            await self._discover_peripheral()

        self._watch_link()
        try:
            with self.performance_monitor.measure_time("ble_connect"):
                await self._open_link()
                await self._resolve_characteristics()
                await self._subscribe()
        except asyncio.CancelledError:
            await self._teardown(SessionState.DISCONNECTED, SessionClosedError("Connect cancelled"))
            raise

        self._set_state(SessionState.READY)
        self.logger.info(f"Sensor {self.address} connected")

    async def _discover_peripheral(self) -> None:
        self._set_state(SessionState.SCANNING)
        try:
            self.peripheral = await find_device(
                self.radio, self.address, self.scan_timeout,
                ready_timeout=self.ready_timeout, logger=self.logger
            )
        except (ThermSmartError, asyncio.CancelledError):
            self._set_state(SessionState.IDLE)
            raise

        self.address = self.peripheral.address
        self._set_state(SessionState.DISCOVERED)

    async def _open_link(self) -> None:
        self._set_state(SessionState.CONNECTING)
        self.logger.info(f"Connecting to sensor {self.address}...")
        try:
            await self._guarded(self.radio.connect(self.address))
        except (UnexpectedDisconnectError, RadioStateChangedError):
            raise
        except Exception as e:
            await self._unwatch_link()
            self._set_state(SessionState.IDLE)
            raise ConnectFailedError(f"Failed to connect to sensor: {e}", cause=e) from e

    async def _resolve_characteristics(self) -> None:
        self._set_state(SessionState.DISCOVERING_SERVICES)
        try:
            handles = await self._guarded(self.radio.discover(
                self.address,
                SERVICE_UUID,
                [WRITE_CHARACTERISTIC_UUID, NOTIFY_CHARACTERISTIC_UUID]
            ))
        except (UnexpectedDisconnectError, RadioStateChangedError):
            raise
        except Exception as e:
            await self._teardown(SessionState.FAULTED, ConnectFailedError("Service discovery failed", cause=e))
            raise ConnectFailedError(
                f"Failed to discover services and characteristics: {e}", cause=e
            ) from e

        self._write_characteristic = handles.get(WRITE_CHARACTERISTIC_UUID)
        self._notify_characteristic = handles.get(NOTIFY_CHARACTERISTIC_UUID)

        if self._write_characteristic is None or self._notify_characteristic is None:
            missing = [
                uuid for uuid in (WRITE_CHARACTERISTIC_UUID, NOTIFY_CHARACTERISTIC_UUID)
                if handles.get(uuid) is None
            ]
            error = ProtocolMismatchError(f"Missing characteristics: {', '.join(missing)}")
            await self._teardown(SessionState.FAULTED, error)
            raise error

    async def _subscribe(self) -> None:
        self._set_state(SessionState.SUBSCRIBING)
        try:
            await self._guarded(self.radio.subscribe(self.address, self._notify_characteristic))
        except (UnexpectedDisconnectError, RadioStateChangedError):
            raise
        except Exception as e:
            await self._teardown(SessionState.FAULTED, SubscribeFailedError("Subscribe failed", cause=e))
            raise SubscribeFailedError(f"Failed to subscribe to characteristic: {e}", cause=e) from e

    async def disconnect(self) -> None:
        """Close the session locally. Pending commands fail with `SessionClosedError`."""
        if self.is_closed:
            return
        await self._teardown(SessionState.DISCONNECTED, SessionClosedError("Session closed locally"))
        self.logger.info(f"Sensor {self.address} disconnected")

    # Link watch

    def _watch_link(self) -> None:
        self._link_lost.clear()
        self._link_error = None
        self._watch_channel = self.radio.events()
        self._watch_task = asyncio.create_task(self._watch(self._watch_channel))

    async def _watch(self, channel: EventChannel) -> None:
        with channel:
            while True:
                event = await channel.get()

                if isinstance(event, Disconnected) and event.address == self.address:
                    self._on_link_lost(UnexpectedDisconnectError("Peripheral disconnected unexpectedly"))
                    return

                if isinstance(event, StateChanged) and event.state is not RadioState.POWERED_ON:
                    self._on_link_lost(RadioStateChangedError(event.state))
                    return

                if (isinstance(event, Notified)
                        and event.address == self.address
                        and event.characteristic == NOTIFY_CHARACTERISTIC_UUID):
                    self._on_notification(event.data)

    def _on_notification(self, data: bytes) -> None:
        pending = self._pending
        if pending is None or pending.future.done():
            return
        if data and data[0] == pending.response_code:
            pending.future.set_result(data)
        else:
            self.logger.debug(f"Ignoring notification {data.hex()} from {self.address}")

    def _on_link_lost(self, error: ThermSmartError) -> None:
        self.logger.warning(f"Sensor {self.address} was disconnected ({self.state.value})")
        self._close(SessionState.DISCONNECTED, error)

    def _close(self, state: SessionState, error: ThermSmartError) -> None:
        self._set_state(state)
        self._write_characteristic = None
        self._notify_characteristic = None
        self._link_error = error
        self._link_lost.set()

        if self._pending is not None and not self._pending.future.done():
            self._pending.future.set_exception(error)

    async def _unwatch_link(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        # A watch cancelled before its first step never entered its channel block
        if self._watch_channel is not None:
            self._watch_channel.close()
            self._watch_channel = None

    async def _teardown(self, state: SessionState, error: ThermSmartError) -> None:
        linked = self.state in LINKED_STATES
        self._close(state, error)
        await self._unwatch_link()

        if linked:
            try:
                await self.radio.disconnect(self.address)
            except Exception as e:
                self.logger.warning(f"Error disconnecting from {self.address}: {e}")

    async def _guarded(self, awaitable: Awaitable):
        """Await a radio operation, failing as soon as the link is lost."""
        operation = asyncio.ensure_future(awaitable)
        link_lost = asyncio.ensure_future(self._link_lost.wait())
        try:
            await asyncio.wait({operation, link_lost}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            link_lost.cancel()
            if not operation.done():
                operation.cancel()
                operation.add_done_callback(_consume)

        if operation.done() and not operation.cancelled():
            return operation.result()
        raise self._link_error

    # Commands

    async def write(self, payload: bytes, response_code: Optional[int] = NO_RESPONSE) -> Optional[bytes]:
        """
        Write a command frame.

        Args:
            payload: Command bytes (opcode first)
            response_code: Opcode of the expected response, or NO_RESPONSE

        Returns:
            Optional[bytes]: The first notification starting with `response_code`

        Raises:
            SessionStateError: If the session is not ready
            CommandInProgressError: If another command is outstanding
            WriteFailedError: If the radio rejected the write
            CommandTimeoutError: If no response arrived in time
            UnexpectedDisconnectError: If the link dropped meanwhile
        """
        if self.state is not SessionState.READY:
            raise SessionStateError(f"Session is not ready ({self.state.value})")
        if self._command_in_flight:
            raise CommandInProgressError("Another command is still outstanding")

        self._command_in_flight = True
        pending = None
        if response_code is not NO_RESPONSE:
            pending = PendingCommand(response_code, asyncio.get_running_loop().create_future())
            self._pending = pending

        try:
            try:
                await self._guarded(self.radio.write(
                    self.address, self._write_characteristic, bytes(payload), True
                ))
            except (UnexpectedDisconnectError, RadioStateChangedError):
                raise
            except Exception as e:
                raise WriteFailedError(f"Failed to write to characteristic: {e}", cause=e) from e

            self.logger.debug(f"Wrote {bytes(payload).hex()} to {self.address}")
            if pending is None:
                return None

            try:
                with self.performance_monitor.measure_time("ble_response"):
                    return await asyncio.wait_for(pending.future, self.command_timeout)
            except asyncio.TimeoutError:
                raise CommandTimeoutError(
                    f"No response 0x{response_code:02x} from {self.address} "
                    f"within {self.command_timeout}s"
                )
        finally:
            self._pending = None
            self._command_in_flight = False
            if pending is not None and pending.future.done():
                _consume(pending.future)

    async def read_time(self) -> datetime:
        """Read the sensor clock."""
        data = await self.write(
            bytes([ThermSmartCommand.TIME, TimeOperation.READ]), ThermSmartCommand.TIME
        )
        try:
            return decode_timestamp(data[2:])
        except ValueError as e:
            raise ProtocolMismatchError(f"Malformed time response {data.hex()}: {e}", cause=e) from e

    async def sync_time(self, now: Optional[datetime] = None) -> datetime:
        """
        Set the sensor clock to local time.

        Returns:
            datetime: The timestamp written to the sensor
        """
        now = (now or datetime.now()).replace(microsecond=0)
        await self.write(
            bytes([ThermSmartCommand.TIME, TimeOperation.SET]) + encode_timestamp(now),
            ThermSmartCommand.TIME
        )
        self.logger.info(f"Synced time of sensor {self.address} to {now.isoformat()}")
        return now

    async def identify(self) -> None:
        """Trigger the sensor's physical indicator."""
        await self.write(bytes([ThermSmartCommand.IDENTIFY]), NO_RESPONSE)


class SessionRegistry:
    """Hands out at most one live session per address."""

    def __init__(self, radio: RadioAdapter, logger=None, **session_options):
        self.radio = radio
        self.logger = logger or get_component_logger()
        self._session_options = session_options
        self._sessions: Dict[str, ThermSmartDevice] = {}

    def session_for(self, address: str, peripheral: Optional[Peripheral] = None) -> ThermSmartDevice:
        """Return the live session for `address`, creating a fresh one if needed."""
        session = self._sessions.get(address)
        if session is None or session.is_closed:
            session = ThermSmartDevice(
                self.radio,
                address=address,
                peripheral=peripheral,
                logger=self.logger,
                **self._session_options
            )
            self._sessions[address] = session
        return session

    @property
    def sessions(self) -> List[ThermSmartDevice]:
        return [s for s in self._sessions.values() if not s.is_closed]

    async def close_all(self) -> None:
        for session in list(self._sessions.values()):
            await session.disconnect()
        self._sessions.clear()
