"""
Radio adapter facade.

The protocol core consumes the local BLE radio only through `RadioAdapter`:
scan and connection primitives plus a stream of radio events delivered to
per-consumer `EventChannel` queues. `BleakRadioAdapter` implements the
facade on top of bleak.
"""

import asyncio
import logging
import struct
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Optional, Set

from bleak import BleakClient, BleakScanner
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from .errors import RadioUnavailableError, ScanFailedError
from .identity import format_address, normalize_address
from .protocol import COMPANY_ID

# Seconds to wait for the radio to report powered on
POWER_ON_TIMEOUT = 5.0


class RadioState(Enum):
    """Power state of the local radio."""
    UNKNOWN = "unknown"
    POWERED_ON = "poweredOn"
    POWERED_OFF = "poweredOff"
    UNAVAILABLE = "unavailable"


@dataclass
class Peripheral:
    """A device seen in an advertisement."""
    address: str  # normalized
    name: Optional[str] = None
    manufacturer_data: bytes = b""  # company id first, little endian
    rssi: Optional[int] = None
    handle: Any = field(default=None, repr=False, compare=False)


@dataclass(frozen=True)
class Discovered:
    peripheral: Peripheral


@dataclass(frozen=True)
class StateChanged:
    state: RadioState


@dataclass(frozen=True)
class Notified:
    address: str
    characteristic: str
    data: bytes


@dataclass(frozen=True)
class Disconnected:
    address: str


@dataclass(frozen=True)
class ScanStopped:
    pass


class EventChannel:
    """
    Queue-backed subscription to radio events.

    Usable as a context manager; leaving the block (or calling `close`)
    deregisters the channel from its adapter.
    """

    def __init__(self, adapter: 'RadioAdapter'):
        self._adapter = adapter
        self._queue: asyncio.Queue = asyncio.Queue()
        self.closed = False

    def put(self, event) -> None:
        self._queue.put_nowait(event)

    async def get(self):
        return await self._queue.get()

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._adapter._release_channel(self)

    def __enter__(self) -> 'EventChannel':
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()


class RadioAdapter(ABC):
    """
    Capability interface of the local BLE radio.

    Events may be emitted at any time, interleaved with in-flight operations.
    Every open channel receives every event.
    """

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger('thermsmart.ble')
        self._state = RadioState.UNKNOWN
        self._channels: Set[EventChannel] = set()

    @property
    def state(self) -> RadioState:
        return self._state

    @property
    def listener_count(self) -> int:
        """Number of open event channels."""
        return len(self._channels)

    def events(self) -> EventChannel:
        """Open a new event channel."""
        channel = EventChannel(self)
        self._channels.add(channel)
        return channel

    def _release_channel(self, channel: EventChannel) -> None:
        self._channels.discard(channel)

    def emit(self, event) -> None:
        """Deliver an event to every open channel."""
        for channel in list(self._channels):
            channel.put(event)

    def set_state(self, state: RadioState) -> None:
        if state is self._state:
            return
        self.logger.debug(f"Radio state {self._state.value} -> {state.value}")
        self._state = state
        self.emit(StateChanged(state))

    async def wait_until_ready(self, timeout: float = POWER_ON_TIMEOUT) -> None:
        """
        Wait for the radio to be powered on.

        Raises:
            RadioUnavailableError: If the radio is not powered on within `timeout`
        """
        if self._state is RadioState.POWERED_ON:
            return

        self.logger.info("Waiting for Bluetooth device to power on...")
        with self.events() as channel:
            try:
                await asyncio.wait_for(self._wait_for_power_on(channel), timeout)
            except asyncio.TimeoutError:
                raise RadioUnavailableError(
                    f"Timeout while waiting for power on (state: {self._state.value})"
                )

    async def _wait_for_power_on(self, channel: EventChannel) -> None:
        while True:
            event = await channel.get()
            if isinstance(event, StateChanged) and event.state is RadioState.POWERED_ON:
                return

    @abstractmethod
    async def start_scan(self, service_uuids: Iterable[str], allow_duplicates: bool) -> None:
        """Start scanning; discoveries arrive as `Discovered` events."""

    @abstractmethod
    async def stop_scan(self) -> None:
        """Stop scanning and emit `ScanStopped`."""

    @abstractmethod
    async def connect(self, address: str) -> None:
        """Open a link to the device."""

    @abstractmethod
    async def disconnect(self, address: str) -> None:
        """Close the link to the device."""

    @abstractmethod
    async def discover(self, address: str, service_uuid: str,
                       characteristic_uuids: Iterable[str]) -> Dict[str, Any]:
        """Resolve characteristic handles of a service, keyed by UUID."""

    @abstractmethod
    async def subscribe(self, address: str, characteristic: Any) -> None:
        """Enable notifications; they arrive as `Notified` events."""

    @abstractmethod
    async def write(self, address: str, characteristic: Any, data: bytes, response: bool = True) -> None:
        """Write to a characteristic, waiting for the radio acknowledgement if `response`."""


class BleakRadioAdapter(RadioAdapter):
    """
    Radio adapter backed by bleak.

    bleak has no power state events, so a readiness wait probes the adapter
    by briefly starting a scanner whenever it is not known to be powered on,
    retrying as configured.
    """

    def __init__(self,
                 adapter: str = "auto",
                 retry_attempts: int = 3,
                 retry_delay: float = 2.0,
                 connect_timeout: float = 20.0,
                 logger=None):
        super().__init__(logger)
        self.adapter = adapter
        self.retry_attempts = retry_attempts
        self.retry_delay = retry_delay
        self.connect_timeout = connect_timeout

        self._scanner: Optional[BleakScanner] = None
        self._devices: Dict[str, BLEDevice] = {}
        self._clients: Dict[str, BleakClient] = {}

    @classmethod
    def from_config(cls, config, logger=None) -> 'BleakRadioAdapter':
        return cls(
            adapter=config.ble_adapter,
            retry_attempts=config.ble_retry_attempts,
            retry_delay=config.ble_retry_delay,
            connect_timeout=config.ble_connect_timeout,
            logger=logger
        )

    def _adapter_kwargs(self) -> Dict[str, Any]:
        return {"adapter": self.adapter if self.adapter != "auto" else None}

    async def power_on(self) -> bool:
        """
        Probe the adapter with retry logic.

        Returns:
            bool: True if the adapter could scan
        """
        for attempt in range(self.retry_attempts):
            try:
                scanner = BleakScanner(**self._adapter_kwargs())
                await scanner.start()
                await asyncio.sleep(0.1)
                await scanner.stop()

                self.logger.debug(f"BLE adapter ready (attempt {attempt + 1})")
                self.set_state(RadioState.POWERED_ON)
                return True

            except (BleakError, OSError) as e:
                self.logger.warning(f"Adapter probe attempt {attempt + 1} failed: {e}")
                if attempt < self.retry_attempts - 1:
                    await asyncio.sleep(self.retry_delay)

        self.logger.error(f"BLE adapter unavailable after {self.retry_attempts} attempts")
        self.set_state(RadioState.UNAVAILABLE)
        return False

    async def wait_until_ready(self, timeout: float = POWER_ON_TIMEOUT) -> None:
        if self.state is not RadioState.POWERED_ON:
            await self.power_on()
        await super().wait_until_ready(timeout)

    def _detection_callback(self, device: BLEDevice, advertisement_data: AdvertisementData):
        address = normalize_address(device.address)
        self._devices[address] = device

        # Frames may carry several company entries; ours wins, else the first one
        entries = advertisement_data.manufacturer_data
        manufacturer_data = b""
        if COMPANY_ID in entries:
            manufacturer_data = struct.pack('<H', COMPANY_ID) + bytes(entries[COMPANY_ID])
        elif entries:
            company_id, data = next(iter(entries.items()))
            manufacturer_data = struct.pack('<H', company_id) + bytes(data)

        self.emit(Discovered(Peripheral(
            address=address,
            name=advertisement_data.local_name or device.name,
            manufacturer_data=manufacturer_data,
            rssi=advertisement_data.rssi,
            handle=device
        )))

    async def start_scan(self, service_uuids: Iterable[str], allow_duplicates: bool) -> None:
        if self._scanner is not None:
            raise ScanFailedError("A scan is already running")

        scanner = BleakScanner(
            detection_callback=self._detection_callback,
            service_uuids=list(service_uuids),
            bluez={"filters": {"DuplicateData": allow_duplicates}},
            **self._adapter_kwargs()
        )
        try:
            await scanner.start()
        except (BleakError, OSError) as e:
            self.set_state(RadioState.POWERED_OFF)
            raise ScanFailedError(f"Failed to scan for sensors: {e}", cause=e) from e

        self._scanner = scanner
        self.logger.info("Scanning for sensors...")

    async def stop_scan(self) -> None:
        scanner, self._scanner = self._scanner, None
        if scanner is not None:
            try:
                await scanner.stop()
            except (BleakError, OSError) as e:
                self.logger.warning(f"Error stopping scanner: {e}")
        self.emit(ScanStopped())

    def _on_disconnect(self, address: str) -> None:
        self._clients.pop(address, None)
        self.logger.debug(f"Link to {address} closed")
        self.emit(Disconnected(address))

    def _client(self, address: str) -> BleakClient:
        client = self._clients.get(address)
        if client is None:
            raise BleakError(f"Not connected to {address}")
        return client

    async def connect(self, address: str) -> None:
        target = self._devices.get(address) or format_address(address)
        client = BleakClient(
            target,
            disconnected_callback=lambda _: self._on_disconnect(address),
            timeout=self.connect_timeout,
            **self._adapter_kwargs()
        )
        await client.connect()
        self._clients[address] = client

    async def disconnect(self, address: str) -> None:
        client = self._clients.pop(address, None)
        if client is not None and client.is_connected:
            await client.disconnect()

    async def discover(self, address: str, service_uuid: str,
                       characteristic_uuids: Iterable[str]) -> Dict[str, Any]:
        wanted = {uuid.lower() for uuid in characteristic_uuids}
        service = self._client(address).services.get_service(service_uuid)
        if service is None:
            return {}
        return {
            characteristic.uuid.lower(): characteristic
            for characteristic in service.characteristics
            if characteristic.uuid.lower() in wanted
        }

    async def subscribe(self, address: str, characteristic: Any) -> None:
        uuid = characteristic.uuid.lower()

        def handle_notification(_, data: bytearray):
            self.emit(Notified(address, uuid, bytes(data)))

        await self._client(address).start_notify(characteristic, handle_notification)

    async def write(self, address: str, characteristic: Any, data: bytes, response: bool = True) -> None:
        await self._client(address).write_gatt_char(characteristic, data, response=response)
