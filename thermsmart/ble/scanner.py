"""
Advertisement scanning for ThermSmart sensors.

A `ScanSession` folds the radio event stream into reading or device
callbacks and owns the scan's start/stop lifecycle. It watches the radio
state while running: leaving the powered-on state fails the scan.
"""

import asyncio
import traceback
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .errors import DeviceNotFoundError, RadioStateChangedError
from .identity import DeviceIdentity, normalize_addresses
from .protocol import (
    ADVERTISEMENT_HEADER_LENGTH,
    COMPANY_ID,
    MIN_ADVERTISEMENT_LENGTH,
    SERVICE_UUID,
)
from .radio import (
    POWER_ON_TIMEOUT,
    Discovered,
    EventChannel,
    Peripheral,
    RadioAdapter,
    RadioState,
    ScanStopped,
    StateChanged,
)
from .readings import Reading, decode_advertisement
from ..utils.logging import PerformanceMonitor, get_component_logger

ReadingCallback = Callable[[Reading, DeviceIdentity], None]
DeviceCallback = Callable[[Peripheral], None]


def advertised_address(manufacturer_data: bytes) -> str:
    """Address echoed (little endian) in bytes 2-7 of the manufacturer data."""
    return f"{int.from_bytes(manufacturer_data[2:8], 'little'):012x}"


class ScanSession:
    """
    A single scan, either decoding readings or reporting whole devices.

    Use `start_reading_scan` / `start_device_scan` to create one. The session
    completes when the radio scan is stopped, when it is cancelled, or with
    `RadioStateChangedError` when the radio powers off mid-scan.
    """

    def __init__(self,
                 radio: RadioAdapter,
                 on_reading: Optional[ReadingCallback] = None,
                 on_device: Optional[DeviceCallback] = None,
                 addresses: Optional[Iterable[str]] = None,
                 logger=None,
                 performance_monitor: Optional[PerformanceMonitor] = None):
        self.radio = radio
        self.logger = logger or get_component_logger()
        self.performance_monitor = performance_monitor or PerformanceMonitor()

        self._on_reading = on_reading
        self._on_device = on_device
        self._addresses = normalize_addresses(addresses)

        self.devices: Dict[str, Peripheral] = {}
        self._channel: Optional[EventChannel] = None
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def decodes_readings(self) -> bool:
        return self._on_reading is not None

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    @property
    def completion(self) -> Optional[asyncio.Task]:
        """Task resolving with the retained devices once the scan ends."""
        return self._task

    async def start(self, ready_timeout: float = POWER_ON_TIMEOUT) -> 'ScanSession':
        """
        Wait for the radio and start scanning.

        Raises:
            RadioUnavailableError: If the radio does not power on
            ScanFailedError: If the scan cannot be started
        """
        if self._task is not None:
            raise RuntimeError("Scan session already started")

        await self.radio.wait_until_ready(ready_timeout)

        # Listen before scanning so no early advertisement is missed
        self._channel = self.radio.events()
        try:
            await self.radio.start_scan([SERVICE_UUID], allow_duplicates=self.decodes_readings)
        except BaseException:
            self._channel.close()
            raise

        self._task = asyncio.create_task(self._run())
        self._task.add_done_callback(self._log_failure)
        mode = "readings" if self.decodes_readings else "devices"
        self.logger.debug(f"Scan session started ({mode}, filter: {self._addresses})")
        return self

    def _log_failure(self, task: asyncio.Task) -> None:
        # Marks the error retrieved; awaiting the completion still raises it
        if not task.cancelled() and task.exception() is not None:
            self.logger.warning(f"Scan session ended: {task.exception()}")

    async def _run(self) -> List[Peripheral]:
        try:
            while True:
                event = await self._channel.get()
                if self._cancelled or isinstance(event, ScanStopped):
                    break

                if isinstance(event, StateChanged) and event.state is not RadioState.POWERED_ON:
                    self._channel.close()
                    await self.radio.stop_scan()
                    raise RadioStateChangedError(event.state)

                if isinstance(event, Discovered):
                    self._handle_discover(event.peripheral)
        finally:
            self._channel.close()

        return list(self.devices.values())

    def _handle_discover(self, peripheral: Peripheral):
        if self.decodes_readings:
            self._handle_advertisement(peripheral)
            return

        if self._addresses is not None and peripheral.address not in self._addresses:
            self.logger.debug(f"Skipping sensor with address {peripheral.address}")
            return

        if peripheral.address in self.devices:
            return

        self.devices[peripheral.address] = peripheral
        self.logger.info(f"Found sensor with address {peripheral.address}")
        self._invoke(self._on_device, peripheral)

    def _handle_advertisement(self, peripheral: Peripheral):
        data = peripheral.manufacturer_data
        if len(data) < MIN_ADVERTISEMENT_LENGTH or int.from_bytes(data[0:2], 'little') != COMPANY_ID:
            return

        # Advertisements start with the device address; anything else is malformed or spoofed
        if peripheral.address and advertised_address(data) != peripheral.address:
            self.logger.debug(f"Address mismatch in advertisement from {peripheral.address}")
            return

        if self._addresses is not None and peripheral.address not in self._addresses:
            return

        self.devices[peripheral.address] = peripheral
        identity = DeviceIdentity.from_peripheral(peripheral)

        readings = decode_advertisement(data[ADVERTISEMENT_HEADER_LENGTH:])
        self.performance_monitor.record_metric("ble_readings_decoded", len(readings))

        for reading in readings:
            self._invoke(self._on_reading, reading, identity)

    def _invoke(self, callback, *args):
        try:
            callback(*args)
        except Exception as e:
            self.logger.error(f"Error in callback {getattr(callback, '__name__', callback)}: {e}")
            self.logger.error(f"Callback error traceback: {traceback.format_exc()}")

    async def wait(self) -> List[Peripheral]:
        """
        Wait for the scan to complete.

        Returns:
            List[Peripheral]: Devices retained by the scan

        Raises:
            RadioStateChangedError: If the radio powered off mid-scan
        """
        if self._task is None:
            raise RuntimeError("Scan session not started")
        return await self._task

    async def cancel(self) -> None:
        """Stop delivering events, stop the radio scan and resolve the completion."""
        if self._task is None or self._task.done():
            return

        self._cancelled = True
        self._channel.close()
        self._channel.put(ScanStopped())  # wake the loop
        await self.radio.stop_scan()

        try:
            await self._task
        except RadioStateChangedError:
            pass


async def start_reading_scan(radio: RadioAdapter,
                             on_reading: ReadingCallback,
                             addresses: Optional[Iterable[str]] = None,
                             **kwargs) -> ScanSession:
    """Start a scan that reports every decoded reading with its device identity."""
    ready_timeout = kwargs.pop("ready_timeout", POWER_ON_TIMEOUT)
    session = ScanSession(radio, on_reading=on_reading, addresses=addresses, **kwargs)
    return await session.start(ready_timeout)


async def start_device_scan(radio: RadioAdapter,
                            on_device: Optional[DeviceCallback] = None,
                            addresses: Optional[Iterable[str]] = None,
                            **kwargs) -> ScanSession:
    """Start a discovery-only scan that reports each device once."""
    ready_timeout = kwargs.pop("ready_timeout", POWER_ON_TIMEOUT)
    session = ScanSession(radio, on_device=on_device or (lambda _: None), addresses=addresses, **kwargs)
    return await session.start(ready_timeout)


# Aliases used by integrations
scan_for_readings = start_reading_scan


async def stop_scan(radio: RadioAdapter) -> None:
    """Stop the active scan; its session completes normally."""
    await radio.stop_scan()


async def find_device(radio: RadioAdapter,
                      address: Optional[str] = None,
                      timeout: Optional[float] = None,
                      **kwargs) -> Peripheral:
    """
    Scan until a device matches.

    Args:
        radio: Radio adapter
        address: Normalized address to look for, or None for the first device
        timeout: Seconds to scan before giving up (None waits indefinitely)

    Raises:
        DeviceNotFoundError: If no device matched before the scan ended
    """
    found: asyncio.Future = asyncio.get_running_loop().create_future()

    def on_device(peripheral: Peripheral):
        if not found.done():
            found.set_result(peripheral)

    addresses = [address] if address else None
    session = await start_device_scan(radio, on_device, addresses, **kwargs)
    try:
        await asyncio.wait({found, session.completion}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
        if found.done():
            return found.result()
        if session.done:
            # Surfaces RadioStateChangedError
            session.completion.result()
        raise DeviceNotFoundError(f"No sensor found (address: {address or 'any'})")
    finally:
        found.cancel()
        await session.cancel()


async def collect_readings(radio: RadioAdapter,
                           window: float,
                           addresses: Optional[Iterable[str]] = None,
                           performance_monitor: Optional[PerformanceMonitor] = None,
                           **kwargs) -> List[Tuple[Reading, DeviceIdentity]]:
    """
    Scan for a bounded window and return every reading received.

    The scan is explicitly stopped when the window elapses.
    """
    performance_monitor = performance_monitor or PerformanceMonitor()
    collected: List[Tuple[Reading, DeviceIdentity]] = []

    def on_reading(reading: Reading, identity: DeviceIdentity):
        collected.append((reading, identity))

    loop = asyncio.get_running_loop()
    started = loop.time()
    success = False

    session = await start_reading_scan(
        radio, on_reading, addresses, performance_monitor=performance_monitor, **kwargs
    )
    try:
        await asyncio.wait({session.completion}, timeout=window)
        if not session.done:
            await stop_scan(radio)
        devices = await session.wait()
        success = True
    finally:
        if not session.done:
            await session.cancel()
        performance_monitor.log_ble_scan(
            loop.time() - started, len(session.devices), success
        )

    session.logger.info(
        f"BLE scan completed. {len(collected)} readings from {len(devices)} sensors"
    )
    return collected
