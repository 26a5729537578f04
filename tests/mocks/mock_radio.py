"""
In-memory radio adapter for testing the protocol core without hardware.
Simulates advertisements, links, notifications and failure injection.
"""

import asyncio
from typing import Callable, Dict, Iterable, List, Optional, Tuple, Union

from thermsmart.ble.errors import ScanFailedError
from thermsmart.ble.protocol import NOTIFY_CHARACTERISTIC_UUID
from thermsmart.ble.radio import (
    Disconnected,
    Discovered,
    Notified,
    Peripheral,
    RadioAdapter,
    RadioState,
    ScanStopped,
)

Responder = Union[List[bytes], Callable[[bytes], List[bytes]]]


class FakeRadioAdapter(RadioAdapter):
    """
    Radio adapter driven entirely by the test.

    Known peripherals are advertised right after a scan starts. Responders map
    a command opcode to the notifications sent back after each write.
    """

    def __init__(self,
                 peripherals: Optional[Iterable[Peripheral]] = None,
                 state: RadioState = RadioState.POWERED_ON,
                 logger=None):
        super().__init__(logger)
        self._state = state
        self.peripherals: List[Peripheral] = list(peripherals or [])
        self.responders: Dict[int, Responder] = {}

        # Failure injection
        self.scan_error: Optional[Exception] = None
        self.connect_error: Optional[Exception] = None
        self.discover_error: Optional[Exception] = None
        self.subscribe_error: Optional[Exception] = None
        self.write_error: Optional[Exception] = None
        self.missing_characteristics: set = set()
        self.connect_gate: Optional[asyncio.Event] = None

        # Call records
        self.scanning = False
        self.scan_requests: List[Tuple[List[str], bool]] = []
        self.stop_scan_calls = 0
        self.connected: set = set()
        self.connect_calls: List[str] = []
        self.disconnect_calls: List[str] = []
        self.subscriptions: List[Tuple[str, str]] = []
        self.writes: List[Tuple[str, bytes]] = []

    # Test helpers

    def advertise(self, peripheral: Peripheral) -> None:
        self.emit(Discovered(peripheral))

    def notify(self, address: str, data: bytes, characteristic: str = NOTIFY_CHARACTERISTIC_UUID) -> None:
        self.emit(Notified(address, characteristic, bytes(data)))

    def drop_link(self, address: str) -> None:
        self.connected.discard(address)
        self.emit(Disconnected(address))

    def power(self, state: RadioState) -> None:
        self.set_state(state)

    # RadioAdapter

    async def start_scan(self, service_uuids: Iterable[str], allow_duplicates: bool) -> None:
        self.scan_requests.append((list(service_uuids), allow_duplicates))
        if self.scan_error is not None:
            raise ScanFailedError(f"Failed to scan for sensors: {self.scan_error}", cause=self.scan_error)

        self.scanning = True
        loop = asyncio.get_running_loop()
        for peripheral in self.peripherals:
            loop.call_soon(self.advertise, peripheral)

    async def stop_scan(self) -> None:
        self.stop_scan_calls += 1
        self.scanning = False
        self.emit(ScanStopped())

    async def connect(self, address: str) -> None:
        self.connect_calls.append(address)
        if self.connect_gate is not None:
            await self.connect_gate.wait()
        if self.connect_error is not None:
            raise self.connect_error
        self.connected.add(address)

    async def disconnect(self, address: str) -> None:
        self.disconnect_calls.append(address)
        self.connected.discard(address)

    async def discover(self, address: str, service_uuid: str, characteristic_uuids: Iterable[str]) -> Dict[str, str]:
        if self.discover_error is not None:
            raise self.discover_error
        return {
            uuid: f"handle:{uuid}"
            for uuid in characteristic_uuids
            if uuid not in self.missing_characteristics
        }

    async def subscribe(self, address: str, characteristic: str) -> None:
        if self.subscribe_error is not None:
            raise self.subscribe_error
        self.subscriptions.append((address, characteristic))

    async def write(self, address: str, characteristic: str, data: bytes, response: bool = True) -> None:
        self.writes.append((address, bytes(data)))
        if self.write_error is not None:
            raise self.write_error

        responder = self.responders.get(data[0])
        if responder is None:
            return
        notifications = responder(bytes(data)) if callable(responder) else responder

        loop = asyncio.get_running_loop()
        for notification in notifications:
            loop.call_soon(self.notify, address, notification)
