"""
Legacy direct-poll access to a ThermSmart sensor.

Older firmware does not advertise readings, so values are fetched over a
connection with the get-temperature command and cached for the lifetime of
that connection.
"""

from typing import Optional

from .device import ThermSmartDevice
from .errors import ProtocolMismatchError
from .protocol import ThermSmartCommand, read_relative_humidity, read_temperature
from .radio import RadioAdapter
from ..utils.logging import get_component_logger

INDOOR_TEMPERATURE_OFFSET = 3
RELATIVE_HUMIDITY_OFFSET = 9
OUTDOOR_TEMPERATURE_OFFSET = 12
TEMPERATURE_DATA_LENGTH = 14


class ThermSmartSensor:
    """Polls temperature and humidity from a connected sensor."""

    def __init__(self, radio: RadioAdapter, address: Optional[str] = None, logger=None, **session_options):
        self.radio = radio
        self.address = address
        self.logger = logger or get_component_logger()
        self._session_options = session_options

        self.device: Optional[ThermSmartDevice] = None
        self._temperature_data: Optional[bytes] = None

    @property
    def is_connected(self) -> bool:
        return self.device is not None and self.device.is_ready

    async def connect(self) -> ThermSmartDevice:
        """Connect, replacing a session that is no longer ready."""
        if self.is_connected:
            return self.device

        self._temperature_data = None
        self.device = ThermSmartDevice(
            self.radio, address=self.address, logger=self.logger, **self._session_options
        )
        await self.device.connect()
        self.address = self.device.address
        return self.device

    async def disconnect(self) -> None:
        self._temperature_data = None
        if self.device is not None:
            await self.device.disconnect()

    async def load_temperature_data(self) -> bytes:
        """
        Fetch the temperature frame once per connection.

        Raises:
            ProtocolMismatchError: If the frame is too short to decode
        """
        device = await self.connect()
        if self._temperature_data is not None:
            return self._temperature_data

        data = await device.write(bytes([ThermSmartCommand.GET_TEMPERATURE]), ThermSmartCommand.GET_TEMPERATURE)
        if len(data) < TEMPERATURE_DATA_LENGTH:
            raise ProtocolMismatchError(
                f"Temperature data too short ({len(data)} bytes): {data.hex()}"
            )

        self.logger.debug(f"Temperature data from {self.address}: {data.hex()}")
        self._temperature_data = data
        return data

    async def get_indoor_temperature(self) -> float:
        return read_temperature(await self.load_temperature_data(), INDOOR_TEMPERATURE_OFFSET)

    async def get_relative_humidity(self) -> int:
        """
        Raises:
            ProtocolMismatchError: If the humidity byte is not decimal-coded
        """
        data = await self.load_temperature_data()
        try:
            return read_relative_humidity(data, RELATIVE_HUMIDITY_OFFSET)
        except ValueError as e:
            raise ProtocolMismatchError(
                f"Malformed humidity byte 0x{data[RELATIVE_HUMIDITY_OFFSET]:02x}", cause=e
            ) from e

    async def get_outdoor_temperature(self) -> float:
        return read_temperature(await self.load_temperature_data(), OUTDOOR_TEMPERATURE_OFFSET)
