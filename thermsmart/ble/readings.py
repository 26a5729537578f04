"""
Advertisement reading codec for ThermSmart sensors.

The advertisement payload (after the 8-byte company id + address header) is a
sequence of fixed-layout records: a one-byte tag followed by a body whose size
is determined by the tag. Decoding stops at the first unknown tag or truncated
record; anything after that point is opaque.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, NamedTuple, Optional

from .protocol import read_relative_humidity, read_temperature


class ReadingType(Enum):
    """Kind of value carried by a reading."""
    TEMPERATURE = "temperature"
    HUMIDITY = "humidity"
    BATTERY_LEVEL = "battery-level"


class SensorRole(Enum):
    """Which probe a reading comes from."""
    INDOOR = "indoor"
    OUTDOOR = "outdoor"


@dataclass(frozen=True)
class Reading:
    """A single decoded sensor value."""
    type: ReadingType
    value: float
    sensor: Optional[SensorRole] = None  # None for device-wide readings
    symbol: Optional[str] = None

    def __str__(self) -> str:
        label = self.type.value
        if self.sensor is not None:
            label = f"{self.sensor.value}-{label}"

        text = f"{label}: {self.value}"
        if self.symbol:
            text += f" {self.symbol}"
        return text


class _RecordLayout(NamedTuple):
    type: ReadingType
    sensor: Optional[SensorRole]
    size: int
    symbol: str


RECORD_INDOOR_TEMPERATURE = 0x01
RECORD_INDOOR_HUMIDITY = 0x02
RECORD_OUTDOOR_TEMPERATURE = 0x03
RECORD_BATTERY_LEVEL = 0x04

RECORD_LAYOUTS: Dict[int, _RecordLayout] = {
    RECORD_INDOOR_TEMPERATURE: _RecordLayout(ReadingType.TEMPERATURE, SensorRole.INDOOR, 2, "°C"),
    RECORD_INDOOR_HUMIDITY: _RecordLayout(ReadingType.HUMIDITY, SensorRole.INDOOR, 1, "%"),
    RECORD_OUTDOOR_TEMPERATURE: _RecordLayout(ReadingType.TEMPERATURE, SensorRole.OUTDOOR, 2, "°C"),
    RECORD_BATTERY_LEVEL: _RecordLayout(ReadingType.BATTERY_LEVEL, None, 1, "%"),
}


def _decode_value(layout: _RecordLayout, body: bytes) -> float:
    if layout.type is ReadingType.TEMPERATURE:
        return read_temperature(body, 0)
    if layout.type is ReadingType.HUMIDITY:
        return read_relative_humidity(body, 0)
    if layout.type is ReadingType.BATTERY_LEVEL:
        return body[0]
    raise ValueError(f"Unhandled reading type: {layout.type}")


def decode_advertisement(payload: bytes) -> List[Reading]:
    """
    Decode an advertisement payload into readings.

    Args:
        payload: Manufacturer data with the 8-byte header already stripped

    Returns:
        List[Reading]: Readings in payload order
    """
    readings = []
    position = 0

    while position < len(payload):
        layout = RECORD_LAYOUTS.get(payload[position])
        if layout is None:
            break

        body = payload[position + 1:position + 1 + layout.size]
        if len(body) < layout.size:
            break
        position += 1 + layout.size

        try:
            value = _decode_value(layout, body)
        except ValueError:
            # Humidity byte that is not decimal coded
            continue

        readings.append(Reading(
            type=layout.type,
            value=value,
            sensor=layout.sensor,
            symbol=layout.symbol
        ))

    return readings
