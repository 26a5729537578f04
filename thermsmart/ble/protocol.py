"""
ThermSmart wire protocol constants.
Shared by the advertisement codec, the device session and the legacy sensor.
"""

import struct
from enum import IntEnum

from .timecodec import decode_bcd


# Manufacturer data prefix used by ThermSmart advertisements
COMPANY_ID = 0x4842

# Manufacturer data header: company id (2 bytes) + device address (6 bytes, little endian)
ADVERTISEMENT_HEADER_LENGTH = 8
MIN_ADVERTISEMENT_LENGTH = ADVERTISEMENT_HEADER_LENGTH + 1

SERVICE_UUID = "0000fff0-0000-1000-8000-00805f9b34fb"
WRITE_CHARACTERISTIC_UUID = "0000fff3-0000-1000-8000-00805f9b34fb"
NOTIFY_CHARACTERISTIC_UUID = "0000fff4-0000-1000-8000-00805f9b34fb"

# Sentinel for writes that complete on the radio acknowledgement alone
NO_RESPONSE = None

# Raw temperature offset and scale (1/20 °C per step)
TEMPERATURE_OFFSET = 0x3000
TEMPERATURE_SCALE = 20.0


class ThermSmartCommand(IntEnum):
    """ThermSmart GATT command opcodes."""
    TIME = 0xD1
    GET_TEMPERATURE = 0xD2
    IDENTIFY = 0xD5


class TimeOperation(IntEnum):
    """Second byte of a TIME command."""
    SET = 0x00
    READ = 0x01


def read_temperature(data: bytes, offset: int) -> float:
    """Decode a little endian raw temperature field to °C."""
    raw = struct.unpack_from('<H', data, offset)[0]
    return (raw - TEMPERATURE_OFFSET) / TEMPERATURE_SCALE


def read_relative_humidity(data: bytes, offset: int) -> int:
    """Decode a decimal-coded humidity byte (0x34 -> 34)."""
    return decode_bcd(data[offset])
