"""
BCD time codec for the ThermSmart time command.

Timestamps travel as six BCD bytes: year offset from 2000, month (1-based),
day, hour, minute and second.
"""

from datetime import datetime
from typing import Union

TIMESTAMP_LENGTH = 6
BASE_YEAR = 2000


def encode_bcd(value: int) -> int:
    """
    Pack a two-digit decimal value into one byte.

    Args:
        value: Integer in the range 0-99

    Returns:
        int: Byte with tens in the high nibble and ones in the low nibble

    Raises:
        ValueError: If the value does not fit two decimal digits
    """
    if not 0 <= value <= 99:
        raise ValueError(f"BCD value out of range: {value}")
    return ((value // 10) << 4) | (value % 10)


def decode_bcd(byte: int) -> int:
    """
    Unpack a BCD byte into its decimal value.

    Raises:
        ValueError: If the byte is out of range or a nibble is above 9
    """
    if not 0 <= byte <= 0xFF:
        raise ValueError(f"BCD byte out of range: {byte}")

    tens, ones = byte >> 4, byte & 0x0F
    if tens > 9 or ones > 9:
        raise ValueError(f"Invalid BCD byte: 0x{byte:02x}")
    return tens * 10 + ones


def encode_timestamp(timestamp: datetime) -> bytes:
    """Encode a timestamp into the 6-byte BCD layout."""
    year = timestamp.year - BASE_YEAR
    if not 0 <= year <= 99:
        raise ValueError(f"Year {timestamp.year} cannot be encoded (2000-2099 only)")

    return bytes([
        encode_bcd(year),
        encode_bcd(timestamp.month),
        encode_bcd(timestamp.day),
        encode_bcd(timestamp.hour),
        encode_bcd(timestamp.minute),
        encode_bcd(timestamp.second),
    ])


def decode_timestamp(data: Union[bytes, bytearray]) -> datetime:
    """
    Decode the 6-byte BCD layout into a naive local datetime.

    Raises:
        ValueError: If the buffer is short or holds an invalid date
    """
    if len(data) < TIMESTAMP_LENGTH:
        raise ValueError(f"Timestamp needs {TIMESTAMP_LENGTH} bytes, got {len(data)}")

    year, month, day, hour, minute, second = (decode_bcd(b) for b in data[:TIMESTAMP_LENGTH])
    return datetime(BASE_YEAR + year, month, day, hour, minute, second)
