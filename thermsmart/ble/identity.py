"""
Device identity and address normalization.
"""

from dataclasses import dataclass
from typing import Iterable, Optional, Set

_SEPARATORS = (":", "-")


def normalize_address(address: str) -> str:
    """
    Canonical form of a device address: lower case, no separators.

    Idempotent, so "AA:BB:CC:DD:EE:FF" and "aabbccddeeff" both map to
    "aabbccddeeff".
    """
    normalized = address.strip().lower()
    for separator in _SEPARATORS:
        normalized = normalized.replace(separator, "")
    return normalized


def normalize_addresses(addresses: Optional[Iterable[str]]) -> Optional[Set[str]]:
    """Normalize an optional allowlist. None means "no filter"."""
    if addresses is None:
        return None
    return {normalize_address(a) for a in addresses}


def format_address(address: str) -> str:
    """Colon separated upper case form, as BLE stacks print it."""
    normalized = normalize_address(address)
    return ":".join(normalized[i:i + 2] for i in range(0, len(normalized), 2)).upper()


def display_name(address: str, local_name: Optional[str] = None) -> str:
    """Advertised name, or one derived from the address tail."""
    if local_name:
        return local_name
    return f"ThermSmart {address[-4:].upper()}" if address else "ThermSmart"


@dataclass(frozen=True)
class DeviceIdentity:
    """Correlation key for mapping readings back to a physical unit."""
    address: str
    name: str

    @classmethod
    def from_peripheral(cls, peripheral) -> 'DeviceIdentity':
        return cls(
            address=peripheral.address,
            name=display_name(peripheral.address, peripheral.name)
        )
