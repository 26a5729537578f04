"""
ThermSmart - BLE protocol core for ThermSmart wireless thermometers.

Features:
- Advertisement scanning with decoded temperature, humidity and battery readings
- Connection sessions with time read/sync and identify commands
- Legacy direct polling for sensors that do not advertise readings
- Command line listener and monitor
- Configuration management with environment variables
"""

__version__ = "1.0.0"
__description__ = "BLE protocol core for ThermSmart thermometers"

from .utils.config import Config
from .utils.logging import ProductionLogger, PerformanceMonitor
from .ble.radio import BleakRadioAdapter, RadioAdapter
from .ble.readings import Reading
from .ble.scanner import scan_for_readings, stop_scan
from .ble.device import ThermSmartDevice
from .ble.sensor import ThermSmartSensor

__all__ = [
    "Config",
    "ProductionLogger",
    "PerformanceMonitor",
    "BleakRadioAdapter",
    "RadioAdapter",
    "Reading",
    "scan_for_readings",
    "stop_scan",
    "ThermSmartDevice",
    "ThermSmartSensor",
]
