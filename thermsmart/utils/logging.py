"""
Logging configuration for the ThermSmart tools.
Console, rotating file and syslog handlers plus a small metrics recorder.
"""

import logging
import logging.handlers
import sys
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path

import colorlog

BLE_LOGGER_NAME = 'thermsmart.ble'
PERFORMANCE_LOGGER_NAME = 'thermsmart.performance'


def get_component_logger(name: str = BLE_LOGGER_NAME) -> logging.Logger:
    """Logger used by the protocol core unless one is injected."""
    return logging.getLogger(name)


class ProductionLogger:
    """
    Logging setup with a colored console, rotating log files and optional syslog.
    """

    def __init__(self,
                 app_name: str = "thermsmart",
                 log_dir: str = "./logs",
                 log_level: str = "INFO",
                 max_file_size: int = 10 * 1024 * 1024,  # 10MB
                 backup_count: int = 5,
                 enable_console: bool = True,
                 enable_file: bool = True,
                 enable_syslog: bool = False):

        self.app_name = app_name
        self.log_dir = Path(log_dir)
        self.log_level = getattr(logging, log_level.upper())
        self.max_file_size = max_file_size
        self.backup_count = backup_count
        self.enable_console = enable_console
        self.enable_file = enable_file
        self.enable_syslog = enable_syslog

        if self.enable_file:
            self.log_dir.mkdir(parents=True, exist_ok=True)

        self._setup_root_logger()
        if self.enable_file:
            self._setup_component_loggers()

    def _setup_root_logger(self):
        """Configure root logger with multiple handlers."""
        root_logger = logging.getLogger()
        root_logger.setLevel(self.log_level)
        root_logger.handlers.clear()

        if self.enable_console:
            console_handler = colorlog.StreamHandler(sys.stdout)
            console_handler.setLevel(self.log_level)
            console_handler.setFormatter(colorlog.ColoredFormatter(
                '%(log_color)s%(asctime)s [%(levelname)8s] %(name)s: %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S',
                log_colors={
                    'DEBUG': 'cyan',
                    'INFO': 'green',
                    'WARNING': 'yellow',
                    'ERROR': 'red',
                    'CRITICAL': 'red,bg_white',
                }
            ))
            root_logger.addHandler(console_handler)

        if self.enable_file:
            file_handler = logging.handlers.RotatingFileHandler(
                self.log_dir / f"{self.app_name}.log",
                maxBytes=self.max_file_size,
                backupCount=self.backup_count
            )
            file_handler.setLevel(self.log_level)
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s [%(levelname)8s] %(name)s [%(process)d:%(thread)d] %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            root_logger.addHandler(file_handler)

        # Warnings and errors only, for systemd journals
        if self.enable_syslog:
            try:
                syslog_handler = logging.handlers.SysLogHandler(address='/dev/log')
                syslog_handler.setLevel(logging.WARNING)
                syslog_handler.setFormatter(logging.Formatter(
                    f'{self.app_name}[%(process)d]: %(levelname)s - %(message)s'
                ))
                root_logger.addHandler(syslog_handler)
            except OSError as e:
                print(f"Warning: Could not setup syslog handler: {e}")

    def _component_handler(self, filename: str, prefix: str) -> logging.Handler:
        handler = logging.handlers.RotatingFileHandler(
            self.log_dir / filename,
            maxBytes=self.max_file_size,
            backupCount=self.backup_count
        )
        handler.setFormatter(logging.Formatter(f'%(asctime)s [%(levelname)s] {prefix}: %(message)s'))
        return handler

    def _setup_component_loggers(self):
        """Separate files for radio traffic and performance metrics."""
        for name, filename, prefix in (
            (BLE_LOGGER_NAME, "ble.log", "BLE"),
            (PERFORMANCE_LOGGER_NAME, "performance.log", "PERF"),
        ):
            component_logger = logging.getLogger(name)
            component_logger.handlers.clear()
            component_logger.addHandler(self._component_handler(filename, prefix))


class PerformanceMonitor:
    """
    Metrics collection for scans and sensor commands.
    """

    def __init__(self, logger=None):
        self.logger = logger or logging.getLogger(PERFORMANCE_LOGGER_NAME)
        self.metrics = {
            'ble_scan_times': [],
        }
        self.start_time = datetime.now()

    def log_ble_scan(self, duration: float, devices_found: int, success: bool):
        """Log BLE scan performance metrics."""
        self.metrics['ble_scan_times'].append({
            'duration': duration,
            'devices_found': devices_found,
            'success': success,
            'timestamp': datetime.now()
        })

        self.logger.info(
            f"BLE_SCAN duration={duration:.2f}s devices={devices_found} success={success}"
        )

    def record_metric(self, metric_name: str, value: float):
        """Record a metric value."""
        self.metrics.setdefault(metric_name, []).append({
            'value': value,
            'timestamp': datetime.now()
        })
        self.logger.debug(f"METRIC {metric_name}={value}")

    @contextmanager
    def measure_time(self, operation_name: str):
        """Context manager for measuring operation time."""
        start_time = time.monotonic()
        try:
            yield
        finally:
            duration = time.monotonic() - start_time
            self.record_metric(f"{operation_name}_duration", duration)
            self.logger.info(f"TIMING {operation_name}={duration:.3f}s")

    def get_performance_summary(self) -> dict:
        """Summary of scan metrics and totals of every recorded metric."""
        scans = self.metrics['ble_scan_times']
        successful_scans = [scan for scan in scans if scan['success']]

        summary = {
            'uptime_seconds': (datetime.now() - self.start_time).total_seconds(),
            'ble_scans': {
                'total': len(scans),
                'successful': len(successful_scans),
                'avg_duration': 0,
                'avg_devices_found': 0
            },
            'metrics': {
                name: sum(entry['value'] for entry in entries)
                for name, entries in self.metrics.items()
                if name != 'ble_scan_times'
            }
        }

        if successful_scans:
            summary['ble_scans']['avg_duration'] = (
                sum(scan['duration'] for scan in successful_scans) / len(successful_scans)
            )
            summary['ble_scans']['avg_devices_found'] = (
                sum(scan['devices_found'] for scan in successful_scans) / len(successful_scans)
            )

        return summary


def setup_logging(config=None) -> ProductionLogger:
    """
    Setup logging from configuration.

    Args:
        config: Configuration instance (if None, the module level one is used)

    Returns:
        ProductionLogger instance
    """
    if config is None:
        from .config import config

    return ProductionLogger(
        log_level=config.log_level,
        log_dir=str(config.log_dir),
        max_file_size=config.log_max_file_size,
        backup_count=config.log_backup_count,
        enable_console=config.log_enable_console,
        enable_file=config.log_enable_file,
        enable_syslog=config.log_enable_syslog
    )
