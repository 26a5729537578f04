"""
Configuration management for the ThermSmart tools.
Loads configuration from environment variables with validation and defaults.
"""

import logging
import os
from pathlib import Path
from typing import List, Optional, Set, Union

from dotenv import load_dotenv

from ..ble.identity import normalize_addresses


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class Config:
    """
    Configuration manager that loads settings from environment variables.
    Provides validation and type conversion for configuration values.
    """

    def __init__(self, env_file: Optional[str] = None):
        """
        Initialize configuration manager.

        Args:
            env_file: Path to .env file (defaults to .env in the working directory)
        """
        self.logger = logging.getLogger(__name__)

        if env_file is None:
            env_file = Path.cwd() / ".env"

        if Path(env_file).exists():
            load_dotenv(env_file)
            self.logger.debug(f"Loaded configuration from {env_file}")
        else:
            self.logger.debug(f"Environment file {env_file} not found, using system environment")

    def get_str(self, key: str, default: Optional[str] = None) -> str:
        """Get string configuration value."""
        value = os.getenv(key, default)
        if value is None:
            raise ConfigurationError(f"Required configuration key '{key}' not found")
        return value

    def get_int(self, key: str, default: Optional[int] = None) -> int:
        """Get integer configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default

        try:
            return int(value)
        except ValueError:
            raise ConfigurationError(f"Configuration key '{key}' must be an integer, got '{value}'")

    def get_float(self, key: str, default: Optional[float] = None) -> float:
        """Get float configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default

        try:
            return float(value)
        except ValueError:
            raise ConfigurationError(f"Configuration key '{key}' must be a float, got '{value}'")

    def get_bool(self, key: str, default: Optional[bool] = None) -> bool:
        """Get boolean configuration value."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return default

        return value.lower() in ('true', '1', 'yes', 'on', 'enabled')

    def get_path(self, key: str, default: Optional[Union[str, Path]] = None) -> Path:
        """Get path configuration value; relative paths resolve against the working directory."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            value = str(default)

        path = Path(value)
        if not path.is_absolute():
            path = Path.cwd() / path
        return path

    def get_list(self, key: str, default: Optional[List[str]] = None) -> List[str]:
        """Get comma separated configuration value; blank items are dropped."""
        value = os.getenv(key)
        if value is None:
            if default is None:
                raise ConfigurationError(f"Required configuration key '{key}' not found")
            return list(default)

        return [item.strip() for item in value.split(",") if item.strip()]

    # BLE Configuration
    @property
    def ble_adapter(self) -> str:
        return self.get_str("BLE_ADAPTER", "auto")

    @property
    def ble_scan_duration(self) -> float:
        return self.get_float("BLE_SCAN_DURATION", 10.0)

    @property
    def ble_scan_idle_interval(self) -> float:
        return self.get_float("BLE_SCAN_IDLE_INTERVAL", 120.0)

    @property
    def ble_addresses(self) -> Optional[Set[str]]:
        """Normalized sensor allowlist, or None to accept every sensor."""
        addresses = self.get_list("BLE_ADDRESSES", [])
        return normalize_addresses(addresses) if addresses else None

    @property
    def ble_power_on_timeout(self) -> float:
        return self.get_float("BLE_POWER_ON_TIMEOUT", 5.0)

    @property
    def ble_connect_timeout(self) -> float:
        return self.get_float("BLE_CONNECT_TIMEOUT", 20.0)

    @property
    def ble_command_timeout(self) -> float:
        return self.get_float("BLE_COMMAND_TIMEOUT", 10.0)

    @property
    def ble_retry_attempts(self) -> int:
        return self.get_int("BLE_RETRY_ATTEMPTS", 3)

    @property
    def ble_retry_delay(self) -> float:
        return self.get_float("BLE_RETRY_DELAY", 2.0)

    # Logging Configuration
    @property
    def log_level(self) -> str:
        return self.get_str("LOG_LEVEL", "INFO").upper()

    @property
    def log_dir(self) -> Path:
        return self.get_path("LOG_DIR", "./logs")

    @property
    def log_max_file_size(self) -> int:
        return self.get_int("LOG_MAX_FILE_SIZE", 10 * 1024 * 1024)  # 10MB

    @property
    def log_backup_count(self) -> int:
        return self.get_int("LOG_BACKUP_COUNT", 5)

    @property
    def log_enable_console(self) -> bool:
        return self.get_bool("LOG_ENABLE_CONSOLE", True)

    @property
    def log_enable_file(self) -> bool:
        return self.get_bool("LOG_ENABLE_FILE", True)

    @property
    def log_enable_syslog(self) -> bool:
        return self.get_bool("LOG_ENABLE_SYSLOG", False)

    def validate_configuration(self) -> bool:
        """
        Validate all configuration values.

        Returns:
            bool: True if configuration is valid

        Raises:
            ConfigurationError: If configuration is invalid
        """
        errors = []

        try:
            if self.ble_scan_duration <= 0:
                errors.append("BLE_SCAN_DURATION must be positive")
            if self.ble_scan_idle_interval < 0:
                errors.append("BLE_SCAN_IDLE_INTERVAL cannot be negative")
            if self.ble_power_on_timeout <= 0:
                errors.append("BLE_POWER_ON_TIMEOUT must be positive")
            if self.ble_connect_timeout <= 0:
                errors.append("BLE_CONNECT_TIMEOUT must be positive")
            if self.ble_command_timeout <= 0:
                errors.append("BLE_COMMAND_TIMEOUT must be positive")
            if self.ble_retry_attempts < 1:
                errors.append("BLE_RETRY_ATTEMPTS must be at least 1")
            if self.ble_retry_delay < 0:
                errors.append("BLE_RETRY_DELAY cannot be negative")
        except ConfigurationError as e:
            errors.append(str(e))

        try:
            for address in self.ble_addresses or ():
                if len(address) != 12 or any(c not in "0123456789abcdef" for c in address):
                    errors.append(f"BLE_ADDRESSES contains an invalid address '{address}'")
        except ConfigurationError as e:
            errors.append(str(e))

        try:
            valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
            if self.log_level not in valid_levels:
                errors.append(f"LOG_LEVEL must be one of {valid_levels}")
        except ConfigurationError as e:
            errors.append(str(e))

        if errors:
            raise ConfigurationError("Configuration validation failed:\n" + "\n".join(f"- {error}" for error in errors))

        return True

    def get_summary(self) -> dict:
        """Get configuration summary for logging/debugging."""
        addresses = self.ble_addresses
        return {
            'ble': {
                'adapter': self.ble_adapter,
                'scan_duration': self.ble_scan_duration,
                'scan_idle_interval': self.ble_scan_idle_interval,
                'addresses': sorted(addresses) if addresses else None,
                'power_on_timeout': self.ble_power_on_timeout,
                'connect_timeout': self.ble_connect_timeout,
                'command_timeout': self.ble_command_timeout,
                'retry_attempts': self.ble_retry_attempts,
                'retry_delay': self.ble_retry_delay,
            },
            'logging': {
                'level': self.log_level,
                'dir': str(self.log_dir),
                'enable_console': self.log_enable_console,
                'enable_file': self.log_enable_file,
                'enable_syslog': self.log_enable_syslog,
            },
        }


# Global configuration instance
config = Config()
