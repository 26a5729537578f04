"""
Pytest configuration and shared fixtures for ThermSmart tests.
Provides common test fixtures, mock objects, and test utilities.
"""

import pytest
from pathlib import Path
from unittest.mock import Mock, MagicMock

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from thermsmart.utils.config import Config
from thermsmart.utils.logging import PerformanceMonitor
from tests.fixtures.advertisements import AdvertisementFixtures
from tests.mocks.mock_radio import FakeRadioAdapter


@pytest.fixture
def mock_config():
    """Create a mock configuration for testing."""
    config = Mock(spec=Config)

    config.ble_adapter = "auto"
    config.ble_scan_duration = 0.2
    config.ble_scan_idle_interval = 0.0
    config.ble_addresses = None
    config.ble_power_on_timeout = 0.5
    config.ble_connect_timeout = 1.0
    config.ble_command_timeout = 0.5
    config.ble_retry_attempts = 2
    config.ble_retry_delay = 0.0

    config.log_level = "DEBUG"
    config.log_dir = Path("./test_logs")
    config.log_max_file_size = 1024 * 1024  # 1MB
    config.log_backup_count = 2
    config.log_enable_console = False
    config.log_enable_file = False
    config.log_enable_syslog = False

    return config


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing."""
    logger = Mock()
    logger.debug = Mock()
    logger.info = Mock()
    logger.warning = Mock()
    logger.error = Mock()
    return logger


@pytest.fixture
def mock_performance_monitor():
    """Create a mock performance monitor for testing."""
    monitor = Mock(spec=PerformanceMonitor)
    monitor.record_metric = Mock()
    monitor.log_ble_scan = Mock()

    mock_context = MagicMock()
    mock_context.__enter__ = Mock(return_value=mock_context)
    mock_context.__exit__ = Mock(return_value=None)
    monitor.measure_time.return_value = mock_context

    return monitor


@pytest.fixture
def sensor_peripheral():
    """Advertising sensor at the default fixture address."""
    return AdvertisementFixtures.peripheral()


@pytest.fixture
def fake_radio(sensor_peripheral, mock_logger):
    """Powered-on fake radio that knows one sensor."""
    return FakeRadioAdapter([sensor_peripheral], logger=mock_logger)


@pytest.fixture
def responsive_radio(fake_radio):
    """Fake radio whose sensor answers time and temperature commands."""
    fake_radio.responders[0xD1] = [AdvertisementFixtures.time_response()]
    fake_radio.responders[0xD2] = [AdvertisementFixtures.temperature_response()]
    return fake_radio


@pytest.fixture
def temp_test_dir(tmp_path):
    """Create a temporary directory for test files."""
    test_dir = tmp_path / "thermsmart_tests"
    test_dir.mkdir()
    return test_dir


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
    config.addinivalue_line(
        "markers", "requires_bluetooth: mark test as requiring Bluetooth hardware"
    )


def pytest_collection_modifyitems(config, items):
    """Add markers based on test location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
