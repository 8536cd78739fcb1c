"""
Pytest configuration and shared fixtures for Ruuvi collector tests.
Provides mock configuration, logger and performance monitor, plus the
in-memory transport and sink.
"""

import pytest
from pathlib import Path
from unittest.mock import Mock, MagicMock

from ruuvi_collector.ble.registry import DeviceRegistry
from ruuvi_collector.settings.schema import CollectorConfig
from ruuvi_collector.utils.config import Config
from ruuvi_collector.utils.logging import ProductionLogger, PerformanceMonitor

from tests.mocks.mock_transport import FakeSink, MockTransport
from tests.utils.test_helpers import DEVICES


@pytest.fixture
def mock_config():
    """Create a mock runtime configuration with fast timings."""
    config = Mock(spec=Config)

    # BLE configuration
    config.ble_adapter = "auto"
    config.ble_scan_duration = 0.1
    config.ble_connect_timeout = 1.0
    config.ble_read_timeout = 0.2
    config.ble_retry_delay = 0.01
    config.ble_retry_backoff_max = 0.05
    config.ble_adapter_retry_attempts = 2

    # Polling and discovery
    config.poll_max_concurrency = 4
    config.discovery_startup_timeout = 1.0
    config.reconcile_interval = 0.05
    config.status_interval = 60

    # InfluxDB configuration
    config.influxdb_timeout = 5
    config.influxdb_verify_ssl = True
    config.influxdb_enable_gzip = False

    # Logging configuration
    config.log_level = "DEBUG"
    config.log_dir = Path("./test_logs")
    config.log_max_file_size = 1024 * 1024  # 1MB
    config.log_backup_count = 2
    config.log_enable_console = False
    config.log_enable_syslog = False

    return config


@pytest.fixture
def mock_logger():
    """Create a mock logger for testing."""
    logger = Mock(spec=ProductionLogger)
    logger.debug = Mock()
    logger.info = Mock()
    logger.warning = Mock()
    logger.error = Mock()
    logger.critical = Mock()
    logger.get_component_logger = Mock(return_value=logger)
    return logger


@pytest.fixture
def mock_performance_monitor():
    """Create a mock performance monitor for testing."""
    monitor = Mock(spec=PerformanceMonitor)
    monitor.record_metric = Mock()
    monitor.log_ble_scan = Mock()
    monitor.log_influxdb_write = Mock()
    monitor.log_system_resources = Mock(return_value={})
    monitor.get_metrics = Mock(return_value={})

    # measure_time is used as a context manager
    mock_context = MagicMock()
    mock_context.__enter__ = Mock(return_value=mock_context)
    mock_context.__exit__ = Mock(return_value=None)
    monitor.measure_time = Mock(return_value=mock_context)

    return monitor


@pytest.fixture
def collector_config():
    """A valid collector configuration with two devices."""
    return CollectorConfig(
        bucket="ruuvi",
        measurement="ruuvi_measurements",
        host="http://localhost:8086",
        org="home",
        token="test-token",
        tags=dict(DEVICES),
        interval=0.1
    )


@pytest.fixture
def registry(mock_logger, mock_performance_monitor):
    """Registry over the two standard test devices."""
    return DeviceRegistry(DEVICES, mock_logger, mock_performance_monitor)


@pytest.fixture
def transport():
    """In-memory transport with no devices visible."""
    return MockTransport()


@pytest.fixture
def fake_sink():
    return FakeSink()


def pytest_collection_modifyitems(config, items):
    """Add markers based on test location."""
    for item in items:
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
