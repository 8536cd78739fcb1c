"""
Unit tests for logging setup and performance monitoring.
"""

import logging
from unittest.mock import Mock

import pytest

from ruuvi_collector.utils.logging import (
    LOGGER_ROOT,
    PERFORMANCE_LOGGER,
    ComponentLogger,
    PerformanceMonitor,
    ProductionLogger,
    setup_logging,
)


@pytest.fixture
def restore_logging():
    """Close and detach handlers a ProductionLogger test installed."""
    names = [None, f"{LOGGER_ROOT}.ble", f"{LOGGER_ROOT}.influxdb", PERFORMANCE_LOGGER]
    before = {name: (logging.getLogger(name).handlers[:], logging.getLogger(name).level) for name in names}
    yield
    for name, (handlers, level) in before.items():
        logger = logging.getLogger(name)
        for handler in logger.handlers[:]:
            if handler not in handlers:
                logger.removeHandler(handler)
                handler.close()
        logger.setLevel(level)


class TestProductionLogger:

    def test_creates_log_files(self, tmp_path, restore_logging):
        logger = ProductionLogger(log_dir=str(tmp_path / "logs"), enable_console=False)

        logger.info("collector starting")
        logger.get_component_logger("ble").warning("adapter busy")

        log_dir = tmp_path / "logs"
        for filename in ("ruuvi_collector.log", "ble.log", "influxdb.log", "performance.log"):
            assert (log_dir / filename).exists()
        for handler in logging.getLogger().handlers:
            handler.flush()
        assert "collector starting" in (log_dir / "ruuvi_collector.log").read_text()
        assert "adapter busy" in (log_dir / "ble.log").read_text()

    def test_console_handler_optional(self, tmp_path, restore_logging):
        ProductionLogger(log_dir=str(tmp_path), enable_console=False)
        assert len(logging.getLogger().handlers) == 1

        ProductionLogger(log_dir=str(tmp_path), enable_console=True)
        assert len(logging.getLogger().handlers) == 2

    def test_component_logger_name(self, tmp_path, restore_logging):
        logger = ProductionLogger(log_dir=str(tmp_path), enable_console=False)
        assert logger.get_component_logger("influxdb").name == f"{LOGGER_ROOT}.influxdb"

    def test_setup_logging_from_config(self, tmp_path, restore_logging, mock_config):
        mock_config.log_dir = tmp_path / "from_config"

        logger = setup_logging(mock_config)

        assert isinstance(logger, ProductionLogger)
        assert logging.getLogger().level == logging.DEBUG
        assert (tmp_path / "from_config" / "ruuvi_collector.log").exists()


class TestComponentLogger:

    def test_forwards_to_named_logger(self, caplog):
        logger = ComponentLogger(f"{LOGGER_ROOT}.test")
        with caplog.at_level(logging.INFO, logger=f"{LOGGER_ROOT}.test"):
            logger.info("hello")
            logger.debug("hidden")
        assert [record.message for record in caplog.records] == ["hello"]


class TestPerformanceMonitor:

    @pytest.fixture
    def monitor(self):
        return PerformanceMonitor(logger=Mock(), history_limit=3)

    def test_record_metric_counts(self, monitor):
        monitor.record_metric("read_timeouts", 1)
        monitor.record_metric("read_timeouts", 1)

        assert monitor.counters["read_timeouts"] == 2
        assert len(monitor.get_metrics()["read_timeouts"]) == 2

    def test_history_bounded(self, monitor):
        for value in range(5):
            monitor.record_metric("tick_duration", value)

        history = monitor.get_metrics()["tick_duration"]
        assert [entry["value"] for entry in history] == [2, 3, 4]
        assert monitor.counters["tick_duration"] == 10

    def test_measure_time(self, monitor):
        with monitor.measure_time("export"):
            pass
        assert len(monitor.get_metrics()["export_duration"]) == 1

    def test_measure_time_records_on_error(self, monitor):
        with pytest.raises(RuntimeError):
            with monitor.measure_time("export"):
                raise RuntimeError("boom")
        assert "export_duration" in monitor.counters

    def test_performance_summary(self, monitor):
        monitor.log_ble_scan(1.0, 2, True)
        monitor.log_ble_scan(3.0, 4, True)
        monitor.log_ble_scan(5.0, 0, False)
        monitor.log_influxdb_write(0.1, 2, True)

        summary = monitor.get_performance_summary()

        assert summary['ble_scans']['total'] == 3
        assert summary['ble_scans']['successful'] == 2
        assert summary['ble_scans']['avg_duration'] == 2.0
        assert summary['influxdb_writes']['total_points_written'] == 2

    def test_system_resources(self, monitor):
        resources = monitor.log_system_resources()
        assert resources['memory_rss_mb'] > 0
        assert 'cpu_percent' in resources
