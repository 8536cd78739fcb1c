"""
Logging and performance monitoring for the Ruuvi collector.
Sets up console, rotating file and syslog handlers, per-component log files,
and collects timing and resource metrics.
"""

import logging
import logging.handlers
import sys
import time
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import colorlog
import psutil


LOGGER_ROOT = "ruuvi_collector"
COMPONENTS = {
    "ble": ("ble.log", "BLE"),
    "influxdb": ("influxdb.log", "InfluxDB"),
}
PERFORMANCE_LOGGER = f"{LOGGER_ROOT}.performance"

# Entries kept per metric history
METRIC_HISTORY_LIMIT = 1000


class ComponentLogger:
    """Thin wrapper around a named stdlib logger."""

    def __init__(self, name: str = LOGGER_ROOT):
        self.name = name
        self._logger = logging.getLogger(name)

    def debug(self, message: str, *args, **kwargs):
        self._logger.debug(message, *args, **kwargs)

    def info(self, message: str, *args, **kwargs):
        self._logger.info(message, *args, **kwargs)

    def warning(self, message: str, *args, **kwargs):
        self._logger.warning(message, *args, **kwargs)

    def error(self, message: str, *args, **kwargs):
        self._logger.error(message, *args, **kwargs)

    def critical(self, message: str, *args, **kwargs):
        self._logger.critical(message, *args, **kwargs)


class ProductionLogger(ComponentLogger):
    """
    Logging setup for production deployment: colored console output, rotating
    log files, optional syslog and one file per collector component.
    """

    def __init__(self,
                 app_name: str = "ruuvi_collector",
                 log_dir: str = "./logs",
                 log_level: str = "INFO",
                 max_file_size: int = 10 * 1024 * 1024,  # 10MB
                 backup_count: int = 5,
                 enable_console: bool = True,
                 enable_syslog: bool = False):
        super().__init__(LOGGER_ROOT)

        self.app_name = app_name
        self.log_dir = Path(log_dir)
        self.log_level = getattr(logging, log_level.upper())
        self.max_file_size = max_file_size
        self.backup_count = backup_count
        self.enable_console = enable_console
        self.enable_syslog = enable_syslog

        self.log_dir.mkdir(parents=True, exist_ok=True)

        self._setup_root_logger()
        self._setup_component_loggers()

    def _rotating_handler(self, filename: str) -> logging.Handler:
        return logging.handlers.RotatingFileHandler(
            self.log_dir / filename,
            maxBytes=self.max_file_size,
            backupCount=self.backup_count
        )

    def _setup_root_logger(self):
        """Configure root logger with console, file and syslog handlers."""
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

        file_handler = self._rotating_handler(f"{self.app_name}.log")
        file_handler.setLevel(self.log_level)
        file_handler.setFormatter(logging.Formatter(
            '%(asctime)s [%(levelname)8s] %(name)s [%(process)d] %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        ))
        root_logger.addHandler(file_handler)

        # Warnings and errors only, for systemd/journald
        if self.enable_syslog:
            try:
                syslog_handler = logging.handlers.SysLogHandler(address='/dev/log')
                syslog_handler.setLevel(logging.WARNING)
                syslog_handler.setFormatter(logging.Formatter(
                    f'{self.app_name}[%(process)d]: %(levelname)s - %(message)s'
                ))
                root_logger.addHandler(syslog_handler)
            except OSError as e:
                root_logger.warning(f"Could not set up syslog handler: {e}")

    def _setup_component_loggers(self):
        """Give each component its own rotating log file."""
        for component, (filename, label) in COMPONENTS.items():
            component_logger = logging.getLogger(f"{LOGGER_ROOT}.{component}")
            component_logger.handlers.clear()
            handler = self._rotating_handler(filename)
            handler.setFormatter(logging.Formatter(f'%(asctime)s [%(levelname)s] {label}: %(message)s'))
            component_logger.addHandler(handler)

        perf_logger = logging.getLogger(PERFORMANCE_LOGGER)
        perf_logger.handlers.clear()
        perf_handler = self._rotating_handler("performance.log")
        perf_handler.setFormatter(logging.Formatter('%(asctime)s PERF: %(message)s'))
        perf_logger.addHandler(perf_handler)

    def get_component_logger(self, component: str) -> ComponentLogger:
        """Logger for one component, e.g. "ble" or "influxdb"."""
        return ComponentLogger(f"{LOGGER_ROOT}.{component}")


class PerformanceMonitor:
    """
    Metrics collection for production debugging: named counters and timings,
    BLE scan and InfluxDB write histories, process resources.
    """

    def __init__(self, logger: Optional[logging.Logger] = None,
                 history_limit: int = METRIC_HISTORY_LIMIT):
        self.logger = logger or logging.getLogger(PERFORMANCE_LOGGER)
        self.history_limit = history_limit
        self.metrics: Dict[str, List[dict]] = {
            'ble_scan_times': [],
            'influxdb_write_times': [],
            'memory_usage': [],
            'cpu_usage': []
        }
        self.counters: Dict[str, float] = {}
        self.start_time = datetime.now()
        self._process = psutil.Process()

    def _append(self, metric_name: str, entry: dict):
        history = self.metrics.setdefault(metric_name, [])
        history.append(entry)
        if len(history) > self.history_limit:
            del history[:len(history) - self.history_limit]

    def log_ble_scan(self, duration: float, devices_found: int, success: bool):
        """Log BLE scan performance metrics."""
        self._append('ble_scan_times', {
            'duration': duration,
            'devices_found': devices_found,
            'success': success,
            'timestamp': datetime.now()
        })

        self.logger.info(
            f"BLE_SCAN duration={duration:.2f}s devices={devices_found} success={success}"
        )

    def log_influxdb_write(self, duration: float, points_written: int, success: bool):
        """Log InfluxDB write performance metrics."""
        self._append('influxdb_write_times', {
            'duration': duration,
            'points_written': points_written,
            'success': success,
            'timestamp': datetime.now()
        })

        self.logger.info(
            f"INFLUXDB_WRITE duration={duration:.2f}s points={points_written} success={success}"
        )

    def log_system_resources(self) -> dict:
        """Log current process resource usage."""
        try:
            memory_info = self._process.memory_info()
            cpu_percent = self._process.cpu_percent()
        except psutil.Error as e:
            self.logger.error(f"Failed to read system resources: {e}")
            return {}

        now = datetime.now()
        self._append('memory_usage', {'rss': memory_info.rss, 'vms': memory_info.vms, 'timestamp': now})
        self._append('cpu_usage', {'cpu_percent': cpu_percent, 'timestamp': now})

        self.logger.info(
            f"RESOURCES memory_rss={memory_info.rss/1024/1024:.1f}MB "
            f"memory_vms={memory_info.vms/1024/1024:.1f}MB cpu={cpu_percent:.1f}%"
        )
        return {
            'memory_rss_mb': memory_info.rss / 1024 / 1024,
            'cpu_percent': cpu_percent,
        }

    def get_performance_summary(self) -> dict:
        """Summarise scans, writes and counters."""
        scans = self.metrics['ble_scan_times']
        writes = self.metrics['influxdb_write_times']
        successful_scans = [scan for scan in scans if scan['success']]
        successful_writes = [write for write in writes if write['success']]

        summary = {
            'uptime_seconds': (datetime.now() - self.start_time).total_seconds(),
            'ble_scans': {
                'total': len(scans),
                'successful': len(successful_scans),
                'avg_duration': 0,
                'avg_devices_found': 0
            },
            'influxdb_writes': {
                'total': len(writes),
                'successful': len(successful_writes),
                'avg_duration': 0,
                'total_points_written': sum(write['points_written'] for write in successful_writes)
            },
            'counters': dict(self.counters),
        }

        if successful_scans:
            summary['ble_scans']['avg_duration'] = sum(s['duration'] for s in successful_scans) / len(successful_scans)
            summary['ble_scans']['avg_devices_found'] = sum(s['devices_found'] for s in successful_scans) / len(successful_scans)

        if successful_writes:
            summary['influxdb_writes']['avg_duration'] = sum(w['duration'] for w in successful_writes) / len(successful_writes)

        return summary

    def record_metric(self, metric_name: str, value: float):
        """Record a metric value and add it to the running total."""
        self._append(metric_name, {'value': value, 'timestamp': datetime.now()})
        self.counters[metric_name] = self.counters.get(metric_name, 0) + value
        self.logger.debug(f"METRIC {metric_name}={value}")

    @contextmanager
    def measure_time(self, operation_name: str) -> Iterator[None]:
        """Context manager for measuring operation time."""
        start_time = time.monotonic()
        try:
            yield
        finally:
            duration = time.monotonic() - start_time
            self.record_metric(f"{operation_name}_duration", duration)
            self.logger.debug(f"TIMING {operation_name}={duration:.3f}s")

    def get_metrics(self) -> dict:
        """Get all recorded metrics."""
        return self.metrics.copy()


def setup_logging(config) -> ProductionLogger:
    """
    Set up logging from runtime configuration.

    Args:
        config: Config instance

    Returns:
        ProductionLogger instance
    """
    return ProductionLogger(
        log_level=config.log_level,
        log_dir=str(config.log_dir),
        max_file_size=config.log_max_file_size,
        backup_count=config.log_backup_count,
        enable_console=config.log_enable_console,
        enable_syslog=config.log_enable_syslog
    )
