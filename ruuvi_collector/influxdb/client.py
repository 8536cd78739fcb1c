"""
InfluxDB sink for Ruuvi sensor readings.
Handles connection management, health checks, batch writes and statistics.
The client is blocking; callers on the event loop run it in an executor.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from influxdb_client import InfluxDBClient, Point
from influxdb_client.client.exceptions import InfluxDBError
from influxdb_client.client.write_api import SYNCHRONOUS
from influxdb_client.rest import ApiException

from ..settings.schema import CollectorConfig
from ..utils.config import Config
from ..utils.logging import ComponentLogger, PerformanceMonitor


@dataclass
class BatchStats:
    """Statistics for batch operations."""
    points_written: int = 0
    points_failed: int = 0
    batches_sent: int = 0
    batches_failed: int = 0
    last_write_time: Optional[datetime] = None
    total_write_time: float = 0.0


class SinkError(Exception):
    """Base exception for sink operations."""
    pass


class SinkWriteError(SinkError):
    """A batch write was rejected or did not complete."""
    pass


class InfluxDBSink:
    """
    Time-series sink on top of influxdb-client.

    Features:
    - Connection management with ping health check
    - Synchronous batch writes
    - Write statistics and performance metrics
    """

    def __init__(self, collector_config: CollectorConfig, config: Config,
                 logger: ComponentLogger, performance_monitor: PerformanceMonitor):
        """
        Initialize InfluxDB sink.

        Args:
            collector_config: Sink parameters from the configuration file
            config: Runtime configuration
            logger: Logger instance
            performance_monitor: Performance monitoring instance
        """
        self.logger = logger
        self.performance_monitor = performance_monitor

        self.url = collector_config.influx_url
        self.token = collector_config.token
        self.org = collector_config.org
        self.timeout = config.influxdb_timeout * 1000  # milliseconds
        self.verify_ssl = config.influxdb_verify_ssl
        self.enable_gzip = config.influxdb_enable_gzip

        self._client: Optional[InfluxDBClient] = None
        self._write_api = None
        self._is_healthy = False
        self._stats = BatchStats()
        self._connection_errors = 0
        self._last_health_check: Optional[datetime] = None

        self.logger.info(f"InfluxDBSink initialized for {self.url}")

    def connect(self) -> bool:
        """
        Create the client and check server health.

        Returns:
            bool: True if the server answered the ping. The client is kept
                either way, so later writes can still succeed.
        """
        if self._client is None:
            self._client = InfluxDBClient(
                url=self.url,
                token=self.token,
                org=self.org,
                timeout=self.timeout,
                verify_ssl=self.verify_ssl,
                enable_gzip=self.enable_gzip
            )
            self._write_api = self._client.write_api(write_options=SYNCHRONOUS)

        return self.check_health()

    def check_health(self) -> bool:
        """Ping the server."""
        if self._client is None:
            return False

        self._last_health_check = datetime.now(timezone.utc)
        try:
            self._is_healthy = bool(self._client.ping())
        except Exception as e:
            self.logger.warning(f"InfluxDB health check failed: {e}")
            self._is_healthy = False

        if self._is_healthy:
            self.logger.info(f"Connected to InfluxDB at {self.url}")
        else:
            self._connection_errors += 1
            self.logger.warning(f"InfluxDB at {self.url} is not reachable")
        return self._is_healthy

    def write(self, bucket: str, points: List[Point]):
        """
        Write one batch of points.

        Args:
            bucket: Target bucket
            points: Points to write

        Raises:
            SinkWriteError: If the write fails for any reason
        """
        if self._client is None:
            self.connect()

        start_time = time.monotonic()
        try:
            self._write_api.write(bucket=bucket, org=self.org, record=points)

        except (InfluxDBError, ApiException) as e:
            self._record_failure(len(points), time.monotonic() - start_time)
            raise SinkWriteError(f"InfluxDB rejected {len(points)} points: {e}") from e

        except Exception as e:
            self._record_failure(len(points), time.monotonic() - start_time)
            raise SinkWriteError(f"Unexpected error writing {len(points)} points: {e}") from e

        write_time = time.monotonic() - start_time
        self._stats.points_written += len(points)
        self._stats.batches_sent += 1
        self._stats.last_write_time = datetime.now(timezone.utc)
        self._stats.total_write_time += write_time
        self._is_healthy = True

        self.performance_monitor.log_influxdb_write(write_time, len(points), True)
        self.performance_monitor.record_metric("influxdb_points_written", len(points))
        self.logger.debug(f"Wrote {len(points)} points to {bucket} in {write_time:.3f}s")

    def _record_failure(self, point_count: int, duration: float):
        self._stats.points_failed += point_count
        self._stats.batches_failed += 1
        self._is_healthy = False
        self.performance_monitor.log_influxdb_write(duration, point_count, False)
        self.performance_monitor.record_metric("influxdb_write_errors", 1)

    def close(self):
        """Close the client and release resources."""
        if self._client is not None:
            try:
                self._client.close()
            except Exception as e:
                self.logger.warning(f"Error closing InfluxDB client: {e}")
            self._client = None
            self._write_api = None
        self._is_healthy = False
        self.logger.info("Disconnected from InfluxDB")

    @property
    def is_healthy(self) -> bool:
        return self._is_healthy

    def get_statistics(self) -> Dict[str, Any]:
        """
        Get sink statistics.

        Returns:
            Dict[str, Any]: Write counts, timings and health
        """
        return {
            "is_healthy": self._is_healthy,
            "points_written": self._stats.points_written,
            "points_failed": self._stats.points_failed,
            "batches_sent": self._stats.batches_sent,
            "batches_failed": self._stats.batches_failed,
            "last_write_time": self._stats.last_write_time,
            "total_write_time": self._stats.total_write_time,
            "average_write_time": (
                self._stats.total_write_time / self._stats.batches_sent
                if self._stats.batches_sent > 0 else 0
            ),
            "connection_errors": self._connection_errors,
            "last_health_check": self._last_health_check
        }
