"""
Export pipeline from decoded readings to InfluxDB points.
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence

from influxdb_client import Point, WritePrecision

from .client import InfluxDBSink, SinkWriteError
from ..ble.decoder import SensorReading
from ..utils.logging import ComponentLogger, PerformanceMonitor


FLOAT_FIELDS = (
    "temperature",
    "humidity",
    "acceleration_x",
    "acceleration_y",
    "acceleration_z",
    "battery_voltage",
)
INT_FIELDS = (
    "pressure",
    "tx_power",
    "movement_counter",
    "measurement_sequence",
)


class ExportError(Exception):
    """Raised when a batch could not be delivered to the sink."""

    def __init__(self, message: str, batch_size: int = 0):
        self.batch_size = batch_size
        super().__init__(message)


def to_point(reading: SensorReading, measurement: str) -> Point:
    """
    Convert one reading to an InfluxDB point.

    Tags are the device name and hardware address; integer quantities stay
    integers so the line protocol carries them with the "i" suffix.
    """
    point = (
        Point(measurement)
        .tag("name", reading.source_name)
        .tag("address", reading.source_address)
    )
    for field_name in FLOAT_FIELDS:
        point = point.field(field_name, float(getattr(reading, field_name)))
    for field_name in INT_FIELDS:
        point = point.field(field_name, int(getattr(reading, field_name)))
    return point.time(reading.collected_at, WritePrecision.MS)


class ExportPipeline:
    """
    Delivers each tick's readings as one batched write.

    Features:
    - Point conversion with name and address tags
    - Blocking sink call off the event loop
    - Failure reporting without retry; the next batch starts fresh
    """

    def __init__(self, sink: InfluxDBSink, bucket: str, measurement: str,
                 logger: ComponentLogger, performance_monitor: PerformanceMonitor):
        """
        Initialize export pipeline.

        Args:
            sink: InfluxDB sink
            bucket: Target bucket
            measurement: Measurement name for all points
            logger: Logger instance
            performance_monitor: Performance monitoring instance
        """
        self.sink = sink
        self.bucket = bucket
        self.measurement = measurement
        self.logger = logger
        self.performance_monitor = performance_monitor

        self._batches_exported = 0
        self._batches_failed = 0
        self._points_exported = 0
        self._last_error: Optional[str] = None

    def to_points(self, readings: Sequence[SensorReading]) -> List[Point]:
        return [to_point(reading, self.measurement) for reading in readings]

    async def export(self, readings: Sequence[SensorReading]) -> int:
        """
        Write a batch of readings.

        Args:
            readings: Readings from one tick

        Returns:
            int: Number of points written (0 for an empty batch)

        Raises:
            ExportError: If the sink write fails; the batch is dropped
        """
        if not readings:
            self.logger.debug("Empty batch, nothing to export")
            return 0

        points = self.to_points(readings)
        loop = asyncio.get_running_loop()

        try:
            with self.performance_monitor.measure_time("export"):
                await loop.run_in_executor(None, self.sink.write, self.bucket, points)
        except SinkWriteError as e:
            self._batches_failed += 1
            self._last_error = str(e)
            self.performance_monitor.record_metric("export_failures", 1)
            self.logger.error(f"Export of {len(points)} points failed, batch dropped: {e}")
            raise ExportError(str(e), batch_size=len(points)) from e

        self._batches_exported += 1
        self._points_exported += len(points)
        self.logger.info(f"Exported {len(points)} readings to {self.bucket}/{self.measurement}")
        return len(points)

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "batches_exported": self._batches_exported,
            "batches_failed": self._batches_failed,
            "points_exported": self._points_exported,
            "last_error": self._last_error,
        }
