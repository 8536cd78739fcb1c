"""
Ruuvi Collector - BLE telemetry collection for RuuviTag sensors.

Discovers a fixed set of configured RuuviTags over Bluetooth Low Energy,
keeps a notification subscription to each, decodes their payloads and
exports the readings to InfluxDB at a fixed interval.

Features:
- Device discovery and connection lifecycle with automatic recovery
- Fixed-layout payload decoding
- Drift-free periodic polling with bounded concurrency
- Batched InfluxDB export
- Performance monitoring and logging
- Configuration from environment variables and a JSON file
"""

__version__ = "1.0.0"
__description__ = "BLE telemetry collector for RuuviTag sensors"

from .utils.config import Config, ConfigurationError
from .utils.logging import ProductionLogger, PerformanceMonitor
from .ble.decoder import DecodeError, DecodedPayload, SensorReading, decode
from .ble.registry import DeviceRegistry, DeviceState
from .ble.discovery import DiscoveryManager
from .influxdb.client import InfluxDBSink
from .influxdb.exporter import ExportPipeline
from .service.scheduler import PollScheduler
from .service.daemon import CollectorDaemon

__all__ = [
    "Config",
    "ConfigurationError",
    "ProductionLogger",
    "PerformanceMonitor",
    "DecodeError",
    "DecodedPayload",
    "SensorReading",
    "decode",
    "DeviceRegistry",
    "DeviceState",
    "DiscoveryManager",
    "InfluxDBSink",
    "ExportPipeline",
    "PollScheduler",
    "CollectorDaemon",
]
