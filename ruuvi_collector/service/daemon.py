"""
Collector daemon.
Wires configuration, logging, BLE discovery, polling and export together and
runs them until SIGINT/SIGTERM.
"""

import asyncio
import signal
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from ..ble.discovery import DiscoveryManager
from ..ble.registry import DeviceRegistry
from ..ble.transport import BleakTransport, Transport
from ..influxdb.client import InfluxDBSink
from ..influxdb.exporter import ExportPipeline
from ..settings.loader import load_collector_config
from ..settings.schema import CollectorConfig
from ..utils.config import Config
from ..utils.logging import ComponentLogger, PerformanceMonitor, setup_logging
from .scheduler import PollScheduler


TransportFactory = Callable[[Config, ComponentLogger, PerformanceMonitor], Transport]
SinkFactory = Callable[[CollectorConfig, Config, ComponentLogger, PerformanceMonitor], InfluxDBSink]

# Time given to loops to exit on their own before they are cancelled
SHUTDOWN_GRACE = 5.0


@dataclass
class DaemonStats:
    """Daemon statistics container."""
    start_time: datetime
    uptime_seconds: int = 0
    startup_complete: bool = False
    status_reports: int = 0
    memory_usage_mb: Optional[float] = None
    cpu_usage_percent: Optional[float] = None


class CollectorDaemonError(Exception):
    """Base exception for daemon operations."""
    pass


class CollectorDaemon:
    """
    Long-running collector process.

    Startup order: configuration, logging, adapter check, sink connection,
    startup reconciliation. Then the poll loop, background reconciler and
    status loop run until shutdown is requested.
    """

    def __init__(self,
                 config: Optional[Config] = None,
                 collector_config: Optional[CollectorConfig] = None,
                 logger: Optional[ComponentLogger] = None,
                 performance_monitor: Optional[PerformanceMonitor] = None,
                 transport_factory: Optional[TransportFactory] = None,
                 sink_factory: Optional[SinkFactory] = None):
        """Initialize daemon. Missing collaborators are built in start()."""
        self.config = config
        self.collector_config = collector_config
        self.logger = logger
        self.performance_monitor = performance_monitor
        self._transport_factory = transport_factory or BleakTransport
        self._sink_factory = sink_factory or InfluxDBSink

        self.registry: Optional[DeviceRegistry] = None
        self.transport: Optional[Transport] = None
        self.sink: Optional[InfluxDBSink] = None
        self.discovery: Optional[DiscoveryManager] = None
        self.exporter: Optional[ExportPipeline] = None
        self.scheduler: Optional[PollScheduler] = None

        self._running = False
        self._stop_event = asyncio.Event()
        self._tasks: List[asyncio.Task] = []
        self._signals_installed: List[signal.Signals] = []
        self._stats = DaemonStats(start_time=datetime.now())

    def _component_logger(self, component: str) -> ComponentLogger:
        getter = getattr(self.logger, "get_component_logger", None)
        return getter(component) if getter else self.logger

    def _initialize_components(self):
        """
        Build every component.

        Raises:
            ConfigurationError: If either configuration layer is invalid
        """
        if self.config is None:
            self.config = Config()
        self.config.validate_configuration()

        if self.logger is None:
            self.logger = setup_logging(self.config)
        if self.performance_monitor is None:
            self.performance_monitor = PerformanceMonitor()

        if self.collector_config is None:
            self.collector_config = load_collector_config(self.config.collector_config_file)

        ble_logger = self._component_logger("ble")
        influx_logger = self._component_logger("influxdb")

        self.registry = DeviceRegistry(self.collector_config.tags, ble_logger, self.performance_monitor)
        self.transport = self._transport_factory(self.config, ble_logger, self.performance_monitor)
        self.sink = self._sink_factory(self.collector_config, self.config, influx_logger, self.performance_monitor)
        self.discovery = DiscoveryManager(
            self.registry, self.transport, self.config, ble_logger, self.performance_monitor
        )
        self.exporter = ExportPipeline(
            self.sink,
            self.collector_config.bucket,
            self.collector_config.measurement,
            influx_logger,
            self.performance_monitor
        )
        self.scheduler = PollScheduler(
            self.registry,
            self.transport,
            self.discovery,
            self.exporter,
            self.collector_config.interval,
            self.config,
            self.logger,
            self.performance_monitor
        )

        self.logger.info(
            f"Collector initialized: {len(self.registry)} devices, interval {self.collector_config.interval}s, "
            f"sink {self.collector_config.influx_url}"
        )

    def _setup_signal_handlers(self):
        """Set the stop event on SIGINT and SIGTERM."""
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self.request_stop, sig)
                self._signals_installed.append(sig)
            except (NotImplementedError, RuntimeError) as e:
                self.logger.warning(f"Could not install handler for {sig.name}: {e}")

    def _remove_signal_handlers(self):
        loop = asyncio.get_running_loop()
        for sig in self._signals_installed:
            loop.remove_signal_handler(sig)
        self._signals_installed.clear()

    def request_stop(self, sig: Optional[signal.Signals] = None):
        """Ask the daemon to shut down."""
        if sig is not None and self.logger:
            self.logger.info(f"Received {sig.name}, initiating graceful shutdown...")
        self._stop_event.set()

    async def start(self):
        """
        Start the collector and block until shutdown.

        Raises:
            ConfigurationError: If configuration is unreadable or invalid
            AdapterUnavailableError: If no Bluetooth adapter is usable
            CollectorDaemonError: If the daemon is already running
        """
        if self._running:
            raise CollectorDaemonError("Daemon is already running")

        self._initialize_components()
        self._running = True
        self._setup_signal_handlers()
        loop = asyncio.get_running_loop()

        try:
            self.logger.info("Starting Ruuvi collector...")
            await self.transport.ensure_adapter()

            if not await loop.run_in_executor(None, self.sink.connect):
                self.logger.warning("InfluxDB not reachable at startup, exports will fail until it is")

            all_subscribed = await self.discovery.run_until_all_subscribed(
                self._stop_event, self.config.discovery_startup_timeout
            )
            if self._stop_event.is_set():
                return
            if not all_subscribed:
                self.logger.warning("Starting poll loop with a partial device set")

            self._stats.startup_complete = True
            self._tasks = [
                asyncio.create_task(self.scheduler.run(self._stop_event), name="poll"),
                asyncio.create_task(self.discovery.run_background(self._stop_event), name="reconcile"),
                asyncio.create_task(self._status_loop(), name="status"),
            ]
            self.logger.info("Ruuvi collector started successfully")

            await self._wait_for_shutdown()

        finally:
            await self.stop()

    async def _wait_for_shutdown(self):
        """Wait for the stop event, or for a loop to die unexpectedly."""
        stop_task = asyncio.ensure_future(self._stop_event.wait())
        try:
            done, _ = await asyncio.wait(
                {stop_task, *self._tasks}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            stop_task.cancel()

        for task in done:
            if task is stop_task or task.cancelled():
                continue
            error = task.exception()
            if error is not None:
                self.logger.critical(f"{task.get_name()} loop failed: {error}")
            else:
                self.logger.error(f"{task.get_name()} loop exited unexpectedly")
        self._stop_event.set()

    async def stop(self):
        """Stop loops, disconnect devices and close the sink."""
        if not self._running:
            return

        self.logger.info("Stopping Ruuvi collector...")
        self._running = False
        self._stop_event.set()

        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=SHUTDOWN_GRACE)
            for task in pending:
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            self._tasks = []

        if self.discovery:
            await self.discovery.close_all()

        if self.sink:
            await asyncio.get_running_loop().run_in_executor(None, self.sink.close)

        self._remove_signal_handlers()
        self.logger.info("Ruuvi collector stopped")

    async def _status_loop(self):
        """Periodically log device states, statistics and resource usage."""
        interval = self.config.status_interval
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), interval)
                break
            except asyncio.TimeoutError:
                pass

            try:
                self.report_status()
            except Exception as e:
                self.logger.error(f"Status report failed: {e}")

    def report_status(self) -> Dict[str, Any]:
        """Log and return the current status."""
        self._stats.status_reports += 1
        self._stats.uptime_seconds = int((datetime.now() - self._stats.start_time).total_seconds())

        resources = self.performance_monitor.log_system_resources()
        self._stats.memory_usage_mb = resources.get('memory_rss_mb')
        self._stats.cpu_usage_percent = resources.get('cpu_percent')

        unavailable = self.registry.pending()
        for descriptor in unavailable:
            seen = descriptor.last_seen.isoformat() if descriptor.last_seen else "never seen"
            self.logger.warning(
                f"Device {descriptor.name} ({descriptor.hardware_address}) unavailable: "
                f"state={descriptor.state.value}, failures={descriptor.consecutive_failures}, "
                f"last seen {seen}, last error: {descriptor.last_error}"
            )

        status = self.get_status()
        self.logger.info(
            f"STATUS devices={status['devices']['states']} "
            f"poll={status['scheduler']} export={status['exporter']}"
        )
        return status

    def get_status(self) -> Dict[str, Any]:
        """Get current daemon status."""
        return {
            "running": self._running,
            "stats": asdict(self._stats),
            "devices": {
                "states": self.registry.get_summary() if self.registry else {},
                "unavailable": [d.name for d in self.registry.pending()] if self.registry else [],
                "detail": [d.to_dict() for d in self.registry] if self.registry else [],
            },
            "scheduler": self.scheduler.get_statistics() if self.scheduler else {},
            "exporter": self.exporter.get_statistics() if self.exporter else {},
            "sink": self.sink.get_statistics() if self.sink else {},
            "discovery": self.discovery.get_statistics() if self.discovery else {},
        }

    def get_statistics(self) -> DaemonStats:
        """Get daemon statistics."""
        return self._stats


async def run_daemon(config: Optional[Config] = None):
    """Run the collector until SIGINT/SIGTERM."""
    daemon = CollectorDaemon(config=config)
    await daemon.start()
