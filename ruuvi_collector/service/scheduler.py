"""
Fixed-interval poll scheduler.
Collects one reading from every subscribed device per tick and hands the
batch to the export pipeline.
"""

import asyncio
from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Optional

from ..ble.decoder import DecodeError, SensorReading, decode
from ..ble.discovery import DiscoveryManager
from ..ble.registry import DeviceDescriptor, DeviceRegistry
from ..ble.transport import (
    DisconnectedError,
    NotificationTimeoutError,
    Transport,
    TransportError,
)
from ..influxdb.exporter import ExportError, ExportPipeline
from ..utils.config import Config
from ..utils.logging import ComponentLogger, PerformanceMonitor


# Extra time allowed on top of the transport's own read timeout
READ_TIMEOUT_GRACE = 1.0


@dataclass
class PollStats:
    """Counters for the poll loop."""
    ticks: int = 0
    ticks_cancelled: int = 0
    reanchors: int = 0
    readings: int = 0
    read_timeouts: int = 0
    read_errors: int = 0
    decode_errors: int = 0
    disconnects: int = 0
    exports_failed: int = 0
    last_tick_duration: float = 0.0
    last_batch_size: int = 0


class PollScheduler:
    """
    Periodic poll/export loop.

    Deadlines are anchored to the loop start on the event loop's monotonic
    clock, so a slow tick shortens the following sleep instead of shifting
    every later tick.
    """

    def __init__(self, registry: DeviceRegistry, transport: Transport,
                 discovery: DiscoveryManager, exporter: ExportPipeline,
                 interval: float, config: Config,
                 logger: ComponentLogger, performance_monitor: PerformanceMonitor):
        """
        Initialize poll scheduler.

        Args:
            registry: Registry of configured devices
            transport: BLE transport
            discovery: Discovery manager, notified of lost links
            exporter: Export pipeline
            interval: Poll period in seconds
            config: Runtime configuration
            logger: Logger instance
            performance_monitor: Performance monitoring instance
        """
        if interval <= 0:
            raise ValueError(f"Poll interval must be positive, got {interval}")

        self.registry = registry
        self.transport = transport
        self.discovery = discovery
        self.exporter = exporter
        self.interval = interval
        self.read_timeout = config.ble_read_timeout
        self.logger = logger
        self.performance_monitor = performance_monitor

        self._semaphore = asyncio.Semaphore(config.poll_max_concurrency)
        self._stats = PollStats()

        self.logger.info(
            f"PollScheduler initialized: interval={interval}s, read_timeout={self.read_timeout}s, "
            f"max_concurrency={config.poll_max_concurrency}"
        )

    async def tick(self) -> List[SensorReading]:
        """
        Read every subscribed device once.

        Returns:
            List[SensorReading]: Successful readings; failed devices are left out
        """
        targets = self.registry.subscribed()
        if not targets:
            self.logger.debug("No subscribed devices this tick")
            return []

        results = await asyncio.gather(*(self._read_device(d) for d in targets))
        return [reading for reading in results if reading is not None]

    async def _read_device(self, descriptor: DeviceDescriptor) -> Optional[SensorReading]:
        async with self._semaphore:
            connection = descriptor.connection
            if connection is None:
                return None

            try:
                raw = await asyncio.wait_for(
                    self.transport.await_notification(connection, self.read_timeout),
                    self.read_timeout + READ_TIMEOUT_GRACE
                )
            except (NotificationTimeoutError, asyncio.TimeoutError):
                self._stats.read_timeouts += 1
                self.performance_monitor.record_metric("read_timeouts", 1)
                self.logger.warning(f"No data from {descriptor.name} within {self.read_timeout}s")
                return None
            except DisconnectedError as e:
                self._stats.disconnects += 1
                self.logger.warning(f"{descriptor.name} disconnected: {e}")
                await self.discovery.report_failure(descriptor.name, e)
                return None
            except TransportError as e:
                self._stats.read_errors += 1
                self.performance_monitor.record_metric("read_errors", 1)
                self.logger.warning(f"Read from {descriptor.name} failed: {e}")
                return None
            except Exception as e:
                self._stats.read_errors += 1
                self.performance_monitor.record_metric("read_errors", 1)
                self.logger.error(f"Unexpected error reading {descriptor.name}: {e}")
                return None

        try:
            payload = decode(raw)
        except DecodeError as e:
            self._stats.decode_errors += 1
            self.performance_monitor.record_metric("decode_errors", 1)
            self.logger.warning(f"Dropping payload from {descriptor.name}: {e}")
            return None

        return SensorReading.from_payload(descriptor.name, descriptor.hardware_address, payload)

    async def run(self, stop_event: asyncio.Event):
        """
        Tick until stop_event is set. The first tick runs immediately.

        Args:
            stop_event: Shutdown signal; interrupts the sleep and cancels an
                in-flight tick, whose partial batch is discarded
        """
        loop = asyncio.get_running_loop()
        start = loop.time()
        k = 0

        self.logger.info(f"Poll loop started with {len(self.registry.subscribed())} subscribed devices")

        while not stop_event.is_set():
            deadline = start + k * self.interval
            now = loop.time()

            if now - deadline > self.interval:
                self._stats.reanchors += 1
                self.logger.warning(
                    f"Poll loop {now - deadline:.1f}s behind schedule, re-anchoring"
                )
                start, k, deadline = now, 0, now

            remaining = deadline - now
            if remaining > 0 and await self._wait_for_stop(stop_event, remaining):
                break

            readings = await self._run_tick(stop_event)
            if readings is None:
                break

            try:
                await self.exporter.export(readings)
            except ExportError:
                self._stats.exports_failed += 1

            k += 1

        self.logger.info("Poll loop stopped")

    async def _run_tick(self, stop_event: asyncio.Event) -> Optional[List[SensorReading]]:
        """Run one tick raced against shutdown. None if the tick was cancelled."""
        loop = asyncio.get_running_loop()
        started = loop.time()

        tick_task = asyncio.ensure_future(self.tick())
        stop_task = asyncio.ensure_future(stop_event.wait())
        try:
            await asyncio.wait({tick_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()

        if not tick_task.done():
            tick_task.cancel()
            try:
                await tick_task
            except asyncio.CancelledError:
                pass
            self._stats.ticks_cancelled += 1
            self.logger.info("In-flight tick cancelled by shutdown")
            return None

        self._stats.ticks += 1
        self._stats.last_tick_duration = loop.time() - started
        self.performance_monitor.record_metric("tick_duration", self._stats.last_tick_duration)

        try:
            readings = tick_task.result()
        except Exception as e:
            self.logger.error(f"Tick failed: {e}")
            readings = []

        self._stats.readings += len(readings)
        self._stats.last_batch_size = len(readings)
        return readings

    @staticmethod
    async def _wait_for_stop(stop_event: asyncio.Event, seconds: float) -> bool:
        """Sleep up to seconds. True if shutdown was requested."""
        try:
            await asyncio.wait_for(stop_event.wait(), seconds)
            return True
        except asyncio.TimeoutError:
            return False

    def get_statistics(self) -> Dict[str, Any]:
        return asdict(self._stats)
