"""
Discovery and connection management for configured Ruuvi sensors.
Reconciles the registry against devices visible on the medium: scans,
connects, resolves services and subscribes, with retry on failure.
"""

import asyncio
from typing import Dict, Optional

from .registry import DeviceDescriptor, DeviceRegistry, DeviceState
from .transport import (
    DeviceHandle,
    DeviceNotFoundError,
    RUUVI_NOTIFY_CHAR_UUID,
    SubscribeFailedError,
    Transport,
    TransportError,
)
from ..utils.config import Config
from ..utils.logging import ComponentLogger, PerformanceMonitor


# Lower bound on the pause between reconciliation passes
MIN_RETRY_DELAY = 0.01


class DiscoveryManager:
    """
    Drives every configured device towards the subscribed state.

    Features:
    - Scan-and-match reconciliation passes
    - Per-device connect, service discovery and subscribe
    - Fixed retry delay with optional capped exponential backoff
    - Background recovery of devices that drop off
    """

    def __init__(self, registry: DeviceRegistry, transport: Transport, config: Config,
                 logger: ComponentLogger, performance_monitor: PerformanceMonitor,
                 characteristic_uuid: str = RUUVI_NOTIFY_CHAR_UUID):
        """
        Initialize discovery manager.

        Args:
            registry: Registry of configured devices
            transport: BLE transport
            config: Application configuration
            logger: Logger instance
            performance_monitor: Performance monitoring instance
            characteristic_uuid: Notification channel to subscribe to
        """
        self.registry = registry
        self.transport = transport
        self.logger = logger
        self.performance_monitor = performance_monitor
        self.characteristic_uuid = characteristic_uuid.upper()

        self.retry_delay = max(config.ble_retry_delay, MIN_RETRY_DELAY)
        self.retry_backoff_max = max(config.ble_retry_backoff_max, self.retry_delay)
        self.reconcile_interval = config.reconcile_interval

        self._wakeup = asyncio.Event()
        self._passes = 0
        self._scan_failures = 0

    async def reconcile_once(self) -> bool:
        """
        Run one reconciliation pass.

        Returns:
            bool: True if every configured device is subscribed afterwards
        """
        pending = self.registry.pending()
        if not pending:
            return True

        self._passes += 1
        self.performance_monitor.record_metric("discovery_passes", 1)

        try:
            visible = await self.transport.scan()
        except TransportError as e:
            self._scan_failures += 1
            self.performance_monitor.record_metric("discovery_scan_errors", 1)
            self.logger.warning(f"Discovery scan failed: {e}")
            return False

        await asyncio.gather(*(self._reconcile_device(d, visible) for d in pending))
        return self.registry.all_subscribed()

    async def _reconcile_device(self, descriptor: DeviceDescriptor, visible: Dict[str, DeviceHandle]):
        async with descriptor.lock:
            handle = visible.get(descriptor.hardware_address)

            if descriptor.state == DeviceState.SUBSCRIBED:
                return

            if descriptor.state in (DeviceState.CONNECTING, DeviceState.CONNECTED):
                # Left over from an interrupted pass
                self.registry.transition(descriptor, DeviceState.FAILED,
                                         TransportError("connection attempt interrupted"))

            if handle is not None:
                self.registry.mark_seen(descriptor, handle)
                if descriptor.state in (DeviceState.UNSEEN, DeviceState.FAILED):
                    self.registry.transition(descriptor, DeviceState.DISCOVERED)
                self.registry.transition(descriptor, DeviceState.CONNECTING)
            elif descriptor.state == DeviceState.FAILED and descriptor.handle is not None:
                self.logger.debug(f"{descriptor.name} not in scan, retrying last known handle")
                self.registry.transition(descriptor, DeviceState.CONNECTING)
            else:
                error = DeviceNotFoundError(f"{descriptor.hardware_address} not in scan results")
                descriptor.last_error = str(error)
                self.logger.info(f"{descriptor.name} not found yet: {error}")
                return

            await self._connect_and_subscribe(descriptor)

    async def _connect_and_subscribe(self, descriptor: DeviceDescriptor):
        """Advance a CONNECTING descriptor to SUBSCRIBED or FAILED. Caller holds the lock."""
        if descriptor.connection is not None:
            await self.transport.disconnect(descriptor.connection)
            descriptor.connection = None

        try:
            connection = await self.transport.connect(descriptor.handle)
            descriptor.connection = connection
            self.registry.transition(descriptor, DeviceState.CONNECTED)

            characteristics = await self.transport.discover_services(connection)
            if not any(c.uuid == self.characteristic_uuid and c.can_notify for c in characteristics):
                raise SubscribeFailedError(
                    f"{descriptor.hardware_address} has no notifiable {self.characteristic_uuid}"
                )

            await self.transport.subscribe(connection, self.characteristic_uuid)
            self.registry.transition(descriptor, DeviceState.SUBSCRIBED)

        except TransportError as e:
            await self._fail(descriptor, e)

        except asyncio.CancelledError:
            # Connection, if any, stays attached for close_all()
            self.registry.transition(descriptor, DeviceState.FAILED,
                                     TransportError("cancelled during connect"))
            raise

        except Exception as e:
            self.logger.error(f"Unexpected error connecting {descriptor.name}: {e}")
            await self._fail(descriptor, e)

    async def _fail(self, descriptor: DeviceDescriptor, error: BaseException):
        self.registry.transition(descriptor, DeviceState.FAILED, error)
        self.performance_monitor.record_metric("device_failures", 1)

        # Detached only once closed; close_all covers a cancelled disconnect
        connection = descriptor.connection
        if connection is not None:
            await self.transport.disconnect(connection)
            descriptor.connection = None

    async def report_failure(self, name: str, error: BaseException):
        """
        Record a failure observed outside reconciliation, e.g. a lost link
        found by a poll read. No-op unless the device is subscribed.

        Raises:
            UnknownDeviceError: If name is not configured
        """
        descriptor = self.registry.get(name)
        async with descriptor.lock:
            if descriptor.state != DeviceState.SUBSCRIBED:
                return
            await self._fail(descriptor, error)
        self._wakeup.set()

    async def run_until_all_subscribed(self, stop_event: asyncio.Event,
                                       timeout: Optional[float] = None) -> bool:
        """
        Block until every configured device is subscribed.

        Args:
            stop_event: Shutdown signal
            timeout: Give up after this many seconds (None waits forever)

        Returns:
            bool: True if all devices are subscribed
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout else None
        delay = self.retry_delay

        self.logger.info(f"Starting discovery of {len(self.registry)} configured devices...")

        while not stop_event.is_set():
            subscribed_before = len(self.registry.subscribed())
            if await self.reconcile_once():
                self.logger.info(f"All {len(self.registry)} devices subscribed")
                return True

            if len(self.registry.subscribed()) > subscribed_before:
                delay = self.retry_delay

            wait = delay
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    missing = ", ".join(d.name for d in self.registry.pending())
                    self.logger.warning(
                        f"Startup discovery timed out after {timeout}s; unavailable: {missing}"
                    )
                    return False
                wait = min(wait, remaining)

            if await self._sleep(stop_event, wait):
                break
            delay = min(delay * 2, self.retry_backoff_max)

        return self.registry.all_subscribed()

    async def run_background(self, stop_event: asyncio.Event):
        """Keep reconciling until shutdown, recovering devices that drop off."""
        self.logger.info("Background reconciliation started")
        delay = self.retry_delay

        while not stop_event.is_set():
            if self.registry.all_subscribed():
                delay = self.retry_delay
                wait = self.reconcile_interval
            else:
                try:
                    await self.reconcile_once()
                except Exception as e:
                    self.logger.error(f"Reconciliation pass failed: {e}")
                wait = delay
                delay = min(delay * 2, self.retry_backoff_max)

            if await self._sleep(stop_event, wait):
                break

        self.logger.info("Background reconciliation stopped")

    async def _sleep(self, stop_event: asyncio.Event, seconds: float) -> bool:
        """Sleep, waking early on shutdown or a reported failure. True on shutdown."""
        stop_task = asyncio.ensure_future(stop_event.wait())
        wake_task = asyncio.ensure_future(self._wakeup.wait())
        try:
            await asyncio.wait({stop_task, wake_task}, timeout=seconds,
                               return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_task.cancel()
            wake_task.cancel()
        self._wakeup.clear()
        return stop_event.is_set()

    async def close_all(self):
        """Disconnect every device at shutdown."""
        for descriptor in self.registry:
            async with descriptor.lock:
                connection, descriptor.connection = descriptor.connection, None
            if connection is not None:
                await self.transport.disconnect(connection)

    def get_statistics(self) -> Dict[str, object]:
        return {
            "passes": self._passes,
            "scan_failures": self._scan_failures,
            "states": self.registry.get_summary(),
        }
