"""
Bluetooth Low Energy transport for Ruuvi sensors.
Wraps bleak scanning, connection, service discovery and notification delivery
behind a small async interface used by discovery and polling.
"""

import asyncio
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from bleak import BleakScanner, BleakClient
from bleak.backends.device import BLEDevice
from bleak.backends.scanner import AdvertisementData
from bleak.exc import BleakError

from ..utils.config import Config
from ..utils.logging import ComponentLogger, PerformanceMonitor


# Nordic UART TX characteristic used by RuuviTag firmware for its data push channel
RUUVI_NOTIFY_CHAR_UUID = "6E400003-B5A3-F393-E0A9-E50E24DCCA9E"

RUUVI_MANUFACTURER_ID = 0x0499
RUUVI_NAME_FILTER = "Ruuvi"


class TransportError(Exception):
    """Base exception for transport operations."""
    pass


class AdapterUnavailableError(TransportError):
    """No usable Bluetooth adapter."""
    pass


class ScanFailedError(TransportError):
    """Scanning for advertisements failed."""
    pass


class DeviceNotFoundError(TransportError):
    """Device is not visible on the medium."""
    pass


class ConnectFailedError(TransportError):
    """Connecting or resolving services failed."""
    pass


class SubscribeFailedError(TransportError):
    """Subscribing to a characteristic failed."""
    pass


class NotificationTimeoutError(TransportError):
    """No notification arrived within the timeout."""
    pass


class DisconnectedError(TransportError):
    """The link to the device is gone."""
    pass


@dataclass
class DeviceHandle:
    """A device seen during a scan."""
    address: str
    name: Optional[str] = None
    rssi: Optional[int] = None
    is_ruuvi: bool = False
    device: Any = field(default=None, repr=False, compare=False)


@dataclass
class Characteristic:
    """A GATT characteristic exposed by a connected device."""
    uuid: str
    properties: List[str] = field(default_factory=list)

    @property
    def can_notify(self) -> bool:
        return "notify" in self.properties or "indicate" in self.properties


@dataclass
class Connection:
    """Live link to one device, with its latest-notification slot."""
    handle: DeviceHandle
    client: Any = field(repr=False)
    notifications: asyncio.Queue = field(default_factory=lambda: asyncio.Queue(maxsize=1), repr=False)
    lost: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    subscriptions: List[str] = field(default_factory=list)

    @property
    def is_connected(self) -> bool:
        return not self.lost.is_set() and bool(getattr(self.client, "is_connected", False))

    def push(self, data: bytes):
        """Store a notification, replacing any unread one."""
        if self.notifications.full():
            try:
                self.notifications.get_nowait()
            except asyncio.QueueEmpty:
                pass
        self.notifications.put_nowait(bytes(data))


class Transport(ABC):
    """Interface consumed by discovery and polling."""

    @abstractmethod
    async def ensure_adapter(self):
        """Raise AdapterUnavailableError if no adapter can scan."""

    @abstractmethod
    async def scan(self, name_filter: Optional[str] = None) -> Dict[str, DeviceHandle]:
        """Return visible devices keyed by normalised address."""

    @abstractmethod
    async def connect(self, handle: DeviceHandle) -> Connection:
        """Open a link to a device."""

    @abstractmethod
    async def discover_services(self, connection: Connection) -> List[Characteristic]:
        """List the characteristics of a connected device."""

    @abstractmethod
    async def subscribe(self, connection: Connection, characteristic_uuid: str):
        """Start notifications on a characteristic."""

    @abstractmethod
    async def await_notification(self, connection: Connection, timeout: float) -> bytes:
        """Wait for the next notification payload."""

    @abstractmethod
    async def disconnect(self, connection: Connection):
        """Close a link. Never raises."""


class BleakTransport(Transport):
    """
    Transport implementation on top of bleak.

    Features:
    - Adapter availability check with retry
    - One-shot scans returning handles by address
    - Connection with disconnect tracking
    - Latest-value notification delivery with timeouts
    """

    def __init__(self, config: Config, logger: ComponentLogger, performance_monitor: PerformanceMonitor):
        """
        Initialize BLE transport.

        Args:
            config: Application configuration
            logger: Logger instance
            performance_monitor: Performance monitoring instance
        """
        self.config = config
        self.logger = logger
        self.performance_monitor = performance_monitor

        self.adapter = config.ble_adapter
        self.scan_duration = config.ble_scan_duration
        self.connect_timeout = config.ble_connect_timeout
        self.retry_attempts = config.ble_adapter_retry_attempts
        self.retry_delay = config.ble_retry_delay

        self.logger.info(f"BleakTransport initialized with adapter: {self.adapter}")

    def _adapter_kwargs(self) -> Dict[str, Any]:
        return {} if self.adapter == "auto" else {"adapter": self.adapter}

    async def ensure_adapter(self):
        """
        Verify that a Bluetooth adapter can scan, with retry logic.

        Raises:
            AdapterUnavailableError: If no attempt succeeds
        """
        for attempt in range(self.retry_attempts):
            try:
                scanner = BleakScanner(**self._adapter_kwargs())
                await scanner.start()
                await asyncio.sleep(0.1)
                await scanner.stop()

                self.logger.debug(f"BLE adapter available (attempt {attempt + 1})")
                return

            except (BleakError, OSError) as e:
                self.logger.warning(f"Adapter check attempt {attempt + 1} failed: {e}")
                if attempt < self.retry_attempts - 1:
                    await asyncio.sleep(self.retry_delay)
                else:
                    raise AdapterUnavailableError(
                        f"No usable Bluetooth adapter after {self.retry_attempts} attempts: {e}"
                    )

    async def scan(self, name_filter: Optional[str] = None) -> Dict[str, DeviceHandle]:
        """
        Perform a single scan.

        Args:
            name_filter: Keep only devices whose name contains this string
                or which advertise Ruuvi manufacturer data

        Returns:
            Dict[str, DeviceHandle]: Visible devices by upper-case address

        Raises:
            ScanFailedError: If the scan could not run
        """
        start_time = time.time()
        try:
            discovered = await BleakScanner.discover(
                timeout=self.scan_duration,
                return_adv=True,
                **self._adapter_kwargs()
            )
        except (BleakError, OSError) as e:
            self.performance_monitor.log_ble_scan(time.time() - start_time, 0, False)
            self.performance_monitor.record_metric("ble_scan_errors", 1)
            raise ScanFailedError(f"BLE scan failed: {e}") from e

        handles = {}
        for device, advertisement in discovered.values():
            handle = self._to_handle(device, advertisement)
            if name_filter and not (handle.is_ruuvi or name_filter in (handle.name or "")):
                continue
            handles[handle.address] = handle

        self.performance_monitor.log_ble_scan(time.time() - start_time, len(handles), True)
        self.logger.debug(f"BLE scan completed, {len(handles)} devices visible")
        return handles

    @staticmethod
    def _to_handle(device: BLEDevice, advertisement: AdvertisementData) -> DeviceHandle:
        name = advertisement.local_name or device.name
        return DeviceHandle(
            address=device.address.upper(),
            name=name,
            rssi=advertisement.rssi,
            is_ruuvi=RUUVI_MANUFACTURER_ID in (advertisement.manufacturer_data or {}),
            device=device
        )

    async def connect(self, handle: DeviceHandle) -> Connection:
        """
        Connect to a device.

        Raises:
            ConnectFailedError: If the connection cannot be established
        """
        lost = asyncio.Event()

        def on_disconnect(_client):
            lost.set()
            self.logger.info(f"Device {handle.address} disconnected")

        client = BleakClient(
            handle.device or handle.address,
            disconnected_callback=on_disconnect,
            timeout=self.connect_timeout,
            **self._adapter_kwargs()
        )

        try:
            await client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            raise ConnectFailedError(f"Connect to {handle.address} failed: {e}") from e

        self.logger.info(f"Connected to {handle.address}")
        return Connection(handle=handle, client=client, lost=lost)

    async def discover_services(self, connection: Connection) -> List[Characteristic]:
        """
        List characteristics of a connected device.

        Raises:
            DisconnectedError: If the link dropped
            ConnectFailedError: If the service table cannot be read
        """
        if not connection.is_connected:
            raise DisconnectedError(f"{connection.handle.address} is not connected")

        try:
            services = connection.client.services
            characteristics = [
                Characteristic(uuid=str(char.uuid).upper(), properties=list(char.properties))
                for service in services
                for char in service.characteristics
            ]
        except BleakError as e:
            raise ConnectFailedError(f"Service discovery on {connection.handle.address} failed: {e}") from e

        self.logger.debug(f"{connection.handle.address} exposes {len(characteristics)} characteristics")
        return characteristics

    async def subscribe(self, connection: Connection, characteristic_uuid: str):
        """
        Start notifications on a characteristic.

        Raises:
            SubscribeFailedError: If notifications cannot be started
        """
        def on_notification(_sender, data: bytearray):
            connection.push(data)

        try:
            await connection.client.start_notify(characteristic_uuid, on_notification)
        except (BleakError, ValueError, OSError) as e:
            raise SubscribeFailedError(
                f"Subscribe to {characteristic_uuid} on {connection.handle.address} failed: {e}"
            ) from e

        connection.subscriptions.append(characteristic_uuid.upper())
        self.logger.info(f"Subscribed to {characteristic_uuid} on {connection.handle.address}")

    async def await_notification(self, connection: Connection, timeout: float) -> bytes:
        """
        Wait for the next notification.

        Raises:
            NotificationTimeoutError: If nothing arrives within timeout
            DisconnectedError: If the link drops before or while waiting
        """
        return await wait_for_notification(connection, timeout)

    async def disconnect(self, connection: Connection):
        """Disconnect from a device, logging but not raising errors."""
        for characteristic_uuid in list(connection.subscriptions):
            try:
                await connection.client.stop_notify(characteristic_uuid)
            except Exception as e:
                self.logger.debug(f"Error stopping notifications on {connection.handle.address}: {e}")
        connection.subscriptions.clear()

        try:
            await connection.client.disconnect()
            self.logger.debug(f"Disconnected from {connection.handle.address}")
        except Exception as e:
            self.logger.warning(f"Error disconnecting from {connection.handle.address}: {e}")
        finally:
            connection.lost.set()


async def wait_for_notification(connection: Connection, timeout: float) -> bytes:
    """Wait on a connection's notification slot, watching for link loss."""
    if not connection.is_connected:
        raise DisconnectedError(f"{connection.handle.address} is not connected")

    get_task = asyncio.ensure_future(connection.notifications.get())
    lost_task = asyncio.ensure_future(connection.lost.wait())
    try:
        done, _ = await asyncio.wait(
            {get_task, lost_task},
            timeout=timeout,
            return_when=asyncio.FIRST_COMPLETED
        )
    finally:
        for task in (get_task, lost_task):
            if not task.done():
                task.cancel()

    if get_task in done:
        return get_task.result()
    if lost_task in done:
        raise DisconnectedError(f"{connection.handle.address} disconnected while waiting")
    raise NotificationTimeoutError(
        f"No notification from {connection.handle.address} within {timeout}s"
    )
