"""
Device registry for configured Ruuvi sensors.
Holds the name to address mapping and the connection state of every device.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Iterator, List, Mapping, Optional

from .transport import Connection, DeviceHandle
from ..utils.logging import ComponentLogger, PerformanceMonitor


class DeviceState(str, Enum):
    """Connection lifecycle of a configured device."""
    UNSEEN = "unseen"
    DISCOVERED = "discovered"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    SUBSCRIBED = "subscribed"
    FAILED = "failed"


ALLOWED_TRANSITIONS: Dict[DeviceState, FrozenSet[DeviceState]] = {
    DeviceState.UNSEEN: frozenset({DeviceState.DISCOVERED}),
    DeviceState.DISCOVERED: frozenset({DeviceState.CONNECTING}),
    DeviceState.CONNECTING: frozenset({DeviceState.CONNECTED, DeviceState.FAILED}),
    DeviceState.CONNECTED: frozenset({DeviceState.SUBSCRIBED, DeviceState.FAILED}),
    DeviceState.SUBSCRIBED: frozenset({DeviceState.FAILED}),
    DeviceState.FAILED: frozenset({DeviceState.DISCOVERED, DeviceState.CONNECTING}),
}


class RegistryError(Exception):
    """Base exception for registry operations."""
    pass


class UnknownDeviceError(RegistryError):
    """Raised for a name that is not configured."""
    pass


class InvalidTransitionError(RegistryError):
    """Raised for a state change outside the lifecycle edges."""

    def __init__(self, name: str, current: DeviceState, requested: DeviceState):
        self.name = name
        self.current = current
        self.requested = requested
        super().__init__(f"{name}: invalid transition {current.value} -> {requested.value}")


@dataclass
class DeviceDescriptor:
    """State of one configured device."""
    name: str
    hardware_address: str
    state: DeviceState = DeviceState.UNSEEN
    last_seen: Optional[datetime] = None
    consecutive_failures: int = 0
    last_error: Optional[str] = None
    handle: Optional[DeviceHandle] = field(default=None, repr=False)
    connection: Optional[Connection] = field(default=None, repr=False)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False, compare=False)

    def to_dict(self) -> Dict[str, object]:
        return {
            "name": self.name,
            "hardware_address": self.hardware_address,
            "state": self.state.value,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "consecutive_failures": self.consecutive_failures,
            "last_error": self.last_error,
        }


class DeviceRegistry:
    """
    Mapping of logical device name to descriptor.

    Descriptors are created once from configuration and never removed.
    Every mutation of a descriptor must hold that descriptor's lock; the
    transition methods below assume the caller does.
    """

    def __init__(self, devices: Mapping[str, str], logger: ComponentLogger,
                 performance_monitor: PerformanceMonitor):
        """
        Initialize registry.

        Args:
            devices: Logical name to hardware address
            logger: Logger instance
            performance_monitor: Performance monitoring instance
        """
        self.logger = logger
        self.performance_monitor = performance_monitor
        self._devices: Dict[str, DeviceDescriptor] = {}
        self._by_address: Dict[str, str] = {}

        for name, address in devices.items():
            address = address.upper()
            if address in self._by_address:
                raise RegistryError(
                    f"Address {address} configured for both {self._by_address[address]} and {name}"
                )
            self._devices[name] = DeviceDescriptor(name=name, hardware_address=address)
            self._by_address[address] = name

        self.logger.info(f"DeviceRegistry initialized with {len(self._devices)} devices")

    def __len__(self) -> int:
        return len(self._devices)

    def __iter__(self) -> Iterator[DeviceDescriptor]:
        return iter(self._devices.values())

    def __contains__(self, name: str) -> bool:
        return name in self._devices

    def get(self, name: str) -> DeviceDescriptor:
        try:
            return self._devices[name]
        except KeyError:
            raise UnknownDeviceError(f"Unknown device: {name}")

    def get_by_address(self, address: str) -> Optional[DeviceDescriptor]:
        name = self._by_address.get(address.upper())
        return self._devices[name] if name else None

    def names(self) -> List[str]:
        return list(self._devices)

    def in_state(self, *states: DeviceState) -> List[DeviceDescriptor]:
        return [d for d in self._devices.values() if d.state in states]

    def subscribed(self) -> List[DeviceDescriptor]:
        return self.in_state(DeviceState.SUBSCRIBED)

    def pending(self) -> List[DeviceDescriptor]:
        """Devices not yet subscribed."""
        return [d for d in self._devices.values() if d.state != DeviceState.SUBSCRIBED]

    def all_subscribed(self) -> bool:
        return all(d.state == DeviceState.SUBSCRIBED for d in self._devices.values())

    def transition(self, descriptor: DeviceDescriptor, new_state: DeviceState,
                   error: Optional[BaseException] = None):
        """
        Move a descriptor along one lifecycle edge.

        Raises:
            InvalidTransitionError: If the edge does not exist
        """
        old_state = descriptor.state
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            raise InvalidTransitionError(descriptor.name, old_state, new_state)

        descriptor.state = new_state
        if new_state == DeviceState.FAILED:
            descriptor.consecutive_failures += 1
            descriptor.last_error = str(error) if error else None
            self.logger.warning(
                f"Device {descriptor.name} ({descriptor.hardware_address}) "
                f"{old_state.value} -> failed (failures: {descriptor.consecutive_failures}): {error}"
            )
        else:
            if new_state == DeviceState.SUBSCRIBED:
                descriptor.consecutive_failures = 0
                descriptor.last_error = None
            self.logger.info(
                f"Device {descriptor.name} ({descriptor.hardware_address}) "
                f"{old_state.value} -> {new_state.value}"
            )

        self.performance_monitor.record_metric(f"device_state_{new_state.value}", 1)

    def mark_seen(self, descriptor: DeviceDescriptor, handle: DeviceHandle):
        descriptor.handle = handle
        descriptor.last_seen = datetime.now(timezone.utc)

    def get_summary(self) -> Dict[str, int]:
        """Number of devices per state."""
        summary = {state.value: 0 for state in DeviceState}
        for descriptor in self._devices.values():
            summary[descriptor.state.value] += 1
        return summary
