"""
Unit tests for the device registry and its state machine.
"""

import pytest

from ruuvi_collector.ble.registry import (
    ALLOWED_TRANSITIONS,
    DeviceRegistry,
    DeviceState,
    InvalidTransitionError,
    RegistryError,
    UnknownDeviceError,
)
from ruuvi_collector.ble.transport import ConnectFailedError, DeviceHandle


class TestRegistryConstruction:

    def test_descriptors_created_unseen(self, registry):
        assert len(registry) == 2
        assert set(registry.names()) == {"kitchen", "sauna"}
        assert all(d.state == DeviceState.UNSEEN for d in registry)
        assert all(d.consecutive_failures == 0 for d in registry)

    def test_addresses_upper_cased(self, mock_logger, mock_performance_monitor):
        registry = DeviceRegistry({"kitchen": "f2:2d:eb:37:8a:d4"}, mock_logger, mock_performance_monitor)
        assert registry.get("kitchen").hardware_address == "F2:2D:EB:37:8A:D4"

    def test_duplicate_address_rejected(self, mock_logger, mock_performance_monitor):
        with pytest.raises(RegistryError):
            DeviceRegistry(
                {"a": "F2:2D:EB:37:8A:D4", "b": "f2:2d:eb:37:8a:d4"},
                mock_logger,
                mock_performance_monitor
            )

    def test_unknown_name(self, registry):
        with pytest.raises(UnknownDeviceError):
            registry.get("garage")
        assert "garage" not in registry

    def test_lookup_by_address(self, registry):
        assert registry.get_by_address("d3:1a:da:17:e5:c6").name == "sauna"
        assert registry.get_by_address("00:00:00:00:00:00") is None

    def test_each_descriptor_has_own_lock(self, registry):
        kitchen, sauna = registry.get("kitchen"), registry.get("sauna")
        assert kitchen.lock is not sauna.lock


class TestTransitions:

    def walk(self, registry, descriptor, *states):
        for state in states:
            registry.transition(descriptor, state)

    def test_happy_path(self, registry, mock_performance_monitor):
        descriptor = registry.get("kitchen")
        self.walk(registry, descriptor, DeviceState.DISCOVERED, DeviceState.CONNECTING,
                  DeviceState.CONNECTED, DeviceState.SUBSCRIBED)

        assert descriptor.state == DeviceState.SUBSCRIBED
        assert registry.subscribed() == [descriptor]
        mock_performance_monitor.record_metric.assert_any_call("device_state_subscribed", 1)

    @pytest.mark.parametrize("start", [DeviceState.CONNECTING, DeviceState.CONNECTED, DeviceState.SUBSCRIBED])
    def test_failed_reachable(self, registry, start):
        descriptor = registry.get("kitchen")
        descriptor.state = start

        registry.transition(descriptor, DeviceState.FAILED, ConnectFailedError("boom"))

        assert descriptor.state == DeviceState.FAILED
        assert descriptor.consecutive_failures == 1
        assert descriptor.last_error == "boom"

    def test_failure_count_resets_on_subscribe(self, registry):
        descriptor = registry.get("kitchen")
        descriptor.state = DeviceState.CONNECTING
        registry.transition(descriptor, DeviceState.FAILED)
        registry.transition(descriptor, DeviceState.CONNECTING)
        registry.transition(descriptor, DeviceState.FAILED)
        assert descriptor.consecutive_failures == 2

        self.walk(registry, descriptor, DeviceState.DISCOVERED, DeviceState.CONNECTING,
                  DeviceState.CONNECTED, DeviceState.SUBSCRIBED)
        assert descriptor.consecutive_failures == 0
        assert descriptor.last_error is None

    @pytest.mark.parametrize("start,target", [
        (DeviceState.UNSEEN, DeviceState.CONNECTING),
        (DeviceState.UNSEEN, DeviceState.SUBSCRIBED),
        (DeviceState.UNSEEN, DeviceState.FAILED),
        (DeviceState.DISCOVERED, DeviceState.SUBSCRIBED),
        (DeviceState.SUBSCRIBED, DeviceState.CONNECTING),
        (DeviceState.FAILED, DeviceState.SUBSCRIBED),
        (DeviceState.FAILED, DeviceState.UNSEEN),
    ])
    def test_invalid_transition(self, registry, start, target):
        descriptor = registry.get("kitchen")
        descriptor.state = start

        with pytest.raises(InvalidTransitionError) as exc_info:
            registry.transition(descriptor, target)

        assert descriptor.state == start
        assert exc_info.value.current == start
        assert exc_info.value.requested == target

    def test_nothing_returns_to_unseen(self):
        for targets in ALLOWED_TRANSITIONS.values():
            assert DeviceState.UNSEEN not in targets

    def test_failure_on_one_device_leaves_other(self, registry):
        kitchen, sauna = registry.get("kitchen"), registry.get("sauna")
        sauna.state = DeviceState.SUBSCRIBED
        kitchen.state = DeviceState.CONNECTING

        registry.transition(kitchen, DeviceState.FAILED)

        assert sauna.state == DeviceState.SUBSCRIBED
        assert sauna.consecutive_failures == 0


class TestQueries:

    def test_pending_and_all_subscribed(self, registry):
        assert len(registry.pending()) == 2
        assert not registry.all_subscribed()

        for descriptor in registry:
            descriptor.state = DeviceState.SUBSCRIBED

        assert registry.pending() == []
        assert registry.all_subscribed()

    def test_mark_seen(self, registry):
        descriptor = registry.get("sauna")
        handle = DeviceHandle(address=descriptor.hardware_address, name="Ruuvi E5C6")

        registry.mark_seen(descriptor, handle)

        assert descriptor.handle is handle
        assert descriptor.last_seen is not None

    def test_summary(self, registry):
        registry.get("kitchen").state = DeviceState.FAILED
        summary = registry.get_summary()

        assert summary["failed"] == 1
        assert summary["unseen"] == 1
        assert sum(summary.values()) == 2

    def test_to_dict(self, registry):
        data = registry.get("kitchen").to_dict()
        assert data == {
            "name": "kitchen",
            "hardware_address": "F2:2D:EB:37:8A:D4",
            "state": "unseen",
            "last_seen": None,
            "consecutive_failures": 0,
            "last_error": None,
        }
