"""
Unit tests for discovery and connection management.
"""

import asyncio

import pytest

from ruuvi_collector.ble.discovery import MIN_RETRY_DELAY, DiscoveryManager
from ruuvi_collector.ble.registry import DeviceState, UnknownDeviceError
from ruuvi_collector.ble.transport import DisconnectedError
from tests.utils.test_helpers import DEVICES, subscribe_directly, wait_until


KITCHEN = DEVICES["kitchen"]
SAUNA = DEVICES["sauna"]


@pytest.fixture
def discovery(registry, transport, mock_config, mock_logger, mock_performance_monitor):
    return DiscoveryManager(registry, transport, mock_config, mock_logger, mock_performance_monitor)


class TestReconcileOnce:

    @pytest.mark.asyncio
    async def test_all_visible_devices_subscribe(self, discovery, registry, transport):
        transport.add_device(KITCHEN)
        transport.add_device(SAUNA)

        assert await discovery.reconcile_once() is True

        assert registry.all_subscribed()
        for descriptor in registry:
            assert descriptor.connection is not None
            assert descriptor.last_seen is not None
        assert sorted(transport.calls_for("subscribe")) == sorted([KITCHEN, SAUNA])

    @pytest.mark.asyncio
    async def test_missing_device_does_not_block_others(self, discovery, registry, transport):
        transport.add_device(KITCHEN)

        assert await discovery.reconcile_once() is False

        assert registry.get("kitchen").state == DeviceState.SUBSCRIBED
        assert registry.get("sauna").state == DeviceState.UNSEEN
        assert "not in scan results" in registry.get("sauna").last_error

    @pytest.mark.asyncio
    async def test_connect_failure_isolated(self, discovery, registry, transport):
        transport.add_device(KITCHEN)
        transport.add_device(SAUNA)
        transport.connect_failures[SAUNA] = 1

        await discovery.reconcile_once()

        sauna = registry.get("sauna")
        assert registry.get("kitchen").state == DeviceState.SUBSCRIBED
        assert sauna.state == DeviceState.FAILED
        assert sauna.consecutive_failures == 1
        assert sauna.connection is None

    @pytest.mark.asyncio
    async def test_failed_device_recovers_when_seen_again(self, discovery, registry, transport):
        transport.add_device(KITCHEN)
        transport.add_device(SAUNA)
        transport.connect_failures[SAUNA] = 1

        await discovery.reconcile_once()
        assert await discovery.reconcile_once() is True

        sauna = registry.get("sauna")
        assert sauna.state == DeviceState.SUBSCRIBED
        assert sauna.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_direct_retry_uses_cached_handle(self, discovery, registry, transport):
        transport.add_device(KITCHEN)
        transport.add_device(SAUNA)
        transport.connect_failures[SAUNA] = 1
        await discovery.reconcile_once()

        # Sauna no longer advertises but its last sighting is still known
        transport.remove_device(SAUNA)
        await discovery.reconcile_once()

        assert registry.get("sauna").state == DeviceState.SUBSCRIBED
        assert transport.calls_for("connect").count(SAUNA) == 2

    @pytest.mark.asyncio
    async def test_subscribe_failure_disconnects(self, discovery, registry, transport):
        transport.add_device(KITCHEN)
        transport.subscribe_failures[KITCHEN] = 1

        await discovery.reconcile_once()

        kitchen = registry.get("kitchen")
        assert kitchen.state == DeviceState.FAILED
        assert kitchen.connection is None
        assert transport.disconnected == [KITCHEN]

    @pytest.mark.asyncio
    async def test_missing_characteristic_fails_device(self, discovery, registry, transport):
        transport.add_device(KITCHEN)
        transport.without_characteristic.add(KITCHEN)

        await discovery.reconcile_once()

        kitchen = registry.get("kitchen")
        assert kitchen.state == DeviceState.FAILED
        assert "no notifiable" in kitchen.last_error
        assert transport.calls_for("subscribe") == []

    @pytest.mark.asyncio
    async def test_scan_failure_aborts_pass(self, discovery, registry, transport, mock_performance_monitor):
        transport.add_device(KITCHEN)
        transport.scan_failures = 1

        assert await discovery.reconcile_once() is False

        assert registry.get("kitchen").state == DeviceState.UNSEEN
        assert transport.calls_for("connect") == []
        mock_performance_monitor.record_metric.assert_any_call("discovery_scan_errors", 1)

    @pytest.mark.asyncio
    async def test_no_scan_when_all_subscribed(self, discovery, registry, transport):
        for name in registry.names():
            await subscribe_directly(registry, transport, name)

        assert await discovery.reconcile_once() is True
        assert transport.calls_for("scan") == []

    @pytest.mark.asyncio
    async def test_subscribed_devices_untouched(self, discovery, registry, transport):
        transport.add_device(KITCHEN)
        transport.add_device(SAUNA)
        kitchen = await subscribe_directly(registry, transport, "kitchen")
        connection = kitchen.connection
        transport.calls.clear()

        await discovery.reconcile_once()

        assert kitchen.connection is connection
        assert transport.calls_for("connect") == [SAUNA]


class TestReportFailure:

    @pytest.mark.asyncio
    async def test_subscribed_device_fails_and_closes(self, discovery, registry, transport):
        await subscribe_directly(registry, transport, "kitchen")

        await discovery.report_failure("kitchen", DisconnectedError("link lost"))

        kitchen = registry.get("kitchen")
        assert kitchen.state == DeviceState.FAILED
        assert kitchen.connection is None
        assert kitchen.last_error == "link lost"
        assert transport.disconnected == [KITCHEN]

    @pytest.mark.asyncio
    async def test_ignored_when_not_subscribed(self, discovery, registry, transport):
        await discovery.report_failure("kitchen", DisconnectedError("link lost"))

        assert registry.get("kitchen").state == DeviceState.UNSEEN
        assert transport.disconnected == []

    @pytest.mark.asyncio
    async def test_unknown_device(self, discovery):
        with pytest.raises(UnknownDeviceError):
            await discovery.report_failure("garage", DisconnectedError("x"))

    @pytest.mark.asyncio
    async def test_cancelled_disconnect_keeps_connection_for_close_all(self, discovery, registry, transport):
        await subscribe_directly(registry, transport, "kitchen")
        transport.disconnect_delay = 1.0

        task = asyncio.create_task(discovery.report_failure("kitchen", DisconnectedError("link lost")))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        kitchen = registry.get("kitchen")
        assert kitchen.state == DeviceState.FAILED
        assert kitchen.connection is not None
        assert transport.disconnected == []

        transport.disconnect_delay = 0.0
        await discovery.close_all()

        assert transport.disconnected == [KITCHEN]
        assert kitchen.connection is None

    @pytest.mark.asyncio
    async def test_reconnect_closes_stale_connection(self, discovery, registry, transport):
        kitchen = await subscribe_directly(registry, transport, "kitchen")
        stale = kitchen.connection
        transport.disconnect_delay = 1.0
        task = asyncio.create_task(discovery.report_failure("kitchen", DisconnectedError("link lost")))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        transport.disconnect_delay = 0.0
        transport.add_device(KITCHEN)

        await discovery.reconcile_once()

        assert kitchen.state == DeviceState.SUBSCRIBED
        assert transport.disconnected == [KITCHEN]
        assert stale.lost.is_set()
        assert kitchen.connection is not stale


class TestRunUntilAllSubscribed:

    @pytest.mark.asyncio
    async def test_waits_for_late_device(self, discovery, registry, transport):
        transport.add_device(KITCHEN)
        stop_event = asyncio.Event()
        task = asyncio.create_task(discovery.run_until_all_subscribed(stop_event))

        assert await wait_until(lambda: len(transport.calls_for("scan")) >= 2)
        assert not task.done()

        transport.add_device(SAUNA)
        assert await asyncio.wait_for(task, timeout=2.0) is True
        assert registry.all_subscribed()

    @pytest.mark.asyncio
    async def test_timeout_returns_false(self, discovery, registry, transport):
        transport.add_device(KITCHEN)

        result = await discovery.run_until_all_subscribed(asyncio.Event(), timeout=0.1)

        assert result is False
        assert registry.get("kitchen").state == DeviceState.SUBSCRIBED
        assert registry.get("sauna").state == DeviceState.UNSEEN

    @pytest.mark.asyncio
    async def test_stop_event_interrupts(self, discovery, transport):
        stop_event = asyncio.Event()
        task = asyncio.create_task(discovery.run_until_all_subscribed(stop_event))
        await asyncio.sleep(0.05)

        stop_event.set()

        assert await asyncio.wait_for(task, timeout=1.0) is False

    @pytest.mark.asyncio
    async def test_scan_failures_retried(self, discovery, registry, transport):
        transport.add_device(KITCHEN)
        transport.add_device(SAUNA)
        transport.scan_failures = 2

        assert await discovery.run_until_all_subscribed(asyncio.Event(), timeout=2.0) is True
        assert len(transport.calls_for("scan")) == 3

    @pytest.mark.asyncio
    async def test_zero_retry_delay_clamped(self, registry, transport, mock_config, mock_logger,
                                            mock_performance_monitor):
        mock_config.ble_retry_delay = 0
        mock_config.ble_retry_backoff_max = 0
        discovery = DiscoveryManager(registry, transport, mock_config, mock_logger, mock_performance_monitor)
        transport.scan_failures = 10_000

        assert discovery.retry_delay == MIN_RETRY_DELAY
        assert await discovery.run_until_all_subscribed(asyncio.Event(), timeout=0.2) is False
        # Each failed pass pauses at least MIN_RETRY_DELAY
        assert len(transport.calls_for("scan")) <= 0.2 / MIN_RETRY_DELAY + 2


class TestBackground:

    @pytest.mark.asyncio
    async def test_recovers_dropped_device(self, discovery, registry, transport):
        transport.add_device(KITCHEN)
        transport.add_device(SAUNA)
        await discovery.reconcile_once()
        stop_event = asyncio.Event()
        task = asyncio.create_task(discovery.run_background(stop_event))

        await discovery.report_failure("sauna", DisconnectedError("link lost"))

        assert await wait_until(lambda: registry.all_subscribed())
        stop_event.set()
        await asyncio.wait_for(task, timeout=1.0)
        assert registry.get("sauna").consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_stops_on_event(self, discovery):
        stop_event = asyncio.Event()
        task = asyncio.create_task(discovery.run_background(stop_event))
        await asyncio.sleep(0.02)

        stop_event.set()

        await asyncio.wait_for(task, timeout=1.0)


class TestCloseAll:

    @pytest.mark.asyncio
    async def test_disconnects_everything(self, discovery, registry, transport):
        transport.add_device(KITCHEN)
        transport.add_device(SAUNA)
        await discovery.reconcile_once()

        await discovery.close_all()

        assert sorted(transport.disconnected) == sorted([KITCHEN, SAUNA])
        assert all(d.connection is None for d in registry)


class TestStatistics:

    @pytest.mark.asyncio
    async def test_counts_passes(self, discovery, transport):
        transport.scan_failures = 1
        await discovery.reconcile_once()
        await discovery.reconcile_once()

        stats = discovery.get_statistics()
        assert stats["passes"] == 2
        assert stats["scan_failures"] == 1
        assert stats["states"]["unseen"] == 2
