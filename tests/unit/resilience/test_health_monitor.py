"""
Tests for the debounced database health monitor.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest

from dbresilience.audit.health_events import HealthEventRecorder
from dbresilience.exceptions import DatabaseConnectionException, DatabaseTimeoutException
from dbresilience.resilience.health import (
    HealthMonitor,
    HealthState,
    HealthStatus,
    ListenerRegistry,
)


@pytest.fixture
def monitor(fake_client, health_settings, clock):
    return HealthMonitor(fake_client, health_settings, clock=clock)


def failure():
    return DatabaseConnectionException("connection refused")


class TestHealthState:
    """Test health state defaults."""

    def test_defaults(self):
        """Test a fresh state is healthy and never checked."""
        state = HealthState()

        assert state.is_healthy is True
        assert state.last_check_time == 0.0
        assert state.consecutive_failures == 0
        assert state.max_consecutive_failures == 3


class TestListenerRegistry:
    """Test the listener subscription map."""

    def test_notify_in_registration_order(self):
        """Test listeners are called in order with the health flag."""
        registry = ListenerRegistry()
        calls = []
        registry.add(lambda healthy: calls.append(("a", healthy)))
        registry.add(lambda healthy: calls.append(("b", healthy)))

        registry.notify(False)

        assert calls == [("a", False), ("b", False)]

    def test_ids_are_stable(self):
        """Test removing one listener does not disturb the others."""
        registry = ListenerRegistry()
        first = registry.add(Mock())
        second = registry.add(Mock())

        assert first != second
        assert registry.remove(first)
        assert not registry.remove(first)
        assert len(registry) == 1

    def test_raising_listener_is_skipped(self):
        """Test one failing listener does not stop the rest."""
        registry = ListenerRegistry()
        after = Mock()
        registry.add(Mock(side_effect=RuntimeError("listener bug")))
        registry.add(after)

        registry.notify(True)

        after.assert_called_once_with(True)

    def test_unregister_during_notification(self):
        """Test a listener may remove itself while being notified."""
        registry = ListenerRegistry()
        calls = []

        def once(healthy):
            calls.append(healthy)
            registry.remove(once_id)

        once_id = registry.add(once)
        registry.notify(False)
        registry.notify(True)

        assert calls == [False]


class TestCheckHealth:
    """Test debounced health transitions."""

    @pytest.mark.asyncio
    async def test_flips_after_max_consecutive_failures(self, monitor, fake_client):
        """Test exactly max_consecutive_failures failures flip health."""
        fake_client.script_probes(failure(), failure(), failure())

        assert await monitor.check_health() is True
        assert await monitor.check_health() is True
        assert monitor.state.consecutive_failures == 2

        assert await monitor.check_health() is False
        assert monitor.status == HealthStatus.UNHEALTHY

    @pytest.mark.asyncio
    async def test_intervening_success_resets_counter(self, monitor, fake_client):
        """Test a success between failures resets the counter without a transition."""
        listener = Mock()
        monitor.register_health_listener(listener)
        fake_client.script_probes(failure(), failure(), True, failure(), failure())

        for _ in range(5):
            await monitor.check_health()

        assert monitor.state.is_healthy
        assert monitor.state.consecutive_failures == 2
        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_single_success_restores_health(self, monitor, fake_client):
        """Test one success after becoming unhealthy flips back immediately."""
        fake_client.script_probes(failure(), failure(), failure(), True)
        for _ in range(3):
            await monitor.check_health()
        assert not monitor.state.is_healthy

        assert await monitor.check_health() is True
        assert monitor.state.consecutive_failures == 0

    @pytest.mark.asyncio
    async def test_last_check_time_updated_every_probe(self, monitor, fake_client, clock):
        """Test last_check_time moves on success and on failure."""
        await monitor.check_health()
        assert monitor.state.last_check_time == clock.now

        clock.advance(10)
        fake_client.script_probes(failure())
        await monitor.check_health()
        assert monitor.state.last_check_time == clock.now

    @pytest.mark.asyncio
    async def test_unexpected_probe_error_counts_as_failure(self, monitor, fake_client):
        """Test errors outside the database hierarchy still count."""
        fake_client.script_probes(RuntimeError("bug"))

        await monitor.check_health()

        assert monitor.state.consecutive_failures == 1

    @pytest.mark.asyncio
    async def test_concurrent_checks_coalesce(self, monitor, fake_client):
        """Test a forced check during a scheduled one shares its probe."""
        fake_client.probe_delay = 0.02

        results = await asyncio.gather(
            monitor.check_health(), monitor.force_health_check(), monitor.check_health()
        )

        assert results == [True, True, True]
        assert fake_client.probe_calls == 1
        assert monitor.check_count == 1

    @pytest.mark.asyncio
    async def test_sequential_checks_probe_each_time(self, monitor, fake_client):
        """Test coalescing only applies while a probe is in flight."""
        await monitor.check_health()
        await monitor.force_health_check()

        assert fake_client.probe_calls == 2


class TestListeners:
    """Test transition notifications."""

    @pytest.mark.asyncio
    async def test_listeners_receive_transitions(self, monitor, fake_client):
        """Test listeners see False on failure and True on restore."""
        listener = Mock()
        monitor.register_health_listener(listener)
        fake_client.script_probes(failure(), failure(), failure(), True)

        for _ in range(4):
            await monitor.check_health()

        assert [c.args[0] for c in listener.call_args_list] == [False, True]

    @pytest.mark.asyncio
    async def test_unregister_stops_only_that_listener(self, monitor, fake_client):
        """Test unregistering one listener leaves the others subscribed."""
        kept = Mock()
        removed = Mock()
        monitor.register_health_listener(kept)
        unregister = monitor.register_health_listener(removed)

        unregister()
        unregister()

        fake_client.script_probes(failure(), failure(), failure())
        for _ in range(3):
            await monitor.check_health()

        kept.assert_called_once_with(False)
        removed.assert_not_called()
        assert monitor.listener_count == 1

    @pytest.mark.asyncio
    async def test_raising_listener_does_not_break_check(self, monitor, fake_client):
        """Test a failing listener is logged and the check still completes."""
        monitor.register_health_listener(Mock(side_effect=RuntimeError("boom")))
        after = Mock()
        monitor.register_health_listener(after)
        fake_client.script_probes(failure(), failure(), failure())

        for _ in range(3):
            await monitor.check_health()

        after.assert_called_once_with(False)


class TestStaleness:
    """Test fail-closed health reads."""

    @pytest.mark.asyncio
    async def test_fresh_state_returns_cached_flag(self, monitor):
        """Test a recent check is served from cache."""
        await monitor.check_health()

        assert monitor.is_database_healthy() is True

    @pytest.mark.asyncio
    async def test_stale_state_returns_false_and_rechecks(self, monitor, fake_client, clock):
        """Test a check older than the staleness window reads False and re-probes."""
        await monitor.check_health()
        clock.advance(601)

        assert monitor.is_database_healthy() is False

        await monitor.drain()
        assert fake_client.probe_calls == 2
        assert monitor.is_database_healthy() is True

    @pytest.mark.asyncio
    async def test_stale_reads_do_not_stack_probes(self, monitor, fake_client):
        """Test repeated stale reads share one background probe."""
        fake_client.probe_delay = 0.01

        assert monitor.is_database_healthy() is False
        assert monitor.is_database_healthy() is False
        await monitor.drain()

        assert fake_client.probe_calls == 1

    def test_stale_without_event_loop(self, monitor):
        """Test a stale read outside the event loop just reports False."""
        assert monitor.is_database_healthy() is False


class TestLifecycle:
    """Test start and cleanup."""

    @pytest.mark.asyncio
    async def test_start_runs_initial_and_periodic_checks(self, monitor, fake_client):
        """Test start() checks immediately and then every interval."""
        monitor.start()
        await asyncio.sleep(0.12)
        monitor.cleanup()
        await monitor.drain()

        assert fake_client.probe_calls >= 2
        assert monitor.get_health_summary()["monitoring"] is False

    @pytest.mark.asyncio
    async def test_cleanup_clears_listeners_and_discards_results(self, monitor, fake_client):
        """Test results arriving after cleanup change nothing."""
        listener = Mock()
        monitor.register_health_listener(listener)
        fake_client.probe_delay = 0.02
        fake_client.script_probes(failure())
        monitor._state.consecutive_failures = 2

        checking = asyncio.create_task(monitor.check_health())
        await asyncio.sleep(0.005)
        monitor.cleanup()
        monitor.cleanup()
        await checking

        assert monitor.state.is_healthy
        assert monitor.state.consecutive_failures == 2
        assert monitor.listener_count == 0
        listener.assert_not_called()

    @pytest.mark.asyncio
    async def test_health_summary(self, monitor, fake_client, clock):
        """Test the summary snapshot."""
        await monitor.check_health()
        clock.advance(5)

        summary = monitor.get_health_summary()

        assert summary["status"] == "healthy"
        assert summary["consecutive_failures"] == 0
        assert summary["last_check_age"] == 5
        assert summary["check_count"] == 1


class TestHealthEvents:
    """Test transition audit records."""

    @pytest.mark.asyncio
    async def test_failure_and_restore_are_recorded(self, fake_client, health_settings, clock):
        """Test FAILED and RESTORED events are written to the system log."""
        recorder = HealthEventRecorder(fake_client)
        monitor = HealthMonitor(fake_client, health_settings, recorder, clock=clock)
        fake_client.script_probes(failure(), failure(), failure(), True)

        for _ in range(4):
            await monitor.check_health()
        await monitor.drain()

        inserts = [params for query, params in fake_client.executed if "system_log" in query]
        assert [params[1] for params in inserts] == ["ERROR", "INFO"]
        assert inserts[0][3] == "Database health status: FAILED"
        assert inserts[1][3] == "Database health status: RESTORED"
        assert all(params[2] == "DB_HEALTH_MONITOR" for params in inserts)

    @pytest.mark.asyncio
    async def test_recording_failure_is_swallowed(self, fake_client, health_settings):
        """Test a failed insert does not affect the health check."""
        recorder = HealthEventRecorder(fake_client)
        monitor = HealthMonitor(fake_client, health_settings, recorder)
        fake_client.execute_error = DatabaseTimeoutException("insert", 5.0)
        fake_client.script_probes(failure(), failure(), failure())

        for _ in range(3):
            await monitor.check_health()
        await monitor.drain()

        assert monitor.state.is_healthy is False
        assert recorder.failed == 1
        assert recorder.recorded == 0

    @pytest.mark.asyncio
    async def test_background_task_errors_are_logged(self, fake_client, health_settings, caplog):
        """Test an exception escaping a background task is logged."""
        recorder = HealthEventRecorder(fake_client)
        recorder.record = AsyncMock(side_effect=RuntimeError("recorder bug"))
        monitor = HealthMonitor(fake_client, health_settings, recorder)
        fake_client.script_probes(failure(), failure(), failure())

        with caplog.at_level("ERROR"):
            for _ in range(3):
                await monitor.check_health()
            await monitor.drain()

        assert "recorder bug" in caplog.text


class TestScenarios:
    """End-to-end health transitions."""

    @pytest.mark.asyncio
    async def test_three_failures_flip_then_one_success_restores(
        self, fake_client, health_settings, clock
    ):
        """Test unhealthy after exactly three failures and healthy after one success."""
        listener = Mock()
        monitor = HealthMonitor(fake_client, health_settings, clock=clock)
        monitor.register_health_listener(listener)

        fake_client.healthy = False
        statuses = [await monitor.check_health() for _ in range(3)]
        assert statuses == [True, True, False]

        fake_client.healthy = True
        assert await monitor.force_health_check() is True

        assert listener.call_count == 2
        assert monitor.is_database_healthy() is True
