"""
Database health monitoring.

Keeps a debounced health signal for the database: it flips to unhealthy only
after several consecutive failed probes and back to healthy on the first
successful one. Transitions are pushed to registered listeners and recorded
in the system log.
"""

import asyncio
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from dbresilience.audit.health_events import HealthEvent, HealthEventRecorder, HealthEventStatus
from dbresilience.config import HealthCheckSettings
from dbresilience.database.client import DatabaseClient
from dbresilience.exceptions import DatabaseException
from dbresilience.resilience.scheduling import PeriodicTask

logger = logging.getLogger(__name__)

HealthListener = Callable[[bool], Any]


class HealthStatus(Enum):
    """Debounced database health."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


@dataclass
class HealthState:
    """Mutable health state owned by a HealthMonitor."""

    is_healthy: bool = True
    last_check_time: float = 0.0  # 0.0 means never checked
    consecutive_failures: int = 0
    max_consecutive_failures: int = 3


class ListenerRegistry:
    """
    Subscription map of health listeners keyed by a stable integer id.

    Listeners are called in registration order. Notification iterates over a
    snapshot, so a listener may unregister itself or others while being called.
    """

    def __init__(self) -> None:
        self._listeners: dict[int, HealthListener] = {}
        self._ids = itertools.count(1)

    def __len__(self) -> int:
        return len(self._listeners)

    def add(self, listener: HealthListener) -> int:
        subscription_id = next(self._ids)
        self._listeners[subscription_id] = listener
        return subscription_id

    def remove(self, subscription_id: int) -> bool:
        return self._listeners.pop(subscription_id, None) is not None

    def clear(self) -> None:
        self._listeners.clear()

    def notify(self, is_healthy: bool) -> None:
        """Call every listener; a raising listener is logged and skipped."""
        for subscription_id, listener in list(self._listeners.items()):
            try:
                listener(is_healthy)
            except Exception as e:
                logger.error(
                    f"Error in health listener {subscription_id}: {e}", exc_info=True
                )


class HealthMonitor:
    """
    Periodically probes the database and maintains a debounced health flag.

    Only one probe runs at a time: a check requested while another is in
    flight waits for that one instead of starting its own.
    """

    MONITOR_TASK = "database-health-monitor"

    def __init__(
        self,
        client: DatabaseClient,
        settings: HealthCheckSettings | None = None,
        recorder: HealthEventRecorder | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.settings = settings or HealthCheckSettings()
        self.recorder = recorder
        self._clock = clock

        self._state = HealthState(max_consecutive_failures=self.settings.max_consecutive_failures)
        self._listeners = ListenerRegistry()
        self._monitor_task: PeriodicTask | None = None
        self._inflight: asyncio.Future[bool] | None = None
        self._background: set[asyncio.Future[Any]] = set()
        self._closed = False
        self.check_count = 0

    @property
    def state(self) -> HealthState:
        """Copy of the current state."""
        return replace(self._state)

    @property
    def status(self) -> HealthStatus:
        return HealthStatus.HEALTHY if self._state.is_healthy else HealthStatus.UNHEALTHY

    @property
    def check_in_progress(self) -> bool:
        return self._inflight is not None and not self._inflight.done()

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def start(self) -> None:
        """Run an initial check in the background and start periodic checks."""
        if self._closed:
            logger.warning("Health monitor has been cleaned up; not starting")
            return

        self._spawn(self.check_health())

        if self._monitor_task is None:
            self._monitor_task = PeriodicTask(
                self.MONITOR_TASK, self.settings.interval, self.check_health
            )
        self._monitor_task.start()

    async def check_health(self) -> bool:
        """
        Probe the database and update the health state.

        Returns:
            The health flag after the check
        """
        if self._inflight is None or self._inflight.done():
            self._inflight = asyncio.ensure_future(self._run_check())
        # A cancelled caller must not cancel the probe other callers share
        return await asyncio.shield(self._inflight)

    async def _run_check(self) -> bool:
        error: BaseException | None = None
        try:
            await self.client.probe(self.settings.probe_timeout)
        except DatabaseException as e:
            error = e
            logger.warning(f"Database health probe failed: {e}")
        except Exception as e:
            error = e
            logger.error(f"Error during database health check: {e}", exc_info=True)

        if self._closed:
            return self._state.is_healthy

        state = self._state
        previous = state.is_healthy
        self.check_count += 1

        if error is None:
            state.consecutive_failures = 0
            state.is_healthy = True
        else:
            state.consecutive_failures += 1
            if state.consecutive_failures >= state.max_consecutive_failures:
                state.is_healthy = False

        state.last_check_time = self._clock()

        if previous != state.is_healthy:
            self._on_transition(error)

        return state.is_healthy

    def _on_transition(self, error: BaseException | None) -> None:
        state = self._state
        if state.is_healthy:
            logger.info("Database health restored")
            event = HealthEvent.for_transition(
                HealthEventStatus.RESTORED,
                "Database connection restored after previous failures",
            )
        else:
            logger.error(
                f"Database health check failed {state.consecutive_failures} times in a row"
            )
            event = HealthEvent.for_transition(
                HealthEventStatus.FAILED,
                f"Database connection failed after {state.consecutive_failures} "
                f"consecutive attempts: {error}",
            )

        self._listeners.notify(state.is_healthy)

        if self.recorder is not None:
            self._spawn(self.recorder.record(event))

    def _spawn(self, coro: Any) -> None:
        future = asyncio.ensure_future(coro)
        self._background.add(future)
        future.add_done_callback(self._background_done)

    def _background_done(self, future: asyncio.Future[Any]) -> None:
        self._background.discard(future)
        if not future.cancelled() and future.exception() is not None:
            logger.error(f"Background health task failed: {future.exception()}")

    async def drain(self) -> None:
        """Wait for background checks and event writes started so far."""
        while self._background:
            await asyncio.wait(set(self._background))

    def register_health_listener(self, listener: HealthListener) -> Callable[[], None]:
        """
        Register a callback invoked with the new health flag on every transition.

        Returns:
            Function that unregisters the listener; calling it again does nothing
        """
        subscription_id = self._listeners.add(listener)

        def unregister() -> None:
            self._listeners.remove(subscription_id)

        return unregister

    def is_database_healthy(self) -> bool:
        """
        Cached health.

        When the last check is older than the staleness window this returns
        False and starts a re-check in the background, if none is running.
        """
        age = self._clock() - self._state.last_check_time
        if age > self.settings.staleness_window:
            if not self._closed and not self.check_in_progress:
                try:
                    asyncio.get_running_loop()
                except RuntimeError:
                    logger.debug("No running event loop; skipping background health check")
                else:
                    self._spawn(self.check_health())
            return False

        return self._state.is_healthy

    async def force_health_check(self) -> bool:
        """Run a check now (or join the one in flight) and return the health flag."""
        return await self.check_health()

    def get_health_summary(self) -> dict[str, Any]:
        """Snapshot for status reports."""
        state = self._state
        return {
            "status": self.status.value,
            "healthy": state.is_healthy,
            "consecutive_failures": state.consecutive_failures,
            "max_consecutive_failures": state.max_consecutive_failures,
            "last_check_age": (
                self._clock() - state.last_check_time if state.last_check_time else None
            ),
            "check_count": self.check_count,
            "listeners": len(self._listeners),
            "monitoring": self._monitor_task is not None and self._monitor_task.is_running,
        }

    def cleanup(self) -> None:
        """Stop periodic checks and drop every listener. Safe to call more than once."""
        if self._monitor_task is not None:
            self._monitor_task.stop()
        self._listeners.clear()
        if not self._closed:
            self._closed = True
            logger.info("Health monitor stopped")
