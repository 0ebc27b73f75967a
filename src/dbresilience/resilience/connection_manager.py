"""
Database connection lifecycle management.

Tracks whether the database is reachable: an initial probe at startup, periodic
polling afterwards, and a bounded series of reconnect attempts with 1.5x
backoff when the connection is lost. The cached status fails closed once it is
older than the staleness window.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any

from dbresilience.config import HealthCheckSettings, ReconnectSettings
from dbresilience.database.client import DatabaseClient
from dbresilience.exceptions import DatabaseException
from dbresilience.resilience.retry import ExponentialBackoff
from dbresilience.resilience.scheduling import DelayedTaskScheduler, PeriodicTask

logger = logging.getLogger(__name__)


class ConnectionStatus(Enum):
    """Connectivity as last observed."""

    DISCONNECTED = "disconnected"
    CONNECTED = "connected"


@dataclass
class ConnectionState:
    """Mutable connectivity state owned by a ConnectionManager."""

    is_connected: bool = False
    last_check_time: float = 0.0  # 0.0 means never checked
    reconnect_attempts: int = 0
    max_reconnect_attempts: int = 10


class ConnectionManager:
    """
    Owns the connectivity status of one database client.

    Construct once per process, call ``initialize()`` at startup, then
    ``start_health_check()``; call ``shutdown()`` on the way out.
    """

    HEALTH_CHECK_TASK = "connection-health-check"

    def __init__(
        self,
        client: DatabaseClient,
        health_check: HealthCheckSettings | None = None,
        reconnect: ReconnectSettings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.health_check = health_check or HealthCheckSettings()
        self.reconnect = reconnect or ReconnectSettings()
        self._clock = clock

        self._state = ConnectionState(
            max_reconnect_attempts=self.reconnect.max_reconnect_attempts
        )
        self._backoff = ExponentialBackoff(
            self.reconnect.base_reconnect_delay, self.reconnect.backoff_factor
        )
        self._health_task: PeriodicTask | None = None
        self._reconnect_scheduler = DelayedTaskScheduler("database-reconnect")
        self._checking = False  # a tick is probing
        self._closed = False

    @property
    def state(self) -> ConnectionState:
        """Copy of the current state."""
        return replace(self._state)

    @property
    def status(self) -> ConnectionStatus:
        return ConnectionStatus.CONNECTED if self._state.is_connected else ConnectionStatus.DISCONNECTED

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_scheduler.pending

    async def _probe(self) -> bool:
        try:
            await self.client.probe(self.health_check.probe_timeout)
        except DatabaseException as e:
            logger.debug(f"Database probe failed: {e}")
            return False
        return True

    async def initialize(self) -> None:
        """Probe the database once. Failures are recorded, never raised."""
        try:
            connected = await self._probe()
        except Exception as e:
            logger.error(f"Error initializing database connection: {e}", exc_info=True)
            connected = False

        if self._closed:
            return

        self._state.is_connected = connected
        self._state.last_check_time = self._clock()

        if connected:
            logger.info("Database connection initialized successfully")
        else:
            logger.error("Failed to initialize database connection")

    def start_health_check(self) -> bool:
        """
        Start periodic polling, when enabled in the health check settings.

        Returns:
            True if polling is running after the call
        """
        if not self.health_check.enabled:
            logger.info("Connection health check disabled by configuration")
            return False

        if self._closed:
            logger.warning("Connection manager is shut down; not starting health check")
            return False

        if self._health_task is None:
            self._health_task = PeriodicTask(
                self.HEALTH_CHECK_TASK, self.health_check.interval, self._health_check_tick
            )
        self._health_task.start()
        return True

    async def _health_check_tick(self) -> None:
        """
        One polling round.

        PeriodicTask never overlaps its own ticks; ``_checking`` covers callers
        that invoke the tick directly while a scheduled one is still probing.
        """
        if self._checking:
            logger.debug("Connection health check already in progress; skipping tick")
            return

        self._checking = True
        try:
            try:
                connected = await self._probe()
            except Exception as e:
                if self._closed:
                    return
                logger.error(f"Error during database health check: {e}", exc_info=True)
                self._state.is_connected = False
                self._state.last_check_time = self._clock()
                self.attempt_reconnect()
                return

            if self._closed:
                return

            was_connected = self._state.is_connected
            self._state.is_connected = connected
            self._state.last_check_time = self._clock()

            if connected and not was_connected:
                logger.info("Database connection restored")
                self._state.reconnect_attempts = 0
            elif was_connected and not connected:
                logger.error("Database connection lost")
                self.attempt_reconnect()
        finally:
            self._checking = False

    def attempt_reconnect(self) -> bool:
        """
        Schedule a reconnect attempt after a backoff delay.

        Gives up once ``max_reconnect_attempts`` attempts have been made since the
        last successful probe. A request made while an attempt is already waiting
        is ignored.

        Returns:
            True if an attempt was scheduled
        """
        if self._closed:
            return False

        if self._reconnect_scheduler.pending:
            logger.debug("Reconnect attempt already pending")
            return False

        state = self._state
        if state.reconnect_attempts >= state.max_reconnect_attempts:
            logger.critical(
                f"Maximum reconnect attempts ({state.max_reconnect_attempts}) reached. Giving up."
            )
            return False

        state.reconnect_attempts += 1
        delay = self._backoff.get_delay(state.reconnect_attempts)
        logger.info(
            f"Attempting to reconnect to database in {delay:.2f}s "
            f"(attempt {state.reconnect_attempts}/{state.max_reconnect_attempts})"
        )
        return self._reconnect_scheduler.schedule(delay, self._reconnect_cycle)

    async def _reconnect_cycle(self) -> None:
        if self._closed:
            return

        try:
            # Drop pooled connections that may point at the old server
            await self.client.disconnect()
            connected = await self._probe()
        except Exception as e:
            if self._closed:
                return
            logger.error(f"Error reconnecting to database: {e}")
            self._state.is_connected = False
            self._state.last_check_time = self._clock()
            self.attempt_reconnect()
            return

        if self._closed:
            return

        self._state.is_connected = connected
        self._state.last_check_time = self._clock()

        if connected:
            logger.info("Successfully reconnected to database")
            self._state.reconnect_attempts = 0
        else:
            logger.error("Failed to reconnect to database")
            self.attempt_reconnect()

    def is_connected_to_database(self) -> bool:
        """
        Cached connectivity.

        Returns False when the last check is older than the staleness window,
        whatever the cached flag says.
        """
        age = self._clock() - self._state.last_check_time
        if age > self.reconnect.staleness_window:
            return False
        return self._state.is_connected

    def get_status_summary(self) -> dict[str, Any]:
        """Snapshot for status reports."""
        state = self._state
        return {
            "status": self.status.value,
            "connected": self.is_connected_to_database(),
            "last_check_age": (
                self._clock() - state.last_check_time if state.last_check_time else None
            ),
            "reconnect_attempts": state.reconnect_attempts,
            "max_reconnect_attempts": state.max_reconnect_attempts,
            "reconnect_pending": self.reconnect_pending,
            "closed": self._closed,
        }

    async def shutdown(self) -> None:
        """
        Stop polling, cancel any pending reconnect and disconnect the client.

        Probes already in flight finish but their results are discarded.
        Disconnect errors are logged. Safe to call more than once.
        """
        if self._closed:
            return
        self._closed = True

        if self._health_task is not None:
            self._health_task.stop()
        self._reconnect_scheduler.cancel()

        try:
            await self.client.disconnect()
            logger.info("Database connection closed")
        except Exception as e:
            logger.error(f"Error disconnecting from database: {e}")
