"""
Service container for the database resilience layer.

Builds the process-wide client, retry executor, connection manager, health
monitor and operation wrappers from one configuration, and owns their startup
and teardown order.
"""

import logging
from datetime import UTC, datetime
from typing import Any

from dbresilience.audit.health_events import HealthEventRecorder
from dbresilience.config import ResilienceConfig
from dbresilience.database.client import DatabaseClient, PostgreSQLClient
from dbresilience.resilience.connection_manager import ConnectionManager
from dbresilience.resilience.health import HealthMonitor
from dbresilience.resilience.operations import DatabaseOperations
from dbresilience.resilience.retry import RetryExecutor, RetryPolicy

logger = logging.getLogger(__name__)


class ResilienceServices:
    """Wires and owns the resilience components."""

    def __init__(
        self,
        config: ResilienceConfig | None = None,
        client: DatabaseClient | None = None,
    ) -> None:
        self.config = config or ResilienceConfig()
        self.config.validate()

        self.client: DatabaseClient = client or PostgreSQLClient(
            self.config.database, self.config.logging
        )
        self.executor = RetryExecutor(
            RetryPolicy(
                max_retries=self.config.retry.max_retries,
                base_delay=self.config.retry.retry_delay,
                jitter_max=self.config.retry.jitter_max,
            ),
            client=self.client,
        )
        self.connection_manager = ConnectionManager(
            self.client, self.config.health_check, self.config.reconnect
        )
        self.health_monitor = HealthMonitor(
            self.client,
            self.config.health_check,
            HealthEventRecorder(self.client, self.config.health_check.probe_timeout),
        )
        self.operations = DatabaseOperations(self.executor, self.client)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """
        Probe the database and start background monitoring.

        ``health_check.enabled`` gates only the connection manager's polling;
        the health monitor always runs.
        """
        if self._started:
            logger.warning("Resilience services already started")
            return

        await self.connection_manager.initialize()
        self.connection_manager.start_health_check()
        self.health_monitor.start()
        self._started = True
        logger.info("Resilience services started")

    async def shutdown(self) -> None:
        """Stop monitoring, then close the connection. Safe to call more than once."""
        self.health_monitor.cleanup()
        await self.connection_manager.shutdown()
        self._started = False
        logger.info("Resilience services shut down")

    def status_report(self) -> dict[str, Any]:
        """
        Combined database status.

        Returns:
            ``{"status": "ok" | "error", "timestamp": ..., "components": {...}}``
        """
        healthy = self.health_monitor.is_database_healthy()
        connected = self.connection_manager.is_connected_to_database()
        database_ok = healthy and connected

        return {
            "status": "ok" if database_ok else "error",
            "timestamp": datetime.now(UTC).isoformat(),
            "components": {
                "database": {
                    "status": "ok" if database_ok else "error",
                    "message": (
                        "Database connection successful"
                        if database_ok
                        else "Database connection failed"
                    ),
                    "connection": self.connection_manager.get_status_summary(),
                    "health": self.health_monitor.get_health_summary(),
                },
            },
        }


# Global services instance
_services: ResilienceServices | None = None


def get_services(config: ResilienceConfig | None = None) -> ResilienceServices:
    """
    Get the process-wide services instance.

    Args:
        config: Optional configuration for first initialization; defaults to
            ``ResilienceConfig.from_env()``

    Returns:
        The global services instance
    """
    global _services
    if _services is None:
        _services = ResilienceServices(config or ResilienceConfig.from_env())
    return _services


def reset_services() -> None:
    """Forget the global services instance (does not shut it down)."""
    global _services
    _services = None
