"""
Decorators that turn callers away while the database is known to be down.
"""

import inspect
import logging
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import TYPE_CHECKING, Any, TypeVar

from dbresilience.exceptions import DatabaseUnavailableException

if TYPE_CHECKING:
    from dbresilience.resilience.connection_manager import ConnectionManager
    from dbresilience.resilience.health import HealthMonitor

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable[..., Awaitable[Any]])


def _guard(check: Callable[[], bool], reason: str, retry_after: float | None) -> Callable[[F], F]:
    def decorator(func: F) -> F:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"database guards require a coroutine function, got {func!r}")

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            if not check():
                logger.warning(f"Rejecting call to {func.__name__}: {reason}")
                raise DatabaseUnavailableException(reason, retry_after)
            return await func(*args, **kwargs)

        return wrapper  # type: ignore[return-value]

    return decorator


def require_database_connection(
    manager: "ConnectionManager", retry_after: float | None = 30.0
) -> Callable[[F], F]:
    """
    Reject calls with DatabaseUnavailableException while the manager reports
    no connection. The wrapped function is not called in that case.
    """
    return _guard(manager.is_connected_to_database, "database is not connected", retry_after)


def require_healthy_database(
    monitor: "HealthMonitor", retry_after: float | None = 30.0
) -> Callable[[F], F]:
    """Reject calls with DatabaseUnavailableException while the monitor reports unhealthy."""
    return _guard(monitor.is_database_healthy, "database is unhealthy", retry_after)
