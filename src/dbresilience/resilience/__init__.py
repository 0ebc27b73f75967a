"""
Resilience Package

Provides the resilience patterns for database access:
- Retry with exponential backoff and pluggable transient-error classification
- Connection lifecycle management with bounded reconnection
- Debounced health monitoring with transition listeners
- Safe read/write/transaction wrappers and availability guards
"""

from .connection_manager import ConnectionManager, ConnectionState, ConnectionStatus
from .guard import require_database_connection, require_healthy_database
from .health import HealthMonitor, HealthState, HealthStatus, ListenerRegistry
from .operations import MISSING, DatabaseOperations
from .retry import (
    ErrorClassifier,
    ExponentialBackoff,
    RetryExecutor,
    RetryPolicy,
    execute_with_retry,
    retry_transient,
)
from .scheduling import DelayedTaskScheduler, PeriodicTask

__all__ = [
    "ConnectionManager",
    "ConnectionState",
    "ConnectionStatus",
    "HealthMonitor",
    "HealthState",
    "HealthStatus",
    "ListenerRegistry",
    "DatabaseOperations",
    "MISSING",
    "ErrorClassifier",
    "ExponentialBackoff",
    "RetryExecutor",
    "RetryPolicy",
    "execute_with_retry",
    "retry_transient",
    "DelayedTaskScheduler",
    "PeriodicTask",
    "require_database_connection",
    "require_healthy_database",
]
