"""
Exception hierarchy for the database resilience layer.

Errors are split into two families: transient connectivity failures, which the
retry executor is allowed to repeat, and permanent database errors, which fail
fast. Every database error carries the driver's machine-readable code (the
PostgreSQL SQLSTATE) so callers and classifiers can inspect it.
"""

from dataclasses import dataclass
from typing import Any


class DatabaseException(Exception):
    """Base exception for all database-related errors."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message)
        self.details = details or {}
        self.code = code


# ============================================================================
# Transient Errors
# ============================================================================


class TransientConnectivityError(DatabaseException):
    """Base for failures that may succeed if the operation is repeated."""

    pass


class DatabaseConnectionException(TransientConnectivityError):
    """Raised when the database cannot be reached or the connection dropped."""

    def __init__(self, reason: str, code: str | None = None) -> None:
        super().__init__(f"Database connection failed: {reason}", {"reason": reason}, code)
        self.reason = reason


class DatabaseTimeoutException(TransientConnectivityError):
    """Raised when a database operation exceeds its time limit."""

    def __init__(self, operation: str, timeout_seconds: float, code: str | None = None) -> None:
        super().__init__(
            f"Database operation '{operation}' timed out after {timeout_seconds}s",
            {"operation": operation, "timeout_seconds": timeout_seconds},
            code,
        )
        self.operation = operation
        self.timeout_seconds = timeout_seconds


class ConnectionPoolExhaustedException(TransientConnectivityError):
    """Raised when no pooled connection could be checked out in time."""

    def __init__(self, max_connections: int | None = None, reason: str | None = None) -> None:
        message = "Unable to check out connection from the pool"
        if max_connections is not None:
            message += f" (max_connections={max_connections})"
        if reason:
            message += f": {reason}"
        super().__init__(message, {"max_connections": max_connections, "reason": reason})
        self.max_connections = max_connections


class TransactionConflictException(TransientConnectivityError):
    """Raised on serialization failures, deadlocks and standby recovery conflicts."""

    def __init__(self, error: str, code: str | None = None) -> None:
        super().__init__(f"Transaction conflict: {error}", {"error": error}, code)
        self.error = error


# ============================================================================
# Permanent Errors
# ============================================================================


class PermanentDatabaseError(DatabaseException):
    """Base for failures that repeating the operation will not fix."""

    pass


class DatabaseQueryException(PermanentDatabaseError):
    """Raised when a query is rejected by the database."""

    def __init__(self, query: str, error: str, code: str | None = None) -> None:
        # Truncate long queries
        super().__init__(
            f"Database query failed: {error}", {"query": query[:500], "error": error}, code
        )
        self.query = query
        self.error = error


class DatabaseIntegrityException(PermanentDatabaseError):
    """Raised when a constraint (unique, foreign key, not-null, check) is violated."""

    def __init__(self, constraint: str | None, error: str, code: str | None = None) -> None:
        message = "Integrity constraint violated"
        if constraint:
            message += f" ({constraint})"
        super().__init__(f"{message}: {error}", {"constraint": constraint, "error": error}, code)
        self.constraint = constraint
        self.error = error


class DatabaseTransactionException(PermanentDatabaseError):
    """Raised when a transaction cannot be started, committed or rolled back."""

    def __init__(self, operation: str | None = None, error: str | None = None) -> None:
        message = "Database transaction failed"
        if operation:
            message += f" during {operation}"
        if error:
            message += f": {error}"
        super().__init__(message, {"operation": operation, "error": error})
        self.operation = operation
        self.error = error


# ============================================================================
# Other Errors
# ============================================================================


class RecordNotFoundException(DatabaseException):
    """
    Raised when a record that should exist cannot be found.

    When ``replica_lag`` is set the miss is attributed to a read replica that has
    not yet replayed a recent write, which makes the error worth retrying.
    """

    def __init__(self, entity_type: str, identifier: Any, replica_lag: bool = False) -> None:
        super().__init__(
            f"{entity_type} with identifier '{identifier}' not found",
            {"entity_type": entity_type, "identifier": str(identifier), "replica_lag": replica_lag},
        )
        self.entity_type = entity_type
        self.identifier = identifier
        self.replica_lag = replica_lag


class DatabaseUnavailableException(DatabaseException):
    """Raised when a caller is turned away because the database is known to be down."""

    def __init__(self, reason: str | None = None, retry_after: float | None = None) -> None:
        message = "Database service is currently unavailable"
        if reason:
            message += f": {reason}"
        super().__init__(message, {"reason": reason, "retry_after": retry_after})
        self.reason = reason
        self.retry_after = retry_after


@dataclass
class ConfigValidationError(Exception):
    """Configuration validation error."""

    field_name: str
    expected_type: type[Any]
    actual_value: Any
    message: str = ""

    def __str__(self) -> str:
        return (
            f"Config validation failed for '{self.field_name}': "
            f"expected {self.expected_type.__name__}, got {type(self.actual_value).__name__}"
            + (f" - {self.message}" if self.message else "")
        )
