"""
Exception mapper for database errors.

Translates psycopg driver errors into the resilience exception hierarchy, and
maps resilience exceptions to HTTP-style error responses for API layers that
sit on top of this package.
"""

import builtins
from dataclasses import dataclass
from typing import Any

import psycopg
from psycopg_pool import PoolTimeout, TooManyRequests

from dbresilience.exceptions import (
    ConnectionPoolExhaustedException,
    DatabaseConnectionException,
    DatabaseException,
    DatabaseIntegrityException,
    DatabaseQueryException,
    DatabaseTimeoutException,
    DatabaseUnavailableException,
    RecordNotFoundException,
    TransactionConflictException,
    TransientConnectivityError,
)

# PostgreSQL SQLSTATE codes
UNIQUE_VIOLATION = "23505"
FOREIGN_KEY_VIOLATION = "23503"
NOT_NULL_VIOLATION = "23502"
CHECK_VIOLATION = "23514"
SERIALIZATION_FAILURE = "40001"
DEADLOCK_DETECTED = "40P01"
QUERY_CANCELED = "57014"


@dataclass(frozen=True)
class ErrorResponse:
    """Transport-neutral error payload."""

    status_code: int
    error: str
    message: str
    details: str | None = None
    code: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary, omitting empty fields."""
        payload: dict[str, Any] = {"error": self.error, "message": self.message}
        if self.details is not None:
            payload["details"] = self.details
        if self.code is not None:
            payload["code"] = self.code
        return payload


def error_code(error: BaseException) -> str | None:
    """Return the machine-readable code of an error (SQLSTATE first), if any."""
    code = getattr(error, "sqlstate", None) or getattr(error, "code", None)
    return str(code) if code is not None else None


class DatabaseErrorMapper:
    """Maps database exceptions between the driver, this package and callers."""

    def __init__(self, max_connections: int | None = None) -> None:
        self.max_connections = max_connections

    def map_driver_exception(
        self, error: BaseException, operation: str = "query", timeout: float | None = None
    ) -> DatabaseException:
        """
        Map a driver-level exception to a resilience exception.

        Args:
            error: The original exception raised by psycopg / psycopg_pool / asyncio
            operation: The query or operation being performed
            timeout: Time limit that applied to the operation, if any

        Returns:
            A DatabaseException subclass carrying the original SQLSTATE
        """
        if isinstance(error, DatabaseException):
            return error

        code = error_code(error)

        if isinstance(error, (PoolTimeout, TooManyRequests)):
            return ConnectionPoolExhaustedException(self.max_connections, str(error))

        if isinstance(error, builtins.TimeoutError):
            return DatabaseTimeoutException(operation[:100], timeout or 0.0)

        if isinstance(error, psycopg.errors.QueryCanceled) or code == QUERY_CANCELED:
            return DatabaseTimeoutException(operation[:100], timeout or 0.0, code=code)

        if code in (SERIALIZATION_FAILURE, DEADLOCK_DETECTED):
            return TransactionConflictException(str(error), code=code)

        if isinstance(error, psycopg.IntegrityError):
            diag = getattr(error, "diag", None)
            constraint = getattr(diag, "constraint_name", None) if diag else None
            return DatabaseIntegrityException(constraint, str(error), code=code)

        if isinstance(error, (psycopg.OperationalError, psycopg.InterfaceError, OSError)):
            return DatabaseConnectionException(str(error), code=code)

        return DatabaseQueryException(operation, str(error), code=code)

    def map_to_response(self, error: BaseException) -> ErrorResponse:
        """
        Map an exception to an error response.

        Args:
            error: Any exception surfaced by a database operation

        Returns:
            ErrorResponse with an HTTP status code
        """
        if isinstance(error, DatabaseUnavailableException):
            return ErrorResponse(
                status_code=503,
                error="Service Unavailable",
                message="Database service is currently unavailable. Please try again later.",
            )

        if isinstance(error, TransientConnectivityError):
            return ErrorResponse(
                status_code=503,
                error="Service Unavailable",
                message="Database connection issue",
                details="Please try again later",
            )

        if isinstance(error, RecordNotFoundException):
            return ErrorResponse(
                status_code=404,
                error="Not Found",
                message="The requested resource was not found",
                details=str(error),
            )

        if not isinstance(error, DatabaseException):
            return ErrorResponse(
                status_code=500,
                error="Internal Server Error",
                message=str(error) or "An unexpected error occurred",
            )

        code = error.code
        if code == UNIQUE_VIOLATION:
            constraint = getattr(error, "constraint", None)
            return ErrorResponse(
                status_code=409,
                error="Conflict",
                message="A record with this data already exists",
                details=f"Duplicate key: {constraint}" if constraint else None,
            )

        if code == FOREIGN_KEY_VIOLATION:
            return ErrorResponse(
                status_code=400,
                error="Bad Request",
                message="Invalid relationship reference",
                details=getattr(error, "constraint", None),
            )

        if code in (NOT_NULL_VIOLATION, CHECK_VIOLATION):
            return ErrorResponse(
                status_code=400,
                error="Bad Request",
                message="Validation error",
                details=str(error),
            )

        return ErrorResponse(
            status_code=500,
            error="Internal Server Error",
            message="Database error",
            code=code,
        )
