"""
Tests for the database exception mapper.
"""

import builtins

import psycopg
import pytest
from psycopg_pool import PoolTimeout

from dbresilience.exceptions import (
    ConnectionPoolExhaustedException,
    DatabaseConnectionException,
    DatabaseIntegrityException,
    DatabaseQueryException,
    DatabaseTimeoutException,
    DatabaseUnavailableException,
    RecordNotFoundException,
    TransactionConflictException,
)
from dbresilience.exceptions_mapper import DatabaseErrorMapper, ErrorResponse, error_code


@pytest.fixture
def mapper():
    return DatabaseErrorMapper(max_connections=10)


class TestMapDriverException:
    """Test driver errors are translated into the resilience hierarchy."""

    def test_pool_timeout(self, mapper):
        """Test a pool checkout timeout means the pool is exhausted."""
        mapped = mapper.map_driver_exception(PoolTimeout("couldn't get a connection"))

        assert isinstance(mapped, ConnectionPoolExhaustedException)
        assert mapped.max_connections == 10

    def test_asyncio_timeout(self, mapper):
        """Test a client-side timeout keeps the operation and limit."""
        mapped = mapper.map_driver_exception(
            builtins.TimeoutError(), operation="SELECT 1", timeout=2.0
        )

        assert isinstance(mapped, DatabaseTimeoutException)
        assert mapped.operation == "SELECT 1"
        assert mapped.timeout_seconds == 2.0

    def test_query_canceled(self, mapper):
        """Test a server statement timeout is a timeout."""
        mapped = mapper.map_driver_exception(psycopg.errors.QueryCanceled("canceling statement"))

        assert isinstance(mapped, DatabaseTimeoutException)
        assert mapped.code == "57014"

    @pytest.mark.parametrize(
        "error_cls, code",
        [
            (psycopg.errors.SerializationFailure, "40001"),
            (psycopg.errors.DeadlockDetected, "40P01"),
        ],
    )
    def test_transaction_conflicts(self, mapper, error_cls, code):
        """Test serialization failures and deadlocks are retryable conflicts."""
        mapped = mapper.map_driver_exception(error_cls("could not serialize access"))

        assert isinstance(mapped, TransactionConflictException)
        assert mapped.code == code

    def test_integrity_error(self, mapper):
        """Test constraint violations are permanent integrity errors."""
        mapped = mapper.map_driver_exception(psycopg.errors.ForeignKeyViolation("bad fk"))

        assert isinstance(mapped, DatabaseIntegrityException)
        assert mapped.code == "23503"

    @pytest.mark.parametrize(
        "error",
        [
            psycopg.OperationalError("server closed the connection unexpectedly"),
            psycopg.InterfaceError("connection already closed"),
            ConnectionRefusedError("connection refused"),
        ],
    )
    def test_connection_errors(self, mapper, error):
        """Test connectivity failures are connection exceptions."""
        assert isinstance(mapper.map_driver_exception(error), DatabaseConnectionException)

    def test_syntax_error_is_query_error(self, mapper):
        """Test anything else is a permanent query error."""
        mapped = mapper.map_driver_exception(
            psycopg.errors.SyntaxError("syntax error at or near"), operation="SELEC 1"
        )

        assert isinstance(mapped, DatabaseQueryException)
        assert mapped.query == "SELEC 1"
        assert mapped.code == "42601"

    def test_already_mapped_passes_through(self, mapper):
        """Test resilience exceptions are returned unchanged."""
        error = DatabaseConnectionException("down")

        assert mapper.map_driver_exception(error) is error


class TestErrorCode:
    """Test code extraction."""

    def test_sqlstate_preferred(self):
        """Test the SQLSTATE of driver errors is returned."""
        assert error_code(psycopg.errors.UniqueViolation("dup")) == "23505"

    def test_code_attribute(self):
        """Test resilience exceptions expose their code."""
        assert error_code(DatabaseConnectionException("down", code="08006")) == "08006"

    def test_no_code(self):
        """Test plain exceptions have no code."""
        assert error_code(ValueError("nope")) is None


class TestMapToResponse:
    """Test exceptions are mapped to error responses."""

    def test_unique_violation_is_conflict(self, mapper):
        """Test duplicates map to 409."""
        error = DatabaseIntegrityException("users_email_key", "duplicate key", code="23505")

        response = mapper.map_to_response(error)

        assert response.status_code == 409
        assert response.details == "Duplicate key: users_email_key"

    def test_foreign_key_is_bad_request(self, mapper):
        """Test broken references map to 400."""
        error = DatabaseIntegrityException("orders_user_fk", "violates fk", code="23503")

        response = mapper.map_to_response(error)

        assert response.status_code == 400
        assert response.message == "Invalid relationship reference"

    def test_not_null_is_validation_error(self, mapper):
        """Test not-null violations map to 400."""
        error = DatabaseIntegrityException(None, "null value in column", code="23502")

        assert mapper.map_to_response(error).message == "Validation error"

    def test_not_found(self, mapper):
        """Test missing records map to 404."""
        response = mapper.map_to_response(RecordNotFoundException("Order", 42))

        assert response.status_code == 404
        assert "Order with identifier '42' not found" in response.details

    @pytest.mark.parametrize(
        "error",
        [
            DatabaseUnavailableException("unhealthy", retry_after=30.0),
            DatabaseConnectionException("down"),
            DatabaseTimeoutException("SELECT 1", 5.0),
        ],
    )
    def test_unavailable(self, mapper, error):
        """Test connectivity problems map to 503."""
        assert mapper.map_to_response(error).status_code == 503

    def test_other_database_error(self, mapper):
        """Test unclassified database errors map to 500 with their code."""
        error = DatabaseQueryException("SELECT", "relation does not exist", code="42P01")

        response = mapper.map_to_response(error)

        assert response.status_code == 500
        assert response.code == "42P01"

    def test_non_database_error(self, mapper):
        """Test unexpected exceptions map to 500."""
        response = mapper.map_to_response(RuntimeError("boom"))

        assert response.status_code == 500
        assert response.message == "boom"

    def test_to_dict_omits_empty_fields(self):
        """Test optional fields are left out of the payload."""
        payload = ErrorResponse(503, "Service Unavailable", "down").to_dict()

        assert payload == {"error": "Service Unavailable", "message": "down"}
