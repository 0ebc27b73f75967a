"""
Retry Logic with Exponential Backoff

Runs database operations and repeats them when they fail with a transient
connectivity error. Failures are classified by an extensible set of named
predicates; anything not recognised as transient fails fast. After the last
attempt the original exception is re-raised unchanged.
"""

import asyncio
import inspect
import logging
import random
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import wraps
from typing import TYPE_CHECKING, Any, TypeVar

import psycopg
from psycopg_pool import PoolTimeout, TooManyRequests

from dbresilience.exceptions import (
    DatabaseException,
    PermanentDatabaseError,
    RecordNotFoundException,
    TransientConnectivityError,
)
from dbresilience.exceptions_mapper import error_code

if TYPE_CHECKING:
    from dbresilience.database.client import DatabaseClient

logger = logging.getLogger(__name__)

T = TypeVar("T")
F = TypeVar("F", bound=Callable[..., Awaitable[Any]])

ErrorPredicate = Callable[[BaseException], bool]


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for a single call."""

    max_retries: int = 3  # Total attempts, including the first one
    base_delay: float = 1.0  # Seconds
    jitter_max: float = 0.1  # Seconds

    def __post_init__(self) -> None:
        """Validate configuration."""
        if self.max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if self.jitter_max < 0:
            raise ValueError("jitter_max must be non-negative")


class ExponentialBackoff:
    """Exponential backoff calculator with additive jitter."""

    def __init__(
        self,
        base_delay: float,
        factor: float = 2.0,
        jitter_max: float = 0.0,
        max_delay: float | None = None,
    ) -> None:
        self.base_delay = base_delay
        self.factor = factor
        self.jitter_max = jitter_max
        self.max_delay = max_delay

    def get_delay(self, attempt: int) -> float:
        """
        Calculate the delay that follows a failed attempt.

        Args:
            attempt: Attempt number that just failed (1-based)

        Returns:
            Delay in seconds, in ``[base * factor^(attempt-1), ... + jitter_max)``
        """
        if attempt < 1:
            return 0.0

        delay = self.base_delay * (self.factor ** (attempt - 1))

        if self.max_delay is not None:
            delay = min(delay, self.max_delay)

        if self.jitter_max > 0:
            # random() is in [0, 1), so the jitter never reaches jitter_max
            delay += random.random() * self.jitter_max

        return delay

    def get_delays(self, max_attempts: int) -> list[float]:
        """Get the delays for a whole retry sequence."""
        return [self.get_delay(i) for i in range(1, max_attempts + 1)]


# ============================================================================
# Error Classification
# ============================================================================


def _message(error: BaseException) -> str:
    return str(error).lower()


def is_timeout(error: BaseException) -> bool:
    """Query or connection timeouts."""
    if isinstance(error, (TimeoutError, psycopg.errors.QueryCanceled)):
        return True
    if error_code(error) == "57014":
        return True
    message = _message(error)
    return "timeout" in message or "timed out" in message


def is_pool_exhausted(error: BaseException) -> bool:
    """No pooled connection could be checked out, or the server is out of slots."""
    if isinstance(error, (PoolTimeout, TooManyRequests)):
        return True
    if error_code(error) == "53300":
        return True
    return "unable to check out" in _message(error)


def is_connection_refused(error: BaseException) -> bool:
    """The server refused, dropped, or is restarting the connection."""
    if isinstance(error, ConnectionRefusedError):
        return True
    code = error_code(error)
    if code and (code.startswith("08") or code in ("57P01", "57P02", "57P03")):
        return True
    return "connection refused" in _message(error)


def is_replication_lag(error: BaseException) -> bool:
    """A read hit a replica that has not caught up with a recent write."""
    if isinstance(error, RecordNotFoundException):
        return error.replica_lag
    return error_code(error) == "40001" and "conflict with recovery" in _message(error)


def is_transient_message(error: BaseException) -> bool:
    """Catch-all for driver messages that mention the connection or the pool."""
    message = _message(error)
    return "connection" in message or "pool" in message


DEFAULT_PREDICATES: tuple[tuple[str, ErrorPredicate], ...] = (
    ("timeout", is_timeout),
    ("pool_exhausted", is_pool_exhausted),
    ("connection_refused", is_connection_refused),
    ("replication_lag", is_replication_lag),
    ("transient_message", is_transient_message),
)


class ErrorClassifier:
    """
    Decides whether a failure is transient.

    Permanent database errors are never retried and transient connectivity
    errors always are. Other exceptions of this package are decided by type
    alone; a missing record is retried only when attributed to replica lag.
    Everything else is tested against the registered predicates in order.
    """

    def __init__(
        self, predicates: tuple[tuple[str, ErrorPredicate], ...] = DEFAULT_PREDICATES
    ) -> None:
        self._predicates: list[tuple[str, ErrorPredicate]] = list(predicates)

    @property
    def predicate_names(self) -> list[str]:
        return [name for name, _ in self._predicates]

    def register(self, name: str, predicate: ErrorPredicate) -> None:
        """Add a predicate that marks matching errors as retryable."""
        self._predicates.append((name, predicate))
        logger.debug(f"Registered retry predicate: {name}")

    def classify(self, error: BaseException) -> str | None:
        """
        Name the reason an error is retryable.

        Returns:
            Predicate name, ``"transient"`` for TransientConnectivityError,
            or None when the error is permanent
        """
        if isinstance(error, PermanentDatabaseError):
            return None

        if isinstance(error, TransientConnectivityError):
            return "transient"

        # Messages of our own exceptions embed entity names and identifiers
        if isinstance(error, RecordNotFoundException):
            return "replication_lag" if error.replica_lag else None

        if isinstance(error, DatabaseException):
            return None

        for name, predicate in self._predicates:
            try:
                if predicate(error):
                    return name
            except Exception as e:
                logger.warning(f"Retry predicate '{name}' failed: {e}")

        return None

    def is_retryable(self, error: BaseException) -> bool:
        return self.classify(error) is not None


# ============================================================================
# Executor
# ============================================================================


class RetryExecutor:
    """
    Runs operations with retry and exponential backoff.

    The delay after failed attempt ``k`` is ``base_delay * 2^(k-1)`` plus a
    random jitter in ``[0, jitter_max)``.
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        classifier: ErrorClassifier | None = None,
        client: "DatabaseClient | None" = None,
        sleep: Callable[[float], Awaitable[Any]] | None = None,
    ) -> None:
        self.policy = policy or RetryPolicy()
        self.classifier = classifier or ErrorClassifier()
        self.client = client
        self._sleep = sleep or asyncio.sleep

    async def execute_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        max_retries: int | None = None,
        base_delay: float | None = None,
    ) -> T:
        """
        Execute an async operation with retry and exponential backoff.

        Args:
            operation: Zero-argument coroutine function
            max_retries: Override the policy's attempt count
            base_delay: Override the policy's base delay

        Returns:
            The operation's result

        Raises:
            The original exception, unwrapped, when it is not retryable or when
            all attempts are exhausted
        """
        policy = self.policy
        if max_retries is not None or base_delay is not None:
            policy = RetryPolicy(
                max_retries=max_retries if max_retries is not None else policy.max_retries,
                base_delay=base_delay if base_delay is not None else policy.base_delay,
                jitter_max=policy.jitter_max,
            )
        backoff = ExponentialBackoff(policy.base_delay, 2.0, policy.jitter_max)
        name = getattr(operation, "__name__", "operation")

        start_time = time.time()
        attempt = 1
        while True:
            try:
                result = await operation()
            except Exception as e:
                reason = self.classifier.classify(e)
                if reason is None:
                    logger.debug(f"Non-retryable error in {name}: {e}")
                    raise

                if attempt >= policy.max_retries:
                    logger.warning(
                        f"Max retries ({policy.max_retries}) reached for {name} "
                        f"after {time.time() - start_time:.2f}s: {e}"
                    )
                    raise

                delay = backoff.get_delay(attempt)
                logger.warning(
                    f"Database operation failed (attempt {attempt}/{policy.max_retries}, "
                    f"{reason}): {e}. Retrying in {delay:.3f}s"
                )
                await self._sleep(delay)
                attempt += 1
                continue

            if attempt > 1:
                logger.info(
                    f"{name} succeeded on attempt {attempt} after {time.time() - start_time:.2f}s"
                )
            return result

    async def execute_transaction(
        self,
        transaction_fn: Callable[[Any], Awaitable[T]],
        max_retries: int | None = None,
    ) -> T:
        """
        Run a unit of work in a transaction, retrying the whole unit on transient failure.

        Each attempt opens a fresh transaction, so a retry re-runs ``transaction_fn``
        from scratch. It must be safe to run more than once.

        Args:
            transaction_fn: Coroutine function receiving the transaction-bound client
            max_retries: Override the policy's attempt count

        Returns:
            The unit of work's result
        """
        if self.client is None:
            raise RuntimeError("execute_transaction requires a database client")

        client = self.client

        async def run_transaction() -> T:
            async with client.transaction() as tx:
                return await transaction_fn(tx)

        return await self.execute_with_retry(run_transaction, max_retries=max_retries)


async def execute_with_retry(
    operation: Callable[[], Awaitable[T]],
    max_retries: int = 3,
    base_delay: float = 1.0,
    jitter_max: float = 0.1,
) -> T:
    """
    One-shot helper that retries an operation with the default classifier.

    Args:
        operation: Zero-argument coroutine function
        max_retries: Total attempts
        base_delay: Base delay in seconds
        jitter_max: Upper bound of the random jitter in seconds

    Returns:
        The operation's result
    """
    executor = RetryExecutor(RetryPolicy(max_retries, base_delay, jitter_max))
    return await executor.execute_with_retry(operation)


def retry_transient(policy: RetryPolicy | None = None) -> Callable[[F], F]:
    """
    Decorator for coroutine functions that should retry transient failures.

    Args:
        policy: Retry policy (defaults to RetryPolicy())

    Returns:
        Decorated function
    """
    executor = RetryExecutor(policy)

    def decorator(func: F) -> F:
        if not inspect.iscoroutinefunction(func):
            raise TypeError(f"retry_transient requires a coroutine function, got {func!r}")

        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            async def attempt() -> Any:
                return await func(*args, **kwargs)

            attempt.__name__ = func.__name__
            return await executor.execute_with_retry(attempt)

        return wrapper  # type: ignore[return-value]

    return decorator
