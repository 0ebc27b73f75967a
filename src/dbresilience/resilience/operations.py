"""
Safe database operation wrappers.

Thin helpers that run caller operations through the retry executor and decide
what happens once retries are exhausted: re-raise, or return a fallback value
for reads.
"""

import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from dbresilience.database.client import DatabaseClient
from dbresilience.resilience.retry import RetryExecutor

logger = logging.getLogger(__name__)

T = TypeVar("T")


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


# Marks "no fallback supplied", so that None can be a fallback value
MISSING: Any = _Missing()


class DatabaseOperations:
    """Retrying wrappers for reads, writes and transactions."""

    def __init__(self, executor: RetryExecutor, client: DatabaseClient) -> None:
        self.executor = executor
        self.client = client

    async def safe_db_operation(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run an operation with retry; re-raise once retries are exhausted."""
        try:
            return await self.executor.execute_with_retry(operation)
        except Exception as e:
            logger.error(f"Database operation failed: {e}")
            raise

    async def safe_db_read(
        self, operation: Callable[[], Awaitable[T]], fallback: Any = MISSING
    ) -> T:
        """
        Run a read with retry.

        Args:
            operation: Zero-argument coroutine function performing the read
            fallback: Value returned instead of raising when the read fails;
                ``None`` is a valid fallback

        Returns:
            The read's result, or ``fallback`` if one was given and the read failed
        """
        try:
            return await self.executor.execute_with_retry(operation)
        except Exception as e:
            if fallback is MISSING:
                logger.error(f"Database read failed: {e}")
                raise
            logger.warning(f"Database read failed, using fallback value: {e}")
            return fallback

    async def safe_db_write(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run a write with retry.

        Each attempt runs inside its own client session, so the checked-out
        connection is returned to the pool whether the attempt succeeds or fails.
        """
        client = self.client

        async def write_in_session() -> T:
            async with client.session():
                return await operation()

        write_in_session.__name__ = getattr(operation, "__name__", "write")

        try:
            return await self.executor.execute_with_retry(write_in_session)
        except Exception as e:
            logger.error(f"Database write failed: {e}")
            raise

    async def safe_db_transaction(self, transaction_fn: Callable[[Any], Awaitable[T]]) -> T:
        """Run ``transaction_fn(tx)`` in a transaction, retrying the whole unit."""
        try:
            return await self.executor.execute_transaction(transaction_fn)
        except Exception as e:
            logger.error(f"Database transaction failed: {e}")
            raise
