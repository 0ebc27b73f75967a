"""
PostgreSQL client used by the resilience layer.

Wraps a psycopg3 ``AsyncConnectionPool``. Driver errors are translated into the
``dbresilience.exceptions`` hierarchy with the SQLSTATE preserved on ``code``, so
the retry classifier and the error mapper can inspect them.
"""

import asyncio
import builtins
import logging
import time
from collections.abc import AsyncIterator
from contextlib import AbstractAsyncContextManager, asynccontextmanager, nullcontext
from contextvars import ContextVar
from typing import Any, Protocol, runtime_checkable

import psycopg
from psycopg import AsyncConnection
from psycopg.rows import dict_row
from psycopg_pool import AsyncConnectionPool

from dbresilience.config import DatabaseSettings, QueryLoggingSettings
from dbresilience.exceptions import (
    DatabaseConnectionException,
    DatabaseException,
    DatabaseTimeoutException,
    DatabaseTransactionException,
)
from dbresilience.exceptions_mapper import DatabaseErrorMapper
from dbresilience.monitoring.logging import mask_dsn

logger = logging.getLogger(__name__)

Row = dict[str, Any]

# Errors raised by psycopg, psycopg_pool (PoolTimeout is an OperationalError),
# asyncio timeouts and the socket layer
DRIVER_ERRORS = (psycopg.Error, builtins.TimeoutError, OSError)


@runtime_checkable
class DatabaseClient(Protocol):
    """Operations the resilience layer needs from a database."""

    async def connect(self) -> None:
        """Open the underlying pool or connection."""
        ...

    async def disconnect(self) -> None:
        """Close the underlying pool or connection. The next call reconnects."""
        ...

    async def probe(self, timeout: float = 5.0) -> None:
        """
        Run a trivial query.

        Raises:
            DatabaseException: If the database did not answer within ``timeout``
        """
        ...

    async def execute(self, query: str, *params: Any, timeout: float | None = None) -> int:
        ...

    async def fetch_one(
        self, query: str, *params: Any, timeout: float | None = None
    ) -> Row | None:
        ...

    async def fetch_all(self, query: str, *params: Any, timeout: float | None = None) -> list[Row]:
        ...

    def session(self) -> AbstractAsyncContextManager[Any]:
        """Bind one pooled connection to the current task for the duration of the block."""
        ...

    def transaction(self) -> AbstractAsyncContextManager[Any]:
        """Open a session and a transaction; yields the client bound to it."""
        ...


class PostgreSQLClient:
    """
    DatabaseClient implementation over a psycopg3 connection pool.

    The pool is opened lazily on first use and reopened after ``disconnect()``.
    Inside ``session()`` or ``transaction()`` every query issued through this
    client by the same task runs on the one bound connection.
    """

    def __init__(
        self,
        settings: DatabaseSettings,
        logging_settings: QueryLoggingSettings | None = None,
    ) -> None:
        self.settings = settings
        self.logging = logging_settings or QueryLoggingSettings()
        self._mapper = DatabaseErrorMapper(max_connections=settings.max_connections)
        self._pool: AsyncConnectionPool | None = None
        self._pool_lock = asyncio.Lock()
        self._bound: ContextVar[AsyncConnection | None] = ContextVar(
            f"dbresilience_connection_{id(self)}", default=None
        )

    @property
    def is_open(self) -> bool:
        return self._pool is not None and not self._pool.closed

    @property
    def in_session(self) -> bool:
        """True when the current task has a connection bound."""
        return self._bound.get() is not None

    async def _ensure_pool(self, wait: bool = False) -> AsyncConnectionPool:
        if self._pool is not None and not self._pool.closed:
            return self._pool

        async with self._pool_lock:
            if self._pool is None or self._pool.closed:
                pool = AsyncConnectionPool(
                    conninfo=self.settings.url,
                    min_size=1,
                    max_size=self.settings.max_connections,
                    timeout=self.settings.connection_timeout,
                    max_waiting=self.settings.max_waiting_clients,
                    max_idle=self.settings.idle_timeout,
                    open=False,
                )
                try:
                    await pool.open(wait=wait, timeout=self.settings.connection_timeout)
                except DRIVER_ERRORS as e:
                    await pool.close()
                    raise self._mapper.map_driver_exception(
                        e, "open_pool", self.settings.connection_timeout
                    ) from e

                self._pool = pool
                logger.info(
                    f"Opened connection pool to {mask_dsn(self.settings.url)} "
                    f"(max_size={self.settings.max_connections})"
                )

        return self._pool

    async def connect(self) -> None:
        """Open the pool and wait until its first connection is established."""
        await self._ensure_pool(wait=True)

    async def disconnect(self) -> None:
        """Close the pool. Safe to call when it is not open."""
        async with self._pool_lock:
            pool, self._pool = self._pool, None
            if pool is None or pool.closed:
                return

            try:
                await pool.close()
            except DRIVER_ERRORS as e:
                raise self._mapper.map_driver_exception(e, "close_pool") from e
            logger.info("Connection pool closed")

    async def probe(self, timeout: float = 5.0) -> None:
        """
        Run ``SELECT 1`` within ``timeout`` seconds.

        Raises:
            DatabaseTimeoutException: If the probe did not finish in time
            DatabaseException: If the query failed
        """
        try:
            async with asyncio.timeout(timeout):
                row = await self.fetch_one("SELECT 1 AS health_check")
        except builtins.TimeoutError as e:
            raise DatabaseTimeoutException("probe", timeout) from e

        if row is None or row.get("health_check") != 1:
            raise DatabaseConnectionException("health check query returned an unexpected result")

    @asynccontextmanager
    async def session(self) -> AsyncIterator["PostgreSQLClient"]:
        """
        Check out one connection and bind it to the current task.

        The connection goes back to the pool on every exit path. Nested sessions
        reuse the outer connection.
        """
        if self._bound.get() is not None:
            yield self
            return

        pool = await self._ensure_pool()
        try:
            conn = await pool.getconn()
        except DRIVER_ERRORS as e:
            raise self._mapper.map_driver_exception(
                e, "acquire_connection", self.settings.connection_timeout
            ) from e

        token = self._bound.set(conn)
        try:
            yield self
        finally:
            self._bound.reset(token)
            await pool.putconn(conn)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["PostgreSQLClient"]:
        """
        Run the block in a transaction on a bound connection.

        Commits when the block exits normally and rolls back when it raises.
        Nested calls create savepoints.
        """
        async with self.session():
            conn = self._bound.get()
            if conn is None:
                raise DatabaseTransactionException("begin", "no bound connection")
            try:
                async with conn.transaction():
                    yield self
            except DatabaseException:
                raise
            except psycopg.Error as e:
                raise self._mapper.map_driver_exception(e, "transaction") from e

    @asynccontextmanager
    async def _connection(self) -> AsyncIterator[AsyncConnection]:
        bound = self._bound.get()
        if bound is not None:
            yield bound
            return

        pool = await self._ensure_pool()
        async with pool.connection() as conn:
            yield conn

    async def _run(
        self, query: str, params: tuple[Any, ...], fetch: str | None, timeout: float | None
    ) -> Any:
        start_time = time.time()
        deadline = asyncio.timeout(timeout) if timeout is not None else nullcontext()
        try:
            async with deadline:
                async with self._connection() as conn, conn.cursor(row_factory=dict_row) as cur:
                    await cur.execute(query, params or None)
                    if fetch == "one":
                        result = await cur.fetchone()
                    elif fetch == "all":
                        result = await cur.fetchall()
                    else:
                        result = cur.rowcount
        except DatabaseException:
            raise
        except DRIVER_ERRORS as e:
            mapped = self._mapper.map_driver_exception(e, query, timeout)
            if self.logging.log_errors:
                logger.error(
                    f"Query failed after {time.time() - start_time:.3f}s: {mapped} "
                    f"| Query: {query[:100]}"
                )
            raise mapped from e

        self._log_query(query, time.time() - start_time)
        return result

    def _log_query(self, query: str, duration: float) -> None:
        if self.logging.log_slow_queries and duration > self.logging.slow_query_threshold:
            logger.warning(f"Slow query ({duration:.3f}s): {query[:100]}")
        elif self.logging.log_queries:
            logger.debug(f"Query executed in {duration:.3f}s: {query[:100]}")

    async def execute(self, query: str, *params: Any, timeout: float | None = None) -> int:
        """
        Execute a statement that returns no rows.

        Returns:
            Number of affected rows
        """
        return await self._run(query, params, None, timeout)

    async def fetch_one(
        self, query: str, *params: Any, timeout: float | None = None
    ) -> Row | None:
        """Fetch the first row as a dict, or None."""
        return await self._run(query, params, "one", timeout)

    async def fetch_all(self, query: str, *params: Any, timeout: float | None = None) -> list[Row]:
        """Fetch every row as a list of dicts."""
        return await self._run(query, params, "all", timeout)

    async def get_connection_info(self) -> dict[str, Any]:
        """Return the current database, schema and server version."""
        row = await self.fetch_one(
            "SELECT current_database() AS database, current_schema() AS schema, "
            "version() AS server_version"
        )
        return dict(row or {})

    def __str__(self) -> str:
        return f"PostgreSQLClient(url={mask_dsn(self.settings.url)}, open={self.is_open})"
