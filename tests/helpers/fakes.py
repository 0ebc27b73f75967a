"""In-memory stand-ins for the database client and the wall clock."""

import asyncio
from collections import deque
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from dbresilience.exceptions import DatabaseConnectionException


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDatabaseClient:
    """
    DatabaseClient backed by scripted outcomes.

    Probes succeed while ``healthy`` is True unless outcomes were queued with
    ``script_probes``; an outcome is either True or an exception to raise.
    """

    def __init__(self) -> None:
        self.healthy = True
        self.probe_delay = 0.0
        self.probe_calls = 0
        self.connect_calls = 0
        self.disconnect_calls = 0
        self.disconnect_error: BaseException | None = None
        self.execute_error: BaseException | None = None
        self.executed: list[tuple[str, tuple[Any, ...]]] = []
        self.rows: list[dict[str, Any]] = []
        self.sessions_opened = 0
        self.sessions_active = 0
        self.transactions: list[str] = []
        self._probe_script: deque[Any] = deque()

    def script_probes(self, *outcomes: Any) -> None:
        self._probe_script.extend(outcomes)

    async def connect(self) -> None:
        self.connect_calls += 1

    async def disconnect(self) -> None:
        self.disconnect_calls += 1
        if self.disconnect_error is not None:
            raise self.disconnect_error

    async def probe(self, timeout: float = 5.0) -> None:
        self.probe_calls += 1
        if self.probe_delay:
            await asyncio.sleep(self.probe_delay)

        if self._probe_script:
            outcome = self._probe_script.popleft()
        elif self.healthy:
            outcome = True
        else:
            outcome = DatabaseConnectionException("connection refused")

        if isinstance(outcome, BaseException):
            raise outcome

    async def execute(self, query: str, *params: Any, timeout: float | None = None) -> int:
        if self.execute_error is not None:
            raise self.execute_error
        self.executed.append((query, params))
        return 1

    async def fetch_one(
        self, query: str, *params: Any, timeout: float | None = None
    ) -> dict[str, Any] | None:
        self.executed.append((query, params))
        return self.rows[0] if self.rows else None

    async def fetch_all(
        self, query: str, *params: Any, timeout: float | None = None
    ) -> list[dict[str, Any]]:
        self.executed.append((query, params))
        return list(self.rows)

    @asynccontextmanager
    async def session(self) -> AsyncIterator["FakeDatabaseClient"]:
        self.sessions_opened += 1
        self.sessions_active += 1
        try:
            yield self
        finally:
            self.sessions_active -= 1

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator["FakeDatabaseClient"]:
        async with self.session():
            try:
                yield self
            except BaseException:
                self.transactions.append("rollback")
                raise
            self.transactions.append("commit")
