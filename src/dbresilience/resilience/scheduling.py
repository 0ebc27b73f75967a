"""
Background scheduling primitives.

Each long-lived service owns its timers explicitly: a named ``PeriodicTask`` for
recurring work and a ``DelayedTaskScheduler`` for one-off delayed work such as
reconnect attempts. Both can be cancelled deterministically, and neither lets
an exception escape into the event loop.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

logger = logging.getLogger(__name__)

AsyncCallback = Callable[[], Awaitable[Any]]


class PeriodicTask:
    """
    Runs a coroutine callback every ``interval`` seconds.

    The loop waits for each callback to finish before sleeping again, so runs of
    the same task never overlap. ``stop()`` cancels the loop but lets a callback
    that is already running complete.
    """

    def __init__(self, name: str, interval: float, callback: AsyncCallback) -> None:
        self.name = name
        self.interval = interval
        self.callback = callback
        self._task: asyncio.Task[None] | None = None
        self._current: asyncio.Task[Any] | None = None
        self.run_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the loop on the running event loop."""
        if self.is_running:
            logger.warning(f"Periodic task '{self.name}' is already running")
            return

        self._task = asyncio.create_task(self._loop(), name=self.name)
        logger.info(f"Started periodic task '{self.name}' every {self.interval}s")

    def stop(self) -> None:
        """Cancel the loop. Safe to call more than once."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            logger.info(f"Stopped periodic task '{self.name}'")
        self._task = None

    async def wait_idle(self) -> None:
        """Wait for an in-flight callback, if any, to finish."""
        current = self._current
        if current is not None and not current.done():
            await asyncio.wait({current})

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            self._current = asyncio.create_task(self._run_once(), name=f"{self.name}-tick")
            # Shielded so that stop() does not abort an in-flight run
            await asyncio.shield(self._current)

    async def _run_once(self) -> None:
        self.run_count += 1
        try:
            await self.callback()
        except Exception as e:
            logger.error(f"Error in periodic task '{self.name}': {e}", exc_info=True)


class DelayedTaskScheduler:
    """
    Schedules at most one delayed coroutine callback at a time.

    A request made while another one is still waiting is refused, so pending
    attempts can never pile up. Once the timer fires the slot is free again,
    which lets the running callback schedule its own successor.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._handle: asyncio.TimerHandle | None = None
        self._active: set[asyncio.Task[Any]] = set()

    @property
    def pending(self) -> bool:
        """True while a scheduled callback is waiting for its timer."""
        return self._handle is not None

    @property
    def running(self) -> bool:
        """True while a fired callback is still executing."""
        return any(not task.done() for task in self._active)

    def schedule(self, delay: float, callback: AsyncCallback) -> bool:
        """
        Run ``callback`` after ``delay`` seconds.

        Returns:
            False if another callback is already pending, True otherwise
        """
        if self._handle is not None:
            logger.debug(f"'{self.name}' already has a pending task; ignoring new request")
            return False

        loop = asyncio.get_running_loop()
        self._handle = loop.call_later(delay, self._fire, callback)
        return True

    def cancel(self) -> None:
        """Cancel the pending callback, if any. A running callback is left alone."""
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
            logger.debug(f"Cancelled pending task on '{self.name}'")

    async def wait_idle(self) -> None:
        """Wait until nothing is pending or running."""
        while self.pending or self.running:
            if self.running:
                await asyncio.wait(set(self._active))
            else:
                await asyncio.sleep(0.001)

    def _fire(self, callback: AsyncCallback) -> None:
        self._handle = None
        task = asyncio.ensure_future(self._run(callback))
        self._active.add(task)
        task.add_done_callback(self._active.discard)

    async def _run(self, callback: AsyncCallback) -> None:
        try:
            await callback()
        except Exception as e:
            logger.error(f"Error in scheduled task on '{self.name}': {e}", exc_info=True)
