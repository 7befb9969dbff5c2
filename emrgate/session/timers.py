"""asyncio scheduling primitives for the session controller.

``Scheduler`` runs coroutine callbacks once after a delay, periodically, or
as soon as possible, and hands back a ``ScheduledTask`` that can be
cancelled. ``cancel_all()`` stops everything the scheduler started; the
controller calls it on expiry, logout and close.

Callback exceptions are logged and never kill a periodic timer.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Optional

from emrgate.utils.logger import get_logger

logger = get_logger(__name__)

AsyncCallback = Callable[[], Awaitable[None]]


class ScheduledTask:
    """Handle for one scheduled callback."""

    def __init__(self, name: str, task: asyncio.Task) -> None:
        self.name = name
        self._task = task

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    @property
    def done(self) -> bool:
        return self._task.done()

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    async def wait(self) -> None:
        """Wait for the task to finish. Cancellation is not re-raised."""
        try:
            await self._task
        except asyncio.CancelledError:
            pass


async def _run_guarded(name: str, callback: AsyncCallback) -> None:
    try:
        await callback()
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        logger.error(
            "scheduled_callback_failed",
            timer=name,
            error=str(exc),
            error_type=type(exc).__name__,
        )


class Scheduler:
    """Creates and tracks asyncio tasks for timers.

    Must be used from inside a running event loop.
    """

    def __init__(self) -> None:
        self._tasks: dict[int, ScheduledTask] = {}

    def _track(self, name: str, coro: Awaitable[None]) -> ScheduledTask:
        task = asyncio.ensure_future(coro)
        handle = ScheduledTask(name, task)
        key = id(handle)
        self._tasks[key] = handle
        task.add_done_callback(lambda _t: self._tasks.pop(key, None))
        return handle

    def call_soon(self, name: str, callback: AsyncCallback) -> ScheduledTask:
        """Run ``callback`` once on the next loop iteration."""
        return self._track(name, _run_guarded(name, callback))

    def call_later(self, name: str, delay: float, callback: AsyncCallback) -> ScheduledTask:
        """Run ``callback`` once after ``delay`` seconds."""

        async def _later() -> None:
            await asyncio.sleep(delay)
            await _run_guarded(name, callback)

        return self._track(name, _later())

    def call_every(
        self,
        name: str,
        interval: float,
        callback: AsyncCallback,
        initial_delay: Optional[float] = None,
    ) -> ScheduledTask:
        """Run ``callback`` every ``interval`` seconds until cancelled."""
        if interval <= 0:
            raise ValueError(f"interval must be positive, got {interval}")

        async def _every() -> None:
            await asyncio.sleep(interval if initial_delay is None else initial_delay)
            while True:
                await _run_guarded(name, callback)
                await asyncio.sleep(interval)

        return self._track(name, _every())

    @property
    def pending(self) -> int:
        return sum(1 for handle in self._tasks.values() if not handle.done)

    def cancel_all(self) -> None:
        for handle in list(self._tasks.values()):
            handle.cancel()
