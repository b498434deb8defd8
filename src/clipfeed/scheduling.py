"""Timers and task spawning behind one small seam.

Engine components never touch the event loop directly, so tests can drive
debounce windows with `ManualScheduler.advance()` instead of sleeping.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
from collections.abc import Callable, Coroutine
from datetime import datetime, timezone
from typing import Any, Protocol


logger = logging.getLogger(__name__)


def now_ms() -> int:
    return int(datetime.now(timezone.utc).timestamp() * 1000)


class TimerHandle(Protocol):
    def cancel(self) -> None: ...


class Scheduler(Protocol):
    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle: ...

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]: ...


def _log_task_failure(task: asyncio.Task[Any]) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("background task failed task=%s", task.get_name(), exc_info=exc)


class AsyncioScheduler:
    def __init__(self) -> None:
        self._tasks: set[asyncio.Task[Any]] = set()

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        loop = asyncio.get_running_loop()
        return loop.call_later(max(0.0, delay_seconds), callback)

    def spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        task = asyncio.get_running_loop().create_task(coro)
        # Keep a strong reference until done; the loop only holds weak ones.
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        task.add_done_callback(_log_task_failure)
        return task

    async def drain(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


class _ManualTimer:
    def __init__(self, due: float, callback: Callable[[], None]) -> None:
        self.due = due
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler(AsyncioScheduler):
    """Logical clock: timers fire only when `advance()` moves time past them."""

    def __init__(self) -> None:
        super().__init__()
        self.now = 0.0
        self._seq = itertools.count()
        self._heap: list[tuple[float, int, _ManualTimer]] = []

    def call_later(self, delay_seconds: float, callback: Callable[[], None]) -> TimerHandle:
        timer = _ManualTimer(self.now + max(0.0, delay_seconds), callback)
        heapq.heappush(self._heap, (timer.due, next(self._seq), timer))
        return timer

    def pending_timers(self) -> int:
        return sum(1 for _, _, t in self._heap if not t.cancelled)

    def advance(self, seconds: float) -> int:
        """Move the clock forward and run every due timer in order. Returns how many fired."""
        target = self.now + seconds
        fired = 0
        while self._heap and self._heap[0][0] <= target:
            due, _, timer = heapq.heappop(self._heap)
            self.now = due
            if timer.cancelled:
                continue
            timer.callback()
            fired += 1
        self.now = target
        return fired
