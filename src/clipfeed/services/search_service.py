from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

from clipfeed.config import settings
from clipfeed.errors import ClipfeedError
from clipfeed.models import QueryIntent
from clipfeed.scheduling import AsyncioScheduler, Scheduler, TimerHandle


logger = logging.getLogger(__name__)


T = TypeVar("T")


class DebouncedQueryController(Generic[T]):
    """Turn a fast-changing search term into few, race-free queries.

    - Each term change restarts the idle timer; nothing is sent until it fires.
    - Every issued query carries a generation; only a response whose generation is
      the highest issued so far is applied, whatever order responses arrive in.
    - `close()` cancels the timer and silences in-flight responses.
    """

    def __init__(
        self,
        *,
        run_query: Callable[[str], Awaitable[T]],
        on_result: Callable[[QueryIntent, T], None],
        on_error: Callable[[QueryIntent, Exception], None] | None = None,
        scheduler: Scheduler | None = None,
        idle_ms: int | None = None,
    ) -> None:
        self._run_query = run_query
        self._on_result = on_result
        self._on_error = on_error
        self._scheduler = scheduler or AsyncioScheduler()
        self._idle_seconds = (settings.search_debounce_ms if idle_ms is None else idle_ms) / 1000
        self._timer: TimerHandle | None = None
        self._generation = 0
        self._closed = False
        self.term = ""
        self.applied: QueryIntent | None = None

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None

    def on_term_change(self, term: str) -> None:
        if self._closed:
            return
        self.term = term
        self._cancel_timer()
        self._timer = self._scheduler.call_later(self._idle_seconds, self._fire)

    def submit_now(self, term: str) -> QueryIntent | None:
        """Issue immediately (initial load), superseding any pending keystrokes."""
        if self._closed:
            return None
        self.term = term
        self._cancel_timer()
        return self._issue(term)

    def close(self) -> None:
        self._closed = True
        self._cancel_timer()

    def _cancel_timer(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _fire(self) -> None:
        self._timer = None
        if self._closed:
            return
        self._issue(self.term)

    def _issue(self, term: str) -> QueryIntent:
        self._generation += 1
        intent = QueryIntent(generation=self._generation, term=term)
        logger.debug("query issued generation=%s term=%r", intent.generation, term)
        self._scheduler.spawn(self._run(intent))
        return intent

    def _is_current(self, intent: QueryIntent) -> bool:
        return not self._closed and intent.generation == self._generation

    async def _run(self, intent: QueryIntent) -> None:
        try:
            result = await self._run_query(intent.term)
        except ClipfeedError as e:
            if not self._is_current(intent):
                return
            logger.warning(
                "query failed generation=%s term=%r", intent.generation, intent.term, exc_info=True
            )
            if self._on_error is not None:
                self._on_error(intent, e)
            return

        if not self._is_current(intent):
            logger.debug(
                "discarding stale query generation=%s latest=%s",
                intent.generation,
                self._generation,
            )
            return
        self.applied = intent
        self._on_result(intent, result)
