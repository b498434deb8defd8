from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from typing import Any

from clipfeed.domain.toggle_machine import initial_state, request_toggle, settle
from clipfeed.errors import AuthRequiredError, ClipfeedError, ConflictError
from clipfeed.integrations.filters import eq
from clipfeed.integrations.remote_store import RemoteStore
from clipfeed.models import Count, ToggleState
from clipfeed.notifications import LoggingNotificationSink, Notice, NotificationSink
from clipfeed.scheduling import AsyncioScheduler, Scheduler


logger = logging.getLogger(__name__)


class ToggleController:
    """Like button state for one (resource, user) pair."""

    def __init__(
        self,
        *,
        store: RemoteStore,
        resource_id: str,
        user_id: str | None,
        collection: str = "likes",
        resource_field: str = "video_id",
        owner_field: str = "user_id",
        scheduler: Scheduler | None = None,
        notifier: NotificationSink | None = None,
    ) -> None:
        self._store = store
        self.resource_id = resource_id
        self.user_id = user_id
        self.collection = collection
        self._resource_field = resource_field
        self._owner_field = owner_field
        self._scheduler = scheduler or AsyncioScheduler()
        self._notifier = notifier or LoggingNotificationSink()

        self._state = initial_state(
            resource_id=resource_id, user_id=user_id or "", active=False, count=0, stale=True
        )
        # Store id of this user's row, when known.
        self._record_id: str | None = None
        self._task: asyncio.Task[Any] | None = None
        # Requests settled so far; lets `load` notice it raced a click.
        self._settled = 0
        self._listeners: list[Callable[[ToggleState], None]] = []
        self.loaded = False

    @property
    def state(self) -> ToggleState:
        return self._state

    @property
    def count(self) -> Count:
        return Count(parent_id=self.resource_id, value=self._state.count, stale=self._state.stale)

    def add_listener(self, listener: Callable[[ToggleState], None]) -> None:
        self._listeners.append(listener)

    def _set(self, state: ToggleState) -> None:
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    async def load(self) -> ToggleState:
        """Fetch the total count and whether this user is active. Failures degrade to stale/inactive."""
        started = self._settled
        stale = False
        count = self._state.confirmed_count
        try:
            count = await self._store.count(
                self.collection, filters=[eq(self._resource_field, self.resource_id)]
            )
        except ClipfeedError:
            stale = True
            logger.warning(
                "toggle count fetch failed collection=%s resource=%s",
                self.collection,
                self.resource_id,
                exc_info=True,
            )

        active = False
        record_id: str | None = None
        if self.user_id:
            try:
                rows = await self._store.query(
                    self.collection,
                    filters=[
                        eq(self._owner_field, self.user_id),
                        eq(self._resource_field, self.resource_id),
                    ],
                    limit=1,
                )
                active = bool(rows)
                record_id = str(rows[0]["id"]) if rows and "id" in rows[0] else None
            except ClipfeedError:
                stale = True
                logger.warning(
                    "toggle state fetch failed collection=%s resource=%s",
                    self.collection,
                    self.resource_id,
                    exc_info=True,
                )

        if self._state.in_flight or self._settled != started:
            # A click beat the initial load; the machine already owns the state.
            logger.debug("toggle load ignored after a click resource=%s", self.resource_id)
            return self._state

        self._record_id = record_id
        self._set(
            initial_state(
                resource_id=self.resource_id,
                user_id=self.user_id or "",
                active=active,
                count=count,
                stale=stale,
            )
        )
        self.loaded = True
        return self._state

    def toggle(self) -> ToggleState:
        if not self.user_id:
            raise AuthRequiredError("you must be logged in to like")
        step = request_toggle(self._state)
        self._set(step.state)
        if step.dispatch is not None:
            self._dispatch(step.dispatch)
        return self._state

    def _dispatch(self, value: bool) -> None:
        self._task = self._scheduler.spawn(self._run(value))

    async def _run(self, value: bool) -> None:
        ok = True
        count: int | None = None
        try:
            if value:
                await self._add()
            else:
                await self._remove()
        except ConflictError:
            # Already in the requested state on the store; our request changed nothing.
            logger.debug(
                "toggle conflict treated as success resource=%s value=%s", self.resource_id, value
            )
            if value:
                self._record_id = None
            count = await self._recount()
        except ClipfeedError as e:
            ok = False
            logger.warning(
                "toggle failed resource=%s value=%s", self.resource_id, value, exc_info=True
            )
            self._notifier.notify(
                Notice(kind="toggle_failed", message="Failed to update like.", error=e)
            )

        step = settle(self._state, requested=value, ok=ok, count=count)
        self._settled += 1
        self._set(step.state)
        if step.dispatch is not None:
            self._dispatch(step.dispatch)

    async def _recount(self) -> int:
        try:
            return await self._store.count(
                self.collection, filters=[eq(self._resource_field, self.resource_id)]
            )
        except ClipfeedError:
            logger.warning(
                "toggle recount failed collection=%s resource=%s",
                self.collection,
                self.resource_id,
                exc_info=True,
            )
            return self._state.confirmed_count

    async def _add(self) -> None:
        row = await self._store.insert(
            self.collection,
            {self._owner_field: self.user_id, self._resource_field: self.resource_id},
        )
        record_id = row.get("id")
        self._record_id = str(record_id) if record_id is not None else None

    async def _remove(self) -> None:
        record_id = self._record_id
        if record_id is None:
            rows = await self._store.query(
                self.collection,
                filters=[
                    eq(self._owner_field, self.user_id),
                    eq(self._resource_field, self.resource_id),
                ],
                limit=1,
            )
            if not rows:
                raise ConflictError(
                    f"delete {self.collection}: no row for resource={self.resource_id}",
                    collection=self.collection,
                )
            record_id = str(rows[0]["id"])
        await self._store.delete(
            self.collection, record_id, owner=eq(self._owner_field, self.user_id)
        )
        self._record_id = None

    async def settled(self) -> ToggleState:
        """Wait until no request is outstanding (corrective requests included)."""
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)
        return self._state


class ToggleRegistry:
    """At most one controller per (resource, user)."""

    def __init__(
        self,
        *,
        store: RemoteStore,
        scheduler: Scheduler | None = None,
        notifier: NotificationSink | None = None,
        collection: str = "likes",
    ) -> None:
        self._store = store
        self._scheduler = scheduler or AsyncioScheduler()
        self._notifier = notifier or LoggingNotificationSink()
        self._collection = collection
        self._controllers: dict[tuple[str, str], ToggleController] = {}

    def get(self, resource_id: str, user_id: str | None) -> ToggleController:
        key = (resource_id, user_id or "")
        controller = self._controllers.get(key)
        if controller is None:
            controller = ToggleController(
                store=self._store,
                resource_id=resource_id,
                user_id=user_id,
                collection=self._collection,
                scheduler=self._scheduler,
                notifier=self._notifier,
            )
            self._controllers[key] = controller
        return controller

    def __len__(self) -> int:
        return len(self._controllers)
