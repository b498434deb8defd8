from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from clipfeed.config import settings
from clipfeed.domain.list_merge import (
    FetchResult,
    ListEvent,
    ListState,
    PushDelete,
    PushInsert,
    PushUpdate,
    merge,
)
from clipfeed.errors import ClipfeedError
from clipfeed.integrations.filters import NEWEST_FIRST, eq
from clipfeed.integrations.realtime import ChannelStatus, PushEvent, Subscription
from clipfeed.integrations.remote_store import RemoteStore
from clipfeed.models import Item, item_from_row
from clipfeed.notifications import LoggingNotificationSink, Notice, NotificationSink
from clipfeed.scheduling import AsyncioScheduler, Scheduler


logger = logging.getLogger(__name__)


RowParser = Callable[[dict[str, Any]], Item]
Listener = Callable[[ListState], None]


class ListSynchronizer:
    """Sole owner of one parent-scoped list (e.g. the comments of one video).

    Every producer (user actions, store confirmations, push events, refreshes)
    goes through `apply()`, which runs the pure `merge` reducer.
    """

    def __init__(
        self,
        *,
        store: RemoteStore,
        collection: str,
        parent_field: str,
        parent_id: str,
        scheduler: Scheduler | None = None,
        notifier: NotificationSink | None = None,
        dedup_window_seconds: float | None = None,
        row_parser: RowParser | None = None,
    ) -> None:
        self._store = store
        self.collection = collection
        self.parent_field = parent_field
        self.parent_id = parent_id
        self._scheduler = scheduler or AsyncioScheduler()
        self._notifier = notifier or LoggingNotificationSink()
        self._dedup_window = (
            settings.push_dedup_window_seconds
            if dedup_window_seconds is None
            else dedup_window_seconds
        )
        self._parse: RowParser = row_parser or (
            lambda row: item_from_row(row, parent_field=parent_field)
        )

        self._state = ListState()
        self._listeners: list[Listener] = []
        self._subscription: Subscription | None = None
        self._disconnected = False

        self._refresh_generation = 0
        # Pushes seen while a refresh is in flight; replayed on top of its snapshot.
        self._replay: list[ListEvent] | None = None

        self.loaded = False

    @property
    def state(self) -> ListState:
        return self._state

    @property
    def items(self) -> tuple[Item, ...]:
        return self._state.items

    def find(self, item_id: str) -> Item | None:
        return self._state.find(item_id)

    def parse_row(self, row: dict[str, Any]) -> Item:
        return self._parse(row)

    def add_listener(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def apply(self, event: ListEvent) -> ListState:
        new_state = merge(self._state, event, dedup_window_seconds=self._dedup_window)
        if new_state is self._state:
            logger.debug(
                "no-op list event collection=%s parent=%s event=%s",
                self.collection,
                self.parent_id,
                type(event).__name__,
            )
            return new_state
        self._state = new_state
        for listener in list(self._listeners):
            listener(new_state)
        return new_state

    async def refresh(self) -> bool:
        """Fetch the whole list and replace local state. Returns False if the fetch failed."""
        self._refresh_generation += 1
        generation = self._refresh_generation
        if self._replay is None:
            self._replay = []
        try:
            rows = await self._store.query(
                self.collection,
                filters=[eq(self.parent_field, self.parent_id)],
                order=NEWEST_FIRST,
            )
            fetched = tuple(self._parse(r) for r in rows)
        except ClipfeedError as e:
            if generation == self._refresh_generation:
                self._replay = None
            logger.warning(
                "list refresh failed collection=%s parent=%s",
                self.collection,
                self.parent_id,
                exc_info=True,
            )
            self._notifier.notify(
                Notice(kind="load_failed", message=f"Failed to load {self.collection}.", error=e)
            )
            return False

        if generation != self._refresh_generation:
            logger.debug(
                "discarding superseded refresh collection=%s generation=%s latest=%s",
                self.collection,
                generation,
                self._refresh_generation,
            )
            return True

        replay = self._replay or []
        self._replay = None
        self.apply(FetchResult(items=fetched))
        for event in replay:
            self.apply(event)
        self.loaded = True
        return True

    async def open(self) -> bool:
        """Subscribe first, then load, so nothing between snapshot and subscription is lost."""
        self.subscribe()
        return await self.refresh()

    def subscribe(self) -> None:
        if self._subscription is not None:
            return
        self._subscription = self._store.subscribe(
            self.collection,
            callback=self._on_push,
            filters=[eq(self.parent_field, self.parent_id)],
            event_types=("INSERT", "UPDATE", "DELETE"),
            on_status=self._on_status,
        )

    def close(self) -> None:
        if self._subscription is not None:
            self._store.unsubscribe(self._subscription)
            self._subscription = None
        self._listeners.clear()

    def _to_event(self, push: PushEvent) -> ListEvent | None:
        if push.type == "DELETE":
            item_id = push.old_record.get("id")
            if item_id is None:
                return None
            return PushDelete(item_id=str(item_id))
        try:
            item = self._parse(push.record)
        except (KeyError, ValueError):
            logger.warning(
                "ignoring malformed push collection=%s record=%s", self.collection, push.record
            )
            return None
        if item.parent_id != self.parent_id:
            return None
        if push.type == "UPDATE":
            return PushUpdate(item=item)
        return PushInsert(item=item)

    def _on_push(self, push: PushEvent) -> None:
        event = self._to_event(push)
        if event is None:
            return
        if self._replay is not None:
            self._replay.append(event)
        self.apply(event)

    def _on_status(self, status: ChannelStatus) -> None:
        if status == "CLOSED":
            self._disconnected = True
            logger.info(
                "push channel closed collection=%s parent=%s", self.collection, self.parent_id
            )
            return
        if status == "SUBSCRIBED" and self._disconnected:
            self._disconnected = False
            logger.info(
                "push channel restored; refetching collection=%s parent=%s",
                self.collection,
                self.parent_id,
            )
            # Events published during the outage were never delivered.
            self._scheduler.spawn(self.refresh())
