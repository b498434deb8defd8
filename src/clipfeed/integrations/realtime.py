"""In-process fan-out of push events (postgres_changes style).

Delivery is at-least-once and unordered from the subscriber's point of view:
publishers may repeat events and callers must tolerate that. While the hub is
disconnected, published events are dropped; subscribers learn about the gap
through their status callback and are expected to refetch on reconnect.
"""

from __future__ import annotations

import itertools
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from typing import Any, Literal

from clipfeed.integrations.filters import Filter


logger = logging.getLogger(__name__)


PushType = Literal["INSERT", "UPDATE", "DELETE"]
ChannelStatus = Literal["SUBSCRIBED", "CLOSED"]

ALL_EVENT_TYPES: tuple[PushType, ...] = ("INSERT", "UPDATE", "DELETE")


@dataclass(frozen=True)
class PushEvent:
    collection: str
    type: PushType
    record: dict[str, Any] = field(default_factory=dict)
    # For DELETE (and UPDATE) the previous row; often only the primary key.
    old_record: dict[str, Any] = field(default_factory=dict)

    def row(self) -> dict[str, Any]:
        return self.old_record if self.type == "DELETE" else self.record


@dataclass(eq=False)
class Subscription:
    id: int
    collection: str
    filters: tuple[Filter, ...]
    event_types: frozenset[str]
    callback: Callable[[PushEvent], None]
    on_status: Callable[[ChannelStatus], None] | None = None
    active: bool = True

    def accepts(self, event: PushEvent) -> bool:
        if not self.active or event.collection != self.collection:
            return False
        if event.type not in self.event_types:
            return False
        row = event.row()
        return all(f.matches(row) for f in self.filters)


class RealtimeHub:
    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self._subs: dict[int, Subscription] = {}
        self._connected = True

    @property
    def connected(self) -> bool:
        return self._connected

    def subscribe(
        self,
        collection: str,
        *,
        callback: Callable[[PushEvent], None],
        filters: Iterable[Filter] = (),
        event_types: Iterable[PushType] = ALL_EVENT_TYPES,
        on_status: Callable[[ChannelStatus], None] | None = None,
    ) -> Subscription:
        sub = Subscription(
            id=next(self._ids),
            collection=collection,
            filters=tuple(filters),
            event_types=frozenset(event_types),
            callback=callback,
            on_status=on_status,
        )
        self._subs[sub.id] = sub
        if self._connected:
            self._emit_status(sub, "SUBSCRIBED")
        return sub

    def unsubscribe(self, subscription: Subscription) -> None:
        subscription.active = False
        self._subs.pop(subscription.id, None)

    def subscriber_count(self, collection: str | None = None) -> int:
        return sum(1 for s in self._subs.values() if collection in (None, s.collection))

    def publish(self, event: PushEvent) -> int:
        """Deliver to every matching subscriber. Returns the number of deliveries."""
        if not self._connected:
            logger.debug("push dropped while disconnected collection=%s", event.collection)
            return 0
        delivered = 0
        for sub in list(self._subs.values()):
            if not sub.accepts(event):
                continue
            try:
                sub.callback(event)
            except Exception:
                # One broken subscriber must not starve the others.
                logger.exception(
                    "push callback failed subscription=%s collection=%s", sub.id, sub.collection
                )
            delivered += 1
        return delivered

    def disconnect(self) -> None:
        if not self._connected:
            return
        self._connected = False
        for sub in list(self._subs.values()):
            self._emit_status(sub, "CLOSED")

    def reconnect(self) -> None:
        if self._connected:
            return
        self._connected = True
        for sub in list(self._subs.values()):
            self._emit_status(sub, "SUBSCRIBED")

    def _emit_status(self, sub: Subscription, status: ChannelStatus) -> None:
        if sub.on_status is None:
            return
        try:
            sub.on_status(status)
        except Exception:
            logger.exception("status callback failed subscription=%s status=%s", sub.id, status)
