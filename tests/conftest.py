from __future__ import annotations

import asyncio
import itertools
from collections.abc import AsyncGenerator, Callable, Iterable, Sequence
from typing import Any

import pytest

from clipfeed.devstore.db import dispose_engine, dispose_engine_sync
from clipfeed.errors import ClipfeedError, ConflictError
from clipfeed.integrations.filters import Filter, Order
from clipfeed.integrations.realtime import (
    ALL_EVENT_TYPES,
    ChannelStatus,
    PushEvent,
    PushType,
    RealtimeHub,
    Subscription,
)
from clipfeed.models import utc_now
from clipfeed.notifications import CollectingNotificationSink
from clipfeed.scheduling import AsyncioScheduler


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture(autouse=True)
async def _dispose_devstore_engine_per_test(  # pyright: ignore[reportUnusedFunction]
    anyio_backend: object,  # noqa: ARG001
) -> AsyncGenerator[None, None]:
    # Dispose the devstore engine while the per-test loop is still alive.
    _ = anyio_backend
    yield
    await dispose_engine()


def pytest_sessionfinish(session: object, exitstatus: int) -> None:  # noqa: ARG001
    _ = session, exitstatus
    dispose_engine_sync()


class InMemoryStore:
    """RemoteStore double backed by dicts. Writes publish to `hub` like the real store.

    `gates[op]` (an asyncio.Event) holds that operation until set;
    `failures[op]` makes that operation raise.
    """

    def __init__(self, hub: RealtimeHub | None = None) -> None:
        self.hub = hub if hub is not None else RealtimeHub()
        self.tables: dict[str, list[dict[str, Any]]] = {}
        self.calls: list[tuple[str, str]] = []
        self.gates: dict[str, asyncio.Event] = {}
        self.failures: dict[str, ClipfeedError] = {}
        self._ids = itertools.count(1)

    def table(self, collection: str) -> list[dict[str, Any]]:
        return self.tables.setdefault(collection, [])

    def seed(self, collection: str, **row: Any) -> dict[str, Any]:
        full = {"id": str(next(self._ids)), "created_at": utc_now().isoformat(), **row}
        self.table(collection).append(full)
        return dict(full)

    async def _enter(self, op: str, collection: str) -> None:
        self.calls.append((op, collection))
        gate = self.gates.get(op)
        if gate is not None:
            await gate.wait()
        error = self.failures.get(op)
        if error is not None:
            raise error

    def _publish(
        self,
        collection: str,
        type_: PushType,
        record: dict[str, Any],
        old: dict[str, Any] | None = None,
    ) -> None:
        self.hub.publish(
            PushEvent(collection=collection, type=type_, record=dict(record), old_record=old or {})
        )

    @staticmethod
    def _matching(rows: Iterable[dict[str, Any]], filters: Sequence[Filter]) -> list[dict[str, Any]]:
        return [r for r in rows if all(f.field in r and f.matches(r) for f in filters)]

    async def query(
        self,
        collection: str,
        *,
        filters: Sequence[Filter] = (),
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        await self._enter("query", collection)
        rows = self._matching(self.table(collection), filters)
        if order is not None:
            rows = sorted(rows, key=lambda r: str(r.get(order.field)), reverse=order.descending)
        if limit is not None:
            rows = rows[:limit]
        return [dict(r) for r in rows]

    async def insert(self, collection: str, row: dict[str, Any]) -> dict[str, Any]:
        await self._enter("insert", collection)
        full = {"id": str(next(self._ids)), "created_at": utc_now().isoformat(), **row}
        self.table(collection).append(full)
        self._publish(collection, "INSERT", full)
        return dict(full)

    async def upsert(
        self, collection: str, row: dict[str, Any], *, on_conflict: str = "id"
    ) -> dict[str, Any]:
        await self._enter("upsert", collection)
        for existing in self.table(collection):
            if existing.get(on_conflict) == row.get(on_conflict):
                old = dict(existing)
                existing.update(row)
                self._publish(collection, "UPDATE", existing, old)
                return dict(existing)
        full = {"created_at": utc_now().isoformat(), **row}
        self.table(collection).append(full)
        self._publish(collection, "INSERT", full)
        return dict(full)

    async def update(
        self, collection: str, item_id: str, fields: dict[str, Any]
    ) -> dict[str, Any] | None:
        await self._enter("update", collection)
        for existing in self.table(collection):
            if existing.get("id") == item_id:
                old = dict(existing)
                existing.update(fields)
                self._publish(collection, "UPDATE", existing, old)
                return dict(existing)
        return None

    async def delete(self, collection: str, item_id: str, *, owner: Filter | None = None) -> None:
        await self._enter("delete", collection)
        rows = self.table(collection)
        for idx, existing in enumerate(rows):
            if existing.get("id") == item_id and (owner is None or owner.matches(existing)):
                del rows[idx]
                self._publish(collection, "DELETE", {}, {"id": item_id})
                return
        raise ConflictError(f"delete {collection} id={item_id}: nothing matched", collection=collection)

    async def count(self, collection: str, *, filters: Sequence[Filter] = ()) -> int:
        await self._enter("count", collection)
        return len(self._matching(self.table(collection), filters))

    def subscribe(
        self,
        collection: str,
        *,
        callback: Callable[[PushEvent], None],
        filters: Iterable[Filter] = (),
        event_types: Iterable[PushType] = ALL_EVENT_TYPES,
        on_status: Callable[[ChannelStatus], None] | None = None,
    ) -> Subscription:
        return self.hub.subscribe(
            collection,
            callback=callback,
            filters=filters,
            event_types=event_types,
            on_status=on_status,
        )

    def unsubscribe(self, subscription: Subscription) -> None:
        self.hub.unsubscribe(subscription)


@pytest.fixture
def hub() -> RealtimeHub:
    return RealtimeHub()


@pytest.fixture
def store(hub: RealtimeHub) -> InMemoryStore:
    return InMemoryStore(hub)


@pytest.fixture
def notices() -> CollectingNotificationSink:
    return CollectingNotificationSink()


@pytest.fixture
def scheduler() -> AsyncioScheduler:
    return AsyncioScheduler()
