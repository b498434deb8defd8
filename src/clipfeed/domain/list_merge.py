from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Union

from clipfeed.models import Item


DEFAULT_DEDUP_WINDOW_SECONDS = 30.0


@dataclass(frozen=True)
class ListState:
    """Canonical view of one parent-scoped list.

    `items` is ordered by created_at descending; equal timestamps keep arrival order.
    `tombstones` holds ids known to be deleted so late or duplicated inserts cannot
    bring them back. `remote_deletes` is the subset whose removal a push reported;
    a failed local delete cannot restore those.
    """

    items: tuple[Item, ...] = ()
    tombstones: frozenset[str] = frozenset()
    remote_deletes: frozenset[str] = frozenset()

    def ids(self) -> list[str]:
        return [i.id for i in self.items]

    def find(self, item_id: str) -> Item | None:
        for item in self.items:
            if item.id == item_id:
                return item
        return None

    def deleted_remotely(self, item_id: str) -> bool:
        return item_id in self.remote_deletes


@dataclass(frozen=True)
class FetchResult:
    items: tuple[Item, ...]


@dataclass(frozen=True)
class PushInsert:
    item: Item


@dataclass(frozen=True)
class PushUpdate:
    item: Item


@dataclass(frozen=True)
class PushDelete:
    item_id: str


@dataclass(frozen=True)
class LocalInsertApplied:
    item: Item


@dataclass(frozen=True)
class LocalInsertConfirmed:
    temp_id: str
    item: Item


@dataclass(frozen=True)
class LocalInsertRolledBack:
    temp_id: str


@dataclass(frozen=True)
class LocalDeleteApplied:
    item_id: str


@dataclass(frozen=True)
class LocalDeleteRolledBack:
    # Snapshot retained by the tracker when the delete was applied.
    item: Item


ListEvent = Union[
    FetchResult,
    PushInsert,
    PushUpdate,
    PushDelete,
    LocalInsertApplied,
    LocalInsertConfirmed,
    LocalInsertRolledBack,
    LocalDeleteApplied,
    LocalDeleteRolledBack,
]


def _index_of(items: tuple[Item, ...], item_id: str) -> int | None:
    for idx, item in enumerate(items):
        if item.id == item_id:
            return idx
    return None


def _insert_sorted(items: tuple[Item, ...], item: Item) -> tuple[Item, ...]:
    # After every entry with created_at >= item.created_at: newer first, ties by arrival.
    pos = len(items)
    for idx, existing in enumerate(items):
        if existing.created_at < item.created_at:
            pos = idx
            break
    return items[:pos] + (item,) + items[pos:]


def _remove_at(items: tuple[Item, ...], idx: int) -> tuple[Item, ...]:
    return items[:idx] + items[idx + 1 :]


def _replace_at(items: tuple[Item, ...], idx: int, item: Item) -> tuple[Item, ...]:
    """Swap the entry at idx, keeping its position unless that would break the ordering."""
    prev_ok = idx == 0 or items[idx - 1].created_at >= item.created_at
    next_ok = idx == len(items) - 1 or items[idx + 1].created_at <= item.created_at
    if prev_ok and next_ok:
        return items[:idx] + (item,) + items[idx + 1 :]
    return _insert_sorted(_remove_at(items, idx), item)


def is_same_logical_item(pending: Item, confirmed: Item, *, window_seconds: float) -> bool:
    if not pending.pending or confirmed.pending:
        return False
    if pending.parent_id != confirmed.parent_id:
        return False
    if pending.author_id != confirmed.author_id or pending.content != confirmed.content:
        return False
    delta = abs((confirmed.created_at - pending.created_at).total_seconds())
    return delta <= window_seconds


def _find_pending_match(
    items: tuple[Item, ...], confirmed: Item, *, window_seconds: float
) -> int | None:
    # Oldest tentative entry first: the store confirms inserts in submission order.
    for idx in range(len(items) - 1, -1, -1):
        if is_same_logical_item(items[idx], confirmed, window_seconds=window_seconds):
            return idx
    return None


def _apply_fetch(
    state: ListState, fetched: tuple[Item, ...], *, window_seconds: float
) -> ListState:
    seen: set[str] = set()
    ordered: list[Item] = []
    for item in fetched:
        if item.id in seen or item.id in state.tombstones:
            continue
        seen.add(item.id)
        ordered.append(replace(item, pending=False) if item.pending else item)
    # Stable: equal timestamps keep the order the store returned them in.
    ordered.sort(key=lambda i: i.created_at, reverse=True)
    items = tuple(ordered)

    # Tentative entries survive unless the snapshot already contains their server row.
    claimed: set[str] = set()
    for pending in state.items:
        if not pending.pending:
            continue
        match = next(
            (
                i
                for i in items
                if i.id not in claimed
                and is_same_logical_item(pending, i, window_seconds=window_seconds)
            ),
            None,
        )
        if match is not None:
            claimed.add(match.id)
            continue
        items = _insert_sorted(items, pending)
    return replace(state, items=items)


def merge(
    state: ListState,
    event: ListEvent,
    *,
    dedup_window_seconds: float = DEFAULT_DEDUP_WINDOW_SECONDS,
) -> ListState:
    """Pure reducer for list events.

    - No IO, no clock.
    - Returns `state` itself when the event is a no-op.
    - Replaying any push or confirmation event is harmless.
    """

    items = state.items

    if isinstance(event, FetchResult):
        return _apply_fetch(state, event.items, window_seconds=dedup_window_seconds)

    if isinstance(event, PushInsert):
        pushed = replace(event.item, pending=False)
        if pushed.id in state.tombstones or _index_of(items, pushed.id) is not None:
            # Duplicate delivery, or the row was already removed.
            return state
        idx = _find_pending_match(items, pushed, window_seconds=dedup_window_seconds)
        if idx is not None:
            return replace(state, items=_replace_at(items, idx, pushed))
        return replace(state, items=_insert_sorted(items, pushed))

    if isinstance(event, PushUpdate):
        idx = _index_of(items, event.item.id)
        if idx is None:
            return state
        return replace(state, items=_replace_at(items, idx, replace(event.item, pending=False)))

    if isinstance(event, (PushDelete, LocalDeleteApplied)):
        tombstones = state.tombstones | {event.item_id}
        remote_deletes = state.remote_deletes
        if isinstance(event, PushDelete):
            remote_deletes = remote_deletes | {event.item_id}
        idx = _index_of(items, event.item_id)
        if idx is not None:
            items = _remove_at(items, idx)
        elif tombstones == state.tombstones and remote_deletes == state.remote_deletes:
            return state
        return ListState(items=items, tombstones=tombstones, remote_deletes=remote_deletes)

    if isinstance(event, LocalInsertApplied):
        if _index_of(items, event.item.id) is not None:
            return state
        return replace(state, items=_insert_sorted(items, replace(event.item, pending=True)))

    if isinstance(event, LocalInsertConfirmed):
        confirmed = replace(event.item, pending=False)
        temp_idx = _index_of(items, event.temp_id)
        confirmed_idx = _index_of(items, confirmed.id)

        if confirmed.id in state.tombstones:
            if temp_idx is None:
                return state
            return replace(state, items=_remove_at(items, temp_idx))

        if temp_idx is None:
            if confirmed_idx is not None:
                # A push already delivered this row.
                return state
            # The tentative entry was claimed by a push for a sibling insert.
            return replace(state, items=_insert_sorted(items, confirmed))

        if confirmed_idx is not None:
            return replace(state, items=_remove_at(items, temp_idx))
        return replace(state, items=_replace_at(items, temp_idx, confirmed))

    if isinstance(event, LocalInsertRolledBack):
        idx = _index_of(items, event.temp_id)
        if idx is None:
            return state
        return replace(state, items=_remove_at(items, idx))

    if isinstance(event, LocalDeleteRolledBack):
        if state.deleted_remotely(event.item.id):
            # The store removed the row even though our call failed.
            return state
        tombstones = state.tombstones - {event.item.id}
        if _index_of(items, event.item.id) is not None:
            return replace(state, tombstones=tombstones)
        return replace(
            state,
            items=_insert_sorted(items, replace(event.item, pending=False)),
            tombstones=tombstones,
        )

    raise TypeError(f"unknown list event: {event!r}")
