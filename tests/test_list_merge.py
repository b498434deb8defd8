from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone

import pytest

from clipfeed.domain.list_merge import (
    FetchResult,
    ListState,
    LocalDeleteApplied,
    LocalDeleteRolledBack,
    LocalInsertApplied,
    LocalInsertConfirmed,
    LocalInsertRolledBack,
    PushDelete,
    PushInsert,
    PushUpdate,
    is_same_logical_item,
    merge,
)
from clipfeed.models import Item


T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _item(
    item_id: str,
    *,
    seconds: float = 0,
    content: str = "hi",
    author: str = "u1",
    parent: str = "v1",
    pending: bool = False,
) -> Item:
    return Item(
        id=item_id,
        parent_id=parent,
        author_id=author,
        content=content,
        created_at=T0 + timedelta(seconds=seconds),
        pending=pending,
    )


def _state(*items: Item, tombstones: frozenset[str] = frozenset()) -> ListState:
    return ListState(items=tuple(items), tombstones=tombstones)


def test_local_insert_then_push_then_confirm_shows_one_entry():
    temp = _item("tmp-1", seconds=0, pending=True)
    server = _item("s1", seconds=0.2)

    s = merge(ListState(), LocalInsertApplied(item=temp))
    assert s.ids() == ["tmp-1"]
    assert s.items[0].pending

    s = merge(s, PushInsert(item=server))
    assert s.ids() == ["s1"]
    assert not s.items[0].pending

    s2 = merge(s, LocalInsertConfirmed(temp_id="tmp-1", item=server))
    assert s2 is s
    assert s2.ids() == ["s1"]


def test_local_insert_then_confirm_then_push_shows_one_entry():
    temp = _item("tmp-1", pending=True)
    server = _item("s1", seconds=0.2)

    s = merge(ListState(), LocalInsertApplied(item=temp))
    s = merge(s, LocalInsertConfirmed(temp_id="tmp-1", item=server))
    assert s.ids() == ["s1"]

    s2 = merge(s, PushInsert(item=server))
    assert s2 is s


def test_replayed_push_insert_is_a_noop():
    s = merge(ListState(), PushInsert(item=_item("a")))
    assert merge(s, PushInsert(item=_item("a"))) is s


def test_confirm_when_both_temp_and_confirmed_present_drops_temp():
    temp = _item("tmp-1", pending=True)
    server = _item("s1", seconds=1)
    # The push carried different content, so it did not claim the tentative entry.
    s = _state(_item("s1", seconds=1, content="other"), temp)
    s = merge(s, LocalInsertConfirmed(temp_id="tmp-1", item=server))
    assert s.ids() == ["s1"]


def test_confirm_without_temp_inserts_sorted():
    s = _state(_item("b", seconds=10), _item("a", seconds=0))
    s = merge(s, LocalInsertConfirmed(temp_id="tmp-x", item=_item("c", seconds=5)))
    assert s.ids() == ["b", "c", "a"]


def test_confirm_of_tombstoned_row_drops_temp_and_does_not_resurrect():
    temp = _item("tmp-1", pending=True)
    s = _state(temp, tombstones=frozenset({"s1"}))
    s = merge(s, LocalInsertConfirmed(temp_id="tmp-1", item=_item("s1")))
    assert s.ids() == []


def test_rollback_removes_only_the_tentative_entry():
    s = _state(_item("tmp-1", seconds=5, pending=True), _item("a"))
    s = merge(s, LocalInsertRolledBack(temp_id="tmp-1"))
    assert s.ids() == ["a"]
    assert merge(s, LocalInsertRolledBack(temp_id="tmp-1")) is s


@pytest.mark.parametrize(
    "events",
    [
        [PushDelete(item_id="a")],
        [PushDelete(item_id="a"), PushDelete(item_id="a")],
        [LocalDeleteApplied(item_id="a"), PushDelete(item_id="a")],
        [PushDelete(item_id="a"), LocalDeleteApplied(item_id="a")],
    ],
)
def test_delete_is_idempotent_in_any_order(events):
    s = _state(_item("b", seconds=1), _item("a"))
    for e in events:
        s = merge(s, e)
    assert s.ids() == ["b"]
    assert "a" in s.tombstones


def test_delete_of_unknown_id_is_noop_once_tombstoned():
    s = merge(ListState(), PushDelete(item_id="zz"))
    assert s.ids() == []
    assert merge(s, PushDelete(item_id="zz")) is s


def test_late_insert_after_delete_is_ignored():
    s = merge(_state(_item("a")), PushDelete(item_id="a"))
    assert merge(s, PushInsert(item=_item("a"))) is s


def test_delete_rollback_restores_entry_in_order():
    a, b, c = _item("a", seconds=0), _item("b", seconds=5), _item("c", seconds=10)
    s = _state(c, b, a)
    s = merge(s, LocalDeleteApplied(item_id="b"))
    assert s.ids() == ["c", "a"]
    s = merge(s, LocalDeleteRolledBack(item=b))
    assert s.ids() == ["c", "b", "a"]
    assert "b" not in s.tombstones


def test_delete_rollback_after_push_delete_keeps_the_row_removed():
    a, b = _item("a", seconds=0), _item("b", seconds=5)
    s = merge(_state(b, a), LocalDeleteApplied(item_id="b"))
    s = merge(s, PushDelete(item_id="b"))
    assert s.deleted_remotely("b")

    assert merge(s, LocalDeleteRolledBack(item=b)) is s
    assert merge(s, PushInsert(item=b)).ids() == ["a"]


def test_local_delete_alone_is_not_a_remote_delete():
    s = merge(_state(_item("a")), LocalDeleteApplied(item_id="a"))
    assert not s.deleted_remotely("a")
    assert merge(s, FetchResult(items=(_item("a"),))).remote_deletes == frozenset()


def test_push_insert_orders_newest_first_and_ties_keep_arrival_order():
    s = ListState()
    s = merge(s, PushInsert(item=_item("x", seconds=5)))
    s = merge(s, PushInsert(item=_item("y", seconds=10)))
    s = merge(s, PushInsert(item=_item("z", seconds=5)))
    s = merge(s, PushInsert(item=_item("w", seconds=1)))
    assert s.ids() == ["y", "x", "z", "w"]


def test_push_update_replaces_content_in_place():
    s = _state(_item("b", seconds=5), _item("a"))
    s = merge(s, PushUpdate(item=_item("a", content="edited")))
    assert s.ids() == ["b", "a"]
    assert s.find("a").content == "edited"


def test_push_update_for_unknown_id_is_noop():
    s = _state(_item("a"))
    assert merge(s, PushUpdate(item=_item("q"))) is s


def test_fetch_replaces_confirmed_entries_and_keeps_unmatched_tentative():
    temp = _item("tmp-1", seconds=20, content="mine", pending=True)
    s = _state(temp, _item("old", seconds=1))
    fetched = (_item("n2", seconds=10), _item("n1", seconds=2))
    s = merge(s, FetchResult(items=fetched))
    assert s.ids() == ["tmp-1", "n2", "n1"]


def test_fetch_drops_tentative_entry_already_present_in_snapshot():
    temp = _item("tmp-1", seconds=0, content="mine", pending=True)
    s = _state(temp)
    s = merge(s, FetchResult(items=(_item("s1", seconds=0.5, content="mine"),)))
    assert s.ids() == ["s1"]


def test_fetch_filters_tombstoned_ids_and_duplicates():
    s = merge(ListState(), PushDelete(item_id="gone"))
    s = merge(s, FetchResult(items=(_item("a", seconds=2), _item("gone", seconds=1), _item("a", seconds=2))))
    assert s.ids() == ["a"]


def test_two_identical_pending_posts_claim_pushes_oldest_first():
    first = _item("tmp-1", seconds=0, content="same", pending=True)
    second = _item("tmp-2", seconds=1, content="same", pending=True)
    s = merge(ListState(), LocalInsertApplied(item=first))
    s = merge(s, LocalInsertApplied(item=second))

    s = merge(s, PushInsert(item=_item("s1", seconds=0.1, content="same")))
    assert set(s.ids()) == {"s1", "tmp-2"}

    s = merge(s, LocalInsertConfirmed(temp_id="tmp-1", item=_item("s1", seconds=0.1, content="same")))
    s = merge(s, PushInsert(item=_item("s2", seconds=1.1, content="same")))
    s = merge(s, LocalInsertConfirmed(temp_id="tmp-2", item=_item("s2", seconds=1.1, content="same")))
    assert s.ids() == ["s2", "s1"]
    assert not any(i.pending for i in s.items)


def test_push_outside_dedup_window_is_a_separate_entry():
    temp = _item("tmp-1", seconds=0, pending=True)
    s = merge(ListState(), LocalInsertApplied(item=temp))
    s = merge(s, PushInsert(item=_item("s1", seconds=120)), dedup_window_seconds=30)
    assert s.ids() == ["s1", "tmp-1"]


def test_is_same_logical_item_requires_pending_and_matching_fields():
    pending = _item("tmp-1", pending=True)
    assert is_same_logical_item(pending, _item("s1", seconds=3), window_seconds=30)
    assert not is_same_logical_item(pending, _item("s1", author="u2"), window_seconds=30)
    assert not is_same_logical_item(pending, _item("s1", parent="v2"), window_seconds=30)
    assert not is_same_logical_item(replace(pending, pending=False), _item("s1"), window_seconds=30)


def test_unknown_event_raises_type_error():
    with pytest.raises(TypeError):
        merge(ListState(), object())  # type: ignore[arg-type]
