from __future__ import annotations

import asyncio

import pytest

from clipfeed.errors import AuthRequiredError, ConflictError, NetworkError
from clipfeed.services.toggle_service import ToggleController, ToggleRegistry


def _controller(store, scheduler, notices, user_id: str | None = "u1") -> ToggleController:
    return ToggleController(
        store=store, resource_id="v1", user_id=user_id, scheduler=scheduler, notifier=notices
    )


@pytest.mark.anyio
async def test_load_reads_count_and_membership(store, scheduler, notices):
    store.seed("likes", video_id="v1", user_id="u1")
    store.seed("likes", video_id="v1", user_id="u2")
    store.seed("likes", video_id="v2", user_id="u1")

    c = _controller(store, scheduler, notices)
    state = await c.load()
    assert state.active
    assert state.count == 2
    assert not state.stale
    assert c.count.value == 2


@pytest.mark.anyio
async def test_load_failure_degrades_to_stale(store, scheduler, notices):
    store.failures["count"] = NetworkError("offline")
    store.failures["query"] = NetworkError("offline")
    state = await _controller(store, scheduler, notices).load()
    assert state.stale
    assert not state.active
    assert state.count == 0


@pytest.mark.anyio
async def test_rapid_clicks_send_at_most_two_requests(store, scheduler, notices):
    c = _controller(store, scheduler, notices)
    await c.load()
    gate = asyncio.Event()
    store.gates["insert"] = gate

    for _ in range(4):
        c.toggle()
    # Even number of clicks: back to inactive, count back to 0.
    assert not c.state.active
    assert c.state.count == 0

    gate.set()
    final = await c.settled()
    assert not final.active
    assert final.count == 0
    assert not final.in_flight
    assert store.calls.count(("insert", "likes")) == 1
    assert store.calls.count(("delete", "likes")) == 1
    assert store.tables["likes"] == []


@pytest.mark.anyio
async def test_toggle_failure_reverts_and_notifies(store, scheduler, notices):
    c = _controller(store, scheduler, notices)
    await c.load()
    store.failures["insert"] = NetworkError("offline")

    c.toggle()
    assert c.state.active
    final = await c.settled()
    assert not final.active
    assert final.count == 0
    assert notices.kinds() == ["toggle_failed"]


@pytest.mark.anyio
async def test_unlike_uses_known_row_and_conflict_is_success(store, scheduler, notices):
    store.seed("likes", video_id="v1", user_id="u1")
    c = _controller(store, scheduler, notices)
    await c.load()
    store.tables["likes"].clear()

    c.toggle()
    final = await c.settled()
    assert not final.active
    assert final.count == 0
    assert notices.notices == []


@pytest.mark.anyio
async def test_like_conflict_after_stale_load_rereads_the_count(store, scheduler, notices):
    store.seed("likes", video_id="v1", user_id="u1")
    store.seed("likes", video_id="v1", user_id="u2")
    store.failures["query"] = NetworkError("offline")
    c = _controller(store, scheduler, notices)
    state = await c.load()
    # Membership unknown: shown as not liked, total is right.
    assert state.stale
    assert not state.active
    assert state.count == 2

    del store.failures["query"]
    store.failures["insert"] = ConflictError("duplicate like", status_code=409, collection="likes")
    c.toggle()
    assert c.state.count == 3
    final = await c.settled()
    assert final.active
    assert final.count == 2
    assert notices.notices == []


@pytest.mark.anyio
async def test_load_finishing_after_a_settled_click_keeps_the_click(store, scheduler, notices):
    c = _controller(store, scheduler, notices)
    gate = asyncio.Event()
    store.gates["query"] = gate
    loading = asyncio.ensure_future(c.load())
    for _ in range(3):
        await asyncio.sleep(0)
    assert store.calls == [("count", "likes"), ("query", "likes")]

    c.toggle()
    settled = await c.settled()
    assert settled.active
    assert settled.count == 1

    gate.set()
    state = await loading
    assert state.active
    assert state.count == 1
    assert c.state == settled


@pytest.mark.anyio
async def test_toggle_requires_identity(store, scheduler, notices):
    c = _controller(store, scheduler, notices, user_id=None)
    await c.load()
    with pytest.raises(AuthRequiredError):
        c.toggle()
    assert store.calls.count(("insert", "likes")) == 0


@pytest.mark.anyio
async def test_listeners_see_each_transition(store, scheduler, notices):
    c = _controller(store, scheduler, notices)
    await c.load()
    phases: list[str] = []
    c.add_listener(lambda s: phases.append(s.phase))
    c.toggle()
    await c.settled()
    assert phases == ["active", "active"]


def test_registry_returns_one_controller_per_pair(store, scheduler, notices):
    reg = ToggleRegistry(store=store, scheduler=scheduler, notifier=notices)
    a = reg.get("v1", "u1")
    assert reg.get("v1", "u1") is a
    assert reg.get("v1", "u2") is not a
    assert reg.get("v2", "u1") is not a
    assert len(reg) == 3
