from __future__ import annotations

import json

import httpx
import pytest

from clipfeed.errors import AuthRequiredError, ConflictError, NetworkError, RemoteStoreError, ValidationError
from clipfeed.integrations.filters import NEWEST_FIRST, eq, ilike
from clipfeed.integrations.realtime import RealtimeHub
from clipfeed.integrations.remote_store import HttpxRemoteStore, parse_content_range_total


def _store(handler, *, realtime: RealtimeHub | None = None, token: str | None = "user-token") -> HttpxRemoteStore:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpxRemoteStore(
        base_url="https://store.test/",
        api_key="anon-key",
        access_token=token,
        timeout_seconds=5,
        realtime=realtime,
        client=client,
    )


@pytest.mark.anyio
async def test_query_sends_filters_order_limit_and_auth_headers():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[{"id": "1", "title": "Cats"}])

    store = _store(handler)
    rows = await store.query(
        "videos", filters=[ilike("title", "cat")], order=NEWEST_FIRST, limit=5
    )
    assert rows == [{"id": "1", "title": "Cats"}]

    req = seen[0]
    assert req.method == "GET"
    assert req.url.path == "/rest/v1/videos"
    assert req.url.params["title"] == "ilike.*cat*"
    assert req.url.params["order"] == "created_at.desc"
    assert req.url.params["limit"] == "5"
    assert req.headers["apikey"] == "anon-key"
    assert req.headers["authorization"] == "Bearer user-token"


@pytest.mark.anyio
async def test_insert_and_upsert_ask_for_representation():
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        body = json.loads(request.content)
        return httpx.Response(201, json=[{"id": "9", **body}])

    store = _store(handler)
    row = await store.insert("comments", {"video_id": "v1", "content": "hi"})
    assert row["id"] == "9"
    assert seen[0].headers["prefer"] == "return=representation"

    profile = await store.upsert("profiles", {"id": "u1", "username": "neo"})
    assert profile["username"] == "neo"
    assert seen[1].url.params["on_conflict"] == "id"
    assert "resolution=merge-duplicates" in seen[1].headers["prefer"]


@pytest.mark.anyio
async def test_delete_outcomes():
    bodies = iter([httpx.Response(200, json=[{"id": "1"}]), httpx.Response(200, json=[]), httpx.Response(204)])
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return next(bodies)

    store = _store(handler)
    await store.delete("comments", "1", owner=eq("user_id", "u1"))
    assert seen[0].url.params["id"] == "eq.1"
    assert seen[0].url.params["user_id"] == "eq.u1"

    with pytest.raises(ConflictError):
        await store.delete("comments", "1")
    await store.delete("comments", "2")


@pytest.mark.anyio
async def test_count_reads_content_range():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "HEAD"
        assert request.headers["prefer"] == "count=exact"
        return httpx.Response(200, headers={"Content-Range": "*/42"})

    assert await _store(handler).count("comments", filters=[eq("video_id", "v1")]) == 42


@pytest.mark.anyio
@pytest.mark.parametrize(
    ("status", "op", "expected"),
    [
        (401, "query", AuthRequiredError),
        (403, "insert", AuthRequiredError),
        (409, "insert", ConflictError),
        (404, "delete", ConflictError),
        (400, "insert", ValidationError),
        (500, "query", NetworkError),
        (404, "query", NetworkError),
    ],
)
async def test_status_codes_map_to_error_kinds(status: int, op: str, expected: type[Exception]):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json={"message": "nope"})

    store = _store(handler)
    with pytest.raises(expected) as excinfo:
        if op == "insert":
            await store.insert("comments", {"content": "x"})
        elif op == "delete":
            await store.delete("comments", "1")
        else:
            await store.query("comments")
    assert "nope" in str(excinfo.value)


@pytest.mark.anyio
async def test_transport_errors_become_network_errors():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("refused", request=request)

    with pytest.raises(NetworkError):
        await _store(handler).query("videos")


@pytest.mark.anyio
async def test_subscribe_without_hub_is_an_error():
    store = _store(lambda r: httpx.Response(200, json=[]))
    with pytest.raises(RemoteStoreError):
        store.subscribe("comments", callback=lambda e: None)


def test_subscribe_delegates_to_hub():
    hub = RealtimeHub()
    store = _store(lambda r: httpx.Response(200, json=[]), realtime=hub)
    sub = store.subscribe("comments", callback=lambda e: None, filters=[eq("video_id", "v1")])
    assert hub.subscriber_count("comments") == 1
    store.unsubscribe(sub)
    assert hub.subscriber_count("comments") == 0


@pytest.mark.parametrize(
    ("value", "expected"),
    [("0-9/42", 42), ("*/0", 0), ("*/*", None), (None, None), ("", None)],
)
def test_parse_content_range_total(value, expected):
    assert parse_content_range_total(value) == expected


@pytest.mark.anyio
async def test_build_remote_store_uses_settings_and_token_can_change(monkeypatch: pytest.MonkeyPatch):
    from clipfeed.config import settings
    from clipfeed.integrations.remote_store import build_remote_store

    monkeypatch.setattr(settings, "remote_store_url", "https://configured.test")
    monkeypatch.setattr(settings, "remote_store_api_key", "cfg-key")
    monkeypatch.setattr(settings, "remote_access_token", "")
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json=[])

    store = build_remote_store(client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    await store.query("videos")
    store.set_access_token("signed-in")
    await store.query("videos")

    assert seen[0].url.host == "configured.test"
    assert seen[0].headers["authorization"] == "Bearer cfg-key"
    assert seen[1].headers["authorization"] == "Bearer signed-in"
