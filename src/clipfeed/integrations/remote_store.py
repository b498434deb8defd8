from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from typing import Any, Protocol

import httpx

from clipfeed.errors import ConflictError, NetworkError, Op, RemoteStoreError, classify_status
from clipfeed.integrations.filters import Filter, Order
from clipfeed.integrations.realtime import (
    ALL_EVENT_TYPES,
    ChannelStatus,
    PushEvent,
    PushType,
    RealtimeHub,
    Subscription,
)


class RemoteStore(Protocol):
    async def query(
        self,
        collection: str,
        *,
        filters: Sequence[Filter] = (),
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]: ...

    async def insert(self, collection: str, row: dict[str, Any]) -> dict[str, Any]: ...

    async def upsert(
        self, collection: str, row: dict[str, Any], *, on_conflict: str = "id"
    ) -> dict[str, Any]: ...

    async def update(
        self, collection: str, item_id: str, fields: dict[str, Any]
    ) -> dict[str, Any] | None: ...

    async def delete(self, collection: str, item_id: str, *, owner: Filter | None = None) -> None: ...

    async def count(self, collection: str, *, filters: Sequence[Filter] = ()) -> int: ...

    def subscribe(
        self,
        collection: str,
        *,
        callback: Callable[[PushEvent], None],
        filters: Iterable[Filter] = (),
        event_types: Iterable[PushType] = ALL_EVENT_TYPES,
        on_status: Callable[[ChannelStatus], None] | None = None,
    ) -> Subscription: ...

    def unsubscribe(self, subscription: Subscription) -> None: ...


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except Exception:
        return f"{resp.status_code} {resp.text}"
    if isinstance(data, dict):
        # Both PostgREST ({message}) and the devstore ErrorResponse carry `message`.
        for key in ("message", "error_description", "error", "msg"):
            v = data.get(key)
            if isinstance(v, str) and v:
                return f"{resp.status_code} {v}"
    return f"{resp.status_code} {resp.text}"


def parse_content_range_total(value: str | None) -> int | None:
    """Total from a Content-Range header: "0-9/42" -> 42, "*/0" -> 0."""
    if not value or "/" not in value:
        return None
    total = value.rsplit("/", 1)[1].strip()
    if not total.isdigit():
        return None
    return int(total)


class HttpxRemoteStore:
    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout_seconds: float,
        access_token: str | None = None,
        realtime: RealtimeHub | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._rest_url = f"{base_url.rstrip('/')}/rest/v1"
        self._api_key = api_key.strip()
        self._access_token = (access_token or "").strip()
        self._timeout = timeout_seconds
        self._realtime = realtime
        self._client = client

    def set_access_token(self, access_token: str | None) -> None:
        self._access_token = (access_token or "").strip()

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self._api_key:
            headers["apikey"] = self._api_key
        bearer = self._access_token or self._api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        if prefer:
            headers["Prefer"] = prefer
        return headers

    async def _request(
        self,
        method: str,
        collection: str,
        *,
        op: Op,
        params: list[tuple[str, str]] | None = None,
        json: object | None = None,
        prefer: str | None = None,
    ) -> httpx.Response:
        url = f"{self._rest_url}/{collection}"
        headers = self._headers(prefer)
        try:
            if self._client is not None:
                resp = await self._client.request(
                    method, url, params=params, headers=headers, json=json
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.request(
                        method, url, params=params, headers=headers, json=json
                    )
        except httpx.TransportError as e:
            raise NetworkError(
                f"{op} {collection} failed: {e.__class__.__name__}: {e}", collection=collection
            ) from e
        if not 200 <= resp.status_code < 300:
            raise classify_status(
                resp.status_code, _error_message(resp), op=op, collection=collection
            )
        return resp

    @staticmethod
    def _rows(resp: httpx.Response, *, collection: str) -> list[dict[str, Any]]:
        if resp.status_code == 204 or not resp.content:
            return []
        try:
            data = resp.json()
        except Exception as e:
            raise NetworkError(
                f"{collection}: cannot parse response: {resp.text[:200]}", collection=collection
            ) from e
        if isinstance(data, list):
            return [x for x in data if isinstance(x, dict)]
        if isinstance(data, dict):
            return [data]
        raise NetworkError(f"{collection}: unexpected response shape: {data!r}", collection=collection)

    async def query(
        self,
        collection: str,
        *,
        filters: Sequence[Filter] = (),
        order: Order | None = None,
        limit: int | None = None,
    ) -> list[dict[str, Any]]:
        params: list[tuple[str, str]] = [("select", "*")]
        params.extend(f.to_param() for f in filters)
        if order is not None:
            params.append(("order", order.to_param()))
        if limit is not None:
            params.append(("limit", str(int(limit))))
        resp = await self._request("GET", collection, op="query", params=params)
        return self._rows(resp, collection=collection)

    async def insert(self, collection: str, row: dict[str, Any]) -> dict[str, Any]:
        resp = await self._request(
            "POST", collection, op="insert", json=row, prefer="return=representation"
        )
        rows = self._rows(resp, collection=collection)
        if not rows:
            raise NetworkError(f"insert {collection} returned no row", collection=collection)
        return rows[0]

    async def upsert(
        self, collection: str, row: dict[str, Any], *, on_conflict: str = "id"
    ) -> dict[str, Any]:
        resp = await self._request(
            "POST",
            collection,
            op="upsert",
            params=[("on_conflict", on_conflict)],
            json=row,
            prefer="return=representation,resolution=merge-duplicates",
        )
        rows = self._rows(resp, collection=collection)
        if not rows:
            raise NetworkError(f"upsert {collection} returned no row", collection=collection)
        return rows[0]

    async def update(
        self, collection: str, item_id: str, fields: dict[str, Any]
    ) -> dict[str, Any] | None:
        resp = await self._request(
            "PATCH",
            collection,
            op="update",
            params=[("id", f"eq.{item_id}")],
            json=fields,
            prefer="return=representation",
        )
        rows = self._rows(resp, collection=collection)
        return rows[0] if rows else None

    async def delete(self, collection: str, item_id: str, *, owner: Filter | None = None) -> None:
        params = [("id", f"eq.{item_id}")]
        if owner is not None:
            params.append(owner.to_param())
        resp = await self._request(
            "DELETE", collection, op="delete", params=params, prefer="return=representation"
        )
        if resp.status_code == 204 or not resp.content:
            return
        if not self._rows(resp, collection=collection):
            raise ConflictError(
                f"delete {collection} id={item_id}: nothing matched",
                status_code=resp.status_code,
                collection=collection,
            )

    async def count(self, collection: str, *, filters: Sequence[Filter] = ()) -> int:
        params: list[tuple[str, str]] = [("select", "*")]
        params.extend(f.to_param() for f in filters)
        resp = await self._request(
            "HEAD", collection, op="count", params=params, prefer="count=exact"
        )
        total = parse_content_range_total(resp.headers.get("content-range"))
        if total is None:
            raise NetworkError(
                f"count {collection}: missing Content-Range ({resp.headers.get('content-range')!r})",
                collection=collection,
            )
        return total

    def subscribe(
        self,
        collection: str,
        *,
        callback: Callable[[PushEvent], None],
        filters: Iterable[Filter] = (),
        event_types: Iterable[PushType] = ALL_EVENT_TYPES,
        on_status: Callable[[ChannelStatus], None] | None = None,
    ) -> Subscription:
        if self._realtime is None:
            raise RemoteStoreError("realtime hub is not configured", collection=collection)
        return self._realtime.subscribe(
            collection,
            callback=callback,
            filters=filters,
            event_types=event_types,
            on_status=on_status,
        )

    def unsubscribe(self, subscription: Subscription) -> None:
        if self._realtime is not None:
            self._realtime.unsubscribe(subscription)


def build_remote_store(
    *, realtime: RealtimeHub | None = None, client: httpx.AsyncClient | None = None
) -> HttpxRemoteStore:
    from clipfeed.config import settings

    return HttpxRemoteStore(
        base_url=settings.remote_store_url,
        api_key=settings.remote_store_api_key,
        access_token=settings.remote_access_token or None,
        timeout_seconds=settings.remote_request_timeout_seconds,
        realtime=realtime,
        client=client,
    )
