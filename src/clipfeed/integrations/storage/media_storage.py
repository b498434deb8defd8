from __future__ import annotations

import re
from typing import Protocol

import httpx

from clipfeed.config import settings
from clipfeed.errors import NetworkError, classify_status


class MediaStorage(Protocol):
    async def put_bytes(
        self, key: str, data: bytes, *, content_type: str | None = None
    ) -> None: ...

    async def get_bytes(self, key: str) -> bytes: ...

    async def delete(self, key: str) -> None: ...

    def public_url(self, key: str) -> str: ...


_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._-]+")


def sanitize_media_filename(filename: str) -> str:
    name = (filename or "").strip().replace("\\", "/").rsplit("/", 1)[-1]
    name = _UNSAFE_FILENAME_RE.sub("-", name).strip(".-")
    return name[:200] or "upload"


def build_media_storage_key(*, user_id: str, filename: str, uploaded_at_ms: int) -> str:
    # Pinned layout: {user_id}/{ms}-{filename}; the same key is used by every backend.
    return f"{user_id}/{uploaded_at_ms}-{sanitize_media_filename(filename)}"


class HttpxMediaStorage:
    """Object storage endpoint of the remote store (`/storage/v1/object/...`)."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        bucket: str,
        timeout_seconds: float,
        access_token: str | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key.strip()
        self._access_token = (access_token or "").strip()
        self._bucket = bucket
        self._timeout = timeout_seconds
        self._client = client

    def _headers(self, content_type: str | None = None) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self._api_key:
            headers["apikey"] = self._api_key
        bearer = self._access_token or self._api_key
        if bearer:
            headers["Authorization"] = f"Bearer {bearer}"
        if content_type:
            headers["Content-Type"] = content_type
        return headers

    def public_url(self, key: str) -> str:
        return f"{self._base_url}/storage/v1/object/public/{self._bucket}/{key}"

    async def _request(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        content: bytes | None = None,
        json: object | None = None,
    ) -> httpx.Response:
        try:
            if self._client is not None:
                resp = await self._client.request(
                    method, url, headers=headers, content=content, json=json
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.request(
                        method, url, headers=headers, content=content, json=json
                    )
        except httpx.TransportError as e:
            raise NetworkError(f"storage {method} failed: {e}") from e
        if not 200 <= resp.status_code < 300:
            raise classify_status(
                resp.status_code, f"{resp.status_code} {resp.text}", op="storage"
            )
        return resp

    async def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        url = f"{self._base_url}/storage/v1/object/{self._bucket}/{key}"
        await self._request(
            "POST",
            url,
            headers=self._headers(content_type or "application/octet-stream"),
            content=data,
        )

    async def get_bytes(self, key: str) -> bytes:
        resp = await self._request("GET", self.public_url(key), headers=self._headers())
        return resp.content

    async def delete(self, key: str) -> None:
        url = f"{self._base_url}/storage/v1/object/{self._bucket}"
        await self._request("DELETE", url, headers=self._headers(), json={"prefixes": [key]})


def get_media_storage() -> MediaStorage:
    # Fall back to local files when no real store is configured.
    if settings.remote_store_api_key.strip():
        return HttpxMediaStorage(
            base_url=settings.remote_store_url,
            api_key=settings.remote_store_api_key,
            access_token=settings.remote_access_token or None,
            bucket=settings.media_bucket,
            timeout_seconds=settings.remote_request_timeout_seconds,
        )

    from .local_storage import LocalMediaStorage

    return LocalMediaStorage(
        root_dir=settings.media_local_dir,
        public_base_url=settings.remote_store_url,
        bucket=settings.media_bucket,
    )
