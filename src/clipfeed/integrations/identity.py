from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import httpx

from clipfeed.errors import AuthRequiredError, NetworkError
from clipfeed.models import CurrentUser


logger = logging.getLogger(__name__)


class IdentityProvider(Protocol):
    async def get_current_user(self) -> CurrentUser | None: ...


class CachedIdentityProvider:
    """Resolve the current user once per session and share the result.

    Concurrent callers during the first lookup await the same fetch.
    A failed lookup is not cached, so the next caller tries again.
    """

    def __init__(self, fetch: Callable[[], Awaitable[CurrentUser | None]]) -> None:
        self._fetch = fetch
        self._resolved = False
        self._user: CurrentUser | None = None
        self._inflight: asyncio.Future[CurrentUser | None] | None = None

    @property
    def resolved(self) -> bool:
        return self._resolved

    async def get_current_user(self) -> CurrentUser | None:
        if self._resolved:
            return self._user
        if self._inflight is None:
            self._inflight = asyncio.ensure_future(self._fetch())
        inflight = self._inflight
        try:
            user = await asyncio.shield(inflight)
        except Exception:
            if self._inflight is inflight:
                self._inflight = None
            raise
        self._user = user
        self._resolved = True
        return user

    async def require_user(self) -> CurrentUser:
        user = await self.get_current_user()
        if user is None:
            raise AuthRequiredError("you must be logged in")
        return user

    def clear(self) -> None:
        # Sign-out / token change.
        self._resolved = False
        self._user = None
        self._inflight = None


def _parse_user(data: Any) -> CurrentUser | None:
    if not isinstance(data, dict):
        return None
    # Shapes: {"id": ..., "email": ...} or {"user": {...}}
    user = data.get("user") if isinstance(data.get("user"), dict) else data
    user_id = user.get("id")
    if user_id is None or str(user_id).strip() == "":
        return None
    email = user.get("email")
    return CurrentUser(id=str(user_id), email=email if isinstance(email, str) else None)


class HttpxIdentitySource:
    """Fetch the signed-in user from `{base}/auth/v1/user`. No token or 401 means anonymous."""

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        access_token: str | None,
        timeout_seconds: float,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._url = f"{base_url.rstrip('/')}/auth/v1/user"
        self._api_key = api_key.strip()
        self._access_token = (access_token or "").strip()
        self._timeout = timeout_seconds
        self._client = client

    async def __call__(self) -> CurrentUser | None:
        if not self._access_token:
            return None
        headers = {"Authorization": f"Bearer {self._access_token}"}
        if self._api_key:
            headers["apikey"] = self._api_key
        try:
            if self._client is not None:
                resp = await self._client.get(self._url, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    resp = await client.get(self._url, headers=headers)
        except httpx.TransportError as e:
            raise NetworkError(f"get current user failed: {e}") from e
        if resp.status_code in (401, 403):
            logger.info("access token rejected status=%s", resp.status_code)
            return None
        if not 200 <= resp.status_code < 300:
            raise NetworkError(
                f"get current user failed. {resp.status_code} {resp.text}",
                status_code=resp.status_code,
            )
        return _parse_user(resp.json())
