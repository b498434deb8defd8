"""Loopback remote store for local development and end-to-end tests.

Serves the REST, auth, and object storage endpoints the engine talks to,
backed by SQLModel tables and the local media directory, and publishes every
committed row change to a RealtimeHub.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager
from typing import cast

from fastapi import FastAPI, Request
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from clipfeed.config import settings
from clipfeed.devstore import rest, storage_routes
from clipfeed.devstore.auth import require_user
from clipfeed.devstore.db import dispose_engine, init_db
from clipfeed.devstore.error_handlers import register_error_handlers
from clipfeed.devstore.schemas import CurrentUserResponse
from clipfeed.integrations.realtime import RealtimeHub
from clipfeed.integrations.storage.local_storage import LocalMediaStorage


class RequestIdMiddleware:
    """Echo or assign `X-Request-Id` and expose it as `request.state.request_id`."""

    def __init__(self, app: ASGIApp) -> None:
        self.app: ASGIApp = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope.get("type") != "http":
            await self.app(scope, receive, send)
            return

        inbound: bytes | None = None
        for key, value in cast(list[tuple[bytes, bytes]], scope.get("headers") or []):
            if key.lower() == b"x-request-id" and value.strip():
                inbound = value.strip()
                break
        request_id = inbound.decode("latin-1") if inbound else str(uuid.uuid4())
        header_value = request_id.encode("latin-1")
        scope.setdefault("state", {})["request_id"] = request_id

        async def send_wrapper(message: Message) -> None:
            if message.get("type") == "http.response.start":
                headers = [
                    (k, v)
                    for (k, v) in cast(list[tuple[bytes, bytes]], message.get("headers", []))
                    if k.lower() != b"x-request-id"
                ]
                headers.append((b"x-request-id", header_value))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_wrapper)


@asynccontextmanager
async def _lifespan(_app: FastAPI):
    await init_db()
    yield
    # aiosqlite worker threads would otherwise keep the process alive.
    await dispose_engine()


def create_app(
    *,
    hub: RealtimeHub | None = None,
    media: LocalMediaStorage | None = None,
    api_key: str | None = None,
) -> FastAPI:
    app = FastAPI(title=f"{settings.app_name} devstore", lifespan=_lifespan)
    app.state.hub = hub if hub is not None else RealtimeHub()
    app.state.media = media or LocalMediaStorage(
        root_dir=settings.media_local_dir,
        public_base_url=settings.remote_store_url,
        bucket=settings.media_bucket,
    )
    app.state.api_key = settings.remote_store_api_key if api_key is None else api_key

    app.add_middleware(RequestIdMiddleware)
    register_error_handlers(app)

    @app.get("/health")
    def health():
        return {"ok": True}

    @app.get("/auth/v1/user", response_model=CurrentUserResponse)
    async def get_auth_user(request: Request) -> CurrentUserResponse:
        user = await require_user(request)
        return CurrentUserResponse(id=user.id, email=user.email)

    app.include_router(rest.router)
    app.include_router(storage_routes.router)
    return app


logging.basicConfig(level=getattr(logging, settings.log_level.upper(), logging.INFO))

logger = logging.getLogger(__name__)
for msg in settings.security_warnings():
    logger.warning("SECURITY WARNING: %s", msg)


app = create_app()
