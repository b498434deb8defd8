from __future__ import annotations

from fastapi import HTTPException, Request
from sqlmodel import select

from clipfeed.devstore.db import session_scope
from clipfeed.devstore.models import StoreUser


def _bearer_token(request: Request) -> str:
    header = request.headers.get("authorization") or ""
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


async def current_user(request: Request) -> StoreUser | None:
    """The user owning the bearer token. The api key itself is anonymous."""
    token = _bearer_token(request)
    if not token:
        return None
    api_key = getattr(request.app.state, "api_key", "")
    if api_key and token == api_key:
        return None
    async with session_scope() as session:
        user = (await session.exec(select(StoreUser).where(StoreUser.access_token == token))).first()
    if user is not None:
        request.state.auth_user_id = user.id
    return user


async def require_user(request: Request) -> StoreUser:
    user = await current_user(request)
    if user is None:
        raise HTTPException(status_code=401, detail="authentication required")
    return user


async def create_user(*, access_token: str, email: str | None = None, user_id: str | None = None) -> StoreUser:
    user = StoreUser(access_token=access_token, email=email)
    if user_id:
        user.id = user_id
    async with session_scope() as session:
        session.add(user)
        await session.commit()
        await session.refresh(user)
    return user
