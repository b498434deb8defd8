"""SQLite engine and sessions for the devstore.

One engine at a time, built for `settings.devstore_database_url`. When the
setting changes (tests point it at a temp file) the next `get_engine()` call
builds a new one; the replaced engine is closed by `dispose_engine()`.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from clipfeed.config import settings


def devstore_async_url(database_url: str) -> str:
    """`sqlite:///x.db` -> `sqlite+aiosqlite:///x.db`. The devstore only runs on sqlite."""
    url = make_url((database_url or "").strip())
    if url.get_backend_name() != "sqlite":
        raise ValueError(f"devstore needs a sqlite database, got {url.get_backend_name()!r}")
    return url.set(drivername="sqlite+aiosqlite").render_as_string(hide_password=False)


def _is_in_memory(async_url: str) -> bool:
    database = make_url(async_url).database
    return not database or database == ":memory:"


def _build_engine(async_url: str) -> AsyncEngine:
    if _is_in_memory(async_url):
        # Every connection to ":memory:" is a fresh database; share a single one.
        return create_async_engine(
            async_url, poolclass=StaticPool, connect_args={"check_same_thread": False}
        )
    Path(make_url(async_url).database or "").parent.mkdir(parents=True, exist_ok=True)
    return create_async_engine(async_url)


class _EngineSlot:
    def __init__(self) -> None:
        self.url: str | None = None
        self.engine: AsyncEngine | None = None
        self.sessions: async_sessionmaker[AsyncSession] | None = None
        # Engines replaced after a URL change; disposed with the current one.
        self.retired: list[AsyncEngine] = []

    def take_all(self) -> list[AsyncEngine]:
        engines = [*self.retired, *([self.engine] if self.engine is not None else [])]
        self.url = self.engine = self.sessions = None
        self.retired = []
        return engines


_slot = _EngineSlot()


def _current() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    url = devstore_async_url(settings.devstore_database_url)
    if _slot.engine is not None and _slot.sessions is not None and _slot.url == url:
        return _slot.engine, _slot.sessions
    if _slot.engine is not None:
        _slot.retired.append(_slot.engine)
    engine = _build_engine(url)
    sessions = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    _slot.url, _slot.engine, _slot.sessions = url, engine, sessions
    return engine, sessions


def get_engine() -> AsyncEngine:
    return _current()[0]


async def dispose_engine() -> None:
    # Must run on the loop that used the engines so aiosqlite threads are joined.
    for engine in _slot.take_all():
        await engine.dispose()


def dispose_engine_sync() -> None:
    for engine in _slot.take_all():
        engine.sync_engine.dispose()


async def init_db() -> None:
    # Imported for table registration on SQLModel.metadata.
    from clipfeed.devstore import models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    _engine, sessions = _current()
    async with sessions() as session:
        yield session
