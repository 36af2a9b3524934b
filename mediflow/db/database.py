from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel

from . import models  # noqa: F401  registers tables on SQLModel.metadata


def normalize_url(database_url: str) -> str:
    """Map plain database URLs onto their async driver equivalents."""
    if database_url.startswith("sqlite+aiosqlite://"):
        return database_url
    if database_url.startswith("sqlite://"):
        # ``sqlite://<path>`` where <path> may be relative or absolute
        path = database_url.replace("sqlite://", "", 1)
        if not path:
            return "sqlite+aiosqlite://"
        return f"sqlite+aiosqlite:///{path}"
    for prefix in ("postgres://", "postgresql://"):
        if database_url.startswith(prefix):
            return "postgresql+asyncpg://" + database_url[len(prefix):]
    return database_url


class Database:
    """Async engine and session factory for the relational store."""

    def __init__(self, database_url: str) -> None:
        self.url = normalize_url(database_url)
        kwargs: dict = {"echo": False, "future": True}
        if self.url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if self.url in ("sqlite+aiosqlite://", "sqlite+aiosqlite:///:memory:"):
                kwargs["poolclass"] = StaticPool
        self.engine = create_async_engine(self.url, **kwargs)
        self._initialized = False

    async def init_db(self) -> None:
        if self._initialized:
            return
        async with self.engine.begin() as conn:
            await conn.run_sync(SQLModel.metadata.create_all)
        self._initialized = True

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        await self.init_db()
        async with AsyncSession(self.engine, expire_on_commit=False) as session:
            yield session

    async def dispose(self) -> None:
        await self.engine.dispose()
