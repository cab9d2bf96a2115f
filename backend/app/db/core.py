from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from ..settings import settings


class Base(DeclarativeBase):
    pass


def build_engine(url: str) -> AsyncEngine:
    options: dict[str, Any] = {}
    if url.startswith("sqlite"):
        # an aiosqlite connection belongs to the event loop that opened it
        options["poolclass"] = NullPool
    else:
        options.update(pool_pre_ping=True, pool_size=5, max_overflow=10)
    return create_async_engine(url, **options)


engine = build_engine(settings.async_database_url)
SessionLocal = async_sessionmaker(engine, autoflush=False, expire_on_commit=False)


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


async def init_db() -> None:
    from . import models  # noqa: F401  registers the tables on Base.metadata

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def ensure_db_initialized() -> None:
    """Create missing tables now, or schedule it when a loop is already running."""
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(init_db())
        return
    loop.create_task(init_db())
