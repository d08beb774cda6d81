# Copyright (C) 2024 Novella Contributors
# SPDX-License-Identifier: GPL-3.0-or-later

"""Database connection and session management."""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from novella_server.config import settings
from novella_server.models.base import Base


def make_engine(url: str) -> AsyncEngine:
    """Create an async engine; pool sizing only applies to server databases."""
    kwargs: dict[str, Any] = {"echo": False, "pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=10, max_overflow=20)
    return create_async_engine(url, **kwargs)


def make_session_maker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = make_engine(settings.database_url)
async_session_maker = make_session_maker(engine)


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create all tables. Call at startup."""
    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
