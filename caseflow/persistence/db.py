from __future__ import annotations

from functools import lru_cache
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from caseflow.core.config import get_settings
from caseflow.domain.models import Base


@lru_cache
def get_db_engine() -> AsyncEngine:
    # Built on first use so importing the package never opens a pool.
    settings = get_settings()
    options: dict[str, Any] = {"pool_pre_ping": True}
    if not settings.database_url.startswith("sqlite"):
        options.update(
            pool_size=max(1, settings.db_pool_size),
            max_overflow=max(0, settings.db_max_overflow),
            pool_timeout=30,
            pool_recycle=1800,
        )
    return create_async_engine(settings.database_url, **options)


@lru_cache
def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    # Conversation snapshots are read after commit, so attributes must not expire.
    return async_sessionmaker(get_db_engine(), expire_on_commit=False)


async def create_schema() -> None:
    async with get_db_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    if get_db_engine.cache_info().currsize:
        await get_db_engine().dispose()
        get_db_engine.cache_clear()
        get_sessionmaker.cache_clear()
