from __future__ import annotations

from contextlib import asynccontextmanager
from functools import lru_cache
from typing import AsyncIterator

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel
from sqlmodel.ext.asyncio.session import AsyncSession

from zetra_sync.config import settings
from zetra_sync.db_urls import ensure_sqlite_parent_dir, normalize_database_url_for_async


def _create_async_engine(database_url: str) -> AsyncEngine:
    ensure_sqlite_parent_dir(database_url)
    url = normalize_database_url_for_async(database_url)
    return create_async_engine(url, echo=False, pool_pre_ping=True)


@lru_cache(maxsize=1)
def get_engine() -> AsyncEngine:
    # 允许测试/部署时通过 settings 覆写 DATABASE_URL 后调用 reset_engine_cache() 重建 engine
    return _create_async_engine(settings.database_url)


def reset_engine_cache() -> None:
    dispose_engine_cache()


def dispose_engine_cache() -> None:
    # Sync callers cannot await connection close; drop the pool without closing.
    if get_engine.cache_info().currsize:
        get_engine().sync_engine.dispose(close=False)
    get_engine.cache_clear()


async def dispose_engine() -> None:
    if get_engine.cache_info().currsize:
        await get_engine().dispose()
    get_engine.cache_clear()


async def init_db() -> None:
    # 仅用于本地/测试场景兜底；生产以 Alembic 迁移为准
    from zetra_sync import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


def _session_maker() -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(get_engine(), class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope() -> AsyncIterator[AsyncSession]:
    async with _session_maker()() as session:
        yield session


async def get_session() -> AsyncIterator[AsyncSession]:
    async with _session_maker()() as session:
        yield session


def is_sqlite() -> bool:
    return settings.database_url.lower().startswith("sqlite")


def is_postgres() -> bool:
    v = settings.database_url.lower()
    return v.startswith("postgresql") or v.startswith("postgres")


def insert_ignoring_conflicts(
    table: sa.Table, values: dict[str, object], *, index_elements: list[str]
) -> sa.Insert:
    """INSERT that silently skips rows hitting the given unique key.

    Callers read `rowcount` to learn whether the row was created.
    """
    if is_sqlite():
        from sqlalchemy.dialects.sqlite import insert as dialect_insert
    elif is_postgres():
        from sqlalchemy.dialects.postgresql import insert as dialect_insert
    else:
        raise RuntimeError(f"unsupported database for sync storage: {settings.database_url}")

    stmt = dialect_insert(table).values(**values)
    return stmt.on_conflict_do_nothing(index_elements=index_elements)
