"""
Async engine helpers for the SQL stores.

Plain URLs are pointed at an async driver before the engine is built:
  postgresql:// | postgres://     → postgresql+asyncpg   (extra: postgres)
  mysql:// | mysql+pymysql://     → mysql+aiomysql       (extra: mysql)
  sqlite://                       → sqlite+aiosqlite

Each SQL store owns its engine; settings are never read here.

    engine = create_engine("sqlite:///./session_relay.db")
    await init_db(engine, tables=[RunStateRow.__table__])
    async with session_scope(create_session_factory(engine)) as db:
        ...
    await engine.dispose()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Iterable, Optional

from sqlalchemy import Table, inspect
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from database.models import Base

logger = structlog.get_logger()

# scheme → async scheme; URLs that already name an async driver pass through
_ASYNC_SCHEMES = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

# Server databases get a bounded, self-healing pool
_SERVER_POOL = {
    "pool_size": 10,
    "max_overflow": 20,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep:
        return db_url
    return f"{_ASYNC_SCHEMES.get(scheme, scheme)}://{rest}"


def _engine_kwargs(db_url: str, echo: bool = False) -> dict:
    if db_url.startswith("sqlite"):
        # one file, no pool; aiosqlite hands connections across threads
        return {"echo": echo, "connect_args": {"check_same_thread": False}}
    return {"echo": echo, **_SERVER_POOL}


def _redact_url(engine: AsyncEngine) -> str:
    url = str(engine.url)
    return url.split("@")[-1] if "@" in url else url


def create_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    async_url = _to_async_url(db_url)
    engine = create_async_engine(async_url, **_engine_kwargs(async_url, echo))
    logger.info("database_engine_created", dialect=engine.dialect.name, url=_redact_url(engine))
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@asynccontextmanager
async def session_scope(factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession, None]:
    """Commit on success, roll back and re-raise on any error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine, tables: Optional[Iterable[Table]] = None) -> None:
    """CREATE TABLE IF NOT EXISTS for the given tables (all models by default)."""
    tables = list(tables) if tables is not None else None
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all, tables=tables)
    names = [t.name for t in tables] if tables else sorted(Base.metadata.tables)
    logger.info("database_initialized", dialect=engine.dialect.name, tables=names)


async def existing_tables(engine: AsyncEngine) -> list[str]:
    async with engine.connect() as conn:
        return await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names())
