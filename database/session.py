"""
Engine and session lifecycle for the SQL store.

The CRM tables live in PostgreSQL in production and in SQLite for local
runs and tests. Plain URLs from settings are rewritten to the async
drivers declared by the project (asyncpg, aiosqlite).

    await init_db()
    async with get_session() as db:
        await db.execute(...)
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "sqlite": "sqlite+aiosqlite",
}

# Pool sizing for server databases; SQLite runs without a pool
SERVER_POOL = {
    "pool_size": 5,
    "max_overflow": 10,
    "pool_timeout": 30,
    "pool_recycle": 1800,
    "pool_pre_ping": True,
}

_engine: AsyncEngine | None = None
_sessions: async_sessionmaker[AsyncSession] | None = None
_url_override: Optional[str] = None


def async_url(url: str) -> str:
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url
    return f"{ASYNC_DRIVERS.get(scheme, scheme)}://{rest}"


def configure_engine(db_url: str) -> None:
    """Use db_url for the next engine instead of the settings value."""
    global _url_override
    _url_override = db_url


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is not None:
        return _engine

    settings = get_settings()
    url = async_url(_url_override or settings.database.url or DatabaseConfig.url)
    options: dict = {"echo": settings.debug}
    if url.startswith("sqlite"):
        options["connect_args"] = {"check_same_thread": False}
    else:
        options.update(SERVER_POOL)

    _engine = create_async_engine(url, **options)
    logger.info("database_engine_created",
                dialect=_engine.dialect.name,
                url=make_url(url).render_as_string(hide_password=True))
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One unit of work: commit on success, roll back on any error."""
    global _sessions
    if _sessions is None:
        _sessions = async_sessionmaker(get_engine(), expire_on_commit=False)
    async with _sessions() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    """Dispose the engine and forget any URL override."""
    global _engine, _sessions, _url_override
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed")
    _engine = None
    _sessions = None
    _url_override = None
