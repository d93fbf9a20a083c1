"""
Async engine and session scope for the message store.

Sync-style URLs from configuration are rewritten to their async driver:
  postgresql:// / postgres://   → postgresql+asyncpg://   (extra: postgres)
  mysql:// / mysql+pymysql://   → mysql+aiomysql://       (extra: mysql)
  sqlite://                     → sqlite+aiosqlite://

The API process uses the module-level engine built from settings:
    await init_db()
    async with get_session() as db:
        ...
    await close_db()

Tests and tools that need a database of their own build one with
create_engine(url) and hand create_session_factory(engine) to SqlStatusStore.
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

_ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _to_async_url(db_url: str) -> str:
    scheme, sep, rest = db_url.partition("://")
    if not sep or scheme not in _ASYNC_DRIVERS:
        return db_url
    return f"{_ASYNC_DRIVERS[scheme]}://{rest}"


def _pool_options(url: str, config: DatabaseConfig) -> dict[str, Any]:
    if url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_size": config.pool_size,
        "max_overflow": config.max_overflow,
        "pool_recycle": config.pool_recycle,
        "pool_timeout": 30,
        "pool_pre_ping": True,
    }


def create_engine(db_url: str, echo: bool = False, config: Optional[DatabaseConfig] = None) -> AsyncEngine:
    url = _to_async_url(db_url)
    engine = create_async_engine(url, echo=echo, **_pool_options(url, config or DatabaseConfig()))
    logger.info("database_engine_created",
                dialect=engine.dialect.name,
                url=engine.url.render_as_string(hide_password=True))
    return engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_engine(settings.database.url, echo=settings.debug, config=settings.database)
    return _engine


@asynccontextmanager
async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """One transaction: committed on clean exit, rolled back on error."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create missing tables. Existing tables are left untouched."""
    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("database_initialized",
                dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("database_closed")
    _engine = None
    _session_factory = None
