"""
Async engine and session scope for the SQL call store.

Plain URLs in config are mapped onto their async drivers:
  postgresql:// | postgres://  → postgresql+asyncpg
  mysql://      | mysql+pymysql:// → mysql+aiomysql
  sqlite://                      → sqlite+aiosqlite

    await init_db()
    async with get_session() as db:
        db.add(row)
    await close_db()
"""
from __future__ import annotations

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import (
    create_async_engine, AsyncEngine, AsyncSession, async_sessionmaker,
)

from config.settings import DatabaseConfig, get_settings
from database.models import Base

logger = structlog.get_logger()

ASYNC_DRIVERS = {
    "postgresql": "postgresql+asyncpg",
    "postgres": "postgresql+asyncpg",
    "mysql": "mysql+aiomysql",
    "mysql+pymysql": "mysql+aiomysql",
    "sqlite": "sqlite+aiosqlite",
}

_engine: Optional[AsyncEngine] = None
_sessions: Optional[async_sessionmaker[AsyncSession]] = None
_url_override: Optional[str] = None


def async_url(db_url: str) -> URL:
    url = make_url(db_url)
    driver = ASYNC_DRIVERS.get(url.drivername)
    return url.set(drivername=driver) if driver else url


def _engine_options(url: URL, config: DatabaseConfig) -> dict:
    options: dict = {"echo": config.echo}
    if url.get_backend_name() != "sqlite":
        options.update(
            pool_size=config.pool_size,
            max_overflow=config.max_overflow,
            pool_recycle=config.pool_recycle_s,
            pool_pre_ping=True,
        )
    return options


def configure(db_url: str) -> None:
    """Use this URL instead of database.url on the next get_engine()."""
    global _url_override, _engine, _sessions
    _url_override = db_url
    _engine = None
    _sessions = None


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        config = get_settings().database
        url = async_url(_url_override or config.url)
        _engine = create_async_engine(url, **_engine_options(url, config))
        logger.info("database_engine_created", dialect=_engine.dialect.name,
                    url=url.render_as_string(hide_password=True))
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
    logger.info("database_initialized", dialect=engine.dialect.name,
                tables=sorted(Base.metadata.tables))


async def close_db() -> None:
    global _engine, _sessions
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _sessions = None
        logger.info("database_closed")
