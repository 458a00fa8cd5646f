# covercart/core/db.py
"""
Database configuration and session management for CoverCart (async).

- Engines are built per URL (no connection at import time).
- Safe fallback: sqlite+aiosqlite:///./covercart.db when DATABASE_URL is unset or invalid.
- Postgres URLs are normalized to postgresql+asyncpg://.
- pytest friendly (NullPool).
- Utilities: create_engine_for_url(), make_sessionmaker(), init_db_async(),
  health_check_db_async(), get_alembic_engine_url()
"""

from __future__ import annotations

import os

from sqlalchemy import event, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from covercart.core.config import settings
from covercart.core.logging import get_logger

logger = get_logger(__name__)

_SQLITE_FALLBACK = "sqlite+aiosqlite:///./covercart.db"

__all__ = [
    "create_engine_for_url",
    "make_sessionmaker",
    "init_db_async",
    "health_check_db_async",
    "get_alembic_engine_url",
]


# -----------------------------------------------------------------------------
# URL normalization
# -----------------------------------------------------------------------------
def _normalize_pg_to_asyncpg(url: str) -> str:
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql://", 1)
    if url.startswith("postgresql+"):
        # driver given -> switch to asyncpg
        return "postgresql+asyncpg://" + url.split("://", 1)[1]
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return url


def _normalize_sqlite_to_aiosqlite(url: str) -> str:
    if url.startswith("sqlite://") and not url.startswith("sqlite+"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return url


def _resolve_async_url() -> str:
    raw = (settings.DATABASE_URL or os.getenv("DATABASE_URL", "")).strip()
    if raw:
        try:
            url = _normalize_sqlite_to_aiosqlite(_normalize_pg_to_asyncpg(raw))
            make_url(url)
            return url
        except Exception:
            logger.warning("invalid_database_url_fallback_to_sqlite")
    return _SQLITE_FALLBACK


# -----------------------------------------------------------------------------
# Engine options
# -----------------------------------------------------------------------------
def _engine_options(url: str) -> dict:
    opts: dict = {"echo": bool(settings.DB_ECHO)}
    if url.startswith("sqlite"):
        # writers wait on the database lock instead of failing fast
        opts["connect_args"] = {"timeout": 30}
        opts["poolclass"] = NullPool
        return opts
    opts["pool_pre_ping"] = True
    opts["pool_recycle"] = settings.SQLALCHEMY_POOL_RECYCLE
    if "PYTEST_CURRENT_TEST" in os.environ or settings.ENVIRONMENT == "test":
        opts["poolclass"] = NullPool
    else:
        opts["pool_size"] = settings.SQLALCHEMY_POOL_SIZE
        opts["max_overflow"] = settings.SQLALCHEMY_MAX_OVERFLOW
    return opts


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_conn, _conn_rec):  # pragma: no cover (low-level tuning)
        cur = dbapi_conn.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()


def create_engine_for_url(url: str) -> AsyncEngine:
    """Build an async engine for an explicit URL (used by the app factory and tests)."""
    url = _normalize_sqlite_to_aiosqlite(_normalize_pg_to_asyncpg(url))
    engine = create_async_engine(url, **_engine_options(url))
    if url.startswith("sqlite"):
        _install_sqlite_pragmas(engine)
    return engine


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine, expire_on_commit=False, class_=AsyncSession, autoflush=False
    )


# -----------------------------------------------------------------------------
# Schema / health
# -----------------------------------------------------------------------------
async def init_db_async(engine: AsyncEngine, drop_all: bool = False) -> None:
    from covercart.models import Base

    async with engine.begin() as conn:
        if drop_all:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)


async def health_check_db_async(engine: AsyncEngine) -> dict:
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return {"ok": True, "error": None}
    except Exception as e:
        logger.error("db_health_check_failed", error=str(e))
        return {"ok": False, "error": str(e)}


def get_alembic_engine_url() -> str:
    """Async URL from settings (alembic env.py and the default app engine)."""
    return _resolve_async_url()
