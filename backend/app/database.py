from __future__ import annotations
"""SQLAlchemy 2.0 async database engine and session management.

MySQL 8.0+ in production (utf8mb4 forced on every table). Any async URL can be
supplied through ``DB_URL``; SQLite is used for local runs and the test suite.
"""

import logging
from datetime import datetime, timezone
from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from app.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()


def _engine_kwargs(url: str) -> dict[str, Any]:
    """Pool settings per dialect; SQLite has no network pool to tune."""
    if url.startswith("sqlite"):
        return {}
    return {
        "pool_recycle": 3600,
        "pool_pre_ping": True,
        "pool_size": 10,
        "max_overflow": 20,
        "connect_args": {"connect_timeout": 30},
    }


def build_engine(url: str | None = None, echo: bool = False) -> AsyncEngine:
    """Create an async engine for ``url`` (defaults to the configured database)."""
    url = url or settings.DATABASE_URL
    return create_async_engine(url, echo=echo, **_engine_kwargs(url))


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(echo=settings.DEBUG)

async_session_factory = build_session_factory(engine)


class Base(DeclarativeBase):
    """Base class for all ORM models.

    Forces utf8mb4 charset to prevent Emoji crashes in MySQL.
    """

    __table_args__ = {
        "mysql_charset": "utf8mb4",
        "mysql_collate": "utf8mb4_unicode_ci",
    }


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session.

    The session is committed on success and rolled back on error.
    Always closed after use.
    """
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def init_db(bind: AsyncEngine | None = None) -> None:
    """Create all tables defined by Base metadata (best-effort).

    Production schemas are managed by Alembic; this is for local runs.
    """
    import app.models  # noqa: F401 , registers every model with Base.metadata

    try:
        async with (bind or engine).begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
    except Exception as e:
        logger.warning("Could not run create_all (tables may already exist): %s", e)


async def close_db() -> None:
    """Dispose of the engine connection pool.

    Called at application shutdown.
    """
    await engine.dispose()


def utcnow() -> datetime:
    """Naive UTC timestamp, the form every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)
