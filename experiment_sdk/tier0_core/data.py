"""
experiment_sdk.tier0_core.data
───────────────────────────────
Async DB connection lifecycle and transaction boundaries for the SQL store
backend.

Minimal stack: SQLAlchemy 2.x async
Configure via: DATABASE_URL, DATABASE_POOL_SIZE, DATABASE_MAX_OVERFLOW, DATABASE_ECHO
"""
from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from experiment_sdk.tier0_core.config import get_config


# ── Base model ────────────────────────────────────────────────────────────────

class Base(DeclarativeBase):
    """All ORM models inherit from this base."""
    pass


# ── Engine / session factory ──────────────────────────────────────────────────

_engine: AsyncEngine | None = None


def create_engine(url: str | None = None) -> AsyncEngine:
    """Build a new async engine from config (or an explicit URL)."""
    config = get_config()
    url = url or config.database_url

    kwargs: dict[str, Any] = {"echo": config.database_echo}

    # SQLite doesn't support pool settings
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = config.database_pool_size
        kwargs["max_overflow"] = config.database_max_overflow

    return create_async_engine(url, **kwargs)


def get_engine() -> AsyncEngine:
    """Return the singleton async engine. Created on first call."""
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """
    Yield a transactional session.
    Commits on clean exit, rolls back on exception, always closes.

    Usage:
        async with session_scope(factory) as session:
            row = await session.get(AssignmentRow, (experiment_id, user_id))
    """
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


async def create_schema(engine: AsyncEngine) -> None:
    """Create all tables registered on Base. Idempotent."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Dispose the engine. Call on application shutdown."""
    global _engine
    if _engine is not None:
        await _engine.dispose()
        _engine = None


def _reset() -> None:
    """For tests: drop the cached engine."""
    global _engine
    _engine = None


__all__ = [
    "Base", "create_engine", "get_engine", "make_session_factory",
    "session_scope", "create_schema", "dispose_engine",
]
