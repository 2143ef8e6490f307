"""Async SQLAlchemy engine, declarative base, and session factory.

Provides:
- Base: Declarative base for all sync tables (deals_cache, deals_sync_log, sync_locks)
- get_engine(): Lazily created AsyncEngine singleton
- get_session(): Async generator yielding an AsyncSession (session_factory pattern)
- init_db() / close_db(): Startup table creation and shutdown disposal
"""

from __future__ import annotations

from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.dealsync.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        # Upsert groups run up to SYNC_PARALLEL_BATCHES sessions at once
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=max(10, settings.SYNC_PARALLEL_BATCHES * 2),
            max_overflow=10,
            pool_pre_ping=True,
            echo=False,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for sync persistence models."""


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db() -> None:
    """Create the sync tables if they don't exist (pgcrypto for gen_random_uuid)."""
    # Import models so their tables are registered on Base.metadata
    from src.dealsync.deals import models  # noqa: F401

    engine = get_engine()
    async with engine.begin() as conn:
        await conn.execute(text('CREATE EXTENSION IF NOT EXISTS "pgcrypto"'))
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
