"""Async SQLAlchemy engine and session factories.

Provides:
- Base: Declarative base for all sync engine tables (every row carries tenant_id)
- get_engine(): Lazily created engine singleton built from settings
- get_session(): Session generator bound to the singleton engine
- make_session_factory(): Session generator factory for an explicit engine
- init_db() / close_db(): Table creation and engine disposal
"""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable

from sqlalchemy import MetaData
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.syncengine.config import get_settings

SessionFactory = Callable[[], AsyncGenerator[AsyncSession, None]]

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        kwargs: dict = {"echo": False}
        if not settings.DATABASE_URL.startswith("sqlite"):
            kwargs.update(pool_size=settings.DATABASE_POOL_SIZE, max_overflow=10)
        _engine = create_async_engine(settings.DATABASE_URL, **kwargs)
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────

metadata = MetaData(
    naming_convention={
        "ix": "ix_%(column_0_label)s",
        "uq": "uq_%(table_name)s_%(column_0_name)s",
        "pk": "pk_%(table_name)s",
    }
)


class Base(DeclarativeBase):
    """Base class for sync engine models.

    Tables are not schema-separated per tenant; isolation comes from the
    tenant_id column that leads every uniqueness constraint.
    """

    metadata = metadata


# ── Session Factories ───────────────────────────────────────────────────────


def make_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Build a session generator factory bound to ``engine``.

    Repositories consume sessions with ``async for session in factory():``.
    """

    async def _factory() -> AsyncGenerator[AsyncSession, None]:
        async with AsyncSession(engine, expire_on_commit=False) as session:
            yield session

    return _factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the engine singleton."""
    async with AsyncSession(get_engine(), expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


async def init_db(engine: AsyncEngine | None = None) -> None:
    """Create all sync engine tables if they don't exist."""
    # Import models so their tables register on Base.metadata
    from src.syncengine.sync import models  # noqa: F401

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None
