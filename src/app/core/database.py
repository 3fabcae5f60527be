"""Async SQLAlchemy engine, declarative base, and session factory.

Provides:
- Base: Declarative base for every workspace table
- get_session(): AsyncSession generator used as the repositories' session_factory
- init_db() / close_db(): lifespan hooks
"""

from __future__ import annotations

import uuid
from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from src.app.config import get_settings

# ── Module-level engine (lazy init) ────────────────────────────────────────

_engine: AsyncEngine | None = None


def get_engine() -> AsyncEngine:
    """Get or create the async engine singleton."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(
            settings.DATABASE_URL,
            pool_size=20,
            max_overflow=10,
            echo=False,
        )
    return _engine


# ── Declarative Base ────────────────────────────────────────────────────────


class Base(DeclarativeBase):
    """Base class for all workspace models (public schema)."""


# ── Session Factory ─────────────────────────────────────────────────────────


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an AsyncSession bound to the engine."""
    engine = get_engine()
    async with AsyncSession(engine, expire_on_commit=False) as session:
        yield session


# ── Database Initialization ─────────────────────────────────────────────────


def _import_models() -> None:
    # Registers every table on Base.metadata before create_all.
    from src.app.access import models as _access  # noqa: F401
    from src.app.copilot import models as _copilot  # noqa: F401
    from src.app.deals import models as _deals  # noqa: F401
    from src.app.models import user as _user  # noqa: F401
    from src.app.notes import models as _notes  # noqa: F401
    from src.app.research import models as _research  # noqa: F401
    from src.app.stocks import models as _stocks  # noqa: F401


async def init_db() -> None:
    """Create all tables if they don't exist."""
    _import_models()
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine and close all connections."""
    global _engine
    if _engine:
        await _engine.dispose()
        _engine = None


def parse_uuid(value: str | uuid.UUID | None) -> uuid.UUID | None:
    """Parse a UUID string, returning None for empty or malformed input."""
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


LIKE_ESCAPE = "\\"


def escape_like(value: str) -> str:
    """Escape LIKE wildcards so user text matches literally; pair with escape=LIKE_ESCAPE."""
    return (
        value.replace(LIKE_ESCAPE, LIKE_ESCAPE * 2)
        .replace("%", LIKE_ESCAPE + "%")
        .replace("_", LIKE_ESCAPE + "_")
    )
