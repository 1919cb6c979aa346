"""
Database layer — async SQLAlchemy 2.0 engine and session factory.

Provides:
    • Async engine construction from settings (or an explicit URL)
    • Session factory shared by the SQL ledger
    • Base model for ORM entities
    • Table creation / disposal helpers for the app lifespan

Usage:
    from backend.app.core.database import Base, create_engine, create_session_factory

    engine = create_engine("sqlite+aiosqlite:///ledger.db")
    await init_db(engine)
    sessions = create_session_factory(engine)
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from backend.app.core.config import settings

logger = logging.getLogger(__name__)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine ──
def create_engine(url: Optional[str] = None) -> AsyncEngine:
    """Build an async engine; pool sizing only applies to server databases."""
    url = url or settings.DATABASE_URL
    kwargs = {"echo": settings.DATABASE_ECHO}
    if not url.startswith("sqlite"):
        kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
    return create_async_engine(url, **kwargs)


# ── Session Factory ──
def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# ── Lifecycle ──
async def init_db(engine: AsyncEngine) -> None:
    """Create all tables (dev/test only — use migrations in production)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database tables initialised")


async def close_db(engine: AsyncEngine) -> None:
    """Dispose engine connections."""
    await engine.dispose()
    logger.info("Database connections closed")
