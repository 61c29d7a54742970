"""
Database layer — async SQL via SQLAlchemy 2.0 (asyncpg in production).

Provides:
    • Database: engine + session factory with an explicit lifecycle
    • Base model for ORM entities
    • UTCDateTime column type (timezone-aware on every backend)

Usage:
    from carewatch.app.core.database import Database, Base

    db = Database(settings.DATABASE_URL)
    await db.create_all()
    async with db.session() as session:
        ...
    await db.dispose()
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from carewatch.app.core.config import settings

logger = logging.getLogger(__name__)


# ── Column types ──

class UTCDateTime(TypeDecorator):
    """Stores aware datetimes as UTC; hands back aware datetimes on load."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("naive datetime passed to UTCDateTime column")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value: Optional[datetime], dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


# ── ORM Base ──
class Base(DeclarativeBase):
    """Declarative base for all ORM models."""
    pass


# ── Engine + sessions ──

class Database:
    """Owns the async engine and session factory for one process."""

    def __init__(self, url: Optional[str] = None, *, echo: Optional[bool] = None):
        self.url = url or settings.DATABASE_URL
        kwargs = {
            "echo": settings.DATABASE_ECHO if echo is None else echo,
            "future": True,
        }
        if not self.url.startswith("sqlite"):
            kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
            kwargs["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
            kwargs["pool_pre_ping"] = True
        self.engine: AsyncEngine = create_async_engine(self.url, **kwargs)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    def session(self) -> AsyncSession:
        return self.session_factory()

    async def create_all(self) -> None:
        """Create all tables (dev/test only — use migrations in production)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables initialised")

    async def ping(self) -> None:
        async with self.engine.connect() as conn:
            await conn.execute(text("SELECT 1"))

    async def dispose(self) -> None:
        """Dispose engine connections."""
        await self.engine.dispose()
        logger.info("Database connections closed")

    @property
    def display_url(self) -> str:
        return self.url.split("@")[-1]
