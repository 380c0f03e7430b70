"""
Database connection and session management.
Uses SQLAlchemy async with aiosqlite.
"""

import logging
from contextlib import asynccontextmanager
from datetime import timezone
from typing import AsyncGenerator, AsyncIterator, Optional

from sqlalchemy import DateTime, event
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.types import TypeDecorator

from .config import settings
from .errors import StoreUnavailable


logger = logging.getLogger(__name__)


def create_engine(url: str) -> AsyncEngine:
    """Create an async engine with the SQLite pragmas applied on connect."""
    new_engine = create_async_engine(url, echo=False, future=True)
    if new_engine.dialect.name == "sqlite":
        event.listen(new_engine.sync_engine, "connect", set_sqlite_pragma)
    return new_engine


def set_sqlite_pragma(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    # WAL mode for better concurrency
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    # Busy timeout - concurrent writers wait up to 5 seconds
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False
    )


# Create async engine
engine = create_engine(settings.DATABASE_URL)

# Create async session factory
AsyncSessionLocal = create_session_factory(engine)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that is stored as naive UTC.

    SQLite drops tzinfo on the way in, so values are normalised to UTC before
    binding and tagged as UTC when loaded.
    """

    impl = DateTime
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is not None:
            value = value.astimezone(timezone.utc).replace(tzinfo=None)
        return value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def store_session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncIterator[AsyncSession]:
    """Session for one store call; connection-level failures become ``StoreUnavailable``."""
    try:
        async with session_factory() as session:
            yield session
    except (OperationalError, InterfaceError) as e:
        logger.error("Store call failed: %s", e)
        raise StoreUnavailable(details=str(e.orig or e)) from e


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Dependency returning the session factory used by the store adapters."""
    return AsyncSessionLocal


async def init_db(bind: Optional[AsyncEngine] = None):
    """Initialize database tables."""
    # models must be imported so their tables are registered on Base.metadata
    from . import models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close database connections."""
    await engine.dispose()
