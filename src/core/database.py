"""Database configuration and session management."""

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .settings import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

# SQLAlchemy Base for ORM models
Base = declarative_base()

# SQLSTATE raised by PostgreSQL when lock_timeout expires
LOCK_NOT_AVAILABLE_SQLSTATE = "55P03"


def _engine_options(database_url: str) -> Dict[str, Any]:
    """Pool options apply to server databases only."""
    if database_url.startswith("sqlite"):
        return {"echo": settings.debug}
    return {
        "pool_size": settings.database_pool_size,
        "max_overflow": settings.database_max_overflow,
        "pool_timeout": settings.database_pool_timeout,
        "pool_recycle": settings.database_pool_recycle,
        "echo": settings.debug,
    }


async_engine = create_async_engine(
    settings.async_database_url,
    **_engine_options(settings.async_database_url),
)

AsyncSessionLocal = async_sessionmaker(
    async_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


class DatabaseManager:
    """Database connection and session management."""

    def __init__(self):
        self._async_engine = async_engine

    async def connect(self) -> None:
        """Initialize database connections."""
        try:
            async with self._async_engine.begin() as conn:
                await conn.execute(text("SELECT 1"))
            logger.info("Database async connection established")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    async def disconnect(self) -> None:
        """Close database connections."""
        try:
            await self._async_engine.dispose()
            logger.info("Database connections closed")
        except Exception as e:
            logger.error(f"Error closing database connections: {e}")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get async database session."""
        async with AsyncSessionLocal() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise


# Global database manager instance
_db_manager = DatabaseManager()


def get_database() -> DatabaseManager:
    """Get the database manager instance."""
    return _db_manager


def get_session_factory() -> async_sessionmaker:
    """Dependency returning the session factory used by transactional services."""
    return AsyncSessionLocal


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Dependency to get database session for FastAPI."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


def dialect_name(session: AsyncSession) -> str:
    """Name of the dialect the session is bound to."""
    return session.get_bind().dialect.name


async def apply_lock_timeout(session: AsyncSession, timeout_ms: int) -> None:
    """Bound row-lock waits for the current transaction (PostgreSQL only)."""
    if dialect_name(session) != "postgresql":
        return
    # SET does not accept bind parameters
    await session.execute(text(f"SET LOCAL lock_timeout = {int(timeout_ms)}"))
    logger.debug(f"Set lock_timeout to {int(timeout_ms)}ms")


def is_lock_timeout(error: DBAPIError) -> bool:
    """Whether a database error is a lock-wait timeout rather than a store failure."""
    orig = getattr(error, "orig", None)
    # asyncpg errors arrive wrapped by the adapter
    for candidate in (orig, getattr(orig, "__cause__", None)):
        for attr in ("sqlstate", "pgcode"):
            if getattr(candidate, attr, None) == LOCK_NOT_AVAILABLE_SQLSTATE:
                return True
    return "database is locked" in str(orig or error).lower()
