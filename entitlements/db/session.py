"""
Database Session Management
===========================

Provides the async engine and the session factory.

The entitlement store opens one short session per operation from
``get_session_factory()``; no session is held across platform I/O.
"""

import logging
from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from entitlements.config import settings

logger = logging.getLogger(__name__)

# Global engine instance
_engine: AsyncEngine | None = None
_async_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Uses connection pooling with the following configuration:
    - pool_size: 10 connections
    - max_overflow: 20 additional connections
    - pool_recycle: Recycle connections every 5 minutes
    - pool_use_lifo: Prefer the most-recently-returned connection
    """
    global _engine

    if _engine is None:
        if not settings.database_url_async:
            raise ValueError(
                "Database URL not configured. "
                "Please set DATABASE_URL environment variable."
            )

        _engine = create_async_engine(
            settings.database_url_async,
            echo=False,
            pool_size=10,
            max_overflow=20,
            pool_pre_ping=False,
            pool_recycle=300,
            pool_use_lifo=True,
            pool_timeout=30,
        )

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _async_session_factory

    if _async_session_factory is None:
        engine = get_engine()
        _async_session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    return _async_session_factory


async def init_db() -> None:
    """
    Initialize database connection.

    Called on application startup. Runs a trivial query so the first
    webhook does not pay connection setup latency.
    """
    engine = get_engine()
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
    logger.info("Database connection established")


async def close_db() -> None:
    """
    Close database connections.

    Called on application shutdown to clean up resources.
    """
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connections closed")
