"""
Database session management for the DocklyTask identity service.

Provides the async SQLAlchemy session factory used by the sign-in callback.
The database is the only place identities are written; a failing database
degrades sign-in (no linked user) rather than blocking it.
"""

from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from docklytask.config import settings
from docklytask.logging_config import get_logger

logger = get_logger(__name__)

# Created lazily in init_db()
_engine = None
_async_session_factory = None


def _engine_options(url: str) -> dict[str, Any]:
    """Pool settings; SQLite (tests, local dev) has no connection pool sizing."""
    if url.startswith("sqlite"):
        return {}
    return {"pool_pre_ping": True, "pool_size": 10, "max_overflow": 20}


async def init_db(database_url: str | None = None) -> None:
    """Initialize the database connection pool."""
    global _engine, _async_session_factory  # noqa: PLW0603
    url = database_url or str(settings.database_url)
    logger.info("Initializing database connection")

    _engine = create_async_engine(url, echo=settings.debug, **_engine_options(url))
    _async_session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    try:
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
    except (SQLAlchemyError, OSError) as e:
        # Sign-in still works without a database; readiness reports it.
        logger.warning("Database unreachable at startup", error=str(e))
        return
    logger.info("Database connection established")


async def close_db() -> None:
    """Close the database connection pool."""
    global _engine, _async_session_factory  # noqa: PLW0603
    if _engine is not None:
        logger.info("Closing database connection pool")
        await _engine.dispose()
        _engine = None
        _async_session_factory = None


async def get_db() -> AsyncGenerator[AsyncSession]:
    """
    Dependency that provides a database session.

    Identity writes commit on their own, so this only guarantees the
    session is rolled back when the request fails.
    """
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized; call init_db() first")

    async with _async_session_factory() as session:
        try:
            yield session
        except Exception:
            await session.rollback()
            raise


async def get_db_health() -> bool:
    """Check database health for readiness probe."""
    try:
        if _engine is None:
            return False
        async with _engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return False
