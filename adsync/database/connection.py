"""
Database Connection Management

Async SQLAlchemy 2.0 engine behind the persistent store (L2).
PostgreSQL via asyncpg in deployment; SQLite via aiosqlite for local runs.
"""

import time
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

import structlog
from sqlalchemy import func, select, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from adsync.config import get_settings
from adsync.database.models import Base, CacheEntryRow, RetrievalSessionRow

logger = structlog.get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None

_OPEN_SESSION_STATUSES = ("pending", "fetching")


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        # a single shared connection keeps an in-memory database alive
        return {"poolclass": StaticPool, "connect_args": {"check_same_thread": False}}
    return {"poolclass": NullPool, "pool_pre_ping": True}


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def init_database(url: Optional[str] = None, create_schema: bool = True) -> AsyncEngine:
    """
    Initialize the process-wide database engine.

    Args:
        url: Async database URL; defaults to the configured PostgreSQL URL
        create_schema: Create missing store tables on startup

    Returns:
        AsyncEngine: The initialized database engine
    """
    global _engine, _async_session_factory

    if _engine is not None:
        logger.warning("Database already initialized")
        return _engine

    settings = get_settings()
    url = url or settings.database.async_url

    _engine = create_async_engine(url, echo=settings.database.echo, **_engine_options(url))
    _async_session_factory = create_session_factory(_engine)

    try:
        async with _engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
            if create_schema:
                await conn.run_sync(Base.metadata.create_all)
    except SQLAlchemyError as e:
        logger.error("Failed to connect to database", dialect=_engine.dialect.name, error=str(e))
        await close_database()
        raise

    logger.info(
        "Database connection established",
        dialect=_engine.dialect.name,
        tables=len(Base.metadata.tables),
        schema_created=create_schema,
    )
    return _engine


async def close_database() -> None:
    """Dispose of the engine and forget the session factory."""
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connection pool closed")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """
    Get the session factory.

    Raises:
        RuntimeError: If database is not initialized
    """
    if _async_session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _async_session_factory


@asynccontextmanager
async def get_db(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    One unit of work: commits on success, rolls back on any error.

    Example:
        async with get_db(store.session_factory) as db:
            result = await db.execute(query)
    """
    session = (session_factory or get_session_factory())()
    try:
        yield session
        await session.commit()
    except SQLAlchemyError as e:
        logger.error("Database session error, rolling back", error=str(e), error_type=type(e).__name__)
        await session.rollback()
        raise
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


async def check_database_health(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> Dict[str, Any]:
    """
    Probe the store database.

    Returns:
        dict: Status, round-trip latency and store table counts
    """
    try:
        start = time.perf_counter()
        async with get_db(session_factory) as db:
            await db.execute(text("SELECT 1"))
            latency_ms = (time.perf_counter() - start) * 1000
            cache_entries = await db.scalar(select(func.count()).select_from(CacheEntryRow))
            open_sessions = await db.scalar(
                select(func.count())
                .select_from(RetrievalSessionRow)
                .where(RetrievalSessionRow.status.in_(_OPEN_SESSION_STATUSES))
            )
    except (SQLAlchemyError, RuntimeError, OSError) as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }

    return {
        "status": "healthy",
        "latency_ms": round(latency_ms, 2),
        "cache_entries": cache_entries,
        "open_sessions": open_sessions,
    }
