"""
Database Connection Management

Async engine lifecycle with SQLAlchemy 2.0. Implements engine creation,
health checks, schema creation, and graceful shutdown.
"""

import time
from typing import Optional

import structlog
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.pool import NullPool

from datagen.config import get_settings
from datagen.database.models import Base

logger = structlog.get_logger(__name__)

# Global engine
_engine: Optional[AsyncEngine] = None


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    """SQLite ignores ON DELETE CASCADE unless foreign keys are switched on per connection"""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def create_engine(url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """
    Build an async engine for the given URL.

    Args:
        url: SQLAlchemy URL; defaults to the configured database URL
        echo: Echo SQL statements; defaults to configuration

    Returns:
        AsyncEngine: A new engine (caller owns disposal)
    """
    settings = get_settings()
    url = url or settings.database.async_url

    engine = create_async_engine(
        url,
        echo=settings.database.echo if echo is None else echo,
        pool_pre_ping=True,
        # every batch and refresh opens its own connection/transaction
        poolclass=NullPool,
    )

    if engine.dialect.name == "sqlite":
        event.listen(engine.sync_engine, "connect", _enable_sqlite_foreign_keys)

    return engine


async def init_database(url: Optional[str] = None) -> AsyncEngine:
    """
    Initialize the global database engine.

    Returns:
        AsyncEngine: The initialized database engine
    """
    global _engine

    if _engine is not None:
        logger.warning("Database already initialized")
        return _engine

    engine = create_engine(url)
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
    except Exception as e:
        logger.error("Failed to connect to database", error=str(e))
        await engine.dispose()
        raise

    _engine = engine
    logger.info(
        "Database connection established",
        dialect=engine.dialect.name,
        database=engine.url.database,
    )
    return _engine


async def close_database() -> None:
    """Dispose of the global engine."""
    global _engine

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        logger.info("Database connection pool closed")


def get_engine() -> AsyncEngine:
    """
    Get the database engine.

    Raises:
        RuntimeError: If database is not initialized
    """
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _engine


async def create_schema(engine: AsyncEngine, drop_existing: bool = False) -> None:
    """
    Create all tables (base entities and snapshot tables).

    Args:
        engine: Target engine
        drop_existing: Drop every table first
    """
    async with engine.begin() as conn:
        if drop_existing:
            await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Schema created", tables=sorted(Base.metadata.tables), dropped=drop_existing)


async def check_database_health(engine: AsyncEngine) -> dict:
    """
    Check database health status.

    Returns:
        dict: Health status with latency information
    """
    try:
        start = time.perf_counter()
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        latency_ms = (time.perf_counter() - start) * 1000

        return {
            "status": "healthy",
            "latency_ms": round(latency_ms, 2),
            "dialect": engine.dialect.name,
        }
    except Exception as e:
        return {
            "status": "unhealthy",
            "error": str(e),
        }
