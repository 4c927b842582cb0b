"""Relational Database Connection Module

Provides the async SQLAlchemy engine and session factory for the analytics
event store (PostgreSQL via psycopg 3).
"""

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def create_database_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_pre_ping: bool = True,
    connect_timeout_seconds: float | None = None
) -> AsyncEngine:
    """Create an async SQLAlchemy engine with a queue pool.

    Args:
        database_url: Async database URL, e.g. postgresql+psycopg://user:pw@host/db
        pool_size: Number of connections to maintain in pool
        max_overflow: Maximum overflow connections beyond pool_size
        pool_pre_ping: Test connections before use to detect stale connections
        connect_timeout_seconds: Driver-level connect timeout

    Returns:
        Configured async engine

    Example:
        engine = create_database_engine(settings.database_url)
        session_factory = create_session_factory(engine)
    """
    connect_args: dict[str, Any] = {}
    if connect_timeout_seconds and database_url.startswith('postgresql'):
        connect_args['connect_timeout'] = int(connect_timeout_seconds)

    return create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=pool_pre_ping,
        pool_recycle=3600,  # Recycle connections after 1 hour
        connect_args=connect_args,
        echo=False
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Get session factory for ORM operations.

    Sessions are short-lived: each repository call opens its own so that
    independent aggregate queries can run concurrently.
    """
    return async_sessionmaker(engine, expire_on_commit=False, autoflush=False)


def pool_statistics(engine: AsyncEngine) -> dict[str, Any]:
    """Read connection pool statistics from an engine.

    Returns:
        Dictionary in the ConnectionStatus pool_stats shape
    """
    pool = engine.sync_engine.pool
    size = pool.size() if hasattr(pool, 'size') else 0
    checked_in = pool.checkedin() if hasattr(pool, 'checkedin') else 0
    checked_out = pool.checkedout() if hasattr(pool, 'checkedout') else 0
    overflow = getattr(pool, '_max_overflow', 0)
    return {
        'connected': checked_in + checked_out > 0,
        'pool_size': checked_in + checked_out,
        'available_connections': checked_in,
        'max_pool_size': size + max(overflow, 0),
        'min_pool_size': 0,
    }
