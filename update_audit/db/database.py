"""
Database connection and session management for Update Audit Core.

This module is the single source of truth for database plumbing:
- Engine and session factory management (singletons)
- Unit-of-work helper with commit on success, rollback on error
- Application lifecycle hooks (startup/shutdown)
- Table existence checks used by the store's missing-table handling
- Health checks

All other modules should import database functions from here or from
update_audit.db, never build their own engines.
"""

import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy import event, inspect, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from ..config import Settings, get_settings

logger = structlog.get_logger(__name__)

# Global singletons
_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def _mask_url(url: str) -> str:
    if "@" not in url:
        return url
    return url.split("://")[0] + "://***@" + url.split("@")[-1]


def build_engine(settings: Settings) -> AsyncEngine:
    """
    Create an async engine for the configured database.

    - SQLite in-memory databases share one connection (StaticPool)
    - SQLite files use NullPool, one connection per session
    - PostgreSQL uses a pre-pinged connection pool in production

    Args:
        settings: Application settings

    Returns:
        A new AsyncEngine (not registered as the global singleton)
    """
    database_url = settings.database_url

    if settings.is_sqlite:
        if ":memory:" in database_url or database_url.rstrip("/").endswith("sqlite+aiosqlite:"):
            pool_kwargs = {"poolclass": StaticPool}
        else:
            pool_kwargs = {"poolclass": NullPool}
        connect_args = {"check_same_thread": False}
    elif settings.app_env == "production":
        pool_kwargs = {
            "pool_size": settings.database_pool_size,
            "max_overflow": 10,
            "pool_timeout": settings.database_pool_timeout,
            "pool_recycle": 1800,
            "pool_pre_ping": True,
        }
        connect_args = {
            "options": (
                f"-c application_name={settings.app_name.replace(' ', '_')}-{settings.app_version} "
                "-c TimeZone=UTC"
            ),
            "connect_timeout": 5,
        }
    else:
        pool_kwargs = {"poolclass": NullPool}
        connect_args = {"connect_timeout": 5}

    engine = create_async_engine(
        database_url,
        echo=settings.log_level == "DEBUG",
        connect_args=connect_args,
        **pool_kwargs,
    )

    if settings.is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn, connection_record):
            """Wait for concurrent writers instead of failing immediately."""
            cursor = dbapi_conn.cursor()
            cursor.execute("PRAGMA busy_timeout=5000")
            cursor.close()

    logger.info(
        "Database engine created",
        pool_class=pool_kwargs.get("poolclass", type(engine.pool)).__name__,
        database_url=_mask_url(database_url),
    )
    return engine


def get_engine(settings: Optional[Settings] = None) -> AsyncEngine:
    """
    Get or create the global async SQLAlchemy engine.

    Args:
        settings: Optional settings override (defaults to global settings)

    Returns:
        AsyncEngine singleton
    """
    global _engine

    if _engine is None:
        _engine = build_engine(settings or get_settings())

    return _engine


def get_session_factory(
    settings: Optional[Settings] = None,
) -> async_sessionmaker[AsyncSession]:
    """
    Get or create the global async session factory.

    Args:
        settings: Optional settings override

    Returns:
        async_sessionmaker singleton
    """
    global _session_factory

    if _session_factory is None:
        _session_factory = make_session_factory(get_engine(settings))
        logger.info("Session factory created")

    return _session_factory


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to a specific engine."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Entries are read after commit
    )


@asynccontextmanager
async def with_unit_of_work(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Provide a session with automatic commit on success.

    Args:
        session_factory: Factory to use (defaults to the global one)

    Yields:
        AsyncSession that commits on successful exit and rolls back on error
    """
    factory = session_factory or get_session_factory()

    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def table_exists(session: AsyncSession, table_name: str) -> bool:
    """
    Check whether a table exists in the session's database.

    The store degrades to no-op results when its table has not been
    provisioned yet instead of raising.
    """

    def _has_table(sync_session) -> bool:
        return inspect(sync_session.connection()).has_table(table_name)

    return await session.run_sync(_has_table)


# Application Lifecycle Hooks
async def on_startup(settings: Optional[Settings] = None) -> None:
    """
    Initialize database on application startup.

    Creates the engine and, when configured, the tables. Production
    deployments provision tables through the Alembic migration.
    """
    settings = settings or get_settings()
    engine = get_engine(settings)

    if settings.auto_create_tables:
        await create_tables(engine)

    logger.info("Database initialized", engine_url=_mask_url(str(engine.url)))


async def on_shutdown() -> None:
    """Dispose of the engine and connection pool."""
    global _engine, _session_factory

    if _engine:
        await _engine.dispose()
        logger.info("Database engine disposed")
        _engine = None
        _session_factory = None


# Health & Observability
async def ping(engine: Optional[AsyncEngine] = None) -> float:
    """
    Test database connectivity and measure latency.

    Returns:
        Response time in milliseconds

    Raises:
        SQLAlchemyError if the database is unreachable
    """
    engine = engine or get_engine()
    start = time.time()

    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))

    return (time.time() - start) * 1000


# Schema Support
async def create_tables(engine: Optional[AsyncEngine] = None) -> None:
    """
    Create all database tables (for testing/development).

    Production should use the Alembic migration instead.
    """
    from .models import Base

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database tables created")


async def drop_tables(engine: Optional[AsyncEngine] = None) -> None:
    """
    Drop all database tables (for testing/development).

    WARNING: Destructive operation - only for test cleanup.
    """
    from .models import Base

    engine = engine or get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    logger.info("Database tables dropped")


__all__ = [
    "build_engine",
    "get_engine",
    "get_session_factory",
    "make_session_factory",
    "with_unit_of_work",
    "table_exists",
    "on_startup",
    "on_shutdown",
    "ping",
    "create_tables",
    "drop_tables",
]
