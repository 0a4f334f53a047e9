"""
Database session management with async SQLAlchemy.

Provides:
- Async engine with connection pooling
- Session factory for creating database sessions
- FastAPI dependency injection helper

The engine is created lazily on first use so that tests and scripts can
build their own engine (e.g. sqlite+aiosqlite) without touching the
application default.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from deploy_engine.config import get_settings
from deploy_engine.db.models import Base
from deploy_engine.utils.logging import get_logger

logger = get_logger(__name__)

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def create_engine(database_url: Optional[str] = None, echo: Optional[bool] = None) -> AsyncEngine:
    """
    Create an async SQLAlchemy engine.

    Pool settings (server databases only):
    - pool_size=5: Maintain 5 connections ready in the pool
    - max_overflow=10: Allow up to 10 extra connections under heavy load
    - pool_pre_ping=True: Verify connections are alive before use
    - pool_recycle=3600: Recreate connections after 1 hour

    SQLite uses its own pool class and rejects these arguments.
    """
    settings = get_settings()
    url = database_url or settings.database_url
    if echo is None:
        echo = settings.log_level.upper() == "DEBUG"

    kwargs = {}
    if not url.startswith("sqlite"):
        kwargs = {
            "pool_size": 5,
            "max_overflow": 10,
            "pool_pre_ping": True,
            "pool_recycle": 3600,
        }

    return create_async_engine(url, echo=echo, **kwargs)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    # expire_on_commit=False is CRITICAL for async to prevent lazy loading issues
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Get the application engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = create_engine()
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the application session factory, creating it on first use."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for database sessions.

    The session is:
    - Automatically committed on success
    - Automatically rolled back on error
    - Automatically closed when request ends
    """
    async with get_session_factory()() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


@asynccontextmanager
async def get_session_context(
    session_factory: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """
    Context manager for database sessions (for use outside FastAPI).

    Usage in services or background tasks:
        async with get_session_context() as session:
            result = await session.execute(...)
    """
    factory = session_factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db(create: bool = False) -> None:
    """
    Initialize database connection.

    Called during application startup to verify connectivity and, when
    `create` is set, to create missing tables. Fails fast if the database
    is unreachable.
    """
    engine = get_engine()
    if create:
        await create_tables(engine)
    else:
        async with engine.begin() as conn:
            await conn.run_sync(lambda _: None)
    logger.info("Database connection verified")


async def close_db() -> None:
    """
    Close database connections.

    Called during application shutdown to clean up resources.
    """
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database connections closed")
    _engine = None
    _session_factory = None
