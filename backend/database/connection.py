"""
Database connection management for the ledger store.

The engine is created on first use so that importing this module never
opens a connection; the in-memory ledger backend never touches it.
"""

import logging

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, AsyncEngine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text

from config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine = None
_session_factory: async_sessionmaker = None


def get_engine() -> AsyncEngine:
    """Create the async engine on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        database_url = settings.get_database_url()
        connect_args = {}
        if database_url.startswith("postgresql+asyncpg") and settings.POSTGRES_SSLMODE == "require":
            connect_args["ssl"] = "require"
        _engine = create_async_engine(
            database_url,
            echo=False,
            pool_pre_ping=True,
            pool_size=settings.DB_POOL_SIZE,
            max_overflow=settings.DB_MAX_OVERFLOW,
            connect_args=connect_args
        )
    return _engine


def get_session_factory() -> async_sessionmaker:
    """Async session factory bound to the engine."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False
        )
    return _session_factory


async def init_db():
    """Verify the connection and create the ledger tables if missing."""
    # Register models with Base before create_all
    from database import ledger_models  # noqa: F401

    try:
        async with get_engine().begin() as conn:
            await conn.execute(text("SELECT 1"))
            logger.info("PostgreSQL connection successful")

            await conn.run_sync(Base.metadata.create_all)
            logger.info(f"Ledger tables ready: {sorted(Base.metadata.tables)}")
            return True
    except Exception as e:
        logger.error(f"Database initialization error: {e}")
        raise


async def dispose_engine():
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None
