"""Async database engine and session management."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy import make_url
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.ext.asyncio import async_sessionmaker
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import DeclarativeBase

from naffles_bot.shared.config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base for all models."""
    pass


_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def configure_engine(engine: AsyncEngine) -> None:
    """Install an engine and bind the session factory to it."""
    global _engine, _session_factory
    _engine = engine
    _session_factory = async_sessionmaker(engine, expire_on_commit=False)


def is_file_sqlite(url: str) -> bool:
    parsed = make_url(url)
    return parsed.get_backend_name() == "sqlite" and parsed.database not in (None, "", ":memory:")


def use_immediate_transactions(engine: AsyncEngine) -> None:
    """Make SQLite transactions take the write lock at BEGIN.

    Deferred transactions that read and then write deadlock against each
    other on a shared file; immediate ones queue on the busy timeout.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def get_engine() -> AsyncEngine:
    if _engine is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    return _engine


async def init_database(database_url: Optional[str] = None, create_tables: bool = True) -> AsyncEngine:
    """Create the engine and, optionally, the schema.

    Args:
        database_url: Override for ``Settings.database_url``
        create_tables: Whether to run ``create_all`` on start-up

    Returns:
        AsyncEngine: The configured engine
    """
    url = database_url or get_settings().database_url
    kwargs = {"pool_pre_ping": True}
    if not url.startswith("sqlite"):
        kwargs.update(pool_size=10, max_overflow=20)
    engine = create_async_engine(url, **kwargs)
    if is_file_sqlite(url):
        use_immediate_transactions(engine)
    configure_engine(engine)

    if create_tables:
        # Import models so they register with the metadata
        from naffles_bot.web import models  # noqa: F401

        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    logger.info("Database initialized")
    return engine


async def close_database() -> None:
    """Dispose of the engine."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        logger.info("Database connections closed")
    _engine = None
    _session_factory = None


async def ping_database() -> bool:
    """Run ``SELECT 1`` against the database."""
    async with get_engine().connect() as conn:
        await conn.execute(text("SELECT 1"))
    return True


@asynccontextmanager
async def get_db_session_context() -> AsyncGenerator[AsyncSession, None]:
    """Session context manager that commits on success and rolls back on error."""
    if _session_factory is None:
        raise RuntimeError("Database not initialized. Call init_database() first.")
    async with _session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency providing a database session."""
    async with get_db_session_context() as session:
        yield session
