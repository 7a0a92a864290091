"""Async database engine and session management.

This module builds the async SQLAlchemy 2.0 engine and session factory from
``Settings``. Nothing here runs at import time; the web app and the
recovery worker each build their own engine on startup.

Usage:
    from animatevdo.database import create_engine_from_settings, create_session_factory

    engine = create_engine_from_settings(settings)
    session_factory = create_session_factory(engine)

    async with session_factory() as db, db.begin():
        db.add(project)
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from animatevdo.config import Settings

SessionFactory = async_sessionmaker[AsyncSession]


def create_engine_from_settings(settings: Settings, echo: bool = False) -> AsyncEngine:
    """Create the production engine with a bounded connection pool.

    SQLite URLs (local development) skip the pool sizing arguments, which
    the SQLite dialect does not accept.
    """
    if settings.database_url.startswith("sqlite"):
        return create_async_engine(settings.database_url, echo=echo)

    return create_async_engine(
        settings.database_url,
        pool_size=10,
        max_overflow=5,
        pool_pre_ping=True,
        echo=echo,
    )


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    """Create a session factory bound to ``engine``.

    ``expire_on_commit=False`` keeps ORM attributes readable after the short
    transactions used throughout the services.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


def create_test_engine(
    database_url: str = "sqlite+aiosqlite:///:memory:",
) -> tuple[AsyncEngine, SessionFactory]:
    """Create an async engine for testing.

    Args:
        database_url: Test database URL (defaults to in-memory SQLite).

    Returns:
        Tuple of (engine, session_factory) for testing.
    """
    # In-memory SQLite needs a single shared connection or each session sees an empty DB
    test_engine = create_async_engine(database_url, echo=False, poolclass=StaticPool)
    return test_engine, create_session_factory(test_engine)
