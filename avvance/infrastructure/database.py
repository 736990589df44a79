"""Database configuration and session management.

Provides async SQLAlchemy engine and session factory.
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

# Base class for models
Base = declarative_base()


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the given URL.

    SQLite connections are not pooled so that the engine can be shared
    across event loops (test clients run each request on its own loop).

    Args:
        database_url: SQLAlchemy database URL.
        echo: Log SQL statements.

    Returns:
        AsyncEngine instance.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=echo, poolclass=NullPool)
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create the session factory bound to an engine.

    Args:
        engine: Async engine.

    Returns:
        Session factory producing AsyncSession objects.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def create_all(engine: AsyncEngine) -> None:
    """Create all tables (used by tests and local development)."""
    # Import models so they register with Base.metadata
    from avvance.infrastructure import models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
