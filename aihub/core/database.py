"""
Database configuration and session management.
"""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from aihub.core.config import DatabaseSettings


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


def create_engine_for(db_settings: DatabaseSettings, echo: bool = False) -> AsyncEngine:
    """Create an async engine, skipping pool sizing for SQLite."""
    if db_settings.is_sqlite:
        return create_async_engine(db_settings.dsn, echo=echo)
    return create_async_engine(
        db_settings.dsn,
        echo=echo,
        pool_size=db_settings.pool_size,
        max_overflow=db_settings.max_overflow,
    )


def create_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )


async def init_db(bind: AsyncEngine) -> None:
    """Initialize database (create tables if they don't exist)."""
    async with bind.begin() as conn:
        # Import all models here to ensure they are registered with Base
        from aihub.models import gateway  # noqa: F401

        await conn.run_sync(Base.metadata.create_all)
