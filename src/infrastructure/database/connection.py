# Copyright (C) 2025 Global Digital Labs (gdlabs.io)
# SPDX-License-Identifier: LGPL-3.0-or-later
"""Master database connection management using SQLAlchemy async.

The master database is the platform-wide registry: stores, their encrypted
tenant database credentials, hostnames, the tenant migration ledger and the
job queue. It never holds store business data.

Example:
    from src.infrastructure.database.connection import (
        init_master_database,
        get_master_session,
    )

    await init_master_database(settings)

    async with get_master_session() as session:
        result = await session.execute(select(Store))
        stores = result.scalars().all()
"""

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from src.core.config.settings import Settings

_master_engine: Optional[AsyncEngine] = None
_master_sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None


class DatabaseError(Exception):
    """Base exception for database operations.

    Attributes:
        message: Human-readable error description.
        original_error: The underlying SQLAlchemy or database error.
    """

    def __init__(self, message: str, original_error: Optional[Exception] = None) -> None:
        super().__init__(message)
        self.message = message
        self.original_error = original_error

    def __str__(self) -> str:
        if self.original_error:
            return f"{self.message}: {self.original_error}"
        return self.message


async def init_master_database(settings: "Settings") -> None:
    """Initialize the master database connection pool.

    Args:
        settings: Application settings containing database configuration.

    Raises:
        DatabaseError: If connection pool creation fails.
    """
    global _master_engine, _master_sessionmaker

    try:
        _master_engine = create_async_engine(
            settings.master_db.url,
            pool_size=settings.master_db.pool_size,
            max_overflow=settings.master_db.max_overflow,
            pool_pre_ping=True,
            pool_recycle=1800,
            echo=settings.debug and settings.log_level == "DEBUG",
        )

        _master_sessionmaker = async_sessionmaker(
            bind=_master_engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    except SQLAlchemyError as e:
        raise DatabaseError("Failed to initialize master database connection", e) from e


async def close_master_database() -> None:
    """Close the master database connection pool."""
    global _master_engine, _master_sessionmaker

    if _master_engine is not None:
        await _master_engine.dispose()
        _master_engine = None
        _master_sessionmaker = None


def get_master_engine() -> AsyncEngine:
    """Get the master database async engine.

    Raises:
        DatabaseError: If the database has not been initialized.
    """
    if _master_engine is None:
        raise DatabaseError(
            "Master database not initialized. Call init_master_database() first."
        )
    return _master_engine


def get_master_sessionmaker() -> async_sessionmaker[AsyncSession]:
    """Get the master database sessionmaker.

    Raises:
        DatabaseError: If the database has not been initialized.
    """
    if _master_sessionmaker is None:
        raise DatabaseError(
            "Master database not initialized. Call init_master_database() first."
        )
    return _master_sessionmaker


@asynccontextmanager
async def get_master_session() -> AsyncIterator[AsyncSession]:
    """Get an async session for the master database.

    The session is committed on success and rolled back on exception.
    SQLAlchemy errors are wrapped in DatabaseError.

    Yields:
        AsyncSession for database operations.

    Raises:
        DatabaseError: If the database has not been initialized or
            if a database operation fails.
    """
    sessionmaker = get_master_sessionmaker()

    async with sessionmaker() as session:
        try:
            yield session
            await session.commit()
        except SQLAlchemyError as e:
            await session.rollback()
            raise DatabaseError("Database operation failed", e) from e
        except Exception:
            await session.rollback()
            raise


async def check_master_database_connection() -> bool:
    """Check if the master database is reachable."""
    if _master_engine is None:
        return False

    try:
        async with _master_engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False
