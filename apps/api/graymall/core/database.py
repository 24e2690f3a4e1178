"""
Database Configuration
Async SQLAlchemy setup with PostgreSQL

Features:
- Connection pooling with health checks
- Retry logic for transient failures
- Proper error handling and rollback
- Session factory dependency for jobs that need one transaction per item
"""

import asyncio
from typing import AsyncGenerator

import structlog
from sqlalchemy import MetaData
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from graymall.core.config import settings

logger = structlog.get_logger()

# Retry configuration for transient database errors
DB_RETRY_ATTEMPTS = 3
DB_RETRY_DELAY = 0.5  # Base delay in seconds
DB_RETRYABLE_ERRORS = (
    OperationalError,
    InterfaceError,
    ConnectionRefusedError,
    TimeoutError,
)

# Naming convention for constraints
naming_convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}


class Base(DeclarativeBase):
    """Base class for all models"""

    metadata = MetaData(naming_convention=naming_convention)


engine = create_async_engine(
    settings.database_url_async,
    echo=settings.DEBUG,
    pool_size=settings.DATABASE_POOL_SIZE,
    max_overflow=settings.DATABASE_MAX_OVERFLOW,
    pool_pre_ping=True,  # Verify connections before use
    pool_timeout=30,
    pool_recycle=3600,
)

# Session factory
async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autocommit=False,
    autoflush=False,
)


async def _connect_with_retry(session: AsyncSession) -> None:
    """Check out a connection, retrying transient connection errors."""
    for attempt in range(1, DB_RETRY_ATTEMPTS + 1):
        try:
            await session.connection()
            return
        except DB_RETRYABLE_ERRORS as e:
            await session.rollback()
            if attempt == DB_RETRY_ATTEMPTS:
                logger.error(
                    "Database connection failed after all retries",
                    attempts=DB_RETRY_ATTEMPTS,
                    error=str(e),
                )
                raise
            delay = DB_RETRY_DELAY * (2 ** (attempt - 1))
            logger.warning(
                f"Database connection error, retrying in {delay}s",
                attempt=attempt,
                max_attempts=DB_RETRY_ATTEMPTS,
                error=str(e),
            )
            await asyncio.sleep(delay)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency for getting database sessions.

    Only acquiring the connection is retried. Errors raised while the
    request uses the session roll back and propagate unchanged.
    """
    async with async_session_maker() as session:
        await _connect_with_retry(session)
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(
                "Database session error - rolled back",
                error=str(e),
                error_type=type(e).__name__,
            )
            raise


def get_session_factory() -> async_sessionmaker:
    """
    Dependency returning the session factory itself.

    The withdrawal batch opens one short transaction per request so that
    a failure on one item never rolls back another.
    """
    return async_session_maker


async def init_db():
    """Initialize database - create tables"""
    async with engine.begin() as conn:
        # Import all models to register them
        from graymall.models import article, orders, user, webhooks, withdrawals  # noqa: F401

        await conn.run_sync(Base.metadata.create_all)


async def close_db():
    """Close database connection"""
    await engine.dispose()
