"""
Database Sessions for Worker Tasks

Each task invocation runs in a fresh event loop (see ``run_async``), and
asyncpg connections cannot cross loops. So every run gets its own
NullPool engine, disposed when the run finishes.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from graymall.core.config import settings as api_settings

logger = structlog.get_logger()


@asynccontextmanager
async def task_session_factory() -> AsyncIterator[async_sessionmaker]:
    """
    Session factory bound to an engine that lives for one task run.

    Usage:
        async with task_session_factory() as session_factory:
            summary = await WithdrawalBatchProcessor(session_factory, stripe).run()
    """
    engine = create_async_engine(api_settings.database_url_async, poolclass=NullPool)
    try:
        yield async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    finally:
        await engine.dispose()


def run_async(coro):
    """
    Run an async coroutine in a sync context.

    Creates a new event loop for each call to ensure
    clean async context in Celery tasks.
    """
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()
