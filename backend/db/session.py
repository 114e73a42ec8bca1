"""
SizeOps Database Session Management

Async SQLAlchemy engine and session factory for the API process, plus a
per-task factory for Celery workers (each asyncio.run needs its own pool).
"""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from core.config import get_settings

settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


@asynccontextmanager
async def task_session_factory(database_url: str) -> AsyncIterator[async_sessionmaker]:
    """Engine scoped to one worker task; disposed on exit."""
    task_engine = create_async_engine(database_url, pool_pre_ping=True)
    try:
        yield async_sessionmaker(task_engine, class_=AsyncSession, expire_on_commit=False)
    finally:
        await task_engine.dispose()


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass
