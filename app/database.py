"""
Database Connection Module
Handles PostgreSQL connection using SQLAlchemy async engine.
"""

from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy import select
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from app.core.config import get_settings
import logging

settings = get_settings()
logger = logging.getLogger(__name__)

DATABASE_URL = settings.database_url

# SQLite (local runs) does not accept queue pool sizing
_pool_options = {} if DATABASE_URL.startswith("sqlite") else {
    "pool_size": 5,  # Connection pool size
    "max_overflow": 10,  # Extra connections when pool is full
}

# Create async engine
engine = create_async_engine(
    DATABASE_URL,
    echo=settings.sql_echo,
    **_pool_options,
)

# Session factory - creates new database sessions
async_session_maker = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False  # Objects remain accessible after commit
)


# Base class for all our models
class Base(DeclarativeBase):
    pass


async def get_db() -> AsyncIterator[AsyncSession]:
    """
    Dependency injection for FastAPI routes.
    Yields a database session and ensures cleanup.
    """
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


@asynccontextmanager
async def worker_session() -> AsyncIterator[AsyncSession]:
    """
    Short-lived session for Celery tasks.

    Each task runs in its own event loop, so pooled connections cannot be
    shared between tasks; NullPool opens and closes a connection per use.
    """
    worker_engine = create_async_engine(DATABASE_URL, poolclass=NullPool)
    session_maker = async_sessionmaker(
        bind=worker_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    try:
        async with session_maker() as session:
            yield session
    finally:
        await worker_engine.dispose()


async def seed_counters(session: AsyncSession) -> None:
    """Insert the order-number counter row if it does not exist yet."""
    from app.models import Counter, ORDER_NUMBER_COUNTER

    existing = await session.execute(
        select(Counter).where(Counter.name == ORDER_NUMBER_COUNTER)
    )
    if existing.scalar_one_or_none() is None:
        # value holds the last number handed out
        session.add(Counter(name=ORDER_NUMBER_COUNTER, value=settings.order_number_start - 1))
        await session.commit()


async def init_db():
    """
    Create all tables in database and seed counters.
    Called once at application startup.
    """
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with async_session_maker() as session:
        await seed_counters(session)
    logger.info("Database tables created successfully")
