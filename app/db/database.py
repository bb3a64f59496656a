"""
Database Connection and Session Management

The engine and session factory are built explicitly and injected into every
component; nothing here holds a module-level connection.
"""
from typing import AsyncIterator

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from app.core.config import Settings

Base = declarative_base()

SessionFactory = async_sessionmaker[AsyncSession]


def create_engine_from_settings(settings: Settings) -> AsyncEngine:
    """Build the async engine (connection pool) for the configured database"""
    kwargs: dict = {"echo": settings.DEBUG, "pool_pre_ping": True}
    if not settings.DATABASE_URL.startswith("sqlite"):
        kwargs["pool_size"] = settings.DATABASE_POOL_SIZE
        kwargs["max_overflow"] = settings.DATABASE_MAX_OVERFLOW
    return create_async_engine(settings.DATABASE_URL, **kwargs)


def create_session_factory(engine: AsyncEngine) -> SessionFactory:
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


async def create_all_tables(engine: AsyncEngine) -> None:
    """Create the queue, dedup, rate-limit and monitoring tables if missing"""
    # importing the models registers them on Base.metadata
    import app.db.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db(request: Request) -> AsyncIterator[AsyncSession]:
    """Dependency for getting database session"""
    session_factory: SessionFactory = request.app.state.session_factory
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()
