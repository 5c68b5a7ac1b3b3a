"""Async database engine / session factories and the FastAPI dependency.

Supports both PostgreSQL (production) and SQLite (local dev and tests).
Engines are built explicitly at startup by the service container; nothing
connects at import time.
"""

from collections.abc import AsyncGenerator
from pathlib import Path

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine for the configured database URL."""
    db_url = database_url

    # SQLite: swap driver to aiosqlite and ensure the data directory exists
    if db_url.startswith("sqlite"):
        if db_url.startswith("sqlite:///"):
            db_url = db_url.replace("sqlite:///", "sqlite+aiosqlite:///", 1)
        db_path = db_url.split("///")[-1]
        if db_path and db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        return create_async_engine(db_url, echo=echo, connect_args={"check_same_thread": False})

    return create_async_engine(db_url, echo=echo, pool_pre_ping=True)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency that yields an async database session."""
    session_factory = request.app.state.services.session_factory
    async with session_factory() as session:
        try:
            yield session
        finally:
            await session.close()
