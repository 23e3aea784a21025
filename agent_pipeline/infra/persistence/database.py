"""
Database engine and session factory (SQLAlchemy async).
"""

from __future__ import annotations

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

Base = declarative_base()

def create_engine(url: str | None = None, *, echo: bool = False) -> AsyncEngine:
    if url is None:
        from agent_pipeline.core.config import get_settings

        url = get_settings().DATABASE_URL
    return create_async_engine(url, echo=echo, pool_pre_ping=True)

def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)

async def init_models(engine: AsyncEngine) -> None:
    """Create missing tables (local runs and tests; production uses migrations)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
