"""
Docs Validation Orchestrator - Database
=======================================

The session store's only dependency on the outside world. One engine per
process; tests build their own with ``build_engine``.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from docval.core.config import settings


class Base(DeclarativeBase):
    pass


def build_engine(url: Optional[str] = None) -> AsyncEngine:
    """
    Create an async engine for ``url`` (default: ``settings.DATABASE_URL``).

    In-memory SQLite is pinned to a single connection so every session
    sees the same database. Sessions on such an engine must not overlap;
    see ``shares_one_connection``.
    """
    url = url or settings.DATABASE_URL
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if ":memory:" in url:
            kwargs["poolclass"] = StaticPool
        return create_async_engine(url, echo=settings.DATABASE_ECHO, **kwargs)

    return create_async_engine(
        url,
        pool_size=settings.DATABASE_POOL_SIZE,
        max_overflow=settings.DATABASE_MAX_OVERFLOW,
        echo=settings.DATABASE_ECHO,
        pool_pre_ping=True,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=bind, class_=AsyncSession, expire_on_commit=False)


def shares_one_connection(bind: AsyncEngine) -> bool:
    """True for in-memory SQLite, where every session uses the same connection."""
    return isinstance(bind.pool, StaticPool)


async def create_schema(bind: AsyncEngine) -> None:
    """Create the validation_sessions table if missing."""
    from docval.core import models  # noqa: F401  (registers tables)

    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


engine = build_engine()
AsyncSessionLocal = build_session_factory(engine)


@asynccontextmanager
async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope: commit on success, roll back on error."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db() -> None:
    await create_schema(engine)


async def close_db() -> None:
    await engine.dispose()
