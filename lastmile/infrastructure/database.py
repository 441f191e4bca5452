"""
Async SQLAlchemy engine and session factory.

Production runs on PostgreSQL through ``asyncpg``.  SQLite URLs (used by
the test-suite and local demos via ``aiosqlite``) get a single shared
connection instead of a pool so an in-memory database survives across
sessions.  Engines are lazy: nothing connects until a session is opened.
"""

from __future__ import annotations

from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from lastmile.config import settings


class Base(DeclarativeBase):
    """Shared declarative base for all ORM models."""


def build_engine(url: Optional[str] = None) -> AsyncEngine:
    url = url or settings.database_url
    if url.startswith("sqlite"):
        return create_async_engine(
            url,
            echo=False,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(
        url,
        echo=False,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
    )


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


async def create_schema(bind: AsyncEngine) -> None:
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_schema(bind: AsyncEngine) -> None:
    async with bind.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


engine = build_engine()
async_session_factory = build_session_factory(engine)
