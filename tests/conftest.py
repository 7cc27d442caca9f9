"""Global pytest fixtures.

Durable state runs on in-memory SQLite (aiosqlite) and the cache store on
fakeredis, so the unit suite needs no running services.
"""

from __future__ import annotations

from collections.abc import AsyncIterator

import fakeredis
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from rubriccache.cache.engine import CacheEngine
from rubriccache.cache.store import CacheStore
from rubriccache.persistence.tables import Base

MAX_TTL = 600


@pytest_asyncio.fixture
async def db_session() -> AsyncIterator[AsyncSession]:
    """Session on a fresh in-memory database with all tables created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with factory() as session:
        yield session

    await engine.dispose()


@pytest_asyncio.fixture
async def redis_client() -> AsyncIterator[fakeredis.FakeAsyncRedis]:
    client = fakeredis.FakeAsyncRedis()
    yield client
    await client.flushall()
    await client.aclose()


@pytest_asyncio.fixture
async def store(redis_client: fakeredis.FakeAsyncRedis) -> CacheStore:
    return CacheStore(redis_client, max_ttl=MAX_TTL)


@pytest_asyncio.fixture
async def engine(db_session: AsyncSession, store: CacheStore) -> CacheEngine:
    return CacheEngine(db_session, store)
