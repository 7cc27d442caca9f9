"""Shared plumbing for CLI commands: one engine per command invocation."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from rubriccache.cache.engine import CacheEngine
from rubriccache.cache.store import CacheStore, close_redis, get_redis
from rubriccache.persistence.db import close_db, session_context

T = TypeVar("T")


@asynccontextmanager
async def engine_scope() -> AsyncIterator[CacheEngine]:
    """Open a committed unit of work against the configured stores."""
    async with session_context() as session:
        yield CacheEngine(session, CacheStore(await get_redis()))


def run(action: Callable[[CacheEngine], Awaitable[T]]) -> T:
    """Run ``action`` with a fresh engine and release connections afterwards."""

    async def _main() -> T:
        try:
            async with engine_scope() as engine:
                return await action(engine)
        finally:
            await close_redis()
            await close_db()

    return asyncio.run(_main())
