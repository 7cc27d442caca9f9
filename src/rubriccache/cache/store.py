"""Redis cache store for the evaluation form.

The store is advisory. Every backend failure is logged and reported as a
miss (reads) or a no-op (writes and deletes); nothing here raises into the
request. The rest of the engine stays correct, only slower, with a store
that misses on every call.

Every write is clamped to ``max_ttl`` regardless of what the caller asks
for, which bounds how stale any served value can be.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, cast

import orjson
import redis.asyncio as redis
from redis.exceptions import RedisError

from rubriccache.config import settings
from rubriccache.observability.metrics import get_metrics

if TYPE_CHECKING:
    from redis.asyncio import Redis

logger = logging.getLogger(__name__)

# Module-level client (created lazily)
_redis_client: Redis | None = None

# Errors that mean "backend unavailable"
BACKEND_ERRORS = (RedisError, OSError)


async def get_redis() -> Redis:
    """Get or create the Redis client.

    Uses connection pooling for efficient connection management.
    """
    global _redis_client
    if _redis_client is None:
        _redis_client = redis.from_url(  # type: ignore[no-untyped-call]
            settings.redis_url,
            decode_responses=False,  # Entries are orjson bytes
            socket_timeout=settings.redis_socket_timeout,
            socket_connect_timeout=settings.redis_socket_timeout,
        )
    return _redis_client


async def close_redis() -> None:
    """Close Redis connections."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


@dataclass(frozen=True)
class CacheEntry:
    """A decoded cache entry."""

    key: str
    payload: Any
    stored_at: int  # epoch milliseconds
    ttl_seconds: int
    namespace: str | None = None


class CacheStore:
    """Key/value store with per-entry TTL on top of Redis.

    Pass ``client=None`` to get a store that is permanently empty (every
    read misses, every write is dropped).
    """

    def __init__(self, client: Redis | None, max_ttl: int | None = None):
        self.client = client
        self.max_ttl = max_ttl if max_ttl is not None else settings.max_ttl
        self.metrics = get_metrics()

    def clamp_ttl(self, ttl_seconds: int) -> int:
        """Clamp a requested TTL into ``[1, max_ttl]``."""
        return max(1, min(int(ttl_seconds), self.max_ttl))

    def _backend_failed(self, operation: str, key: str, error: Exception) -> None:
        self.metrics.cache_errors_total.labels(operation=operation).inc()
        logger.warning("Cache %s unavailable for key %s: %s", operation, key, error)

    async def get_entry(self, key: str, namespace: str | None = None) -> CacheEntry | None:
        """Return the decoded entry for ``key`` or None on miss or failure."""
        if self.client is None:
            return None

        label = namespace or "unknown"
        start = time.perf_counter()
        try:
            raw = cast(bytes | None, await self.client.get(key))
        except BACKEND_ERRORS as e:
            self._backend_failed("get", key, e)
            return None
        finally:
            self.metrics.cache_operation_duration_seconds.labels(operation="get").observe(
                time.perf_counter() - start
            )

        if raw is None:
            self.metrics.cache_misses_total.labels(namespace=label).inc()
            logger.debug("Cache MISS: %s", key)
            return None

        try:
            envelope = orjson.loads(raw)
            entry = CacheEntry(
                key=key,
                payload=envelope["data"],
                stored_at=int(envelope["stored_at"]),
                ttl_seconds=int(envelope["ttl"]),
                namespace=envelope.get("ns"),
            )
        except (orjson.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            # Unreadable entry: behave as a miss and let the caller overwrite it
            self._backend_failed("decode", key, e)
            self.metrics.cache_misses_total.labels(namespace=label).inc()
            return None

        self.metrics.cache_hits_total.labels(namespace=label).inc()
        logger.debug("Cache HIT: %s", key)
        return entry

    async def get(self, key: str, namespace: str | None = None) -> Any | None:
        """Return the cached payload or None on miss."""
        entry = await self.get_entry(key, namespace=namespace)
        return entry.payload if entry is not None else None

    async def set(
        self,
        key: str,
        payload: Any,
        ttl_seconds: int,
        namespace: str | None = None,
    ) -> bool:
        """Store ``payload`` under ``key``. Returns True if the write landed.

        ``ttl_seconds`` above ``max_ttl`` is silently clamped. Payloads must
        round-trip through JSON unchanged, so dicts with non-str keys are
        refused rather than stored with their keys turned into strings.
        """
        if self.client is None:
            return False

        ttl = self.clamp_ttl(ttl_seconds)
        envelope = {
            "data": payload,
            "stored_at": int(time.time() * 1000),
            "ttl": ttl,
            "ns": namespace,
        }
        try:
            serialized = orjson.dumps(envelope)
        except TypeError as e:
            logger.warning("Cache SET skipped for key %s: payload not serializable: %s", key, e)
            return False

        start = time.perf_counter()
        try:
            await self.client.setex(key, ttl, serialized)
        except BACKEND_ERRORS as e:
            self._backend_failed("set", key, e)
            return False
        finally:
            self.metrics.cache_operation_duration_seconds.labels(operation="set").observe(
                time.perf_counter() - start
            )

        logger.debug("Cache SET: %s (TTL: %ss)", key, ttl)
        return True

    async def delete(self, *keys: str) -> int:
        """Delete keys. Returns the number of keys removed (0 on failure)."""
        if self.client is None or not keys:
            return 0
        try:
            deleted = int(await self.client.delete(*keys))
        except BACKEND_ERRORS as e:
            self._backend_failed("delete", ",".join(keys), e)
            return 0
        logger.debug("Cache DELETE: %s (%s removed)", ", ".join(keys), deleted)
        return deleted

    async def health_check(self) -> bool:
        """Check Redis connectivity."""
        if self.client is None:
            return False
        try:
            return bool(await self.client.ping())
        except BACKEND_ERRORS:
            return False
