"""Request-scoped facade over the cache components.

One CacheEngine per unit of work: it shares one database session and one
cache store between the key builder, change detector, invalidation engine
and session state tracker.

Usage:
    async with session_context() as session:
        engine = CacheEngine(session, CacheStore(await get_redis()))

        report = await engine.reconcile(email, UserAttributes(role=role, cohort=year))
        sheet = await engine.get_or_compute(
            "role_sheet", RoleParams(role=role), lambda: load_role_sheet(role)
        )
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession

from rubriccache.cache.changes import ChangeDetector, Snapshot
from rubriccache.cache.invalidation import DependencyMap, InvalidationEngine, InvalidationResult
from rubriccache.cache.keys import KeyBuilder, KeyParams, NamespaceRegistry, NoParams
from rubriccache.cache.session_state import ChangeReport, SessionStateTracker, UserAttributes
from rubriccache.cache.store import CacheStore

logger = logging.getLogger(__name__)

Loader = Callable[[], Awaitable[Any]]


class CacheEngine:
    """Wires the cache components for one request."""

    def __init__(
        self,
        session: AsyncSession,
        store: CacheStore,
        registry: NamespaceRegistry | None = None,
        dependencies: Mapping[str, Sequence[str]] | None = None,
        order_insensitive_sources: Sequence[str] | None = None,
    ):
        self.session = session
        self.store = store
        self.keys = KeyBuilder(session, registry=registry)
        self.detector = ChangeDetector(session, order_insensitive_sources)
        self.invalidation = InvalidationEngine(
            session,
            store,
            keys=self.keys,
            dependencies=DependencyMap(dependencies),
            detector=self.detector,
        )
        self.tracker = SessionStateTracker(session, self.invalidation)

    async def build_key(self, namespace: str, params: KeyParams | None = None) -> str:
        return await self.keys.build_key(namespace, params)

    async def get(self, namespace: str, params: KeyParams | None = None) -> Any | None:
        key = await self.build_key(namespace, params)
        return await self.store.get(key, namespace=namespace)

    async def put(
        self,
        namespace: str,
        params: KeyParams | None,
        payload: Any,
        ttl: int | None = None,
    ) -> bool:
        key = await self.build_key(namespace, params)
        if ttl is None:
            ttl = self.keys.registry.get(namespace).ttl
        return await self.store.set(key, payload, ttl, namespace=namespace)

    async def get_or_compute(
        self,
        namespace: str,
        params: KeyParams | None,
        loader: Loader,
        ttl: int | None = None,
    ) -> Any:
        """Cache-aside read: serve the cached payload or load and write through.

        Loader errors propagate; a store failure only costs a reload.
        """
        params = params if params is not None else NoParams()
        key = await self.build_key(namespace, params)
        entry = await self.store.get_entry(key, namespace=namespace)
        if entry is not None:
            return entry.payload

        payload = await loader()
        if ttl is None:
            ttl = self.keys.registry.get(namespace).ttl
        await self.store.set(key, payload, ttl, namespace=namespace)
        return payload

    async def observe_snapshot(self, source_id: str, snapshot: Snapshot) -> InvalidationResult | None:
        """Call after every bulk read of a source.

        Returns the invalidation performed, or None when the source is
        unchanged. SnapshotSerializationError propagates.
        """
        if not await self.detector.has_changed(source_id, snapshot):
            return None
        return await self.invalidation.invalidate(source_id)

    async def has_changed(self, source_id: str, snapshot: Snapshot) -> bool:
        return await self.detector.has_changed(source_id, snapshot)

    async def invalidate(self, source_id: str) -> InvalidationResult:
        return await self.invalidation.invalidate(source_id)

    async def invalidate_all(self) -> str:
        return await self.invalidation.invalidate_all()

    async def invalidate_user(self, user_id: str, roles: Sequence[str] = ()) -> InvalidationResult:
        return await self.invalidation.invalidate_user(user_id, roles)

    async def reconcile(self, user_id: str, attributes: UserAttributes) -> ChangeReport:
        return await self.tracker.reconcile(user_id, attributes)
