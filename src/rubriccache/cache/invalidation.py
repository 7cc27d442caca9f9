"""Dependency-driven cache invalidation.

When a backing-store source changes, every namespace that depends on it
goes stale. Two mechanisms, chosen per dependency pattern:

- Wildcard patterns (``user_*``) bump a version counter. Every key built
  for a covered namespace afterwards differs from every key built before,
  so all old entries are orphaned in O(1) and expire on their own TTL.
  Enumerating keys with SCAN is avoided entirely.
- Exact patterns that name a single-entry namespace (``role_mappings``)
  delete that one concrete key.

``invalidate_all`` replaces the master version, orphaning every key.

Example:
    engine = InvalidationEngine(session, store)
    if await detector.has_changed("staff_data", rows):
        await engine.invalidate("staff_data")
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field

from sqlalchemy.ext.asyncio import AsyncSession

from rubriccache.cache.changes import ChangeDetector
from rubriccache.cache.keys import KeyBuilder, KeyParams, NoParams, RoleParams, UserParams
from rubriccache.cache.store import CacheStore
from rubriccache.cache.versions import is_wildcard, wildcard_covers
from rubriccache.config import settings
from rubriccache.observability.metrics import get_metrics

logger = logging.getLogger(__name__)


class DependencyMap:
    """Static ``source_id -> [namespace pattern]`` mapping."""

    def __init__(self, mapping: Mapping[str, Sequence[str]] | None = None):
        if mapping is None:
            mapping = settings.cache_dependencies
        self._mapping: dict[str, tuple[str, ...]] = {
            source: tuple(patterns) for source, patterns in mapping.items()
        }

    def dependents(self, source_id: str) -> tuple[str, ...]:
        """Patterns that depend on ``source_id``.

        An exact entry wins. Otherwise wildcard entries covering the source
        are merged, so a change to ``user_profile`` picks up ``user_*``.
        """
        if source_id in self._mapping:
            return self._mapping[source_id]
        merged: list[str] = []
        for source, patterns in self._mapping.items():
            if wildcard_covers(source, source_id):
                merged.extend(p for p in patterns if p not in merged)
        return tuple(merged)

    def __contains__(self, source_id: object) -> bool:
        return isinstance(source_id, str) and bool(
            source_id in self._mapping
            or any(wildcard_covers(source, source_id) for source in self._mapping)
        )

    def sources(self) -> list[str]:
        return sorted(self._mapping)

    def as_dict(self) -> dict[str, list[str]]:
        return {source: list(patterns) for source, patterns in self._mapping.items()}


@dataclass
class InvalidationResult:
    """What an invalidation call actually did."""

    source_id: str | None = None
    bumped: dict[str, int] = field(default_factory=dict)
    deleted_keys: list[str] = field(default_factory=list)
    master_version: str | None = None
    hashes_cleared: int = 0

    @property
    def empty(self) -> bool:
        return not (self.bumped or self.deleted_keys or self.master_version)

    def merge(self, other: "InvalidationResult") -> None:
        self.bumped.update(other.bumped)
        self.deleted_keys.extend(k for k in other.deleted_keys if k not in self.deleted_keys)
        if other.master_version:
            self.master_version = other.master_version


class InvalidationEngine:
    """Turns source changes and admin requests into version bumps and deletes."""

    def __init__(
        self,
        session: AsyncSession,
        store: CacheStore,
        keys: KeyBuilder | None = None,
        dependencies: DependencyMap | None = None,
        detector: ChangeDetector | None = None,
    ):
        self.store = store
        self.keys = keys or KeyBuilder(session)
        self.versions = self.keys.versions
        self.dependencies = dependencies or DependencyMap()
        self.detector = detector or ChangeDetector(session)
        self.metrics = get_metrics()

    async def invalidate(self, source_id: str) -> InvalidationResult:
        """Invalidate every namespace that depends on ``source_id``."""
        result = InvalidationResult(source_id=source_id)
        patterns = self.dependencies.dependents(source_id)
        if not patterns:
            logger.debug("No dependent caches for source %s", source_id)
            return result

        for pattern in patterns:
            if is_wildcard(pattern):
                result.bumped[pattern] = await self.versions.bump_namespace(pattern)
                self.metrics.invalidations_total.labels(kind="namespace").inc()
                continue

            namespace = self.keys.registry.get(pattern) if pattern in self.keys.registry else None
            if namespace is not None and namespace.singleton:
                key = await self.keys.build_key(pattern, NoParams())
                await self.store.delete(key)
                result.deleted_keys.append(key)
                self.metrics.invalidations_total.labels(kind="key").inc()
            else:
                # No single concrete key to delete: orphan the whole namespace
                result.bumped[pattern] = await self.versions.bump_namespace(pattern)
                self.metrics.invalidations_total.labels(kind="namespace").inc()

        logger.info(
            "Invalidated dependents of %s",
            source_id,
            extra={"bumped": result.bumped, "deleted": len(result.deleted_keys)},
        )
        return result

    async def invalidate_all(self) -> str:
        """Orphan every key system-wide by replacing the master version."""
        version = await self.versions.bump_master_version()
        self.metrics.invalidations_total.labels(kind="master").inc()
        logger.warning("Global cache invalidation: master version now %s", version)
        return version

    async def force_clean_all(self) -> InvalidationResult:
        """Emergency reset: new master version and no remembered source hashes.

        The next read of every source is then reported as changed.
        """
        master = await self.invalidate_all()
        cleared = await self.detector.clear_all()
        return InvalidationResult(master_version=master, hashes_cleared=cleared)

    async def invalidate_namespace(self, namespace: str) -> int:
        """Bump one namespace (or wildcard pattern) counter."""
        version = await self.versions.bump_namespace(namespace)
        self.metrics.invalidations_total.labels(kind="namespace").inc()
        return version

    async def invalidate_keys(self, namespace: str, params: Iterable[KeyParams]) -> list[str]:
        """Delete the current concrete keys for ``namespace`` and each params."""
        keys = [await self.keys.build_key(namespace, p) for p in params]
        if keys:
            await self.store.delete(*keys)
            self.metrics.invalidations_total.labels(kind="key").inc(len(keys))
        return keys

    async def invalidate_user(self, user_id: str, roles: Iterable[str | None] = ()) -> InvalidationResult:
        """Delete one user's entries and the shared entries of the given roles.

        Roles cover both sides of a role change: data built for the old role
        and any stale copy of the new role's data.
        """
        result = InvalidationResult(source_id=f"user:{user_id.lower()}")
        user = UserParams(user_id=user_id)
        for namespace in self.keys.registry.user_scoped():
            result.deleted_keys.extend(await self.invalidate_keys(namespace.name, [user]))

        unique_roles = list(dict.fromkeys(r for r in roles if r))
        for namespace in self.keys.registry.role_scoped():
            result.deleted_keys.extend(
                await self.invalidate_keys(namespace.name, [RoleParams(role=r) for r in unique_roles])
            )

        logger.info(
            "Cleared caches for user %s",
            user_id,
            extra={"roles": unique_roles, "deleted": len(result.deleted_keys)},
        )
        return result
