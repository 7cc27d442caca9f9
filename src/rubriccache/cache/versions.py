"""Durable version state: the master version and per-namespace counters.

Keys embed these versions, so moving a version forward makes every key
built before the move unreachable (orphaned) without touching the cache.
Orphaned entries expire on their own TTL.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable
from dataclasses import dataclass, field
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession

from rubriccache.config import settings
from rubriccache.persistence.repositories import (
    CacheSettingRepository,
    NamespaceVersionRepository,
)
from rubriccache.persistence.tables import MASTER_VERSION_KEY

logger = logging.getLogger(__name__)

WILDCARD = "*"


def is_wildcard(pattern: str) -> bool:
    return pattern.endswith(WILDCARD)


def wildcard_covers(pattern: str, namespace: str) -> bool:
    """Whether wildcard ``pattern`` covers ``namespace``.

    ``user_*`` covers ``user_profile`` and ``user_context``, and also the
    bare stem ``user``. A namespace equal to the pattern is covered too.
    """
    if not is_wildcard(pattern):
        return False
    if namespace == pattern:
        return True
    prefix = pattern[: -len(WILDCARD)]
    if prefix and namespace.startswith(prefix):
        return True
    stem = prefix.rstrip("_:")
    return bool(stem) and namespace == stem


def new_master_version(schema_version: str | None = None) -> str:
    schema = schema_version or settings.cache_schema_version
    return f"{schema}_{int(time.time() * 1000)}_{uuid4().hex[:8]}"


@dataclass(frozen=True)
class VersionState:
    """Snapshot of the version inputs for one namespace's keys."""

    master_version: str
    namespace_versions: dict[str, int] = field(default_factory=dict)

    def token(self) -> str:
        """Stable text form of the namespace version vector."""
        return ",".join(f"{ns}={v}" for ns, v in sorted(self.namespace_versions.items()))


class VersionStore:
    """Reads and bumps version state in the durable store.

    Nothing is cached in process: every read goes to the store so that an
    invalidation earlier in the same request is visible to later key
    builds.
    """

    def __init__(self, session: AsyncSession, schema_version: str | None = None):
        self.settings_repo = CacheSettingRepository(session)
        self.namespace_repo = NamespaceVersionRepository(session)
        self.schema_version = schema_version or settings.cache_schema_version

    async def get_master_version(self) -> str:
        version = await self.settings_repo.get(MASTER_VERSION_KEY)
        if version is None:
            created = new_master_version(self.schema_version)
            version = await self.settings_repo.put_if_absent(MASTER_VERSION_KEY, created)
            if version == created:
                logger.info("Created master cache version %s", version)
        if version and version.strip():
            return version
        logger.warning("Master cache version unreadable (%r); issuing a new one", version)
        version = new_master_version(self.schema_version)
        await self.settings_repo.put(MASTER_VERSION_KEY, version)
        return version

    async def bump_master_version(self) -> str:
        """Replace the master version. Every key issued so far is orphaned."""
        previous = await self.settings_repo.get(MASTER_VERSION_KEY)
        version = new_master_version(self.schema_version)
        while version == previous:
            version = new_master_version(self.schema_version)
        await self.settings_repo.put(MASTER_VERSION_KEY, version)
        logger.info("Master cache version incremented to %s", version)
        return version

    async def get_namespace_versions(self) -> dict[str, int]:
        """All known counters, with corrupt (negative) values read as 0."""
        return {ns: _sanitize(ns, v) for ns, v in (await self.namespace_repo.get_all()).items()}

    async def get_namespace_version(self, namespace: str) -> int:
        found = await self.namespace_repo.get_many([namespace])
        return _sanitize(namespace, found.get(namespace, 0))

    async def versions_for(self, namespace: str) -> dict[str, int]:
        """The version vector that applies to keys of ``namespace``.

        Includes the namespace's own counter (0 when absent) and the counter
        of every wildcard pattern covering it.
        """
        known = await self.get_namespace_versions()
        vector = {namespace: known.get(namespace, 0)}
        for pattern, version in known.items():
            if pattern != namespace and wildcard_covers(pattern, namespace):
                vector[pattern] = version
        return vector

    async def state_for(self, namespace: str) -> VersionState:
        return VersionState(
            master_version=await self.get_master_version(),
            namespace_versions=await self.versions_for(namespace),
        )

    async def bump_namespace(self, namespace: str) -> int:
        """Move a namespace (or wildcard pattern) counter forward."""
        current = await self.namespace_repo.get_many([namespace])
        if current.get(namespace, 0) < 0:
            await self.namespace_repo.reset(namespace, 1)
            version = 1
        else:
            version = await self.namespace_repo.increment(namespace)
        logger.info("Bumped namespace version %s to %s", namespace, version)
        return version

    async def bump_namespaces(self, namespaces: Iterable[str]) -> dict[str, int]:
        return {ns: await self.bump_namespace(ns) for ns in namespaces}


def _sanitize(namespace: str, version: int) -> int:
    if version < 0:
        logger.warning("Namespace version for %s is corrupt (%s); reading as 0", namespace, version)
        return 0
    return version
