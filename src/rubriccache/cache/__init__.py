"""Versioned cache and invalidation engine.

- CacheStore: Redis entries with a TTL ceiling; failures read as misses
- KeyBuilder: typed params + version state + salt -> deterministic key
- ChangeDetector: content hashes tell "re-read" apart from "changed"
- InvalidationEngine: dependency map -> namespace bumps or key deletes
- SessionStateTracker: identity attribute diffs -> targeted invalidation
"""

from rubriccache.cache.changes import ChangeDetector, hash_snapshot, serialize_snapshot
from rubriccache.cache.engine import CacheEngine
from rubriccache.cache.invalidation import DependencyMap, InvalidationEngine, InvalidationResult
from rubriccache.cache.keys import (
    KeyBuilder,
    KeyParams,
    Namespace,
    NamespaceRegistry,
    NoParams,
    RoleParams,
    UserParams,
    default_registry,
)
from rubriccache.cache.salt import SaltProvider
from rubriccache.cache.session_state import (
    ChangeReport,
    FieldDiff,
    SessionStateTracker,
    UserAttributes,
)
from rubriccache.cache.store import CacheEntry, CacheStore, close_redis, get_redis
from rubriccache.cache.versions import VersionState, VersionStore

__all__ = [
    # Store
    "CacheEntry",
    "CacheStore",
    "get_redis",
    "close_redis",
    # Keys
    "KeyBuilder",
    "KeyParams",
    "Namespace",
    "NamespaceRegistry",
    "NoParams",
    "RoleParams",
    "UserParams",
    "default_registry",
    "SaltProvider",
    "VersionState",
    "VersionStore",
    # Change detection and invalidation
    "ChangeDetector",
    "hash_snapshot",
    "serialize_snapshot",
    "DependencyMap",
    "InvalidationEngine",
    "InvalidationResult",
    # Session state
    "ChangeReport",
    "FieldDiff",
    "SessionStateTracker",
    "UserAttributes",
    # Facade
    "CacheEngine",
]
