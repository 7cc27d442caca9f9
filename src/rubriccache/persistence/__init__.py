"""Durable state for the cache engine (SQLAlchemy async)."""

from rubriccache.persistence.db import close_db, get_session_factory, init_db, session_context
from rubriccache.persistence.repositories import (
    CacheSettingRepository,
    NamespaceVersionRepository,
    RoleChangeRepository,
    SourceHashRepository,
    UserStateRepository,
)

__all__ = [
    "session_context",
    "get_session_factory",
    "init_db",
    "close_db",
    "CacheSettingRepository",
    "NamespaceVersionRepository",
    "SourceHashRepository",
    "UserStateRepository",
    "RoleChangeRepository",
]
