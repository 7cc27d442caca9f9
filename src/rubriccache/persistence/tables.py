"""SQLAlchemy ORM models for the engine's durable state.

Everything here outlives the cache store: evicting or flushing Redis must
never lose a version counter, the salt, a source hash, or a user's last
known identity attributes.

- cache_settings: singleton values (master cache version, security salt)
- namespace_versions: per-namespace version counters
- source_hashes: last content hash per backing-store source
- user_states: last observed identity attributes per user
- role_changes: bounded role change history per user
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

MASTER_VERSION_KEY = "MASTER_CACHE_VERSION"
SECURITY_SALT_KEY = "SECURITY_SALT"


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class CacheSettingTable(Base):
    """Process-wide key/value settings owned by the cache engine."""

    __tablename__ = "cache_settings"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class NamespaceVersionTable(Base):
    """Version counter for one namespace or wildcard namespace pattern."""

    __tablename__ = "namespace_versions"

    namespace: Mapped[str] = mapped_column(String(255), primary_key=True)
    version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class SourceHashTable(Base):
    """Content hash of the last snapshot read from a backing-store source."""

    __tablename__ = "source_hashes"

    source_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    hash: Mapped[str] = mapped_column(String(128), nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class UserStateTable(Base):
    """Last observed identity attributes for a user.

    Attributes live in an orjson blob so an unreadable row can be told
    apart from a missing one and treated as absent.
    """

    __tablename__ = "user_states"

    user_id: Mapped[str] = mapped_column(String(320), primary_key=True)
    attributes: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_user_states_last_seen_at", "last_seen_at"),)


class RoleChangeTable(Base):
    """One observed role transition for a user."""

    __tablename__ = "role_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(320), nullable=False)
    old_role: Mapped[str | None] = mapped_column(String(128), nullable=True)
    new_role: Mapped[str] = mapped_column(String(128), nullable=False)
    master_version: Mapped[str] = mapped_column(String(128), nullable=False)
    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (Index("ix_role_changes_user_changed", "user_id", "changed_at"),)
