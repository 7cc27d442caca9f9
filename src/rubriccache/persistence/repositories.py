"""Repository pattern for the engine's durable state.

Each repository wraps one table and speaks plain Python values. SQL
failures are re-raised as VersionPersistenceError so the caller sees one
error type for "durable state unavailable" regardless of driver.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Iterable
from datetime import UTC, datetime
from functools import wraps
from typing import ParamSpec, TypeVar

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from rubriccache.errors import VersionPersistenceError
from rubriccache.persistence.tables import (
    Base,
    CacheSettingTable,
    NamespaceVersionTable,
    RoleChangeTable,
    SourceHashTable,
    UserStateTable,
)

P = ParamSpec("P")
R = TypeVar("R")


def utcnow() -> datetime:
    return datetime.now(UTC)


def persistence_operation(
    operation: str,
) -> Callable[[Callable[P, Awaitable[R]]], Callable[P, Awaitable[R]]]:
    """Translate SQLAlchemy errors raised by a repository method."""

    def decorator(func: Callable[P, Awaitable[R]]) -> Callable[P, Awaitable[R]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            try:
                return await func(*args, **kwargs)
            except SQLAlchemyError as e:
                raise VersionPersistenceError(operation, e) from e

        return wrapper

    return decorator


class BaseRepository:
    """Base repository bound to one session (one unit of work)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def _insert_new(self, row: Base) -> bool:
        """Insert ``row`` unless a concurrent writer created it first.

        Runs in a savepoint so a primary-key conflict only discards this
        insert, not the caller's transaction. Returns False on conflict.
        """
        try:
            async with self.session.begin_nested():
                self.session.add(row)
        except IntegrityError:
            return False
        return True


class CacheSettingRepository(BaseRepository):
    """Singleton key/value settings (master version, salt)."""

    @persistence_operation("read cache setting")
    async def get(self, key: str) -> str | None:
        stmt = select(CacheSettingTable.value).where(CacheSettingTable.key == key)
        return (await self.session.execute(stmt)).scalar_one_or_none()

    async def _update(self, key: str, value: str) -> int:
        result = await self.session.execute(
            update(CacheSettingTable)
            .where(CacheSettingTable.key == key)
            .values(value=value, updated_at=utcnow())
        )
        return int(result.rowcount or 0)

    @persistence_operation("write cache setting")
    async def put(self, key: str, value: str) -> None:
        """Overwrite ``key``, creating it when absent."""
        if await self._update(key, value):
            return
        created = CacheSettingTable(key=key, value=value, updated_at=utcnow())
        if not await self._insert_new(created):
            await self._update(key, value)

    @persistence_operation("create cache setting")
    async def put_if_absent(self, key: str, value: str) -> str:
        """Create ``key`` with ``value`` unless it exists; return the stored value.

        Concurrent first writers all end up with the value that won.
        """
        created = CacheSettingTable(key=key, value=value, updated_at=utcnow())
        if await self._insert_new(created):
            return value
        stmt = select(CacheSettingTable.value).where(CacheSettingTable.key == key)
        return (await self.session.execute(stmt)).scalar_one()


class NamespaceVersionRepository(BaseRepository):
    """Per-namespace version counters."""

    @persistence_operation("read namespace versions")
    async def get_all(self) -> dict[str, int]:
        stmt = select(NamespaceVersionTable.namespace, NamespaceVersionTable.version)
        rows = (await self.session.execute(stmt)).all()
        return {row.namespace: row.version for row in rows}

    @persistence_operation("read namespace versions")
    async def get_many(self, namespaces: Iterable[str]) -> dict[str, int]:
        names = list(namespaces)
        if not names:
            return {}
        stmt = select(NamespaceVersionTable.namespace, NamespaceVersionTable.version).where(
            NamespaceVersionTable.namespace.in_(names)
        )
        rows = (await self.session.execute(stmt)).all()
        return {row.namespace: row.version for row in rows}

    @persistence_operation("increment namespace version")
    async def increment(self, namespace: str) -> int:
        """Bump a namespace counter and return the new value.

        Concurrent increments may collapse into one; callers only rely on
        the counter moving past the value they read.
        """
        bump = (
            update(NamespaceVersionTable)
            .where(NamespaceVersionTable.namespace == namespace)
            .values(version=NamespaceVersionTable.version + 1, updated_at=utcnow())
        )
        if not (await self.session.execute(bump)).rowcount:
            created = NamespaceVersionTable(namespace=namespace, version=1, updated_at=utcnow())
            if await self._insert_new(created):
                return 1
            # Another writer created the counter first: move past its value
            await self.session.execute(bump)
        stmt = select(NamespaceVersionTable.version).where(
            NamespaceVersionTable.namespace == namespace
        )
        return int((await self.session.execute(stmt)).scalar_one())

    @persistence_operation("reset namespace version")
    async def reset(self, namespace: str, version: int) -> None:
        await self.session.execute(
            update(NamespaceVersionTable)
            .where(NamespaceVersionTable.namespace == namespace)
            .values(version=version, updated_at=utcnow())
        )


class SourceHashRepository(BaseRepository):
    """Last known content hash per backing-store source."""

    @persistence_operation("read source hash")
    async def get(self, source_id: str) -> SourceHashTable | None:
        return await self.session.get(SourceHashTable, source_id)

    @persistence_operation("write source hash")
    async def put(self, source_id: str, hash_value: str) -> None:
        now = utcnow()
        row = await self.session.get(SourceHashTable, source_id)
        if row is not None:
            row.hash = hash_value
            row.computed_at = now
            await self.session.flush()
            return
        created = SourceHashTable(source_id=source_id, hash=hash_value, computed_at=now)
        if not await self._insert_new(created):
            await self.session.execute(
                update(SourceHashTable)
                .where(SourceHashTable.source_id == source_id)
                .values(hash=hash_value, computed_at=now)
            )

    @persistence_operation("delete source hash")
    async def delete(self, source_id: str) -> bool:
        result = await self.session.execute(
            delete(SourceHashTable).where(SourceHashTable.source_id == source_id)
        )
        return bool(result.rowcount)

    @persistence_operation("delete source hashes")
    async def delete_all(self) -> int:
        result = await self.session.execute(delete(SourceHashTable))
        return int(result.rowcount or 0)

    @persistence_operation("list source hashes")
    async def list_all(self) -> list[SourceHashTable]:
        stmt = select(SourceHashTable).order_by(SourceHashTable.source_id)
        return list((await self.session.execute(stmt)).scalars().all())


class UserStateRepository(BaseRepository):
    """Last observed identity attributes per user."""

    @persistence_operation("read user state")
    async def get(self, user_id: str) -> UserStateTable | None:
        return await self.session.get(UserStateTable, user_id)

    @persistence_operation("write user state")
    async def put(self, user_id: str, attributes: bytes) -> None:
        now = utcnow()
        row = await self.session.get(UserStateTable, user_id)
        if row is not None:
            row.attributes = attributes
            row.last_seen_at = now
            row.updated_at = now
            await self.session.flush()
            return
        created = UserStateTable(
            user_id=user_id, attributes=attributes, last_seen_at=now, updated_at=now
        )
        if not await self._insert_new(created):
            # Concurrent first reconcile for this user: last writer wins
            await self.session.execute(
                update(UserStateTable)
                .where(UserStateTable.user_id == user_id)
                .values(attributes=attributes, last_seen_at=now, updated_at=now)
            )

    @persistence_operation("touch user state")
    async def touch(self, user_id: str) -> None:
        await self.session.execute(
            update(UserStateTable)
            .where(UserStateTable.user_id == user_id)
            .values(last_seen_at=utcnow())
        )

    @persistence_operation("delete user state")
    async def delete(self, user_id: str) -> bool:
        result = await self.session.execute(
            delete(UserStateTable).where(UserStateTable.user_id == user_id)
        )
        return bool(result.rowcount)

    @persistence_operation("sweep user states")
    async def delete_unseen_since(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(UserStateTable).where(UserStateTable.last_seen_at < cutoff)
        )
        return int(result.rowcount or 0)

    @persistence_operation("count user states")
    async def count(self) -> int:
        stmt = select(func.count()).select_from(UserStateTable)
        return int((await self.session.execute(stmt)).scalar_one())


class RoleChangeRepository(BaseRepository):
    """Bounded per-user history of role transitions."""

    @persistence_operation("record role change")
    async def add(
        self, user_id: str, old_role: str | None, new_role: str, master_version: str
    ) -> None:
        self.session.add(
            RoleChangeTable(
                user_id=user_id,
                old_role=old_role,
                new_role=new_role,
                master_version=master_version,
                changed_at=utcnow(),
            )
        )
        await self.session.flush()

    @persistence_operation("read role history")
    async def list_for_user(self, user_id: str, limit: int | None = None) -> list[RoleChangeTable]:
        stmt = (
            select(RoleChangeTable)
            .where(RoleChangeTable.user_id == user_id)
            .order_by(RoleChangeTable.changed_at.desc(), RoleChangeTable.id.desc())
        )
        if limit is not None:
            stmt = stmt.limit(limit)
        return list((await self.session.execute(stmt)).scalars().all())

    @persistence_operation("trim role history")
    async def trim(self, user_id: str, keep: int) -> int:
        """Delete all but the newest ``keep`` entries for a user."""
        keep_ids = (
            select(RoleChangeTable.id)
            .where(RoleChangeTable.user_id == user_id)
            .order_by(RoleChangeTable.changed_at.desc(), RoleChangeTable.id.desc())
            .limit(keep)
        )
        kept = list((await self.session.execute(keep_ids)).scalars().all())
        stmt = delete(RoleChangeTable).where(RoleChangeTable.user_id == user_id)
        if kept:
            stmt = stmt.where(RoleChangeTable.id.not_in(kept))
        result = await self.session.execute(stmt)
        return int(result.rowcount or 0)

    @persistence_operation("sweep role history")
    async def delete_older_than(self, cutoff: datetime) -> int:
        result = await self.session.execute(
            delete(RoleChangeTable).where(RoleChangeTable.changed_at < cutoff)
        )
        return int(result.rowcount or 0)
