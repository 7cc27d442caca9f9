"""Per-user identity state tracking and change-driven invalidation.

On every request the identity resolver hands over the user's freshly loaded
attributes. They are diffed against what was seen last time; any difference
clears that user's cached entries, and a role change also clears the shared
role-scoped entries (e.g. the rubric sheet) of both the old and new role.

This runs independently of source content hashing: a user's own row can
change without the staff source being re-read in bulk.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

import orjson
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from rubriccache.cache.invalidation import InvalidationEngine, InvalidationResult
from rubriccache.config import settings
from rubriccache.observability.logging import LogContext
from rubriccache.observability.metrics import get_metrics
from rubriccache.persistence.repositories import (
    RoleChangeRepository,
    UserStateRepository,
    utcnow,
)

logger = logging.getLogger(__name__)

TRACKED_FIELDS = ("role", "cohort", "display_name")


class UserAttributes(BaseModel):
    """Identity attributes that drive cache scoping."""

    model_config = ConfigDict(frozen=True, extra="ignore", str_strip_whitespace=True)

    role: str
    cohort: str = ""
    display_name: str = ""

    @field_validator("cohort", "display_name", mode="before")
    @classmethod
    def coerce_text(cls, value: Any) -> str:
        return "" if value is None else str(value)


@dataclass(frozen=True)
class FieldDiff:
    field: str
    old_value: Any
    new_value: Any


@dataclass
class ChangeReport:
    """Outcome of reconciling a user's fresh attributes with stored state."""

    changed: bool
    diffs: list[FieldDiff] = field(default_factory=list)
    is_new_user: bool = False
    invalidation: InvalidationResult | None = None

    @property
    def role_change(self) -> FieldDiff | None:
        return next((d for d in self.diffs if d.field == "role"), None)

    @property
    def should_warm(self) -> bool:
        """Whether the caller should pre-load data for the user's current role."""
        return settings.warm_cache_on_change and (self.is_new_user or self.role_change is not None)


@dataclass(frozen=True)
class RoleChange:
    user_id: str
    old_role: str | None
    new_role: str
    changed_at: datetime
    master_version: str


@dataclass(frozen=True)
class SweepResult:
    user_states: int
    role_changes: int


def normalize_user_id(user_id: str) -> str:
    normalized = user_id.strip().lower()
    if not normalized:
        raise ValueError("user_id must not be empty")
    return normalized


class SessionStateTracker:
    """Persists last-seen identity attributes and reacts to their changes."""

    def __init__(self, session: AsyncSession, invalidation: InvalidationEngine):
        self.users = UserStateRepository(session)
        self.history = RoleChangeRepository(session)
        self.invalidation = invalidation
        self.metrics = get_metrics()

    @staticmethod
    def _decode(user_id: str, raw: bytes) -> UserAttributes | None:
        try:
            return UserAttributes.model_validate(orjson.loads(raw))
        except (orjson.JSONDecodeError, ValidationError) as e:
            logger.warning("Stored state for user %s is unreadable; treating as new: %s", user_id, e)
            return None

    async def load(self, user_id: str) -> UserAttributes | None:
        """Stored attributes, or None when absent or unreadable."""
        user_id = normalize_user_id(user_id)
        row = await self.users.get(user_id)
        return self._decode(user_id, row.attributes) if row is not None else None

    async def reconcile(self, user_id: str, fresh: UserAttributes) -> ChangeReport:
        """Diff fresh attributes against stored state and invalidate on change.

        Log records emitted meanwhile carry the user id.
        """
        user_id = normalize_user_id(user_id)
        with LogContext(user_id=user_id):
            return await self._reconcile(user_id, fresh)

    async def _reconcile(self, user_id: str, fresh: UserAttributes) -> ChangeReport:
        row = await self.users.get(user_id)
        previous = self._decode(user_id, row.attributes) if row is not None else None
        encoded = orjson.dumps(fresh.model_dump())

        if previous is None:
            await self.users.put(user_id, encoded)
            invalidation = None
            if row is not None:
                # Corrupt state: cached entries may predate it, clear them once
                invalidation = await self.invalidation.invalidate_user(user_id, [fresh.role])
            self.metrics.user_reconciles_total.labels(outcome="new").inc()
            logger.debug("No previous state for %s; treating as new user", user_id)
            return ChangeReport(changed=True, is_new_user=True, invalidation=invalidation)

        diffs = [
            FieldDiff(name, getattr(previous, name), getattr(fresh, name))
            for name in TRACKED_FIELDS
            if getattr(previous, name) != getattr(fresh, name)
        ]
        if not diffs:
            await self.users.touch(user_id)
            self.metrics.user_reconciles_total.labels(outcome="unchanged").inc()
            return ChangeReport(changed=False)

        await self.users.put(user_id, encoded)

        roles: list[str] = []
        if previous.role != fresh.role:
            roles = [previous.role, fresh.role]
            await self._record_role_change(user_id, previous.role, fresh.role)

        invalidation = await self.invalidation.invalidate_user(user_id, roles)
        self.metrics.user_reconciles_total.labels(outcome="changed").inc()
        logger.info(
            "User state changes detected for %s",
            user_id,
            extra={"changes": [d.field for d in diffs]},
        )
        return ChangeReport(changed=True, diffs=diffs, invalidation=invalidation)

    async def _record_role_change(self, user_id: str, old_role: str | None, new_role: str) -> None:
        master = await self.invalidation.versions.get_master_version()
        await self.history.add(user_id, old_role, new_role, master)
        await self.history.trim(user_id, settings.role_history_limit)
        logger.info("Role change recorded for %s: %s -> %s", user_id, old_role, new_role)

    async def role_history(self, user_id: str) -> list[RoleChange]:
        """Most recent role changes first."""
        rows = await self.history.list_for_user(
            normalize_user_id(user_id), limit=settings.role_history_limit
        )
        return [
            RoleChange(
                user_id=row.user_id,
                old_role=row.old_role,
                new_role=row.new_role,
                changed_at=row.changed_at,
                master_version=row.master_version,
            )
            for row in rows
        ]

    async def forget(self, user_id: str) -> bool:
        """Drop stored state so the next reconcile treats the user as new."""
        return await self.users.delete(normalize_user_id(user_id))

    async def sweep(self, now: datetime | None = None) -> SweepResult:
        """Age out idle user states and old role history."""
        now = now or utcnow()
        states = await self.users.delete_unseen_since(
            now - timedelta(days=settings.user_state_retention_days)
        )
        changes = await self.history.delete_older_than(
            now - timedelta(days=settings.role_history_retention_days)
        )
        logger.info("Session state sweep removed %s user states, %s role changes", states, changes)
        return SweepResult(user_states=states, role_changes=changes)
