"""Content-hash change detection for backing-store sources.

Separates "re-read, unchanged" from "re-read, changed" so that ordinary
reads of unchanged data never trigger invalidation traffic.

Snapshots are row-major. Each row is serialized as a JSON array, which
quotes and delimits every cell, so ``[["a,b"]]`` and ``[["a", "b"]]`` never
collide. Cells that JSON has no type for (Decimal, datetime, date) are
wrapped in a one-key tagged object, so ``Decimal("2")`` never hashes like
``"2"``. Input cells are never objects, so tags cannot be forged. Rows are
joined with newlines (JSON never emits a raw newline).

Row order is significant unless the source is listed as order-insensitive,
in which case serialized rows are sorted before hashing.
"""

from __future__ import annotations

import hashlib
import logging
import math
from collections.abc import Iterable, Sequence
from datetime import date, datetime
from decimal import Decimal
from typing import Any

import orjson
from sqlalchemy.ext.asyncio import AsyncSession

from rubriccache.config import settings
from rubriccache.errors import SnapshotSerializationError
from rubriccache.observability.metrics import get_metrics
from rubriccache.persistence.repositories import SourceHashRepository

logger = logging.getLogger(__name__)

Snapshot = Sequence[Sequence[Any]]

_SCALARS = (str, int, float, bool, type(None), datetime, date, Decimal)


def _cell(source_id: str, row: int, col: int, value: Any) -> Any:
    if not isinstance(value, _SCALARS):
        raise SnapshotSerializationError(
            source_id, f"cell ({row}, {col}) has unsupported type {type(value).__name__}"
        )
    if isinstance(value, float) and not math.isfinite(value):
        raise SnapshotSerializationError(source_id, f"cell ({row}, {col}) is not finite")
    if isinstance(value, Decimal):
        if not value.is_finite():
            raise SnapshotSerializationError(source_id, f"cell ({row}, {col}) is not finite")
        return {"$dec": str(value)}
    if isinstance(value, datetime):
        return {"$dt": value.isoformat()}
    if isinstance(value, date):
        return {"$date": value.isoformat()}
    return value


def serialize_snapshot(source_id: str, snapshot: Snapshot, order_sensitive: bool = True) -> bytes:
    """Serialize a snapshot into a stable byte sequence.

    Raises:
        SnapshotSerializationError: the snapshot is not a sequence of rows
            of supported scalar cells.
    """
    if isinstance(snapshot, (str, bytes)) or not isinstance(snapshot, Sequence):
        raise SnapshotSerializationError(source_id, "snapshot must be a sequence of rows")

    lines: list[bytes] = []
    for r, row in enumerate(snapshot):
        if isinstance(row, (str, bytes)) or not isinstance(row, Sequence):
            raise SnapshotSerializationError(source_id, f"row {r} is not a sequence")
        cells = [_cell(source_id, r, c, value) for c, value in enumerate(row)]
        try:
            lines.append(orjson.dumps(cells))
        except TypeError as e:
            raise SnapshotSerializationError(source_id, f"row {r}: {e}") from e

    if not order_sensitive:
        lines.sort()
    return b"\n".join(lines)


def hash_snapshot(source_id: str, snapshot: Snapshot, order_sensitive: bool = True) -> str:
    return hashlib.sha256(serialize_snapshot(source_id, snapshot, order_sensitive)).hexdigest()


class ChangeDetector:
    """Compares fresh snapshots against the last stored hash per source."""

    def __init__(
        self,
        session: AsyncSession,
        order_insensitive_sources: Iterable[str] | None = None,
    ):
        self.hashes = SourceHashRepository(session)
        if order_insensitive_sources is None:
            order_insensitive_sources = settings.order_insensitive_sources
        self.order_insensitive = frozenset(order_insensitive_sources)
        self.metrics = get_metrics()

    def is_order_sensitive(self, source_id: str) -> bool:
        return source_id not in self.order_insensitive

    async def has_changed(self, source_id: str, snapshot: Snapshot) -> bool:
        """Return True (and store the new hash) if the snapshot differs.

        A source with no stored hash, or an unreadable one, counts as changed.
        """
        current = hash_snapshot(source_id, snapshot, self.is_order_sensitive(source_id))

        stored = await self.hashes.get(source_id)
        previous = stored.hash if stored is not None else None
        if stored is not None and not previous:
            logger.warning("Stored hash for source %s is unreadable; treating as absent", source_id)

        if previous == current:
            self.metrics.source_checks_total.labels(source=source_id, changed="false").inc()
            return False

        await self.hashes.put(source_id, current)
        self.metrics.source_checks_total.labels(source=source_id, changed="true").inc()
        if previous:
            logger.info(
                "Data change detected for source %s",
                source_id,
                extra={"old_hash": previous, "new_hash": current},
            )
        else:
            logger.info("No stored hash for source %s; recording first snapshot", source_id)
        return True

    async def reset(self, source_id: str) -> bool:
        """Forget a source's hash so its next read counts as changed."""
        return await self.hashes.delete(source_id)

    async def clear_all(self) -> int:
        cleared = await self.hashes.delete_all()
        logger.info("Cleared %s stored source hashes", cleared)
        return cleared
