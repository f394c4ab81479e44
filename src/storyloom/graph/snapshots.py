"""Bounded rollback history and snapshot file export.

``SnapshotManager`` keeps the most recent snapshots taken before risky
operations so a store can be rolled back. ``export_snapshot`` and
``import_snapshot`` move snapshots to and from JSON files.
"""

from __future__ import annotations

import os
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path  # noqa: TC003 - used at runtime
from typing import TYPE_CHECKING

from pydantic import ValidationError

from storyloom.graph.audit import notify_audit
from storyloom.graph.errors import (
    EntityNotFoundError,
    EntityValidationError,
    FieldViolation,
    PolicyViolationError,
    SnapshotFormatError,
)
from storyloom.models.base import utc_now
from storyloom.models.snapshot import GraphSnapshot
from storyloom.observability.logging import get_logger

if TYPE_CHECKING:
    from storyloom.config import SnapshotConfig
    from storyloom.graph.audit import AuditSink
    from storyloom.graph.store import GraphStore

log = get_logger(__name__)


@dataclass
class SnapshotRecord:
    """A snapshot kept in the rollback history."""

    id: str
    snapshot: GraphSnapshot
    reason: str
    automatic: bool
    operation: str | None = None
    actor: str | None = None
    timestamp: datetime = field(default_factory=utc_now)


class SnapshotManager:
    """Keeps at most ``max_snapshots`` snapshots, oldest dropped first."""

    def __init__(self, max_snapshots: int = 10, audit: AuditSink | None = None) -> None:
        self._validate_max(max_snapshots)
        self._records: list[SnapshotRecord] = []
        self._max_snapshots = max_snapshots
        self._auto_enabled = True
        self._audit = audit

    @classmethod
    def from_config(
        cls, config: SnapshotConfig, audit: AuditSink | None = None
    ) -> SnapshotManager:
        """Create a manager honoring a project's ``snapshots`` settings."""
        manager = cls(max_snapshots=config.max_snapshots, audit=audit)
        manager.set_auto_snapshot_enabled(config.auto_snapshots)
        return manager

    @staticmethod
    def _validate_max(value: int) -> None:
        if value < 1:
            raise EntityValidationError(
                "snapshot",
                "max_snapshots",
                [FieldViolation("max_snapshots", f"got {value}", ">= 1")],
            )

    def _push(self, record: SnapshotRecord) -> SnapshotRecord:
        self._records.append(record)
        self._trim()
        log.debug(
            "snapshot_recorded",
            snapshot_id=record.id,
            automatic=record.automatic,
            history=len(self._records),
        )
        return record

    def _trim(self) -> None:
        excess = len(self._records) - self._max_snapshots
        if excess > 0:
            del self._records[:excess]

    def create_auto_snapshot(
        self,
        store: GraphStore,
        operation: str,
        actor: str | None = None,
    ) -> SnapshotRecord:
        """Capture *store* before *operation*.

        Raises:
            PolicyViolationError: If automatic snapshots are disabled.
        """
        if not self._auto_enabled:
            raise PolicyViolationError(
                "create_auto_snapshot", operation, "automatic snapshots are disabled"
            )
        return self._push(
            SnapshotRecord(
                id=f"snapshot::{uuid.uuid4().hex[:12]}",
                snapshot=store.create_snapshot(),
                reason=f"Automatic snapshot before {operation}",
                automatic=True,
                operation=operation,
                actor=actor,
            )
        )

    def create_manual_snapshot(
        self,
        store: GraphStore,
        reason: str,
        actor: str | None = None,
    ) -> SnapshotRecord:
        """Capture *store* on request."""
        return self._push(
            SnapshotRecord(
                id=f"snapshot::{uuid.uuid4().hex[:12]}",
                snapshot=store.create_snapshot(),
                reason=reason,
                automatic=False,
                actor=actor,
            )
        )

    def rollback(self, snapshot_id: str, store: GraphStore) -> SnapshotRecord:
        """Restore *store* to a recorded snapshot.

        Raises:
            EntityNotFoundError: If no snapshot has that id.
        """
        record = self.get_snapshot(snapshot_id)
        if record is None:
            raise EntityNotFoundError(
                "snapshot", snapshot_id, [r.id for r in self._records], "rollback"
            )
        store.load_snapshot(record.snapshot)
        log.info("rolled_back", snapshot_id=snapshot_id, reason=record.reason)
        notify_audit(
            self._audit,
            "ROLLBACK",
            f"Rolled back to snapshot {snapshot_id} ({record.reason})",
            record.actor or "system",
            {"snapshot_id": snapshot_id},
        )
        return record

    def rollback_to_last(self, store: GraphStore) -> SnapshotRecord | None:
        """Restore the most recent snapshot. Returns None if there is none."""
        if not self._records:
            return None
        return self.rollback(self._records[-1].id, store)

    def rollback_to_index(self, index: int, store: GraphStore) -> SnapshotRecord:
        """Restore the snapshot at *index* (negative counts from the newest).

        Raises:
            EntityNotFoundError: If the index is out of range.
        """
        try:
            record = self._records[index]
        except IndexError:
            raise EntityNotFoundError(
                "snapshot",
                str(index),
                [str(i) for i in range(len(self._records))],
                "rollback_to_index",
            ) from None
        return self.rollback(record.id, store)

    def list_snapshots(self) -> list[SnapshotRecord]:
        """Recorded snapshots, oldest first."""
        return list(self._records)

    def get_snapshot(self, snapshot_id: str) -> SnapshotRecord | None:
        """Get a recorded snapshot, or None if not found."""
        return next((r for r in self._records if r.id == snapshot_id), None)

    def delete_snapshot(self, snapshot_id: str) -> bool:
        """Forget a snapshot. Returns True if it existed."""
        before = len(self._records)
        self._records = [r for r in self._records if r.id != snapshot_id]
        return len(self._records) < before

    def clear(self) -> None:
        """Forget every snapshot."""
        self._records.clear()

    @property
    def max_snapshots(self) -> int:
        """History capacity."""
        return self._max_snapshots

    def set_max_snapshots(self, value: int) -> None:
        """Change the capacity, dropping the oldest snapshots if needed.

        Raises:
            EntityValidationError: If *value* is less than 1.
        """
        self._validate_max(value)
        self._max_snapshots = value
        self._trim()

    @property
    def auto_snapshots_enabled(self) -> bool:
        """Whether :meth:`create_auto_snapshot` is allowed."""
        return self._auto_enabled

    def set_auto_snapshot_enabled(self, enabled: bool) -> None:
        """Allow or refuse automatic snapshots."""
        self._auto_enabled = enabled


def export_snapshot(snapshot: GraphSnapshot, path: Path) -> None:
    """Write a snapshot as JSON, replacing *path* atomically."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_suffix(path.suffix + ".tmp")
    tmp_path.write_text(snapshot.to_json(), encoding="utf-8")
    os.replace(tmp_path, path)
    log.debug("snapshot_exported", path=str(path), scenes=len(snapshot.scenes))


def import_snapshot(path: Path) -> GraphSnapshot:
    """Read a snapshot written by :func:`export_snapshot`.

    Raises:
        FileNotFoundError: If *path* does not exist.
        SnapshotFormatError: If the content is not a valid snapshot.
    """
    text = path.read_text(encoding="utf-8")
    try:
        return GraphSnapshot.from_json(text)
    except ValidationError as e:
        first = e.errors()[0] if e.errors() else {}
        location = ".".join(str(p) for p in first.get("loc", ()))
        raise SnapshotFormatError(
            f"{e.error_count()} invalid fields ({location}: {first.get('msg', 'invalid')})",
            str(path),
        ) from e
