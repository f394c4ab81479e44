"""Decision audit trail for structural operations.

Branch, merge, sync and rollback decisions are reported to an ``AuditSink``.
The sink is one-way: a failing sink is logged and never blocks the
operation that reported to it. ``DecisionLedger`` is the in-memory sink used
by default and in tests.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal, Protocol, runtime_checkable

from storyloom.models.base import utc_now
from storyloom.observability.logging import get_logger

if TYPE_CHECKING:
    from pathlib import Path

log = get_logger(__name__)

DecisionKind = Literal["ROLLBACK", "STOP", "MERGE", "BRANCH", "SYNC"]


@runtime_checkable
class AuditSink(Protocol):
    """Receiver of structural decisions."""

    def record(
        self,
        decision_kind: DecisionKind,
        rationale: str,
        actor: str,
        context: dict[str, Any] | None = None,
    ) -> Any:
        """Record one decision."""
        ...


@dataclass
class DecisionEntry:
    """One recorded decision."""

    id: str
    decision_kind: DecisionKind
    rationale: str
    actor: str
    timestamp: datetime = field(default_factory=utc_now)
    context: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible primitives."""
        return {
            "id": self.id,
            "decision_kind": self.decision_kind,
            "rationale": self.rationale,
            "actor": self.actor,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }


class DecisionLedger:
    """In-memory audit sink with simple queries."""

    def __init__(self) -> None:
        self._entries: list[DecisionEntry] = []

    def record(
        self,
        decision_kind: DecisionKind,
        rationale: str,
        actor: str,
        context: dict[str, Any] | None = None,
    ) -> DecisionEntry:
        """Append a decision and return it."""
        entry = DecisionEntry(
            id=f"decision::{uuid.uuid4().hex[:12]}",
            decision_kind=decision_kind,
            rationale=rationale,
            actor=actor,
            context=dict(context or {}),
        )
        self._entries.append(entry)
        return entry

    def query(
        self,
        *,
        decision_kind: DecisionKind | None = None,
        actor: str | None = None,
        limit: int | None = None,
    ) -> list[DecisionEntry]:
        """Query recorded decisions.

        Args:
            decision_kind: Only decisions of this kind.
            actor: Only decisions by this actor.
            limit: Maximum number of results.

        Returns:
            Matching entries, most recent first.
        """
        results = [
            e
            for e in reversed(self._entries)
            if (decision_kind is None or e.decision_kind == decision_kind)
            and (actor is None or e.actor == actor)
        ]
        return results[:limit] if limit is not None else results

    def summary(self) -> dict[str, int]:
        """Decision counts by kind."""
        counts: dict[str, int] = {}
        for entry in self._entries:
            counts[entry.decision_kind] = counts.get(entry.decision_kind, 0) + 1
        return counts

    def export_jsonl(self, path: Path) -> int:
        """Write every entry as one JSON object per line.

        Returns:
            Number of entries written.
        """
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as f:
            for entry in self._entries:
                f.write(json.dumps(entry.to_dict(), default=str) + "\n")
        return len(self._entries)

    def clear(self) -> None:
        """Forget every entry."""
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def notify_audit(
    sink: AuditSink | None,
    decision_kind: DecisionKind,
    rationale: str,
    actor: str = "system",
    context: dict[str, Any] | None = None,
) -> None:
    """Report a decision to *sink*, if any.

    Sink failures are logged as warnings and otherwise ignored.
    """
    if sink is None:
        return
    try:
        sink.record(decision_kind, rationale, actor, context)
    except Exception as e:
        log.warning(
            "audit_sink_failed",
            decision_kind=decision_kind,
            error=str(e),
            error_type=type(e).__name__,
        )
