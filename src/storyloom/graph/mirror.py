"""Divergence scoring and one-way reconciliation between two stores.

Two stores that should hold the same story (a primary and its mirror) drift
apart as they are edited independently. The reconciler:

- scores the drift with configurable additive weights, saturating at
  ``weights.max_score``;
- itemizes every difference (``scene_added``, ``arc_modified``, ...);
- brings a target store in line with a source store under a conflict
  strategy, never force-deleting anything still referenced;
- optionally monitors a pair on an interval and auto-syncs small drift.

Direction: ``calculate_drift(base, other)`` reports ``*_added`` for entities
only in *other* and ``*_removed`` for entities only in *base*.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import inspect
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Literal

from storyloom.config import ConflictStrategy, DriftWeights, MirrorConfig
from storyloom.graph.audit import notify_audit
from storyloom.graph.diff import differing_fields
from storyloom.graph.errors import StoryGraphError
from storyloom.models.base import utc_now
from storyloom.models.snapshot import GraphSnapshot
from storyloom.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable

    from pydantic import BaseModel

    from storyloom.graph.audit import AuditSink
    from storyloom.graph.store import GraphStore

log = get_logger(__name__)

EntityType = Literal["scene", "arc", "character"]
DriftSeverity = Literal["low", "medium", "high"]


@dataclass
class DriftDifference:
    """One itemized difference between two stores.

    Attributes:
        type: ``<kind>_added``, ``<kind>_removed`` or ``<kind>_modified``.
        entity_id: Identifier of the differing entity.
        description: Human-readable description.
        weight: Contribution to the drift score.
        severity: Coarse grading of the weight.
        fields: Changed fields, for modifications.
        suggested_resolution: What a sync would do about it.
    """

    type: str
    entity_id: str
    description: str
    weight: int
    severity: DriftSeverity
    fields: list[str] = field(default_factory=list)
    suggested_resolution: str = ""

    @property
    def entity_type(self) -> EntityType:
        """Entity kind the difference concerns."""
        return self.type.split("_", 1)[0]  # type: ignore[return-value]


@dataclass
class MirrorDrift:
    """Drift score plus the differences that produced it."""

    score: int
    differences: list[DriftDifference] = field(default_factory=list)
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def identical(self) -> bool:
        """True when the two stores have equal content."""
        return not self.differences


@dataclass
class SyncConflict:
    """A difference synchronize did not apply as-is.

    Attributes:
        entity_id: The entity concerned.
        entity_type: Its kind.
        difference_type: The difference being applied.
        reason: Why it was not applied.
        resolved: True when the strategy settled it (e.g. kept the target).
    """

    entity_id: str
    entity_type: EntityType
    difference_type: str
    reason: str
    resolved: bool = False


@dataclass
class SyncReport:
    """Outcome of one synchronize run."""

    success: bool
    conflicts: list[SyncConflict] = field(default_factory=list)
    changes: dict[str, int] = field(default_factory=dict)
    drift_before: MirrorDrift | None = None
    drift_after: MirrorDrift | None = None

    @property
    def changes_applied(self) -> int:
        """Total number of entities inserted, replaced or deleted."""
        return sum(self.changes.values())

    @property
    def unresolved(self) -> list[SyncConflict]:
        """Conflicts that still need a decision."""
        return [c for c in self.conflicts if not c.resolved]


class DriftMonitor:
    """Handle on a periodic drift check running as an asyncio task."""

    def __init__(self, key: str, task: asyncio.Task[None]) -> None:
        self.key = key
        self._task = task

    @property
    def running(self) -> bool:
        """True until the monitor is stopped or its task ends."""
        return not self._task.done()

    async def stop(self) -> None:
        """Cancel the task and wait for it. Safe to call more than once."""
        if not self._task.done():
            self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task


def _severity(weight: int) -> DriftSeverity:
    if weight >= 5:
        return "high"
    if weight >= 3:
        return "medium"
    return "low"


def _pair_key(name_a: str, name_b: str) -> str:
    return f"{name_a}<->{name_b}"


def _as_snapshot(source: GraphStore | GraphSnapshot) -> GraphSnapshot:
    return source if isinstance(source, GraphSnapshot) else source.create_snapshot()


class MirrorReconciler:
    """Scores and reconciles drift between pairs of stores."""

    def __init__(self, config: MirrorConfig | None = None, audit: AuditSink | None = None) -> None:
        self.config = config or MirrorConfig()
        self._audit = audit
        self._history: dict[str, list[MirrorDrift]] = {}
        self._monitors: dict[str, DriftMonitor] = {}
        self._write_locks: weakref.WeakKeyDictionary[GraphStore, asyncio.Lock] = (
            weakref.WeakKeyDictionary()
        )

    @property
    def weights(self) -> DriftWeights:
        """Weights currently in effect."""
        return self.config.weights

    # -------------------------------------------------------------------------
    # Drift
    # -------------------------------------------------------------------------

    def _compare(
        self,
        kind: EntityType,
        base: dict[str, BaseModel],
        other: dict[str, BaseModel],
    ) -> list[DriftDifference]:
        w = self.weights
        added_weight = getattr(w, f"{kind}_added")
        removed_weight = getattr(w, f"{kind}_removed")
        differences: list[DriftDifference] = []

        for entity_id in other:
            if entity_id not in base:
                differences.append(
                    DriftDifference(
                        type=f"{kind}_added",
                        entity_id=entity_id,
                        description=f"{kind.capitalize()} {entity_id} exists only in the compared store",
                        weight=added_weight,
                        severity=_severity(added_weight),
                        suggested_resolution=f"insert {kind} into the base store",
                    )
                )
        for entity_id, entity in base.items():
            counterpart = other.get(entity_id)
            if counterpart is None:
                differences.append(
                    DriftDifference(
                        type=f"{kind}_removed",
                        entity_id=entity_id,
                        description=f"{kind.capitalize()} {entity_id} exists only in the base store",
                        weight=removed_weight,
                        severity=_severity(removed_weight),
                        suggested_resolution=f"delete {kind} from the base store if unreferenced",
                    )
                )
                continue
            changed = differing_fields(entity, counterpart)
            if not changed:
                continue
            weight = self._modified_weight(kind, len(changed))
            differences.append(
                DriftDifference(
                    type=f"{kind}_modified",
                    entity_id=entity_id,
                    description=f"{kind.capitalize()} {entity_id} differs in {', '.join(changed)}",
                    weight=weight,
                    severity=_severity(weight),
                    fields=changed,
                    suggested_resolution=f"apply '{self.config.conflict_strategy}' strategy",
                )
            )
        return differences

    def _modified_weight(self, kind: EntityType, changed: int) -> int:
        w = self.weights
        if kind == "scene":
            if changed == 1:
                return w.scene_modified_minor
            if changed <= 3:
                return w.scene_modified_moderate
            return w.scene_modified_major
        if kind == "character":
            return w.character_modified_minor if changed <= 2 else w.character_modified_major
        return w.arc_modified

    def _build_drift(self, differences: list[DriftDifference]) -> MirrorDrift:
        score = min(self.weights.max_score, sum(d.weight for d in differences))
        return MirrorDrift(score=score, differences=differences)

    def _record(self, drift: MirrorDrift, pair: tuple[str, str] | None) -> None:
        if pair is not None:
            self._history.setdefault(_pair_key(*pair), []).append(drift)

    def calculate_drift(
        self,
        base: GraphStore | GraphSnapshot,
        other: GraphStore | GraphSnapshot,
        *,
        pair: tuple[str, str] | None = None,
    ) -> MirrorDrift:
        """Score how far *other* has drifted from *base*.

        Args:
            base: Reference store or snapshot.
            other: Compared store or snapshot.
            pair: Names under which to record the result in the history.

        Returns:
            Score (0 iff equal content) and itemized differences.
        """
        base_snap, other_snap = _as_snapshot(base), _as_snapshot(other)
        differences = self._compare("scene", base_snap.scene_map(), other_snap.scene_map())  # type: ignore[arg-type]
        differences += self._compare("arc", base_snap.arc_map(), other_snap.arc_map())  # type: ignore[arg-type]
        differences += self._compare(
            "character",
            base_snap.character_map(),  # type: ignore[arg-type]
            other_snap.character_map(),  # type: ignore[arg-type]
        )
        drift = self._build_drift(differences)
        self._record(drift, pair)
        return drift

    async def calculate_drift_async(
        self,
        base: GraphStore | GraphSnapshot,
        other: GraphStore | GraphSnapshot,
        *,
        pair: tuple[str, str] | None = None,
    ) -> MirrorDrift:
        """Like :meth:`calculate_drift`, comparing the three kinds concurrently.

        Both sides are captured as snapshots first, so the comparison never
        reads live state.
        """
        base_snap, other_snap = _as_snapshot(base), _as_snapshot(other)
        scenes, arcs, characters = await asyncio.gather(
            asyncio.to_thread(self._compare, "scene", base_snap.scene_map(), other_snap.scene_map()),  # type: ignore[arg-type]
            asyncio.to_thread(self._compare, "arc", base_snap.arc_map(), other_snap.arc_map()),  # type: ignore[arg-type]
            asyncio.to_thread(
                self._compare,
                "character",
                base_snap.character_map(),  # type: ignore[arg-type]
                other_snap.character_map(),  # type: ignore[arg-type]
            ),
        )
        drift = self._build_drift([*scenes, *arcs, *characters])
        self._record(drift, pair)
        return drift

    def should_auto_sync(self, drift: MirrorDrift | int) -> bool:
        """True when the drift is below the auto-sync threshold."""
        score = drift.score if isinstance(drift, MirrorDrift) else drift
        return score < self.config.auto_sync_threshold

    def get_drift_history(self, name_a: str, name_b: str) -> list[MirrorDrift]:
        """Recorded drift results for a pair, oldest first."""
        return list(self._history.get(_pair_key(name_a, name_b), []))

    def clear_history(self, name_a: str | None = None, name_b: str | None = None) -> None:
        """Forget the history of one pair, or of every pair when no names are given."""
        if name_a is None or name_b is None:
            self._history.clear()
        else:
            self._history.pop(_pair_key(name_a, name_b), None)

    # -------------------------------------------------------------------------
    # Synchronization
    # -------------------------------------------------------------------------

    def _write_lock(self, store: GraphStore) -> asyncio.Lock:
        lock = self._write_locks.get(store)
        if lock is None:
            lock = asyncio.Lock()
            self._write_locks[store] = lock
        return lock

    async def synchronize(
        self,
        source: GraphStore | GraphSnapshot,
        target: GraphStore,
        *,
        strategy: ConflictStrategy | None = None,
    ) -> SyncReport:
        """Make *target* converge on *source*.

        Additions are applied first (scenes, characters, arcs), then
        modifications under the conflict strategy, then removals (arcs,
        characters, scenes). A removal only applies when nothing that stays
        in the target still references the entity. Rejected writes become
        conflicts; the run always completes.

        Args:
            source: Store or snapshot to copy from.
            target: Store to bring in line.
            strategy: Overrides the configured conflict strategy.

        Returns:
            Report with applied change counts, conflicts and drift before/after.
        """
        strategy = strategy or self.config.conflict_strategy
        async with self._write_lock(target):
            source_snap = _as_snapshot(source)
            drift_before = await self.calculate_drift_async(target, source_snap)
            report = SyncReport(success=True, drift_before=drift_before)
            if drift_before.identical:
                report.drift_after = drift_before
                return report

            entities: dict[EntityType, dict[str, Any]] = {
                "scene": source_snap.scene_map(),
                "arc": source_snap.arc_map(),
                "character": source_snap.character_map(),
            }
            by_type: dict[str, list[DriftDifference]] = {}
            for diff in drift_before.differences:
                by_type.setdefault(diff.type, []).append(diff)

            for kind in ("scene", "character", "arc"):
                for diff in by_type.get(f"{kind}_added", []):
                    insert = functools.partial(
                        self._insert, target, kind, entities[kind][diff.entity_id]
                    )
                    self._apply(report, diff, f"{kind}s_added", insert)

            for kind in ("scene", "character", "arc"):
                for diff in by_type.get(f"{kind}_modified", []):
                    source_entity = entities[kind][diff.entity_id]  # type: ignore[index]
                    self._apply_modification(report, diff, target, source_entity, strategy)

            self._apply_removals(report, by_type, target)

            report.drift_after = self.calculate_drift(target, source_snap)
            report.success = not report.unresolved

        log.info(
            "mirror_synchronized",
            strategy=strategy,
            drift_before=drift_before.score,
            drift_after=report.drift_after.score,
            changes=report.changes_applied,
            conflicts=len(report.conflicts),
        )
        notify_audit(
            self._audit,
            "SYNC",
            f"Synchronized mirror with strategy '{strategy}'",
            "system",
            {
                "drift_before": drift_before.score,
                "drift_after": report.drift_after.score,
                "conflicts": len(report.conflicts),
            },
        )
        return report

    @staticmethod
    def _insert(target: GraphStore, kind: EntityType, entity: Any) -> None:
        if kind == "scene":
            target.add_scene(entity)
        elif kind == "character":
            target.add_character(entity)
        else:
            target.add_arc(entity)

    @staticmethod
    def _replace(target: GraphStore, kind: EntityType, entity: Any) -> None:
        if kind == "scene":
            target.replace_scene(entity)
        elif kind == "character":
            target.replace_character(entity)
        else:
            target.replace_arc(entity)

    @staticmethod
    def _apply(
        report: SyncReport,
        diff: DriftDifference,
        counter: str,
        write: Callable[[], None],
    ) -> bool:
        try:
            write()
        except StoryGraphError as e:
            log.warning("sync_write_rejected", entity_id=diff.entity_id, change=diff.type, error=str(e))
            report.conflicts.append(
                SyncConflict(diff.entity_id, diff.entity_type, diff.type, f"write rejected: {e}")
            )
            return False
        report.changes[counter] = report.changes.get(counter, 0) + 1
        return True

    def _apply_modification(
        self,
        report: SyncReport,
        diff: DriftDifference,
        target: GraphStore,
        source_entity: Any,
        strategy: ConflictStrategy,
    ) -> None:
        kind = diff.entity_type
        counter = f"{kind}s_modified"
        current = self._current(target, kind, diff.entity_id)
        # Presence mirrored by an earlier insertion may already have settled it.
        if current is not None and not differing_fields(current, source_entity):
            return

        def overwrite() -> None:
            self._replace(target, kind, source_entity)

        if strategy == "prefer_source":
            self._apply(report, diff, counter, overwrite)
        elif strategy == "prefer_target":
            report.conflicts.append(
                SyncConflict(diff.entity_id, kind, diff.type, "kept target version", resolved=True)
            )
        elif strategy == "newest_wins":
            if current is not None and source_entity.updated_at > current.updated_at:
                self._apply(report, diff, counter, overwrite)
            else:
                report.conflicts.append(
                    SyncConflict(
                        diff.entity_id, kind, diff.type, "target version is newer", resolved=True
                    )
                )
        else:
            report.conflicts.append(
                SyncConflict(
                    diff.entity_id,
                    kind,
                    diff.type,
                    f"modified in both stores ({', '.join(diff.fields)}); manual resolution required",
                )
            )

    @staticmethod
    def _current(target: GraphStore, kind: EntityType, entity_id: str) -> Any:
        if kind == "scene":
            return target.get_scene(entity_id)
        if kind == "character":
            return target.get_character(entity_id)
        return target.get_arc(entity_id)

    def _apply_removals(
        self,
        report: SyncReport,
        by_type: dict[str, list[DriftDifference]],
        target: GraphStore,
    ) -> None:
        removals = {
            d.entity_id: d
            for kind in ("arc", "character", "scene")
            for d in by_type.get(f"{kind}_removed", [])
        }
        # Drop candidates still referenced by something that stays, until stable.
        pending = set(removals)
        blocked: dict[str, list[str]] = {}
        changed = True
        while changed:
            changed = False
            for entity_id in list(pending):
                diff = removals[entity_id]
                if diff.entity_type == "arc":
                    continue
                refs = (
                    target.scene_referrers(entity_id)
                    if diff.entity_type == "scene"
                    else target.character_referrers(entity_id)
                )
                staying = [r for r in refs if r not in pending]
                if staying:
                    pending.discard(entity_id)
                    blocked[entity_id] = staying
                    changed = True

        for entity_id, diff in removals.items():
            if entity_id in blocked:
                report.conflicts.append(
                    SyncConflict(
                        entity_id,
                        diff.entity_type,
                        diff.type,
                        f"still referenced by {', '.join(blocked[entity_id])}",
                    )
                )
                continue
            kind = diff.entity_type
            delete = {
                "arc": target.delete_arc,
                "character": target.delete_character,
                "scene": target.delete_scene,
            }[kind]
            self._apply(report, diff, f"{kind}s_removed", functools.partial(delete, entity_id))

    # -------------------------------------------------------------------------
    # Monitoring
    # -------------------------------------------------------------------------

    def start_monitoring(
        self,
        store_a: GraphStore,
        store_b: GraphStore,
        name_a: str = "primary",
        name_b: str = "mirror",
        callback: Callable[[MirrorDrift], Any] | None = None,
        interval: float | None = None,
    ) -> DriftMonitor:
        """Start checking drift between two stores on an interval.

        Each tick computes ``drift(store_a, store_b)``, records it in the
        pair's history, passes it to *callback* (which may be async) and,
        when the score is non-zero but under the threshold, synchronizes
        *store_b* from *store_a*. Must be called from a running event loop.

        Returns:
            The monitor; an existing monitor for the same pair is returned as is.
        """
        key = _pair_key(name_a, name_b)
        existing = self._monitors.get(key)
        if existing is not None and existing.running:
            return existing

        period = interval if interval is not None else self.config.monitoring_interval
        task = asyncio.create_task(
            self._monitor_loop(store_a, store_b, (name_a, name_b), callback, period),
            name=f"drift-monitor:{key}",
        )
        monitor = DriftMonitor(key, task)
        self._monitors[key] = monitor
        log.info("monitor_started", pair=key, interval=period)
        return monitor

    async def _monitor_loop(
        self,
        store_a: GraphStore,
        store_b: GraphStore,
        pair: tuple[str, str],
        callback: Callable[[MirrorDrift], Any] | None,
        interval: float,
    ) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                drift = await self.calculate_drift_async(store_a, store_b, pair=pair)
                if callback is not None:
                    result = callback(drift)
                    if inspect.isawaitable(result):
                        await result
                if drift.score > 0 and self.should_auto_sync(drift):
                    await self.synchronize(store_a, store_b)
            except Exception as e:
                log.warning(
                    "monitor_tick_failed",
                    pair=_pair_key(*pair),
                    error=str(e),
                    error_type=type(e).__name__,
                )

    async def stop_monitoring(self, name_a: str = "primary", name_b: str = "mirror") -> None:
        """Stop the monitor for a pair. Does nothing if none is running."""
        monitor = self._monitors.pop(_pair_key(name_a, name_b), None)
        if monitor is not None:
            await monitor.stop()
            log.info("monitor_stopped", pair=monitor.key)

    async def shutdown(self) -> None:
        """Stop every monitor. Safe to call more than once."""
        monitors = list(self._monitors.values())
        self._monitors.clear()
        for monitor in monitors:
            await monitor.stop()
