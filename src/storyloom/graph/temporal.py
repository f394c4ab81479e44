"""Named timelines and temporal consistency validation.

A timeline places scenes at relative instants of story time. Validation
checks the timelines against a store (or snapshot) and reports findings:

- ``orphaned_timepoint`` (error): a point names a scene that does not exist.
- ``sequence_violation`` (warning): a point repeats or precedes the timestamp
  of the point before it, or a scene links to a scene that happens earlier on
  the same timeline.
- ``character_presence`` (error): a character is in two different scenes at
  the same instant of one timeline.
- ``paradox``: a timeline names a missing parent (error), or a flashback
  shows a character who never appears on its parent timeline (warning).
- ``timeline_overlap`` (warning): two timelines of the same type share scenes.
- ``unplaced_scenes`` (warning): scenes that sit on no timeline at all.
"""

from __future__ import annotations

import bisect
from dataclasses import dataclass
from itertools import combinations
from typing import TYPE_CHECKING, Any

from pydantic import ValidationError

from storyloom.graph.errors import (
    EntityNotFoundError,
    EntityValidationError,
    NameConflictError,
    PolicyViolationError,
    violations_from_pydantic,
)
from storyloom.graph.validation_types import Finding, FindingReport
from storyloom.models.base import utc_now
from storyloom.models.snapshot import GraphSnapshot
from storyloom.models.timeline import Timeline, TimePoint
from storyloom.observability.logging import get_logger

if TYPE_CHECKING:
    from storyloom.graph.store import GraphStore

log = get_logger(__name__)


@dataclass
class TemporalReport(FindingReport):
    """Result of a temporal validation run."""

    @property
    def consistent(self) -> bool:
        """True when no finding is an error."""
        return not self.has_errors


class TimelineManager:
    """Owns the named timelines of one story and a scene-to-timelines index."""

    def __init__(self) -> None:
        self._timelines: dict[str, Timeline] = {}
        # scene id -> names of the timelines placing it, in placement order
        self._scene_index: dict[str, list[str]] = {}

    def _index_remove(self, scene_id: str, name: str) -> None:
        names = self._scene_index.get(scene_id)
        if names is None or name not in names:
            return
        names.remove(name)
        if not names:
            del self._scene_index[scene_id]

    def _require(self, name: str, context: str) -> Timeline:
        timeline = self._timelines.get(name)
        if timeline is None:
            raise EntityNotFoundError("timeline", name, list(self._timelines), context)
        return timeline

    def create_timeline(
        self,
        name: str,
        type: str = "main",
        parent: str | None = None,
        description: str | None = None,
    ) -> Timeline:
        """Create an empty timeline.

        A missing *parent* is allowed here and reported by :meth:`validate`.

        Raises:
            NameConflictError: If the name is taken.
            EntityValidationError: If the name is empty or the type unknown.
        """
        if name in self._timelines:
            raise NameConflictError("create_timeline", name, "a timeline with this name exists")
        try:
            timeline = Timeline(name=name, type=type, parent=parent, description=description)  # type: ignore[arg-type]
        except ValidationError as e:
            raise EntityValidationError("timeline", name, violations_from_pydantic(e)) from e
        self._timelines[name] = timeline
        log.debug("timeline_created", timeline=name, type=timeline.type, parent=parent)
        return timeline.model_copy(deep=True)

    def delete_timeline(self, name: str) -> None:
        """Delete a timeline.

        Raises:
            EntityNotFoundError: If the timeline doesn't exist.
        """
        timeline = self._require(name, "delete_timeline")
        for scene_id in timeline.scene_ids():
            self._index_remove(scene_id, name)
        del self._timelines[name]
        log.debug("timeline_deleted", timeline=name)

    def get_timeline(self, name: str) -> Timeline | None:
        """Get a copy of a timeline, or None if not found."""
        timeline = self._timelines.get(name)
        return timeline.model_copy(deep=True) if timeline is not None else None

    def list_timelines(self) -> list[Timeline]:
        """Copies of every timeline in creation order."""
        return [t.model_copy(deep=True) for t in self._timelines.values()]

    def add_time_point(
        self,
        name: str,
        scene_id: str,
        timestamp: float,
        **details: Any,
    ) -> TimePoint:
        """Place a scene on a timeline.

        Points stay sorted by timestamp; a point whose timestamp ties an
        existing one goes after it.

        Args:
            name: Timeline name.
            scene_id: Scene to place.
            timestamp: Relative story time.
            **details: Optional ``description``, ``day_in_story``,
                ``time_of_day``, ``location``.

        Raises:
            EntityNotFoundError: If the timeline doesn't exist.
            PolicyViolationError: If the scene is already on this timeline.
            EntityValidationError: If the point is malformed.
        """
        timeline = self._require(name, "add_time_point")
        if timeline.point_for(scene_id) is not None:
            raise PolicyViolationError(
                "add_time_point", scene_id, f"scene is already on timeline '{name}'"
            )
        try:
            point = TimePoint(scene_id=scene_id, timestamp=timestamp, **details)
        except ValidationError as e:
            raise EntityValidationError("timeline", name, violations_from_pydantic(e)) from e

        bisect.insort_right(timeline.points, point, key=lambda p: p.timestamp)
        self._scene_index.setdefault(scene_id, []).append(name)
        timeline.updated_at = utc_now()
        return point.model_copy()

    def remove_time_point(self, name: str, scene_id: str) -> bool:
        """Remove a scene from one timeline. Returns True if it was there."""
        timeline = self._require(name, "remove_time_point")
        before = len(timeline.points)
        timeline.points = [p for p in timeline.points if p.scene_id != scene_id]
        if len(timeline.points) == before:
            return False
        self._index_remove(scene_id, name)
        timeline.updated_at = utc_now()
        return True

    def remove_scene(self, scene_id: str) -> int:
        """Remove a scene from every timeline. Returns how many held it."""
        names = list(self._scene_index.get(scene_id, []))
        return sum(1 for name in names if self.remove_time_point(name, scene_id))

    def timelines_for_scene(self, scene_id: str) -> list[str]:
        """Names of the timelines a scene is placed on."""
        return list(self._scene_index.get(scene_id, []))

    def stats(self) -> dict[str, Any]:
        """Timeline counts by type and placement totals."""
        by_type: dict[str, int] = {}
        for timeline in self._timelines.values():
            by_type[timeline.type] = by_type.get(timeline.type, 0) + 1
        placed = self._scene_index.keys()
        return {
            "timelines": len(self._timelines),
            "by_type": by_type,
            "time_points": sum(len(t.points) for t in self._timelines.values()),
            "placed_scenes": len(placed),
        }

    def clear(self) -> None:
        """Remove every timeline."""
        self._timelines.clear()
        self._scene_index.clear()

    # -------------------------------------------------------------------------
    # Validation
    # -------------------------------------------------------------------------

    def validate(self, source: GraphStore | GraphSnapshot) -> TemporalReport:
        """Check every timeline against a store or snapshot.

        Args:
            source: Live store or captured snapshot.

        Returns:
            Report with findings and inspection counts.
        """
        snapshot = source if isinstance(source, GraphSnapshot) else source.create_snapshot()
        report = TemporalReport()
        timelines = list(self._timelines.values())

        for timeline in timelines:
            report.findings.extend(self._check_orphans(timeline, snapshot))
            report.findings.extend(self._check_sequence(timeline, snapshot))
            report.findings.extend(self._check_presence(timeline, snapshot))
            report.findings.extend(self._check_parent(timeline, snapshot))
        report.findings.extend(self._check_overlaps(timelines))
        report.findings.extend(self._check_unplaced(timelines, snapshot))

        report.counts = {
            "timelines_checked": len(timelines),
            "time_points_checked": sum(len(t.points) for t in timelines),
            "scenes_checked": len(snapshot.scenes),
        }
        log.info(
            "temporal_validated",
            consistent=report.consistent,
            errors=len(report.errors),
            warnings=len(report.warnings),
        )
        return report

    def _check_orphans(self, timeline: Timeline, snapshot: GraphSnapshot) -> list[Finding]:
        scene_ids = {s.id for s in snapshot.scenes}
        return [
            Finding(
                kind="orphaned_timepoint",
                severity="error",
                message=f"Timeline '{timeline.name}' places missing scene {point.scene_id}",
                affected_ids=[point.scene_id],
                timeline_ids=[timeline.name],
            )
            for point in timeline.points
            if point.scene_id not in scene_ids
        ]

    def _check_sequence(self, timeline: Timeline, snapshot: GraphSnapshot) -> list[Finding]:
        scenes = snapshot.scene_map()
        when = {p.scene_id: p.timestamp for p in timeline.points}
        findings: list[Finding] = []

        previous: TimePoint | None = None
        for point in timeline.points:
            if previous is not None and point.timestamp <= previous.timestamp:
                findings.append(
                    Finding(
                        kind="sequence_violation",
                        severity="warning",
                        message=(
                            f"Timeline '{timeline.name}' repeats or reverses time "
                            f"at scene {point.scene_id}"
                        ),
                        affected_ids=[previous.scene_id, point.scene_id],
                        timeline_ids=[timeline.name],
                    )
                )
            previous = point

            scene = scenes.get(point.scene_id)
            if scene is None:
                continue
            for target in scene.links:
                if target in when and when[target] < point.timestamp:
                    findings.append(
                        Finding(
                            kind="sequence_violation",
                            severity="warning",
                            message=(
                                f"Scene {scene.id} links to {target}, which happens earlier "
                                f"on timeline '{timeline.name}'"
                            ),
                            affected_ids=[scene.id, target],
                            timeline_ids=[timeline.name],
                        )
                    )
        return findings

    def _check_presence(self, timeline: Timeline, snapshot: GraphSnapshot) -> list[Finding]:
        scenes = snapshot.scene_map()
        characters = snapshot.character_map()

        groups: dict[float, list[str]] = {}
        for point in timeline.points:
            groups.setdefault(point.timestamp, []).append(point.scene_id)

        findings: list[Finding] = []
        for timestamp, scene_ids in groups.items():
            if len(scene_ids) < 2:
                continue
            # character id -> scenes at this instant that list it
            placements: dict[str, list[str]] = {}
            for scene_id in scene_ids:
                scene = scenes.get(scene_id)
                if scene is None:
                    continue
                for character_id in scene.character_presence:
                    if character_id in characters:
                        placements.setdefault(character_id, []).append(scene_id)
            for character_id, where in placements.items():
                if len(where) < 2:
                    continue
                name = characters[character_id].name
                findings.append(
                    Finding(
                        kind="character_presence",
                        severity="error",
                        message=(
                            f"{name} is in {len(where)} scenes at time {timestamp:g} "
                            f"on timeline '{timeline.name}'"
                        ),
                        affected_ids=where,
                        affected_characters=[character_id],
                        timeline_ids=[timeline.name],
                    )
                )
        return findings

    def _check_parent(self, timeline: Timeline, snapshot: GraphSnapshot) -> list[Finding]:
        if timeline.parent is None:
            return []

        parent = self._timelines.get(timeline.parent)
        if parent is None:
            return [
                Finding(
                    kind="paradox",
                    severity="error",
                    message=(
                        f"Timeline '{timeline.name}' names missing parent timeline "
                        f"'{timeline.parent}'"
                    ),
                    timeline_ids=[timeline.name, timeline.parent],
                )
            ]
        if timeline.type != "flashback":
            return []

        scenes = snapshot.scene_map()
        characters = snapshot.character_map()

        def cast_of(tl: Timeline) -> dict[str, list[str]]:
            cast: dict[str, list[str]] = {}
            for scene_id in tl.scene_ids():
                scene = scenes.get(scene_id)
                if scene is None:
                    continue
                for character_id in scene.character_presence:
                    cast.setdefault(character_id, []).append(scene_id)
            return cast

        parent_cast = cast_of(parent)
        findings: list[Finding] = []
        for character_id, where in cast_of(timeline).items():
            if character_id in parent_cast or character_id not in characters:
                continue
            findings.append(
                Finding(
                    kind="paradox",
                    severity="warning",
                    message=(
                        f"{characters[character_id].name} appears in flashback "
                        f"'{timeline.name}' but never on parent timeline '{parent.name}'"
                    ),
                    affected_ids=where,
                    affected_characters=[character_id],
                    timeline_ids=[timeline.name, parent.name],
                )
            )
        return findings

    def _check_overlaps(self, timelines: list[Timeline]) -> list[Finding]:
        findings: list[Finding] = []
        for first, second in combinations(timelines, 2):
            if first.type != second.type:
                continue
            second_ids = set(second.scene_ids())
            shared = [s for s in first.scene_ids() if s in second_ids]
            if shared:
                findings.append(
                    Finding(
                        kind="timeline_overlap",
                        severity="warning",
                        message=(
                            f"Timelines '{first.name}' and '{second.name}' ({first.type}) "
                            f"share {len(shared)} scenes"
                        ),
                        affected_ids=shared,
                        timeline_ids=[first.name, second.name],
                    )
                )
        return findings

    def _check_unplaced(self, timelines: list[Timeline], snapshot: GraphSnapshot) -> list[Finding]:
        if not timelines:
            return []
        placed = {p.scene_id for t in timelines for p in t.points}
        unplaced = [s.id for s in snapshot.scenes if s.id not in placed]
        if not unplaced:
            return []
        return [
            Finding(
                kind="unplaced_scenes",
                severity="warning",
                message=f"{len(unplaced)} scenes are not placed on any timeline",
                affected_ids=unplaced,
            )
        ]
