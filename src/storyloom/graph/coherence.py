"""Structural coherence checks over a store or snapshot.

The solver is read-only: it inspects a snapshot and returns findings as data.
Errors make a graph incoherent; warnings are advisory.

Checks, in order:

- ``circular_dependency`` (error): a directed cycle in scene links.
- ``broken_link`` (error): a scene links to a scene that does not exist.
- ``broken_reference`` (error): an arc member, arc phase or turning point
  names a scene that does not exist.
- ``presence_mismatch`` (error): scene and character disagree about presence,
  or presence names an entity that does not exist.
- ``dangling_relationship`` (error): a relationship targets a missing character.
- ``orphaned_scene`` (warning): a scene that belongs to no arc.
- ``empty_arc`` (warning): an arc with no scenes.
- ``arc_structure`` (warning): phase bands or five-beat inconsistent with the
  arc's scene order.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from storyloom.graph.algorithms import find_cycles, link_adjacency
from storyloom.graph.validation_types import Finding, FindingReport
from storyloom.models.base import dedupe
from storyloom.models.snapshot import GraphSnapshot
from storyloom.observability.logging import get_logger

if TYPE_CHECKING:
    from storyloom.graph.store import GraphStore

log = get_logger(__name__)


@dataclass
class CoherenceReport(FindingReport):
    """Result of a coherence check.

    Attributes:
        cycles: Closed cycle paths found in scene links.
    """

    cycles: list[list[str]] = field(default_factory=list)

    @property
    def coherent(self) -> bool:
        """True when no finding is an error."""
        return not self.has_errors


class CoherenceSolver:
    """Runs every structural check over a graph."""

    def check(self, source: GraphStore | GraphSnapshot) -> CoherenceReport:
        """Check a store (via a snapshot of it) or a snapshot.

        Args:
            source: Live store or captured snapshot.

        Returns:
            Report with findings, cycles and inspection counts.
        """
        snapshot = source if isinstance(source, GraphSnapshot) else source.create_snapshot()
        report = CoherenceReport()

        report.cycles = self.find_cycles(snapshot)
        for cycle in report.cycles:
            report.findings.append(
                Finding(
                    kind="circular_dependency",
                    severity="error",
                    message=f"Circular dependency: {' -> '.join(cycle)}",
                    affected_ids=dedupe(cycle),
                )
            )

        report.findings.extend(self._check_links(snapshot))
        report.findings.extend(self._check_arc_references(snapshot))
        report.findings.extend(self._check_presence(snapshot))
        report.findings.extend(self._check_relationships(snapshot))
        report.findings.extend(self._check_orphans(snapshot))
        report.findings.extend(self._check_arc_shape(snapshot))

        report.counts = {
            "scenes_checked": len(snapshot.scenes),
            "arcs_checked": len(snapshot.arcs),
            "links_checked": sum(len(s.links) for s in snapshot.scenes),
            "characters_checked": len(snapshot.characters),
        }
        log.info(
            "coherence_checked",
            coherent=report.coherent,
            errors=len(report.errors),
            warnings=len(report.warnings),
            cycles=len(report.cycles),
        )
        return report

    def find_cycles(self, source: GraphStore | GraphSnapshot) -> list[list[str]]:
        """Closed cycle paths in the scene-link relation."""
        snapshot = source if isinstance(source, GraphSnapshot) else source.create_snapshot()
        return find_cycles(link_adjacency(snapshot.scenes))

    def _check_links(self, snapshot: GraphSnapshot) -> list[Finding]:
        scene_ids = {s.id for s in snapshot.scenes}
        return [
            Finding(
                kind="broken_link",
                severity="error",
                message=f"Scene {scene.id} links to missing scene {target}",
                affected_ids=[scene.id, target],
            )
            for scene in snapshot.scenes
            for target in scene.links
            if target not in scene_ids
        ]

    def _check_arc_references(self, snapshot: GraphSnapshot) -> list[Finding]:
        scene_ids = {s.id for s in snapshot.scenes}
        findings: list[Finding] = []

        for arc in snapshot.arcs:
            for scene_id in arc.scenes:
                if scene_id not in scene_ids:
                    findings.append(
                        Finding(
                            kind="broken_reference",
                            severity="error",
                            message=f"Arc {arc.id} contains missing scene {scene_id}",
                            affected_ids=[arc.id, scene_id],
                        )
                    )
            if arc.phases is not None:
                for scene_id in arc.phases.all_scene_ids():
                    if scene_id not in scene_ids:
                        findings.append(
                            Finding(
                                kind="broken_reference",
                                severity="error",
                                message=f"Arc {arc.id} phases reference missing scene {scene_id}",
                                affected_ids=[arc.id, scene_id],
                            )
                        )

        for character in snapshot.characters:
            if character.arc is None:
                continue
            for point in character.arc.turning_points:
                if point.scene_id not in scene_ids:
                    findings.append(
                        Finding(
                            kind="broken_reference",
                            severity="error",
                            message=(
                                f"Character {character.id} has a turning point in "
                                f"missing scene {point.scene_id}"
                            ),
                            affected_ids=[character.id, point.scene_id],
                        )
                    )
        return findings

    def _check_presence(self, snapshot: GraphSnapshot) -> list[Finding]:
        scenes = snapshot.scene_map()
        characters = snapshot.character_map()
        findings: list[Finding] = []
        # (scene_id, character_id) pairs already reported
        seen: set[tuple[str, str]] = set()

        for scene in snapshot.scenes:
            for character_id in scene.character_presence:
                character = characters.get(character_id)
                if character is None:
                    message = f"Scene {scene.id} lists missing character {character_id}"
                elif scene.id not in character.scene_presence:
                    message = (
                        f"Scene {scene.id} lists character {character_id}, "
                        f"but the character does not list the scene"
                    )
                else:
                    continue
                seen.add((scene.id, character_id))
                findings.append(
                    Finding(
                        kind="presence_mismatch",
                        severity="error",
                        message=message,
                        affected_ids=[scene.id, character_id],
                        affected_characters=[character_id],
                    )
                )

        for character in snapshot.characters:
            for scene_id in character.scene_presence:
                if (scene_id, character.id) in seen:
                    continue
                scene = scenes.get(scene_id)
                if scene is None:
                    message = f"Character {character.id} lists missing scene {scene_id}"
                elif character.id not in scene.character_presence:
                    message = (
                        f"Character {character.id} lists scene {scene_id}, "
                        f"but the scene does not list the character"
                    )
                else:
                    continue
                findings.append(
                    Finding(
                        kind="presence_mismatch",
                        severity="error",
                        message=message,
                        affected_ids=[scene_id, character.id],
                        affected_characters=[character.id],
                    )
                )
        return findings

    def _check_relationships(self, snapshot: GraphSnapshot) -> list[Finding]:
        character_ids = {c.id for c in snapshot.characters}
        return [
            Finding(
                kind="dangling_relationship",
                severity="error",
                message=(
                    f"Character {character.id} has a {rel.type} relationship with "
                    f"missing character {rel.character_id}"
                ),
                affected_ids=[character.id, rel.character_id],
                affected_characters=[character.id],
            )
            for character in snapshot.characters
            for rel in character.relationships
            if rel.character_id not in character_ids
        ]

    def _check_orphans(self, snapshot: GraphSnapshot) -> list[Finding]:
        in_arcs = {scene_id for arc in snapshot.arcs for scene_id in arc.scenes}
        findings = [
            Finding(
                kind="orphaned_scene",
                severity="warning",
                message=f"Scene {scene.id} ({scene.title}) is not part of any arc",
                affected_ids=[scene.id],
            )
            for scene in snapshot.scenes
            if scene.id not in in_arcs
        ]
        findings.extend(
            Finding(
                kind="empty_arc",
                severity="warning",
                message=f"Arc {arc.id} has no scenes",
                affected_ids=[arc.id],
            )
            for arc in snapshot.arcs
            if not arc.scenes
        )
        return findings

    def _check_arc_shape(self, snapshot: GraphSnapshot) -> list[Finding]:
        return [
            Finding(
                kind="arc_structure",
                severity="warning",
                message=f"Arc {arc.id}: {problem}",
                affected_ids=[arc.id],
            )
            for arc in snapshot.arcs
            for problem in arc.phase_problems()
        ]
