"""Pydantic models for narrative entities, snapshots and timelines.

Scenes, arcs and characters are the nodes of the story graph. A
``GraphSnapshot`` is an immutable copy of all of them and the unit that
branches, rollbacks and the mirror reconciler work with.
"""

from storyloom.models.arc import ARC_PHASES, Arc, ArcPhase, ArcPhases, ArcStatus
from storyloom.models.character import (
    Character,
    CharacterArc,
    CharacterRole,
    Relationship,
    RelationType,
    TurningPoint,
)
from storyloom.models.scene import MAX_SCENE_COST, MIN_SCENE_COST, Scene
from storyloom.models.snapshot import (
    SNAPSHOT_FORMAT_VERSION,
    GraphSnapshot,
    SnapshotMetadata,
    compute_checksum,
)
from storyloom.models.timeline import TIMELINE_TYPES, Timeline, TimelineType, TimePoint

__all__ = [
    "ARC_PHASES",
    "MAX_SCENE_COST",
    "MIN_SCENE_COST",
    "SNAPSHOT_FORMAT_VERSION",
    "TIMELINE_TYPES",
    "Arc",
    "ArcPhase",
    "ArcPhases",
    "ArcStatus",
    "Character",
    "CharacterArc",
    "CharacterRole",
    "GraphSnapshot",
    "RelationType",
    "Relationship",
    "Scene",
    "SnapshotMetadata",
    "TimePoint",
    "Timeline",
    "TimelineType",
    "TurningPoint",
    "compute_checksum",
]
