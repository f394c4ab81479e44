"""Graph snapshot: the unit of branching, rollback and divergence comparison.

The serialized layout is::

    {
      "scenes": [...],
      "arcs": [...],
      "characters": [...],
      "metadata": {"version": "...", "timestamp": "...", "checksum": "..."}
    }

Timestamps serialize as ISO-8601 instants and the layout round-trips
losslessly through ``to_json()`` / ``from_json()``.
"""

from __future__ import annotations

import hashlib
import json
from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from storyloom.models.arc import Arc
from storyloom.models.base import utc_now
from storyloom.models.character import Character
from storyloom.models.scene import Scene

SNAPSHOT_FORMAT_VERSION = "2025.11.1"


class SnapshotMetadata(BaseModel):
    """Version tag, capture instant and content checksum."""

    model_config = ConfigDict(frozen=True)

    version: str = SNAPSHOT_FORMAT_VERSION
    timestamp: datetime = Field(default_factory=utc_now)
    checksum: str | None = None


class GraphSnapshot(BaseModel):
    """Immutable, deep-copied projection of every entity in a store.

    Callers must treat the entity lists as read-only; ``GraphStore`` copies
    entities both when capturing and when loading a snapshot, so a snapshot
    never aliases live state.
    """

    model_config = ConfigDict(frozen=True)

    scenes: list[Scene] = Field(default_factory=list)
    arcs: list[Arc] = Field(default_factory=list)
    characters: list[Character] = Field(default_factory=list)
    metadata: SnapshotMetadata = Field(default_factory=SnapshotMetadata)

    @classmethod
    def empty(cls) -> GraphSnapshot:
        """Snapshot of an empty store."""
        return cls(metadata=SnapshotMetadata(checksum=compute_checksum([], [], [])))

    def to_dict(self) -> dict[str, Any]:
        """Serialize to JSON-compatible primitives."""
        return self.model_dump(mode="json")

    def to_json(self, indent: int | None = 2) -> str:
        """Serialize to a JSON string."""
        return self.model_dump_json(indent=indent)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GraphSnapshot:
        """Deserialize from primitives produced by :meth:`to_dict`."""
        return cls.model_validate(data)

    @classmethod
    def from_json(cls, text: str) -> GraphSnapshot:
        """Deserialize from a JSON string produced by :meth:`to_json`."""
        return cls.model_validate_json(text)

    def scene_map(self) -> dict[str, Scene]:
        """Scenes keyed by id, in snapshot order."""
        return {s.id: s for s in self.scenes}

    def arc_map(self) -> dict[str, Arc]:
        """Arcs keyed by id, in snapshot order."""
        return {a.id: a for a in self.arcs}

    def character_map(self) -> dict[str, Character]:
        """Characters keyed by id, in snapshot order."""
        return {c.id: c for c in self.characters}

    def content_checksum(self) -> str:
        """Recompute the checksum of the entity content."""
        return compute_checksum(self.scenes, self.arcs, self.characters)


def compute_checksum(
    scenes: list[Scene],
    arcs: list[Arc],
    characters: list[Character],
) -> str:
    """SHA-256 over the canonical JSON form of the entity lists."""
    payload = {
        "scenes": [s.model_dump(mode="json") for s in scenes],
        "arcs": [a.model_dump(mode="json") for a in arcs],
        "characters": [c.model_dump(mode="json") for c in characters],
    }
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()
