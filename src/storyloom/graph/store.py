"""Authoritative in-memory store for scenes, arcs and characters.

The store enforces referential integrity the way a relational database
enforces foreign keys:

- Creation and update validate fields (pydantic) and referenced identifiers
  before anything is written; a rejected call leaves the store untouched.
- Character presence is written on both sides at once, and only through
  ``add_character_to_scene`` / ``remove_character_from_scene``.
- Deleting a scene or character cascades so that no arc, character or scene
  keeps a reference to it.

Whole-state capture and restore go through ``create_snapshot`` and
``load_snapshot``. Restoring builds the new state off to the side and swaps it
in one step under the store lock, so a switch is never observed half-applied.
"""

from __future__ import annotations

import functools
import threading
import uuid
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, ParamSpec, TypeVar

from pydantic import BaseModel, ValidationError

from storyloom.graph.errors import (
    EntityExistsError,
    EntityKind,
    EntityNotFoundError,
    EntityValidationError,
    FieldViolation,
    PolicyViolationError,
    SnapshotFormatError,
    violations_from_pydantic,
)
from storyloom.models.arc import ARC_PHASES, Arc, ArcPhases
from storyloom.models.base import utc_now
from storyloom.models.character import Character, CharacterArc, Relationship, TurningPoint
from storyloom.models.scene import Scene
from storyloom.models.snapshot import (
    SNAPSHOT_FORMAT_VERSION,
    GraphSnapshot,
    SnapshotMetadata,
    compute_checksum,
)
from storyloom.observability.logging import get_logger

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from storyloom.graph.coherence import CoherenceReport

log = get_logger(__name__)

P = ParamSpec("P")
R = TypeVar("R")
M = TypeVar("M", bound=BaseModel)

# Fields no caller may set through update_*.
_READ_ONLY_FIELDS = frozenset({"id", "created_at", "updated_at"})


def _synchronized(method: Callable[P, R]) -> Callable[P, R]:
    """Run a GraphStore method while holding the store lock."""

    @functools.wraps(method)
    def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
        self = args[0]
        with self._lock:  # type: ignore[attr-defined]
            return method(*args, **kwargs)

    return wrapper


@dataclass
class GraphStats:
    """Summary counts for a store."""

    scene_count: int
    arc_count: int
    character_count: int
    total_cost: float
    avg_scenes_per_arc: float


class GraphStore:
    """Per-kind identifier → entity mapping with cascading integrity cleanup.

    ``get_*`` and ``list_*`` return detached copies; the only way to change
    stored entities is through the store's operations.
    """

    VERSION = SNAPSHOT_FORMAT_VERSION

    def __init__(self, snapshot: GraphSnapshot | None = None) -> None:
        """Create an empty store, or one restored from *snapshot*."""
        self._lock = threading.RLock()
        self._scenes: dict[str, Scene] = {}
        self._arcs: dict[str, Arc] = {}
        self._characters: dict[str, Character] = {}
        if snapshot is not None:
            self.load_snapshot(snapshot)

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------

    def _new_id(self, kind: EntityKind, taken: dict[str, Any]) -> str:
        while True:
            candidate = f"{kind}::{uuid.uuid4().hex[:12]}"
            if candidate not in taken:
                return candidate

    @staticmethod
    def _validate(model: type[M], kind: EntityKind, entity_id: str, data: dict[str, Any]) -> M:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise EntityValidationError(kind, entity_id, violations_from_pydantic(e)) from e

    @staticmethod
    def _check_update_fields(
        kind: EntityKind,
        entity_id: str,
        model: type[BaseModel],
        updates: dict[str, Any],
        managed: dict[str, str],
    ) -> None:
        violations: list[FieldViolation] = []
        for name in updates:
            if name in managed:
                violations.append(FieldViolation(name, f"managed by {managed[name]}"))
            elif name in _READ_ONLY_FIELDS:
                violations.append(FieldViolation(name, "read-only field"))
            elif name not in model.model_fields:
                violations.append(FieldViolation(name, "unknown field"))
        if violations:
            raise EntityValidationError(kind, entity_id, violations)

    def _require_scene(self, scene_id: str, context: str) -> Scene:
        scene = self._scenes.get(scene_id)
        if scene is None:
            raise EntityNotFoundError("scene", scene_id, list(self._scenes), context)
        return scene

    def _require_arc(self, arc_id: str, context: str) -> Arc:
        arc = self._arcs.get(arc_id)
        if arc is None:
            raise EntityNotFoundError("arc", arc_id, list(self._arcs), context)
        return arc

    def _require_character(self, character_id: str, context: str) -> Character:
        character = self._characters.get(character_id)
        if character is None:
            raise EntityNotFoundError("character", character_id, list(self._characters), context)
        return character

    def _require_scenes(self, scene_ids: Iterable[str], context: str) -> None:
        for scene_id in scene_ids:
            self._require_scene(scene_id, context)

    def _check_relationship_targets(self, character_id: str, relationships: list[Relationship]) -> None:
        for rel in relationships:
            if rel.character_id == character_id:
                raise PolicyViolationError(
                    "set_relationship", character_id, "a character cannot relate to itself"
                )
            self._require_character(rel.character_id, f"relationship of {character_id}")

    def _check_character_arc(self, character_id: str, arc: CharacterArc | None) -> None:
        if arc is None:
            return
        self._require_scenes(
            (tp.scene_id for tp in arc.turning_points),
            f"turning point of {character_id}",
        )

    def _sync_presence_for_scene(self, scene: Scene, previous: Iterable[str] = ()) -> None:
        """Make characters' scene_presence mirror ``scene.character_presence``."""
        now = utc_now()
        wanted = set(scene.character_presence)
        for character_id in set(previous) - wanted:
            character = self._characters.get(character_id)
            if character is not None and scene.id in character.scene_presence:
                presence = [s for s in character.scene_presence if s != scene.id]
                self._characters[character_id] = character.model_copy(
                    update={"scene_presence": presence, "updated_at": now}
                )
        for character_id in scene.character_presence:
            character = self._characters.get(character_id)
            if character is not None and scene.id not in character.scene_presence:
                self._characters[character_id] = character.model_copy(
                    update={"scene_presence": [*character.scene_presence, scene.id], "updated_at": now}
                )

    def _sync_presence_for_character(
        self, character: Character, previous: Iterable[str] = ()
    ) -> None:
        """Make scenes' character_presence mirror ``character.scene_presence``."""
        now = utc_now()
        wanted = set(character.scene_presence)
        for scene_id in set(previous) - wanted:
            scene = self._scenes.get(scene_id)
            if scene is not None and character.id in scene.character_presence:
                presence = [c for c in scene.character_presence if c != character.id]
                self._scenes[scene_id] = scene.model_copy(
                    update={"character_presence": presence, "updated_at": now}
                )
        for scene_id in character.scene_presence:
            scene = self._scenes.get(scene_id)
            if scene is not None and character.id not in scene.character_presence:
                self._scenes[scene_id] = scene.model_copy(
                    update={
                        "character_presence": [*scene.character_presence, character.id],
                        "updated_at": now,
                    }
                )

    # -------------------------------------------------------------------------
    # Scene operations
    # -------------------------------------------------------------------------

    @_synchronized
    def create_scene(
        self,
        title: str,
        premise: str,
        why: str = "",
        how: str = "",
        cost: float = 1.0,
        *,
        links: list[str] | None = None,
        author: str | None = None,
        tags: list[str] | None = None,
    ) -> Scene:
        """Create a scene with a store-generated identifier.

        Args:
            title: Scene title (required).
            premise: What happens (required).
            why: Narrative purpose.
            how: Execution notes.
            cost: Complexity weight, 0.0 to 10.0.
            links: Existing scenes this scene links to.
            author: Optional author.
            tags: Optional tags.

        Returns:
            Copy of the created scene.

        Raises:
            EntityValidationError: If a field is empty or out of range.
            EntityNotFoundError: If a link target does not exist.
        """
        scene_id = self._new_id("scene", self._scenes)
        scene = self._validate(
            Scene,
            "scene",
            scene_id,
            {
                "id": scene_id,
                "title": title,
                "premise": premise,
                "why": why,
                "how": how,
                "cost": cost,
                "links": links or [],
                "author": author,
                "tags": tags or [],
            },
        )
        self._require_scenes(scene.links, f"link from new scene {scene_id}")
        self._scenes[scene_id] = scene
        log.debug("scene_created", scene_id=scene_id, title=scene.title)
        return scene.model_copy(deep=True)

    def get_scene(self, scene_id: str) -> Scene | None:
        """Get a copy of a scene, or None if not found."""
        scene = self._scenes.get(scene_id)
        return scene.model_copy(deep=True) if scene is not None else None

    def has_scene(self, scene_id: str) -> bool:
        """Check whether a scene exists."""
        return scene_id in self._scenes

    def list_scenes(self) -> list[Scene]:
        """Copies of all scenes in insertion order."""
        with self._lock:
            return [s.model_copy(deep=True) for s in self._scenes.values()]

    def scene_ids(self) -> list[str]:
        """All scene identifiers in insertion order."""
        return list(self._scenes)

    @_synchronized
    def update_scene(self, scene_id: str, **updates: Any) -> Scene:
        """Update scene fields and bump ``updated_at``.

        ``character_presence`` cannot be set here; use
        :meth:`add_character_to_scene` / :meth:`remove_character_from_scene`.

        Raises:
            EntityNotFoundError: If the scene or a new link target doesn't exist.
            EntityValidationError: If an update is invalid.
        """
        current = self._require_scene(scene_id, "update_scene")
        self._check_update_fields(
            "scene",
            scene_id,
            Scene,
            updates,
            {"character_presence": "add_character_to_scene/remove_character_from_scene"},
        )
        data = current.model_dump()
        data.update(updates)
        data["updated_at"] = utc_now()
        scene = self._validate(Scene, "scene", scene_id, data)
        if "links" in updates:
            self._require_scenes(scene.links, f"link from {scene_id}")
        self._scenes[scene_id] = scene
        log.debug("scene_updated", scene_id=scene_id, fields=sorted(updates))
        return scene.model_copy(deep=True)

    @_synchronized
    def delete_scene(self, scene_id: str) -> None:
        """Delete a scene and every reference to it.

        Cascades to arc membership (including phase bands and five-beat),
        character presence and turning points, and other scenes' links.

        Raises:
            EntityNotFoundError: If the scene doesn't exist.
        """
        self._require_scene(scene_id, "delete_scene")
        now = utc_now()

        for arc_id, arc in list(self._arcs.items()):
            stripped = self._strip_scene_from_arc(arc, scene_id)
            if stripped is not None:
                self._arcs[arc_id] = stripped.model_copy(update={"updated_at": now})

        for character_id, character in list(self._characters.items()):
            update: dict[str, Any] = {}
            if scene_id in character.scene_presence:
                update["scene_presence"] = [s for s in character.scene_presence if s != scene_id]
            if character.arc and any(tp.scene_id == scene_id for tp in character.arc.turning_points):
                update["arc"] = character.arc.model_copy(
                    update={
                        "turning_points": [
                            tp for tp in character.arc.turning_points if tp.scene_id != scene_id
                        ]
                    }
                )
            if update:
                update["updated_at"] = now
                self._characters[character_id] = character.model_copy(update=update)

        for other_id, other in list(self._scenes.items()):
            if other_id != scene_id and scene_id in other.links:
                self._scenes[other_id] = other.model_copy(
                    update={"links": [s for s in other.links if s != scene_id], "updated_at": now}
                )

        del self._scenes[scene_id]
        log.debug("scene_deleted", scene_id=scene_id)

    @staticmethod
    def _strip_scene_from_arc(arc: Arc, scene_id: str) -> Arc | None:
        """Return *arc* without *scene_id*, or None if it never mentioned it."""
        in_scenes = scene_id in arc.scenes
        in_phases = arc.phases is not None and scene_id in arc.phases.all_scene_ids()
        if not in_scenes and not in_phases:
            return None

        update: dict[str, Any] = {"scenes": [s for s in arc.scenes if s != scene_id]}
        if arc.phases is not None and in_phases:
            phase_update: dict[str, Any] = {
                phase: [s for s in arc.phases.band(phase) if s != scene_id] for phase in ARC_PHASES
            }
            if arc.phases.five_beat and scene_id in arc.phases.five_beat:
                # A five-beat list with a hole is no longer five beats.
                phase_update["five_beat"] = None
            update["phases"] = arc.phases.model_copy(update=phase_update)
        return arc.model_copy(update=update)

    @_synchronized
    def link_scenes(self, from_id: str, to_id: str) -> None:
        """Add a directed link between two existing scenes (no-op if present)."""
        source = self._require_scene(from_id, "link_scenes source")
        self._require_scene(to_id, "link_scenes target")
        if to_id not in source.links:
            self._scenes[from_id] = source.model_copy(
                update={"links": [*source.links, to_id], "updated_at": utc_now()}
            )

    @_synchronized
    def unlink_scenes(self, from_id: str, to_id: str) -> bool:
        """Remove a directed link. Returns True if a link was removed."""
        source = self._require_scene(from_id, "unlink_scenes source")
        if to_id not in source.links:
            return False
        self._scenes[from_id] = source.model_copy(
            update={"links": [s for s in source.links if s != to_id], "updated_at": utc_now()}
        )
        return True

    @_synchronized
    def add_scene(self, scene: Scene) -> Scene:
        """Insert an externally built scene, keeping its identifier.

        Used when importing entities from another store. Link targets are not
        required to exist yet (import order is arbitrary); the coherence
        solver reports any that never arrive. Presence is mirrored onto the
        characters that already exist.

        Raises:
            EntityExistsError: If a scene with the same id is stored.
            EntityValidationError: If the scene fails validation.
        """
        if scene.id in self._scenes:
            raise EntityExistsError("add_scene", scene.id, "a scene with this id already exists")
        stored = self._validate(Scene, "scene", scene.id, scene.model_dump())
        self._scenes[stored.id] = stored
        self._sync_presence_for_scene(stored)
        return stored.model_copy(deep=True)

    @_synchronized
    def replace_scene(self, scene: Scene) -> Scene:
        """Overwrite an existing scene wholesale, keeping presence symmetric.

        Raises:
            EntityNotFoundError: If the scene doesn't exist.
            EntityValidationError: If the scene fails validation.
        """
        previous = self._require_scene(scene.id, "replace_scene")
        stored = self._validate(Scene, "scene", scene.id, scene.model_dump())
        self._scenes[stored.id] = stored
        self._sync_presence_for_scene(stored, previous.character_presence)
        return stored.model_copy(deep=True)

    # -------------------------------------------------------------------------
    # Arc operations
    # -------------------------------------------------------------------------

    @_synchronized
    def create_arc(
        self,
        intent: str,
        scenes: list[str] | None = None,
        *,
        status: str = "draft",
        priority: int = 0,
        author: str | None = None,
    ) -> Arc:
        """Create an arc with a store-generated identifier.

        Raises:
            EntityValidationError: If intent is empty or status/priority invalid.
            EntityNotFoundError: If a member scene doesn't exist.
        """
        arc_id = self._new_id("arc", self._arcs)
        arc = self._validate(
            Arc,
            "arc",
            arc_id,
            {
                "id": arc_id,
                "intent": intent,
                "scenes": scenes or [],
                "status": status,
                "priority": priority,
                "author": author,
            },
        )
        self._require_scenes(arc.scenes, f"member of new arc {arc_id}")
        self._arcs[arc_id] = arc
        log.debug("arc_created", arc_id=arc_id, scenes=len(arc.scenes))
        return arc.model_copy(deep=True)

    def get_arc(self, arc_id: str) -> Arc | None:
        """Get a copy of an arc, or None if not found."""
        arc = self._arcs.get(arc_id)
        return arc.model_copy(deep=True) if arc is not None else None

    def has_arc(self, arc_id: str) -> bool:
        """Check whether an arc exists."""
        return arc_id in self._arcs

    def list_arcs(self) -> list[Arc]:
        """Copies of all arcs in insertion order."""
        with self._lock:
            return [a.model_copy(deep=True) for a in self._arcs.values()]

    @_synchronized
    def update_arc(self, arc_id: str, **updates: Any) -> Arc:
        """Update arc fields and bump ``updated_at``.

        Raises:
            EntityNotFoundError: If the arc or a member scene doesn't exist.
            EntityValidationError: If an update is invalid or the phase
                partition references scenes outside the arc.
        """
        current = self._require_arc(arc_id, "update_arc")
        self._check_update_fields("arc", arc_id, Arc, updates, {})
        data = current.model_dump()
        data.update(updates)
        data["updated_at"] = utc_now()
        arc = self._validate(Arc, "arc", arc_id, data)
        if "scenes" in updates:
            self._require_scenes(arc.scenes, f"member of {arc_id}")
            if "phases" not in updates and arc.phases is not None:
                # Scenes dropped from the arc leave the kept partition too
                for scene_id in arc.phases.all_scene_ids():
                    if scene_id not in arc.scenes:
                        arc = self._strip_scene_from_arc(arc, scene_id) or arc
        if "phases" in updates and arc.phases is not None:
            outside = [s for s in arc.phases.all_scene_ids() if s not in arc.scenes]
            if outside:
                raise EntityValidationError(
                    "arc",
                    arc_id,
                    [FieldViolation("phases", f"scene {s} is not part of this arc") for s in outside],
                )
        self._arcs[arc_id] = arc
        log.debug("arc_updated", arc_id=arc_id, fields=sorted(updates))
        return arc.model_copy(deep=True)

    @_synchronized
    def delete_arc(self, arc_id: str) -> None:
        """Delete an arc. Nothing else references arcs, so nothing cascades.

        Raises:
            EntityNotFoundError: If the arc doesn't exist.
        """
        self._require_arc(arc_id, "delete_arc")
        del self._arcs[arc_id]
        log.debug("arc_deleted", arc_id=arc_id)

    @_synchronized
    def add_scene_to_arc(self, arc_id: str, scene_id: str, position: int | None = None) -> Arc:
        """Insert a scene into an arc at *position* (default: the end).

        Out-of-range positions append.

        Raises:
            EntityNotFoundError: If the arc or scene doesn't exist.
            PolicyViolationError: If the scene is already in the arc.
        """
        arc = self._require_arc(arc_id, "add_scene_to_arc")
        self._require_scene(scene_id, f"add_scene_to_arc {arc_id}")
        if scene_id in arc.scenes:
            raise PolicyViolationError(
                "add_scene_to_arc", scene_id, f"scene is already part of arc {arc_id}"
            )
        scenes = list(arc.scenes)
        if position is not None and 0 <= position <= len(scenes):
            scenes.insert(position, scene_id)
        else:
            scenes.append(scene_id)
        self._arcs[arc_id] = arc.model_copy(update={"scenes": scenes, "updated_at": utc_now()})
        return self._arcs[arc_id].model_copy(deep=True)

    @_synchronized
    def remove_scene_from_arc(self, arc_id: str, scene_id: str) -> bool:
        """Remove a scene from an arc and its phases. Returns True if removed."""
        arc = self._require_arc(arc_id, "remove_scene_from_arc")
        stripped = self._strip_scene_from_arc(arc, scene_id)
        if stripped is None:
            return False
        self._arcs[arc_id] = stripped.model_copy(update={"updated_at": utc_now()})
        return True

    @_synchronized
    def reorder_arc_scene(self, arc_id: str, from_index: int, to_index: int) -> Arc:
        """Move the scene at *from_index* to *to_index*.

        Raises:
            EntityNotFoundError: If the arc doesn't exist.
            EntityValidationError: If either index is out of range.
        """
        arc = self._require_arc(arc_id, "reorder_arc_scene")
        size = len(arc.scenes)
        bound = f"0..{size - 1}" if size else "no scenes"
        violations = [
            FieldViolation(name, f"index {value} out of range", bound)
            for name, value in (("from_index", from_index), ("to_index", to_index))
            if not 0 <= value < size
        ]
        if violations:
            raise EntityValidationError("arc", arc_id, violations)
        scenes = list(arc.scenes)
        moved = scenes.pop(from_index)
        scenes.insert(to_index, moved)
        self._arcs[arc_id] = arc.model_copy(update={"scenes": scenes, "updated_at": utc_now()})
        return self._arcs[arc_id].model_copy(deep=True)

    @_synchronized
    def assign_arc_phase(self, arc_id: str, phase: str, scene_id: str) -> Arc:
        """Add a member scene to one of the arc's phase bands.

        Raises:
            EntityNotFoundError: If the arc doesn't exist.
            EntityValidationError: If *phase* is not a known band.
            PolicyViolationError: If the scene is not part of the arc.
        """
        arc = self._require_arc(arc_id, "assign_arc_phase")
        if phase not in ARC_PHASES:
            raise EntityValidationError(
                "arc",
                arc_id,
                [FieldViolation("phase", f"unknown phase '{phase}'", f"one of {', '.join(ARC_PHASES)}")],
            )
        if scene_id not in arc.scenes:
            raise PolicyViolationError(
                "assign_arc_phase", scene_id, f"scene is not part of arc {arc_id}"
            )
        phases = arc.phases or ArcPhases()
        band = phases.band(phase)  # type: ignore[arg-type]
        if scene_id not in band:
            phases = phases.model_copy(update={phase: [*band, scene_id]})
            self._arcs[arc_id] = arc.model_copy(update={"phases": phases, "updated_at": utc_now()})
        return self._arcs[arc_id].model_copy(deep=True)

    @_synchronized
    def set_five_beat(self, arc_id: str, beats: list[str]) -> Arc:
        """Set the arc's five-beat structure.

        Raises:
            EntityNotFoundError: If the arc doesn't exist.
            EntityValidationError: If *beats* is not exactly five scene ids.
            PolicyViolationError: If a beat is not part of the arc.
        """
        arc = self._require_arc(arc_id, "set_five_beat")
        phases = self._validate(
            ArcPhases,
            "arc",
            arc_id,
            {**(arc.phases.model_dump() if arc.phases else {}), "five_beat": beats},
        )
        for scene_id in beats:
            if scene_id not in arc.scenes:
                raise PolicyViolationError(
                    "set_five_beat", scene_id, f"scene is not part of arc {arc_id}"
                )
        self._arcs[arc_id] = arc.model_copy(update={"phases": phases, "updated_at": utc_now()})
        return self._arcs[arc_id].model_copy(deep=True)

    @_synchronized
    def add_arc(self, arc: Arc) -> Arc:
        """Insert an externally built arc, keeping its identifier.

        Raises:
            EntityExistsError: If an arc with the same id is stored.
            EntityValidationError: If the arc fails validation.
            EntityNotFoundError: If a member scene doesn't exist.
        """
        if arc.id in self._arcs:
            raise EntityExistsError("add_arc", arc.id, "an arc with this id already exists")
        stored = self._validate(Arc, "arc", arc.id, arc.model_dump())
        self._require_scenes(stored.scenes, f"member of {arc.id}")
        self._arcs[stored.id] = stored
        return stored.model_copy(deep=True)

    @_synchronized
    def replace_arc(self, arc: Arc) -> Arc:
        """Overwrite an existing arc wholesale.

        Raises:
            EntityNotFoundError: If the arc or a member scene doesn't exist.
            EntityValidationError: If the arc fails validation.
        """
        self._require_arc(arc.id, "replace_arc")
        stored = self._validate(Arc, "arc", arc.id, arc.model_dump())
        self._require_scenes(stored.scenes, f"member of {arc.id}")
        self._arcs[stored.id] = stored
        return stored.model_copy(deep=True)

    # -------------------------------------------------------------------------
    # Character operations
    # -------------------------------------------------------------------------

    @_synchronized
    def create_character(
        self,
        name: str,
        description: str,
        role: str = "other",
        *,
        traits: list[str] | None = None,
        author: str | None = None,
        tags: list[str] | None = None,
    ) -> Character:
        """Create a character with a store-generated identifier.

        Raises:
            EntityValidationError: If name/description is empty or role unknown.
        """
        character_id = self._new_id("character", self._characters)
        character = self._validate(
            Character,
            "character",
            character_id,
            {
                "id": character_id,
                "name": name,
                "description": description,
                "role": role,
                "traits": traits or [],
                "author": author,
                "tags": tags or [],
            },
        )
        self._characters[character_id] = character
        log.debug("character_created", character_id=character_id, name=character.name)
        return character.model_copy(deep=True)

    def get_character(self, character_id: str) -> Character | None:
        """Get a copy of a character, or None if not found."""
        character = self._characters.get(character_id)
        return character.model_copy(deep=True) if character is not None else None

    def has_character(self, character_id: str) -> bool:
        """Check whether a character exists."""
        return character_id in self._characters

    def list_characters(self) -> list[Character]:
        """Copies of all characters in insertion order."""
        with self._lock:
            return [c.model_copy(deep=True) for c in self._characters.values()]

    @_synchronized
    def update_character(self, character_id: str, **updates: Any) -> Character:
        """Update character fields and bump ``updated_at``.

        ``scene_presence`` cannot be set here; use
        :meth:`add_character_to_scene` / :meth:`remove_character_from_scene`.

        Raises:
            EntityNotFoundError: If the character or a referenced entity doesn't exist.
            EntityValidationError: If an update is invalid.
            PolicyViolationError: If a relationship points at the character itself.
        """
        current = self._require_character(character_id, "update_character")
        self._check_update_fields(
            "character",
            character_id,
            Character,
            updates,
            {"scene_presence": "add_character_to_scene/remove_character_from_scene"},
        )
        data = current.model_dump()
        data.update(updates)
        data["updated_at"] = utc_now()
        character = self._validate(Character, "character", character_id, data)
        if "relationships" in updates:
            self._check_relationship_targets(character_id, character.relationships)
        if "arc" in updates:
            self._check_character_arc(character_id, character.arc)
        self._characters[character_id] = character
        log.debug("character_updated", character_id=character_id, fields=sorted(updates))
        return character.model_copy(deep=True)

    @_synchronized
    def delete_character(self, character_id: str) -> None:
        """Delete a character, its scene presence and relationships pointing at it.

        Raises:
            EntityNotFoundError: If the character doesn't exist.
        """
        self._require_character(character_id, "delete_character")
        now = utc_now()

        for scene_id, scene in list(self._scenes.items()):
            if character_id in scene.character_presence:
                presence = [c for c in scene.character_presence if c != character_id]
                self._scenes[scene_id] = scene.model_copy(
                    update={"character_presence": presence, "updated_at": now}
                )

        for other_id, other in list(self._characters.items()):
            if other_id != character_id and other.relationship_with(character_id) is not None:
                relationships = [r for r in other.relationships if r.character_id != character_id]
                self._characters[other_id] = other.model_copy(
                    update={"relationships": relationships, "updated_at": now}
                )

        del self._characters[character_id]
        log.debug("character_deleted", character_id=character_id)

    @_synchronized
    def add_character_to_scene(self, character_id: str, scene_id: str) -> None:
        """Record a character's presence in a scene on both sides.

        Raises:
            EntityNotFoundError: If the character or scene doesn't exist.
        """
        character = self._require_character(character_id, "add_character_to_scene")
        scene = self._require_scene(scene_id, "add_character_to_scene")
        now = utc_now()
        if scene_id not in character.scene_presence:
            self._characters[character_id] = character.model_copy(
                update={"scene_presence": [*character.scene_presence, scene_id], "updated_at": now}
            )
        if character_id not in scene.character_presence:
            self._scenes[scene_id] = scene.model_copy(
                update={
                    "character_presence": [*scene.character_presence, character_id],
                    "updated_at": now,
                }
            )

    @_synchronized
    def remove_character_from_scene(self, character_id: str, scene_id: str) -> None:
        """Remove a character's presence in a scene on both sides.

        Raises:
            EntityNotFoundError: If the character or scene doesn't exist.
        """
        character = self._require_character(character_id, "remove_character_from_scene")
        scene = self._require_scene(scene_id, "remove_character_from_scene")
        now = utc_now()
        if scene_id in character.scene_presence:
            self._characters[character_id] = character.model_copy(
                update={
                    "scene_presence": [s for s in character.scene_presence if s != scene_id],
                    "updated_at": now,
                }
            )
        if character_id in scene.character_presence:
            self._scenes[scene_id] = scene.model_copy(
                update={
                    "character_presence": [c for c in scene.character_presence if c != character_id],
                    "updated_at": now,
                }
            )

    @_synchronized
    def set_relationship(
        self,
        character_id: str,
        other_id: str,
        relation_type: str,
        strength: int,
        description: str | None = None,
    ) -> Character:
        """Create or replace the relationship from one character to another.

        Raises:
            EntityNotFoundError: If either character doesn't exist.
            EntityValidationError: If the type is unknown or strength is not 1-10.
            PolicyViolationError: If both ids are the same character.
        """
        character = self._require_character(character_id, "set_relationship")
        self._require_character(other_id, f"relationship target of {character_id}")
        if other_id == character_id:
            raise PolicyViolationError(
                "set_relationship", character_id, "a character cannot relate to itself"
            )
        relationship = self._validate(
            Relationship,
            "character",
            character_id,
            {
                "character_id": other_id,
                "type": relation_type,
                "strength": strength,
                "description": description,
            },
        )
        relationships = [r for r in character.relationships if r.character_id != other_id]
        relationships.append(relationship)
        self._characters[character_id] = character.model_copy(
            update={"relationships": relationships, "updated_at": utc_now()}
        )
        return self._characters[character_id].model_copy(deep=True)

    @_synchronized
    def remove_relationship(self, character_id: str, other_id: str) -> bool:
        """Remove the relationship pointing at *other_id*. Returns True if removed."""
        character = self._require_character(character_id, "remove_relationship")
        if character.relationship_with(other_id) is None:
            return False
        relationships = [r for r in character.relationships if r.character_id != other_id]
        self._characters[character_id] = character.model_copy(
            update={"relationships": relationships, "updated_at": utc_now()}
        )
        return True

    @_synchronized
    def set_character_arc(
        self,
        character_id: str,
        starting_state: str,
        desired_end_state: str,
        current_state: str | None = None,
    ) -> Character:
        """Create or replace a character's arc (turning points start empty).

        Raises:
            EntityNotFoundError: If the character doesn't exist.
            EntityValidationError: If a required state is empty.
        """
        character = self._require_character(character_id, "set_character_arc")
        arc = self._validate(
            CharacterArc,
            "character",
            character_id,
            {
                "starting_state": starting_state,
                "desired_end_state": desired_end_state,
                "current_state": current_state,
            },
        )
        self._characters[character_id] = character.model_copy(
            update={"arc": arc, "updated_at": utc_now()}
        )
        return self._characters[character_id].model_copy(deep=True)

    @_synchronized
    def update_arc_state(self, character_id: str, current_state: str) -> Character:
        """Set the current state of a character's arc.

        Raises:
            EntityNotFoundError: If the character doesn't exist.
            PolicyViolationError: If the character has no arc yet.
        """
        character = self._require_character(character_id, "update_arc_state")
        if character.arc is None:
            raise PolicyViolationError(
                "update_arc_state", character_id, "character arc must be set first"
            )
        arc = character.arc.model_copy(update={"current_state": current_state})
        self._characters[character_id] = character.model_copy(
            update={"arc": arc, "updated_at": utc_now()}
        )
        return self._characters[character_id].model_copy(deep=True)

    @_synchronized
    def add_turning_point(self, character_id: str, scene_id: str, description: str = "") -> Character:
        """Append a turning point to a character's arc.

        Raises:
            EntityNotFoundError: If the character or scene doesn't exist.
            PolicyViolationError: If the character has no arc yet.
        """
        character = self._require_character(character_id, "add_turning_point")
        self._require_scene(scene_id, f"turning point of {character_id}")
        if character.arc is None:
            raise PolicyViolationError(
                "add_turning_point", character_id, "character arc must be set first"
            )
        point = TurningPoint(scene_id=scene_id, description=description)
        arc = character.arc.model_copy(
            update={"turning_points": [*character.arc.turning_points, point]}
        )
        self._characters[character_id] = character.model_copy(
            update={"arc": arc, "updated_at": utc_now()}
        )
        return self._characters[character_id].model_copy(deep=True)

    @_synchronized
    def add_character(self, character: Character) -> Character:
        """Insert an externally built character, keeping its identifier.

        Presence is mirrored onto the scenes that already exist.

        Raises:
            EntityExistsError: If a character with the same id is stored.
            EntityValidationError: If the character fails validation.
        """
        if character.id in self._characters:
            raise EntityExistsError(
                "add_character", character.id, "a character with this id already exists"
            )
        stored = self._validate(Character, "character", character.id, character.model_dump())
        self._characters[stored.id] = stored
        self._sync_presence_for_character(stored)
        return stored.model_copy(deep=True)

    @_synchronized
    def replace_character(self, character: Character) -> Character:
        """Overwrite an existing character wholesale, keeping presence symmetric.

        Raises:
            EntityNotFoundError: If the character doesn't exist.
            EntityValidationError: If the character fails validation.
        """
        previous = self._require_character(character.id, "replace_character")
        stored = self._validate(Character, "character", character.id, character.model_dump())
        self._characters[stored.id] = stored
        self._sync_presence_for_character(stored, previous.scene_presence)
        return stored.model_copy(deep=True)

    # -------------------------------------------------------------------------
    # Graph queries
    # -------------------------------------------------------------------------

    def connected_scenes(self, scene_id: str) -> list[Scene]:
        """Existing scenes that *scene_id* links to, in link order."""
        with self._lock:
            scene = self._scenes.get(scene_id)
            if scene is None:
                return []
            return [
                self._scenes[t].model_copy(deep=True) for t in scene.links if t in self._scenes
            ]

    def arcs_containing_scene(self, scene_id: str) -> list[Arc]:
        """Arcs whose scene list contains *scene_id*."""
        with self._lock:
            return [a.model_copy(deep=True) for a in self._arcs.values() if scene_id in a.scenes]

    def characters_in_scene(self, scene_id: str) -> list[Character]:
        """Characters whose presence includes *scene_id*."""
        with self._lock:
            return [
                c.model_copy(deep=True)
                for c in self._characters.values()
                if scene_id in c.scene_presence
            ]

    def scenes_with_character(self, character_id: str) -> list[Scene]:
        """Existing scenes listed in a character's presence."""
        with self._lock:
            character = self._characters.get(character_id)
            if character is None:
                return []
            return [
                self._scenes[s].model_copy(deep=True)
                for s in character.scene_presence
                if s in self._scenes
            ]

    def scene_referrers(self, scene_id: str) -> list[str]:
        """Identifiers of arcs, scenes and characters that reference a scene."""
        with self._lock:
            refs = [a.id for a in self._arcs.values() if scene_id in a.scenes]
            refs += [s.id for s in self._scenes.values() if s.id != scene_id and scene_id in s.links]
            refs += [c.id for c in self._characters.values() if scene_id in c.scene_presence]
            return refs

    def character_referrers(self, character_id: str) -> list[str]:
        """Identifiers of scenes and characters that reference a character."""
        with self._lock:
            refs = [s.id for s in self._scenes.values() if character_id in s.character_presence]
            refs += [
                c.id
                for c in self._characters.values()
                if c.id != character_id and c.relationship_with(character_id) is not None
            ]
            return refs

    def arc_total_cost(self, arc_id: str) -> float:
        """Sum of the costs of an arc's existing scenes.

        Raises:
            EntityNotFoundError: If the arc doesn't exist.
        """
        with self._lock:
            arc = self._require_arc(arc_id, "arc_total_cost")
            return sum(self._scenes[s].cost for s in arc.scenes if s in self._scenes)

    def total_cost(self) -> float:
        """Sum of all scene costs."""
        with self._lock:
            return sum(s.cost for s in self._scenes.values())

    def stats(self) -> GraphStats:
        """Counts, total cost and average arc length."""
        with self._lock:
            arc_count = len(self._arcs)
            member_total = sum(len(a.scenes) for a in self._arcs.values())
            return GraphStats(
                scene_count=len(self._scenes),
                arc_count=arc_count,
                character_count=len(self._characters),
                total_cost=self.total_cost(),
                avg_scenes_per_arc=member_total / arc_count if arc_count else 0.0,
            )

    def check_coherence(self) -> CoherenceReport:
        """Run the coherence solver over this store."""
        from storyloom.graph.coherence import CoherenceSolver

        return CoherenceSolver().check(self)

    # -------------------------------------------------------------------------
    # Snapshots
    # -------------------------------------------------------------------------

    @_synchronized
    def create_snapshot(self) -> GraphSnapshot:
        """Capture a deep, order-preserving copy of every entity.

        Returns:
            Snapshot tagged with the format version, capture time and checksum.
        """
        scenes = [s.model_copy(deep=True) for s in self._scenes.values()]
        arcs = [a.model_copy(deep=True) for a in self._arcs.values()]
        characters = [c.model_copy(deep=True) for c in self._characters.values()]
        return GraphSnapshot(
            scenes=scenes,
            arcs=arcs,
            characters=characters,
            metadata=SnapshotMetadata(
                version=self.VERSION,
                checksum=compute_checksum(scenes, arcs, characters),
            ),
        )

    def load_snapshot(self, snapshot: GraphSnapshot) -> None:
        """Replace all state with the content of *snapshot*.

        The replacement is built completely before the swap; on failure the
        store is left exactly as it was.

        Raises:
            SnapshotFormatError: If the snapshot repeats an identifier.
        """
        scenes = _index_entities(snapshot.scenes, "scene")
        arcs = _index_entities(snapshot.arcs, "arc")
        characters = _index_entities(snapshot.characters, "character")
        with self._lock:
            self._scenes, self._arcs, self._characters = scenes, arcs, characters
        log.info(
            "snapshot_loaded",
            version=snapshot.metadata.version,
            scenes=len(scenes),
            arcs=len(arcs),
            characters=len(characters),
        )

    @_synchronized
    def clear(self) -> None:
        """Remove every entity."""
        self._scenes, self._arcs, self._characters = {}, {}, {}

    def __repr__(self) -> str:
        """Return string representation of the store."""
        return (
            f"GraphStore(scenes={len(self._scenes)}, arcs={len(self._arcs)}, "
            f"characters={len(self._characters)})"
        )


def _index_entities(entities: list[M], kind: str) -> dict[str, M]:
    """Deep-copy *entities* into an id-keyed dict, rejecting repeated ids."""
    indexed: dict[str, M] = {}
    for entity in entities:
        entity_id: str = entity.id  # type: ignore[attr-defined]
        if entity_id in indexed:
            raise SnapshotFormatError(f"duplicate {kind} id", entity_id)
        indexed[entity_id] = entity.model_copy(deep=True)
    return indexed
