"""Character model with typed relationships and an optional character arc."""

from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Literal

from pydantic import BaseModel, Field, field_validator

from storyloom.models.base import NonBlankStr, dedupe, utc_now

CharacterRole = Literal[
    "protagonist",
    "antagonist",
    "supporting",
    "mentor",
    "foil",
    "comic-relief",
    "love-interest",
    "other",
]
RelationType = Literal[
    "ally",
    "enemy",
    "family",
    "romantic",
    "mentor-student",
    "rival",
    "neutral",
]

MIN_RELATIONSHIP_STRENGTH = 1
MAX_RELATIONSHIP_STRENGTH = 10


class Relationship(BaseModel):
    """Directed, weighted relationship to another character."""

    character_id: NonBlankStr
    type: RelationType
    strength: int = Field(ge=MIN_RELATIONSHIP_STRENGTH, le=MAX_RELATIONSHIP_STRENGTH)
    description: str | None = None


class TurningPoint(BaseModel):
    """A scene where the character's arc shifts."""

    scene_id: NonBlankStr
    description: str = ""
    timestamp: datetime = Field(default_factory=utc_now)


class CharacterArc(BaseModel):
    """Starting, current and desired state plus ordered turning points."""

    starting_state: NonBlankStr
    desired_end_state: NonBlankStr
    current_state: str | None = None
    turning_points: list[TurningPoint] = Field(default_factory=list)


class Character(BaseModel):
    """A character.

    Attributes:
        id: Store-generated identifier (``character::<hex>``).
        name: Display name.
        description: Short description.
        role: Narrative role.
        relationships: At most one relationship per target character.
        scene_presence: Scenes the character appears in (unordered); the exact
            inverse of ``Scene.character_presence``.
        arc: Optional character arc.
    """

    UNORDERED_FIELDS: ClassVar[frozenset[str]] = frozenset(
        {"traits", "relationships", "scene_presence", "tags"}
    )

    id: NonBlankStr
    name: NonBlankStr
    description: NonBlankStr
    role: CharacterRole = "other"
    traits: list[str] = Field(default_factory=list)
    relationships: list[Relationship] = Field(default_factory=list)
    scene_presence: list[str] = Field(default_factory=list)
    arc: CharacterArc | None = None
    author: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("traits", "scene_presence", "tags")
    @classmethod
    def _drop_repeats(cls, value: list[str]) -> list[str]:
        return dedupe(value)

    @field_validator("relationships")
    @classmethod
    def _one_relationship_per_target(cls, value: list[Relationship]) -> list[Relationship]:
        # Later entries replace earlier ones for the same target.
        by_target: dict[str, Relationship] = {}
        for rel in value:
            by_target.pop(rel.character_id, None)
            by_target[rel.character_id] = rel
        return list(by_target.values())

    def relationship_with(self, character_id: str) -> Relationship | None:
        """Return the relationship pointing at *character_id*, if any."""
        for rel in self.relationships:
            if rel.character_id == character_id:
                return rel
        return None

    def is_in_scene(self, scene_id: str) -> bool:
        """Check whether the character appears in a scene."""
        return scene_id in self.scene_presence
