"""Scene model: a node in the directed causal/sequence graph.

Scenes link to other scenes (``links``, ordered) and record which characters
are present (``character_presence``, a set). Presence is only ever written
together with the matching ``Character.scene_presence`` entry; see
``GraphStore.add_character_to_scene``.
"""

from __future__ import annotations

from datetime import datetime
from typing import ClassVar

from pydantic import BaseModel, Field, field_validator

from storyloom.models.base import NonBlankStr, dedupe, utc_now

MIN_SCENE_COST = 0.0
MAX_SCENE_COST = 10.0


class Scene(BaseModel):
    """A single scene.

    Attributes:
        id: Store-generated identifier (``scene::<hex>``).
        title: Short display title.
        premise: What happens in the scene.
        why: Narrative purpose of the scene.
        how: How the scene is executed on the page.
        cost: Complexity weight between 0.0 and 10.0.
        links: Outgoing links to other scenes, in order, no repeats.
        character_presence: Characters present in the scene (unordered).
    """

    # Fields compared as sets when diffing two stores.
    UNORDERED_FIELDS: ClassVar[frozenset[str]] = frozenset({"character_presence", "tags"})

    id: NonBlankStr
    title: NonBlankStr
    premise: NonBlankStr
    why: str = ""
    how: str = ""
    cost: float = Field(default=1.0, ge=MIN_SCENE_COST, le=MAX_SCENE_COST)
    links: list[str] = Field(default_factory=list)
    character_presence: list[str] = Field(default_factory=list)
    author: str | None = None
    tags: list[str] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("links", "character_presence", "tags")
    @classmethod
    def _drop_repeats(cls, value: list[str]) -> list[str]:
        return dedupe(value)

    def has_character(self, character_id: str) -> bool:
        """Check whether a character is present in this scene."""
        return character_id in self.character_presence
