"""Arc model: an ordered run of scenes serving one narrative intent.

An arc may partition a subset of its scenes into four phase bands
(anchor, rise, impact, descent) and name a five-beat subsequence
(opening, inciting incident, midpoint, crisis, resolution).
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field, field_validator

from storyloom.models.base import NonBlankStr, dedupe, utc_now

ArcStatus = Literal["draft", "active", "completed", "archived"]
ArcPhase = Literal["anchor", "rise", "impact", "descent"]

ARC_PHASES: tuple[ArcPhase, ...] = ("anchor", "rise", "impact", "descent")
FIVE_BEAT_LENGTH = 5


class ArcPhases(BaseModel):
    """Phase bands and the optional five-beat structure of an arc."""

    anchor: list[str] = Field(default_factory=list)
    rise: list[str] = Field(default_factory=list)
    impact: list[str] = Field(default_factory=list)
    descent: list[str] = Field(default_factory=list)
    five_beat: list[str] | None = Field(
        default=None,
        min_length=FIVE_BEAT_LENGTH,
        max_length=FIVE_BEAT_LENGTH,
        description="Opening, inciting incident, midpoint, crisis, resolution",
    )

    def band(self, phase: ArcPhase) -> list[str]:
        """Return the scene ids assigned to a phase band."""
        return getattr(self, phase)  # type: ignore[no-any-return]

    def all_scene_ids(self) -> list[str]:
        """Every scene id mentioned by a band or the five-beat list."""
        ids: list[str] = []
        for phase in ARC_PHASES:
            ids.extend(self.band(phase))
        if self.five_beat:
            ids.extend(self.five_beat)
        return dedupe(ids)


class Arc(BaseModel):
    """A narrative arc.

    Attributes:
        id: Store-generated identifier (``arc::<hex>``).
        intent: What the arc achieves.
        scenes: Member scenes in story order, no repeats.
        status: Lifecycle status.
        priority: Non-negative ordering hint.
        phases: Optional phase partition.
    """

    id: NonBlankStr
    intent: NonBlankStr
    scenes: list[str] = Field(default_factory=list)
    status: ArcStatus = "draft"
    priority: int = Field(default=0, ge=0)
    phases: ArcPhases | None = None
    author: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator("scenes")
    @classmethod
    def _drop_repeats(cls, value: list[str]) -> list[str]:
        return dedupe(value)

    def phase_problems(self) -> list[str]:
        """Describe inconsistencies between the phase partition and scene order.

        Returns:
            Human-readable problems; empty when the partition is consistent
            or absent.
        """
        if self.phases is None:
            return []

        problems: list[str] = []
        members = set(self.scenes)
        for phase in ARC_PHASES:
            for scene_id in self.phases.band(phase):
                if scene_id not in members:
                    problems.append(f"phase '{phase}' references scene {scene_id} not in arc")

        if self.phases.five_beat:
            missing = [s for s in self.phases.five_beat if s not in members]
            for scene_id in missing:
                problems.append(f"five-beat references scene {scene_id} not in arc")
            if not missing:
                positions = [self.scenes.index(s) for s in self.phases.five_beat]
                if any(b <= a for a, b in zip(positions, positions[1:], strict=False)):
                    problems.append("five-beat structure must follow scene order")

        anchor, impact = self.phases.anchor, self.phases.impact
        if anchor and impact and anchor[0] in members and impact[0] in members:
            if self.scenes.index(impact[0]) <= self.scenes.index(anchor[0]):
                problems.append("impact phase should come after anchor phase")

        return problems
