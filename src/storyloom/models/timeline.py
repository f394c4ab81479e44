"""Timeline models for temporal consistency checking."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

from storyloom.models.base import NonBlankStr, utc_now

TimelineType = Literal["main", "flashback", "flash-forward", "alternate", "dream", "parallel"]

TIMELINE_TYPES: tuple[TimelineType, ...] = (
    "main",
    "flashback",
    "flash-forward",
    "alternate",
    "dream",
    "parallel",
)


class TimePoint(BaseModel):
    """A scene placed at a relative instant of story time.

    ``timestamp`` is in arbitrary story units (minutes, days, ...); only its
    ordering within one timeline matters.
    """

    scene_id: NonBlankStr
    timestamp: float
    description: str | None = None
    day_in_story: int | None = None
    time_of_day: str | None = None
    location: str | None = None


class Timeline(BaseModel):
    """A named, typed sequence of time points, sorted by timestamp."""

    name: NonBlankStr
    type: TimelineType = "main"
    points: list[TimePoint] = Field(default_factory=list)
    parent: str | None = None
    description: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    def scene_ids(self) -> list[str]:
        """Scene ids in timestamp order."""
        return [p.scene_id for p in self.points]

    def point_for(self, scene_id: str) -> TimePoint | None:
        """Return the time point for a scene, if it is on this timeline."""
        for point in self.points:
            if point.scene_id == scene_id:
                return point
        return None
