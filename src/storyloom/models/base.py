"""Shared field types and helpers for entity models."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Annotated

from pydantic import StringConstraints

# Required text fields must contain at least one non-whitespace character.
NonBlankStr = Annotated[str, StringConstraints(min_length=1, pattern=r"\S")]


def utc_now() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(UTC)


def dedupe(ids: list[str]) -> list[str]:
    """Drop repeated identifiers, keeping first-occurrence order."""
    return list(dict.fromkeys(ids))
