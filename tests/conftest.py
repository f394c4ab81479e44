"""Pytest configuration and shared fixtures."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import pytest

from storyloom.graph.store import GraphStore


@dataclass
class Story:
    """A small populated store and the ids of its entities."""

    store: GraphStore
    opening: str
    meeting: str
    betrayal: str
    arc: str
    hero: str
    rival: str


@pytest.fixture
def project_root() -> Path:
    """Return the project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def store() -> GraphStore:
    """Empty store."""
    return GraphStore()


@pytest.fixture
def story(store: GraphStore) -> Story:
    """Three scenes linked in story order in one arc, two characters with presence and a relationship."""
    opening = store.create_scene("Opening", "The town wakes up", cost=2.0)
    meeting = store.create_scene("Meeting", "Hero meets rival")
    betrayal = store.create_scene("Betrayal", "Rival turns", cost=4.5)
    store.link_scenes(opening.id, meeting.id)
    store.link_scenes(meeting.id, betrayal.id)
    arc = store.create_arc("Rivalry", [opening.id, meeting.id, betrayal.id])
    hero = store.create_character("Ada", "A reluctant hero", "protagonist")
    rival = store.create_character("Brom", "An old friend", "antagonist")
    store.add_character_to_scene(hero.id, opening.id)
    store.add_character_to_scene(hero.id, meeting.id)
    store.add_character_to_scene(rival.id, meeting.id)
    store.add_character_to_scene(rival.id, betrayal.id)
    store.set_relationship(hero.id, rival.id, "rival", 7)
    return Story(
        store=store,
        opening=opening.id,
        meeting=meeting.id,
        betrayal=betrayal.id,
        arc=arc.id,
        hero=hero.id,
        rival=rival.id,
    )
