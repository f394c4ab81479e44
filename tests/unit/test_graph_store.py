"""Tests for GraphStore CRUD, integrity rules and cascades."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from storyloom.graph.errors import (
    EntityExistsError,
    EntityNotFoundError,
    EntityValidationError,
    PolicyViolationError,
    SnapshotFormatError,
)
from storyloom.graph.store import GraphStore
from storyloom.models import Character, GraphSnapshot, Scene

if TYPE_CHECKING:
    from tests.conftest import Story


class TestSceneCrud:
    """Test scene create/get/update/delete."""

    def test_create_generates_scoped_id(self, store: GraphStore) -> None:
        """Created scenes get a scene:: identifier."""
        scene = store.create_scene("Opening", "Dawn")
        assert scene.id.startswith("scene::")
        assert store.has_scene(scene.id)

    def test_get_returns_detached_copy(self, store: GraphStore) -> None:
        """Mutating a returned scene does not change the store."""
        scene = store.create_scene("Opening", "Dawn")
        copy = store.get_scene(scene.id)
        assert copy is not None
        copy.links.append("scene::other")
        stored = store.get_scene(scene.id)
        assert stored is not None
        assert stored.links == []

    def test_get_missing_returns_none(self, store: GraphStore) -> None:
        """Unknown ids return None."""
        assert store.get_scene("scene::nope") is None

    def test_invalid_create_leaves_store_untouched(self, store: GraphStore) -> None:
        """Validation failures insert nothing."""
        with pytest.raises(EntityValidationError) as exc_info:
            store.create_scene("", "Dawn", cost=11)
        assert set(exc_info.value.fields) == {"title", "cost"}
        assert store.list_scenes() == []

    def test_create_with_missing_link_target_rejected(self, store: GraphStore) -> None:
        """Link targets must exist at creation."""
        with pytest.raises(EntityNotFoundError):
            store.create_scene("A", "P", links=["scene::missing"])
        assert store.list_scenes() == []

    def test_update_bumps_updated_at(self, store: GraphStore) -> None:
        """Updates change fields and the modification time."""
        scene = store.create_scene("Opening", "Dawn")
        updated = store.update_scene(scene.id, premise="Dusk")
        assert updated.premise == "Dusk"
        assert updated.updated_at >= scene.updated_at
        assert updated.created_at == scene.created_at

    def test_update_rejects_presence(self, story: Story) -> None:
        """Presence can only change through the link operations."""
        with pytest.raises(EntityValidationError) as exc_info:
            story.store.update_scene(story.opening, character_presence=[])
        assert exc_info.value.fields == ["character_presence"]

    def test_update_rejects_unknown_and_read_only_fields(self, store: GraphStore) -> None:
        """Unknown and read-only fields are reported together."""
        scene = store.create_scene("A", "P")
        with pytest.raises(EntityValidationError) as exc_info:
            store.update_scene(scene.id, id="scene::x", mood="dark")
        assert set(exc_info.value.fields) == {"id", "mood"}

    def test_invalid_update_leaves_scene_unchanged(self, store: GraphStore) -> None:
        """An out-of-range update changes nothing."""
        scene = store.create_scene("A", "P", cost=3)
        with pytest.raises(EntityValidationError):
            store.update_scene(scene.id, cost=-1)
        assert store.get_scene(scene.id) == scene

    def test_update_missing_scene_raises(self, store: GraphStore) -> None:
        """Updating an unknown scene is a reference error."""
        with pytest.raises(EntityNotFoundError):
            store.update_scene("scene::nope", title="X")

    def test_link_and_unlink(self, store: GraphStore) -> None:
        """link_scenes adds once; unlink_scenes reports removal."""
        a = store.create_scene("A", "P")
        b = store.create_scene("B", "P")
        store.link_scenes(a.id, b.id)
        store.link_scenes(a.id, b.id)
        assert [s.id for s in store.connected_scenes(a.id)] == [b.id]
        assert store.unlink_scenes(a.id, b.id) is True
        assert store.unlink_scenes(a.id, b.id) is False


class TestSceneDeletionCascade:
    """Deleting a scene leaves no dangling references."""

    def test_removes_from_arcs_characters_and_links(self, story: Story) -> None:
        """Arc membership, presence and incoming links are stripped."""
        store = story.store
        store.set_character_arc(story.hero, "naive", "wise")
        store.add_turning_point(story.hero, story.meeting, "Meets rival")

        store.delete_scene(story.meeting)

        arc = store.get_arc(story.arc)
        hero = store.get_character(story.hero)
        opening = store.get_scene(story.opening)
        assert arc is not None and hero is not None and opening is not None
        assert story.meeting not in arc.scenes
        assert story.meeting not in hero.scene_presence
        assert hero.arc is not None and hero.arc.turning_points == []
        assert story.meeting not in opening.links
        assert store.check_coherence().coherent

    def test_removes_from_phases_and_five_beat(self, store: GraphStore) -> None:
        """Phase bands lose the scene; a broken five-beat is cleared."""
        ids = [store.create_scene(f"S{i}", "P").id for i in range(5)]
        arc = store.create_arc("Five", ids)
        store.assign_arc_phase(arc.id, "rise", ids[1])
        store.set_five_beat(arc.id, ids)

        store.delete_scene(ids[1])

        updated = store.get_arc(arc.id)
        assert updated is not None and updated.phases is not None
        assert updated.phases.rise == []
        assert updated.phases.five_beat is None

    def test_delete_missing_scene_raises(self, store: GraphStore) -> None:
        """Deleting an unknown scene is a reference error."""
        with pytest.raises(EntityNotFoundError):
            store.delete_scene("scene::nope")


class TestArcOperations:
    """Test arc membership, ordering and phases."""

    def test_create_with_missing_scene_rejected(self, store: GraphStore) -> None:
        """Arc member scenes must exist."""
        with pytest.raises(EntityNotFoundError):
            store.create_arc("Intent", ["scene::missing"])
        assert store.list_arcs() == []

    def test_add_scene_at_position(self, story: Story) -> None:
        """Scenes insert at the given position."""
        extra = story.store.create_scene("Extra", "P")
        arc = story.store.add_scene_to_arc(story.arc, extra.id, position=1)
        assert arc.scenes[1] == extra.id

    def test_add_duplicate_scene_rejected(self, story: Story) -> None:
        """A scene can appear in an arc only once."""
        with pytest.raises(PolicyViolationError):
            story.store.add_scene_to_arc(story.arc, story.opening)

    def test_reorder(self, story: Story) -> None:
        """reorder_arc_scene moves one scene."""
        arc = story.store.reorder_arc_scene(story.arc, 0, 2)
        assert arc.scenes == [story.meeting, story.betrayal, story.opening]

    def test_reorder_out_of_range(self, story: Story) -> None:
        """Indexes outside the arc are validation errors."""
        with pytest.raises(EntityValidationError) as exc_info:
            story.store.reorder_arc_scene(story.arc, 0, 5)
        assert exc_info.value.fields == ["to_index"]

    def test_assign_phase_requires_membership(self, story: Story) -> None:
        """Only member scenes can be placed in a phase."""
        outsider = story.store.create_scene("Out", "P")
        with pytest.raises(PolicyViolationError):
            story.store.assign_arc_phase(story.arc, "anchor", outsider.id)

    def test_assign_unknown_phase(self, story: Story) -> None:
        """Unknown phase names are validation errors."""
        with pytest.raises(EntityValidationError):
            story.store.assign_arc_phase(story.arc, "climax", story.opening)

    def test_update_phases_outside_arc_rejected(self, story: Story) -> None:
        """Phase partitions may only use member scenes."""
        outsider = story.store.create_scene("Out", "P")
        with pytest.raises(EntityValidationError):
            story.store.update_arc(story.arc, phases={"rise": [outsider.id]})

    def test_shrinking_scenes_clears_their_phases(self, story: Story) -> None:
        """Scenes dropped via update_arc leave the phase bands as well."""
        story.store.assign_arc_phase(story.arc, "anchor", story.opening)
        story.store.assign_arc_phase(story.arc, "rise", story.meeting)

        arc = story.store.update_arc(story.arc, scenes=[story.meeting, story.betrayal])

        assert arc.phases is not None
        assert arc.phases.anchor == []
        assert arc.phases.rise == [story.meeting]
        assert arc.phase_problems() == []

    def test_remove_scene_from_arc(self, story: Story) -> None:
        """Removing reports whether the scene was a member."""
        assert story.store.remove_scene_from_arc(story.arc, story.opening) is True
        assert story.store.remove_scene_from_arc(story.arc, story.opening) is False

    def test_arc_total_cost(self, story: Story) -> None:
        """Arc cost sums member scene costs."""
        assert story.store.arc_total_cost(story.arc) == pytest.approx(7.5)


class TestCharacterOperations:
    """Test presence, relationships and character arcs."""

    def test_presence_is_symmetric(self, story: Story) -> None:
        """add_character_to_scene writes both sides."""
        hero = story.store.get_character(story.hero)
        opening = story.store.get_scene(story.opening)
        assert hero is not None and opening is not None
        assert story.opening in hero.scene_presence
        assert story.hero in opening.character_presence

    def test_remove_presence_is_symmetric(self, story: Story) -> None:
        """remove_character_from_scene clears both sides."""
        story.store.remove_character_from_scene(story.hero, story.opening)
        hero = story.store.get_character(story.hero)
        opening = story.store.get_scene(story.opening)
        assert hero is not None and opening is not None
        assert story.opening not in hero.scene_presence
        assert story.hero not in opening.character_presence

    def test_update_rejects_scene_presence(self, story: Story) -> None:
        """Character presence is not directly writable."""
        with pytest.raises(EntityValidationError):
            story.store.update_character(story.hero, scene_presence=[])

    def test_self_relationship_rejected(self, story: Story) -> None:
        """A character cannot relate to itself."""
        with pytest.raises(PolicyViolationError):
            story.store.set_relationship(story.hero, story.hero, "ally", 5)

    def test_relationship_strength_validated(self, story: Story) -> None:
        """Strength outside 1..10 is rejected."""
        with pytest.raises(EntityValidationError):
            story.store.set_relationship(story.hero, story.rival, "ally", 11)

    def test_relationship_to_missing_character(self, story: Story) -> None:
        """Relationship targets must exist."""
        with pytest.raises(EntityNotFoundError):
            story.store.set_relationship(story.hero, "character::ghost", "ally", 5)

    def test_set_relationship_replaces(self, story: Story) -> None:
        """Setting a relationship again replaces it."""
        hero = story.store.set_relationship(story.hero, story.rival, "enemy", 9)
        assert len(hero.relationships) == 1
        assert hero.relationships[0].type == "enemy"

    def test_delete_character_cascades(self, story: Story) -> None:
        """Presence and incoming relationships are removed."""
        story.store.delete_character(story.rival)
        hero = story.store.get_character(story.hero)
        meeting = story.store.get_scene(story.meeting)
        assert hero is not None and meeting is not None
        assert hero.relationships == []
        assert story.rival not in meeting.character_presence
        assert story.store.check_coherence().coherent

    def test_turning_point_requires_arc(self, story: Story) -> None:
        """Turning points need a character arc."""
        with pytest.raises(PolicyViolationError):
            story.store.add_turning_point(story.hero, story.opening)

    def test_character_arc_lifecycle(self, story: Story) -> None:
        """Arc state and turning points can be recorded."""
        story.store.set_character_arc(story.hero, "afraid", "brave")
        story.store.update_arc_state(story.hero, "wavering")
        hero = story.store.add_turning_point(story.hero, story.betrayal, "Sees the truth")
        assert hero.arc is not None
        assert hero.arc.current_state == "wavering"
        assert [tp.scene_id for tp in hero.arc.turning_points] == [story.betrayal]

    def test_queries(self, story: Story) -> None:
        """Presence and membership queries."""
        store = story.store
        assert {c.id for c in store.characters_in_scene(story.meeting)} == {story.hero, story.rival}
        assert [s.id for s in store.scenes_with_character(story.rival)] == [
            story.meeting,
            story.betrayal,
        ]
        assert [a.id for a in store.arcs_containing_scene(story.opening)] == [story.arc]
        assert set(store.scene_referrers(story.meeting)) == {
            story.arc,
            story.opening,
            story.hero,
            story.rival,
        }
        assert store.character_referrers(story.rival) == [
            story.meeting,
            story.betrayal,
            story.hero,
        ]


class TestExternalEntities:
    """Test add_* and replace_* for entities built elsewhere."""

    def test_add_scene_keeps_id_and_mirrors_presence(self, story: Story) -> None:
        """Imported scenes keep their id and update existing characters."""
        scene = Scene(id="scene::imported", title="I", premise="P", character_presence=[story.hero])
        story.store.add_scene(scene)
        hero = story.store.get_character(story.hero)
        assert hero is not None
        assert "scene::imported" in hero.scene_presence

    def test_add_existing_id_rejected(self, story: Story) -> None:
        """Ids already stored cannot be added again."""
        existing = story.store.get_scene(story.opening)
        assert existing is not None
        with pytest.raises(EntityExistsError):
            story.store.add_scene(existing)

    def test_replace_character_updates_scene_presence(self, story: Story) -> None:
        """Replacing a character moves presence on the scene side."""
        hero = story.store.get_character(story.hero)
        assert hero is not None
        replacement = hero.model_copy(update={"scene_presence": [story.betrayal]})
        story.store.replace_character(replacement)
        opening = story.store.get_scene(story.opening)
        betrayal = story.store.get_scene(story.betrayal)
        assert opening is not None and betrayal is not None
        assert story.hero not in opening.character_presence
        assert story.hero in betrayal.character_presence

    def test_add_character_keeps_id(self, store: GraphStore) -> None:
        """Imported characters keep their id."""
        store.add_character(Character(id="character::x", name="X", description="D"))
        assert store.has_character("character::x")


class TestSnapshots:
    """Test snapshot capture and restore."""

    def test_round_trip_is_observationally_equal(self, story: Story) -> None:
        """load_snapshot(create_snapshot()) reproduces the store."""
        snapshot = story.store.create_snapshot()
        restored = GraphStore(snapshot)
        assert restored.list_scenes() == story.store.list_scenes()
        assert restored.list_arcs() == story.store.list_arcs()
        assert restored.list_characters() == story.store.list_characters()
        assert restored.create_snapshot().content_checksum() == snapshot.metadata.checksum

    def test_snapshot_is_detached(self, story: Story) -> None:
        """Later mutations do not leak into a snapshot."""
        snapshot = story.store.create_snapshot()
        story.store.update_scene(story.opening, title="Changed")
        assert snapshot.scene_map()[story.opening].title == "Opening"

    def test_duplicate_ids_rejected_atomically(self, story: Story) -> None:
        """A malformed snapshot leaves the store as it was."""
        before = story.store.create_snapshot()
        scene = before.scenes[0]
        bad = GraphSnapshot(scenes=[scene, scene])
        with pytest.raises(SnapshotFormatError):
            story.store.load_snapshot(bad)
        assert story.store.list_scenes() == list(before.scenes)

    def test_stats_and_clear(self, story: Story) -> None:
        """stats() summarizes; clear() empties."""
        stats = story.store.stats()
        assert (stats.scene_count, stats.arc_count, stats.character_count) == (3, 1, 2)
        assert stats.total_cost == pytest.approx(7.5)
        assert stats.avg_scenes_per_arc == 3.0
        story.store.clear()
        assert story.store.stats().scene_count == 0
