"""Tests for rollback history and snapshot files."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from storyloom.config import SnapshotConfig
from storyloom.graph.audit import DecisionLedger
from storyloom.graph.errors import (
    EntityNotFoundError,
    EntityValidationError,
    PolicyViolationError,
    SnapshotFormatError,
)
from storyloom.graph.snapshots import SnapshotManager, export_snapshot, import_snapshot
from storyloom.graph.store import GraphStore

if TYPE_CHECKING:
    from pathlib import Path

    from tests.conftest import Story


class TestSnapshotManager:
    """Test recording and rolling back."""

    def test_capacity_must_be_positive(self) -> None:
        """A history of zero snapshots is invalid."""
        with pytest.raises(EntityValidationError):
            SnapshotManager(max_snapshots=0)

    def test_auto_snapshot_reason(self, story: Story) -> None:
        """Automatic snapshots name the operation."""
        record = SnapshotManager().create_auto_snapshot(story.store, "delete_scene", "ada")
        assert record.id.startswith("snapshot::")
        assert record.automatic
        assert record.reason == "Automatic snapshot before delete_scene"

    def test_auto_snapshot_disabled(self, story: Story) -> None:
        """Disabled automatic snapshots are refused."""
        manager = SnapshotManager()
        manager.set_auto_snapshot_enabled(False)
        assert not manager.auto_snapshots_enabled
        with pytest.raises(PolicyViolationError):
            manager.create_auto_snapshot(story.store, "delete_scene")
        manager.create_manual_snapshot(story.store, "still allowed")
        assert len(manager.list_snapshots()) == 1

    def test_from_config(self, store: GraphStore) -> None:
        """Project settings set the capacity and the automatic snapshot switch."""
        config = SnapshotConfig(max_snapshots=2, auto_snapshots=False)
        manager = SnapshotManager.from_config(config)
        assert manager.max_snapshots == 2
        assert not manager.auto_snapshots_enabled
        for i in range(3):
            manager.create_manual_snapshot(store, f"save {i}")
        assert [r.reason for r in manager.list_snapshots()] == ["save 1", "save 2"]

    def test_rollback_restores_state(self, story: Story) -> None:
        """Rolling back undoes later changes."""
        ledger = DecisionLedger()
        manager = SnapshotManager(audit=ledger)
        before = story.store.create_snapshot()
        record = manager.create_auto_snapshot(story.store, "delete_scene")

        story.store.delete_scene(story.meeting)
        manager.rollback(record.id, story.store)

        after = story.store.create_snapshot()
        assert after.scenes == before.scenes
        assert after.characters == before.characters
        assert ledger.query()[0].decision_kind == "ROLLBACK"

    def test_rollback_unknown_id(self, story: Story) -> None:
        """Unknown snapshot ids are reference errors."""
        with pytest.raises(EntityNotFoundError):
            SnapshotManager().rollback("snapshot::nope", story.store)

    def test_rollback_to_last_and_index(self, store: GraphStore) -> None:
        """Rollback by recency and by position."""
        manager = SnapshotManager()
        assert manager.rollback_to_last(store) is None

        manager.create_manual_snapshot(store, "empty")
        store.create_scene("A", "P")
        manager.create_manual_snapshot(store, "one scene")
        store.create_scene("B", "P")

        manager.rollback_to_last(store)
        assert len(store.list_scenes()) == 1
        manager.rollback_to_index(0, store)
        assert store.list_scenes() == []
        with pytest.raises(EntityNotFoundError):
            manager.rollback_to_index(5, store)

    def test_oldest_dropped_at_capacity(self, store: GraphStore) -> None:
        """History keeps only the most recent snapshots."""
        manager = SnapshotManager(max_snapshots=2)
        ids = [manager.create_manual_snapshot(store, f"s{i}").id for i in range(3)]
        assert [r.id for r in manager.list_snapshots()] == ids[1:]

        manager.set_max_snapshots(1)
        assert [r.id for r in manager.list_snapshots()] == ids[2:]
        assert manager.max_snapshots == 1

    def test_delete_and_clear(self, store: GraphStore) -> None:
        """Snapshots can be forgotten one by one or all at once."""
        manager = SnapshotManager()
        record = manager.create_manual_snapshot(store, "x")
        manager.create_manual_snapshot(store, "y")
        assert manager.delete_snapshot(record.id) is True
        assert manager.delete_snapshot(record.id) is False
        manager.clear()
        assert manager.list_snapshots() == []


class TestSnapshotFiles:
    """Test export and import."""

    def test_export_then_import(self, story: Story, tmp_path: Path) -> None:
        """An exported snapshot reads back equal and loads into a store."""
        snapshot = story.store.create_snapshot()
        path = tmp_path / "out" / "story.json"

        export_snapshot(snapshot, path)

        assert not path.with_suffix(".json.tmp").exists()
        loaded = import_snapshot(path)
        assert loaded == snapshot
        assert GraphStore(loaded).check_coherence().coherent

    def test_missing_file(self, tmp_path: Path) -> None:
        """Missing files raise FileNotFoundError."""
        with pytest.raises(FileNotFoundError):
            import_snapshot(tmp_path / "missing.json")

    @pytest.mark.parametrize("content", ["not json", '{"scenes": [{"id": 1}]}'])
    def test_malformed_file(self, tmp_path: Path, content: str) -> None:
        """Invalid content is a format error naming the file."""
        path = tmp_path / "bad.json"
        path.write_text(content)
        with pytest.raises(SnapshotFormatError) as exc_info:
            import_snapshot(path)
        assert str(path) in str(exc_info.value)
