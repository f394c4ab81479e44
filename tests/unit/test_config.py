"""Tests for project configuration loading."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from storyloom.config import (
    CONFIG_FILE_NAME,
    ConfigError,
    DriftWeights,
    MirrorConfig,
    SnapshotConfig,
    StoryloomConfig,
    load_config,
)

if TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture(autouse=True)
def _clear_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for var in ("STORYLOOM_SYNC_STRATEGY", "STORYLOOM_SYNC_THRESHOLD", "STORYLOOM_MONITOR_INTERVAL"):
        monkeypatch.delenv(var, raising=False)


class TestDefaults:
    """Test default values."""

    def test_mirror_defaults(self) -> None:
        """Mirror settings default to manual with threshold 30."""
        config = MirrorConfig()
        assert config.auto_sync_threshold == 30
        assert config.conflict_strategy == "manual"
        assert config.monitoring_interval == 60.0

    def test_weight_defaults(self) -> None:
        """Default weights match the documented table."""
        weights = DriftWeights()
        assert weights.scene_added == weights.scene_removed == 5
        assert weights.arc_modified == 3
        assert weights.character_added == 4
        assert weights.max_score == 100

    def test_missing_file_gives_defaults(self, tmp_path: Path) -> None:
        """A project without storyloom.yaml loads the defaults."""
        config = load_config(tmp_path)
        assert config == StoryloomConfig()


class TestValidation:
    """Test value checks."""

    def test_unknown_strategy_rejected(self) -> None:
        """Only the four strategies are accepted."""
        with pytest.raises(ValueError, match="conflict_strategy"):
            MirrorConfig(conflict_strategy="coin_flip")  # type: ignore[arg-type]

    def test_threshold_out_of_range(self) -> None:
        """The threshold must lie within the score range."""
        with pytest.raises(ValueError, match="auto_sync_threshold"):
            MirrorConfig(auto_sync_threshold=101)

    def test_non_positive_interval(self) -> None:
        """The monitoring interval must be positive."""
        with pytest.raises(ValueError, match="monitoring_interval"):
            MirrorConfig(monitoring_interval=0)

    def test_unknown_weight_rejected(self) -> None:
        """Misspelled weight names are errors."""
        with pytest.raises(ValueError, match="unknown drift weights"):
            DriftWeights.from_dict({"scene_add": 3})

    @pytest.mark.parametrize("value", [-1, 1.5, True, "5"])
    def test_bad_weight_value(self, value: object) -> None:
        """Weights are non-negative integers."""
        with pytest.raises(ValueError, match="non-negative integer"):
            DriftWeights.from_dict({"scene_added": value})

    def test_snapshot_capacity(self) -> None:
        """History capacity is at least one."""
        with pytest.raises(ValueError):
            SnapshotConfig(max_snapshots=0)


class TestLoadConfig:
    """Test reading storyloom.yaml."""

    def test_reads_nested_sections(self, tmp_path: Path) -> None:
        """Mirror, weights and snapshot sections are read."""
        (tmp_path / CONFIG_FILE_NAME).write_text(
            "name: saga\n"
            "mirror:\n"
            "  auto_sync_threshold: 10\n"
            "  conflict_strategy: prefer_source\n"
            "  weights:\n"
            "    scene_added: 7\n"
            "snapshots:\n"
            "  max_snapshots: 3\n"
        )
        config = load_config(tmp_path)
        assert config.name == "saga"
        assert config.mirror.auto_sync_threshold == 10
        assert config.mirror.conflict_strategy == "prefer_source"
        assert config.mirror.weights.scene_added == 7
        assert config.mirror.weights.scene_removed == 5
        assert config.snapshots.max_snapshots == 3

    def test_empty_file_gives_defaults(self, tmp_path: Path) -> None:
        """An empty file is the same as no file."""
        (tmp_path / CONFIG_FILE_NAME).write_text("")
        assert load_config(tmp_path) == StoryloomConfig()

    def test_non_mapping_rejected(self, tmp_path: Path) -> None:
        """The top level must be a mapping."""
        (tmp_path / CONFIG_FILE_NAME).write_text("- a\n- b\n")
        with pytest.raises(ConfigError, match="mapping"):
            load_config(tmp_path)

    def test_invalid_value_wrapped(self, tmp_path: Path) -> None:
        """Invalid values surface as ConfigError naming the file."""
        (tmp_path / CONFIG_FILE_NAME).write_text("mirror:\n  conflict_strategy: coin_flip\n")
        with pytest.raises(ConfigError) as exc_info:
            load_config(tmp_path)
        assert exc_info.value.path == tmp_path / CONFIG_FILE_NAME

    def test_malformed_yaml_wrapped(self, tmp_path: Path) -> None:
        """YAML syntax errors surface as ConfigError."""
        (tmp_path / CONFIG_FILE_NAME).write_text("mirror: [unclosed\n")
        with pytest.raises(ConfigError):
            load_config(tmp_path)


class TestEnvironmentOverrides:
    """Test environment variables taking precedence."""

    def test_env_overrides_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        """Environment values win over the project file."""
        (tmp_path / CONFIG_FILE_NAME).write_text(
            "mirror:\n  conflict_strategy: prefer_target\n  auto_sync_threshold: 10\n"
        )
        monkeypatch.setenv("STORYLOOM_SYNC_STRATEGY", "newest_wins")
        monkeypatch.setenv("STORYLOOM_SYNC_THRESHOLD", "45")
        monkeypatch.setenv("STORYLOOM_MONITOR_INTERVAL", "2.5")

        config = load_config(tmp_path)

        assert config.mirror.conflict_strategy == "newest_wins"
        assert config.mirror.auto_sync_threshold == 45
        assert config.mirror.monitoring_interval == 2.5

    def test_env_applies_without_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """Overrides also apply to the defaults."""
        monkeypatch.setenv("STORYLOOM_SYNC_STRATEGY", "prefer_source")
        assert load_config(tmp_path).mirror.conflict_strategy == "prefer_source"

    def test_non_numeric_env_rejected(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """A non-numeric threshold is a config error."""
        monkeypatch.setenv("STORYLOOM_SYNC_THRESHOLD", "lots")
        with pytest.raises(ConfigError, match="invalid mirror setting"):
            load_config(tmp_path)
