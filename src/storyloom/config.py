"""Project configuration loading.

Configuration lives in ``storyloom.yaml`` at the project root::

    name: my-story
    mirror:
      auto_sync_threshold: 30
      conflict_strategy: manual
      monitoring_interval: 60
      weights:
        scene_added: 5
    snapshots:
      max_snapshots: 10
      auto_snapshots: true

Resolution order for mirror settings:
1. Environment variable (``STORYLOOM_SYNC_STRATEGY``,
   ``STORYLOOM_SYNC_THRESHOLD``, ``STORYLOOM_MONITOR_INTERVAL``)
2. Project config
3. Defaults below
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path  # noqa: TC003 - used at runtime
from typing import Any, Literal, get_args

from ruamel.yaml import YAML

CONFIG_FILE_NAME = "storyloom.yaml"

ConflictStrategy = Literal["manual", "prefer_source", "prefer_target", "newest_wins"]
CONFLICT_STRATEGIES: tuple[str, ...] = get_args(ConflictStrategy)

DEFAULT_SYNC_THRESHOLD = 30
DEFAULT_MONITOR_INTERVAL = 60.0
MAX_DRIFT_SCORE = 100


@dataclass
class DriftWeights:
    """Weight of each difference class in the divergence score.

    Scene modifications scale with the number of changed fields: one field
    costs ``scene_modified_minor``, two or three ``scene_modified_moderate``,
    more than three ``scene_modified_major``. Character modifications cost
    ``character_modified_minor`` up to two fields and
    ``character_modified_major`` beyond.
    """

    scene_added: int = 5
    scene_removed: int = 5
    scene_modified_minor: int = 1
    scene_modified_moderate: int = 2
    scene_modified_major: int = 3
    arc_added: int = 5
    arc_removed: int = 5
    arc_modified: int = 3
    character_added: int = 4
    character_removed: int = 4
    character_modified_minor: int = 1
    character_modified_major: int = 2
    max_score: int = MAX_DRIFT_SCORE

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DriftWeights:
        """Create from a mapping, rejecting unknown keys and negative weights."""
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"unknown drift weights: {', '.join(unknown)}")
        values: dict[str, int] = {}
        for name, value in data.items():
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValueError(f"weight '{name}' must be a non-negative integer, got {value!r}")
            values[name] = value
        return cls(**values)


@dataclass
class MirrorConfig:
    """Settings for the mirror reconciler."""

    auto_sync_threshold: int = DEFAULT_SYNC_THRESHOLD
    conflict_strategy: ConflictStrategy = "manual"
    monitoring_interval: float = DEFAULT_MONITOR_INTERVAL
    weights: DriftWeights = field(default_factory=DriftWeights)

    def __post_init__(self) -> None:
        if self.conflict_strategy not in CONFLICT_STRATEGIES:
            raise ValueError(
                f"conflict_strategy must be one of {', '.join(CONFLICT_STRATEGIES)}, "
                f"got {self.conflict_strategy!r}"
            )
        if not 0 <= self.auto_sync_threshold <= self.weights.max_score:
            raise ValueError(
                f"auto_sync_threshold must be between 0 and {self.weights.max_score}, "
                f"got {self.auto_sync_threshold}"
            )
        if self.monitoring_interval <= 0:
            raise ValueError(
                f"monitoring_interval must be positive, got {self.monitoring_interval}"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MirrorConfig:
        """Create from a mapping, then apply environment overrides."""
        strategy = os.getenv("STORYLOOM_SYNC_STRATEGY") or data.get("conflict_strategy", "manual")
        threshold = os.getenv("STORYLOOM_SYNC_THRESHOLD") or data.get(
            "auto_sync_threshold", DEFAULT_SYNC_THRESHOLD
        )
        interval = os.getenv("STORYLOOM_MONITOR_INTERVAL") or data.get(
            "monitoring_interval", DEFAULT_MONITOR_INTERVAL
        )
        try:
            threshold_value = int(threshold)
            interval_value = float(interval)
        except (TypeError, ValueError) as e:
            raise ValueError(f"invalid mirror setting: {e}") from e

        return cls(
            auto_sync_threshold=threshold_value,
            conflict_strategy=strategy,
            monitoring_interval=interval_value,
            weights=DriftWeights.from_dict(dict(data.get("weights") or {})),
        )


@dataclass
class SnapshotConfig:
    """Settings for rollback history."""

    max_snapshots: int = 10
    auto_snapshots: bool = True

    def __post_init__(self) -> None:
        if self.max_snapshots < 1:
            raise ValueError(f"max_snapshots must be at least 1, got {self.max_snapshots}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SnapshotConfig:
        """Create from a mapping."""
        return cls(
            max_snapshots=int(data.get("max_snapshots", 10)),
            auto_snapshots=bool(data.get("auto_snapshots", True)),
        )


@dataclass
class StoryloomConfig:
    """Complete project configuration."""

    name: str = "unnamed"
    version: int = 1
    mirror: MirrorConfig = field(default_factory=MirrorConfig)
    snapshots: SnapshotConfig = field(default_factory=SnapshotConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StoryloomConfig:
        """Create config from dictionary."""
        return cls(
            name=data.get("name", "unnamed"),
            version=data.get("version", 1),
            mirror=MirrorConfig.from_dict(dict(data.get("mirror") or {})),
            snapshots=SnapshotConfig.from_dict(dict(data.get("snapshots") or {})),
        )


class ConfigError(Exception):
    """Raised when project configuration cannot be loaded."""

    def __init__(self, path: Path, reason: str) -> None:
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to load config at {path}: {reason}")


def load_config(project_path: Path) -> StoryloomConfig:
    """Load configuration from ``storyloom.yaml``.

    A missing file yields the defaults (with environment overrides).

    Args:
        project_path: Path to the project root directory.

    Returns:
        StoryloomConfig instance.

    Raises:
        ConfigError: If the file is unreadable or holds invalid values.
    """
    config_path = project_path / CONFIG_FILE_NAME

    try:
        if not config_path.exists():
            return StoryloomConfig.from_dict({})

        yaml = YAML(typ="safe")
        with config_path.open("r", encoding="utf-8") as f:
            data = yaml.load(f)

        if data is None:
            return StoryloomConfig.from_dict({})
        if not isinstance(data, dict):
            raise ConfigError(config_path, "Top level must be a mapping")

        return StoryloomConfig.from_dict(dict(data))
    except Exception as e:
        if isinstance(e, ConfigError):
            raise
        raise ConfigError(config_path, str(e)) from e
