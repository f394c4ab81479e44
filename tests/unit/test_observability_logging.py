"""Tests for structured logging configuration."""

from __future__ import annotations

import json
import logging
from typing import TYPE_CHECKING

import pytest

from storyloom.observability import close_file_logging, configure_logging, get_logger

if TYPE_CHECKING:
    from pathlib import Path


def test_configure_logging_sets_level_warning() -> None:
    """Default verbosity (0) sets WARNING level."""
    configure_logging(verbosity=0)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.WARNING


def test_configure_logging_verbose_sets_debug_root() -> None:
    """verbosity=1 opens the root logger; the console handler filters."""
    configure_logging(verbosity=1)

    root_logger = logging.getLogger()
    assert root_logger.level == logging.DEBUG


def test_get_logger_returns_bound_logger() -> None:
    """get_logger returns a structlog logger with expected methods."""
    logger = get_logger(__name__)

    assert hasattr(logger, "info")
    assert hasattr(logger, "debug")
    assert hasattr(logger, "warning")


def test_get_logger_auto_configures() -> None:
    """get_logger configures logging if not already done."""
    import storyloom.observability.logging as log_module

    log_module._configured = False

    logger = get_logger("test")

    assert log_module._configured is True
    assert logger is not None


def test_configure_logging_quiets_asyncio() -> None:
    """The asyncio logger stays at WARNING even in debug mode."""
    configure_logging(verbosity=2)

    assert logging.getLogger("asyncio").level == logging.WARNING


def test_configure_logging_with_file_logging(tmp_path: Path) -> None:
    """File logging creates the logs directory."""
    configure_logging(verbosity=0, log_to_file=True, project_path=tmp_path)

    assert (tmp_path / "logs").exists()
    close_file_logging()


def test_configure_logging_without_file_logging(tmp_path: Path) -> None:
    """Without file logging, no logs directory is created."""
    configure_logging(verbosity=0, log_to_file=False, project_path=tmp_path)

    assert not (tmp_path / "logs").exists()


def test_configure_logging_requires_project_path_for_file_logging() -> None:
    """log_to_file=True without project_path raises ValueError."""
    with pytest.raises(ValueError, match="project_path is required"):
        configure_logging(verbosity=0, log_to_file=True, project_path=None)


def test_close_file_logging_clears_handler(tmp_path: Path) -> None:
    """close_file_logging closes the handler and clears the reference."""
    import storyloom.observability.logging as log_module

    configure_logging(verbosity=0, log_to_file=True, project_path=tmp_path)
    assert log_module._file_handler is not None

    close_file_logging()

    assert log_module._file_handler is None


def test_jsonl_file_handler_writes_structlog_context(tmp_path: Path) -> None:
    """Event name and bound keys end up as JSON fields."""
    configure_logging(verbosity=2, log_to_file=True, project_path=tmp_path)

    logger = get_logger("test.context")
    logger.info("branch_created", branch="draft", parent="main")

    close_file_logging()

    log_file = tmp_path / "logs" / "storyloom.jsonl"
    assert log_file.exists()

    entries = [json.loads(line) for line in log_file.read_text().splitlines()]
    matching = [e for e in entries if e.get("message") == "branch_created"]
    assert matching, "Log entry with structlog context not found in JSONL"
    assert matching[0]["branch"] == "draft"
    assert matching[0]["parent"] == "main"
    assert matching[0]["level"] == "INFO"


def test_public_surface() -> None:
    """The package exports only the logging entry points commands use."""
    import storyloom.observability as observability

    assert sorted(observability.__all__) == [
        "close_file_logging",
        "configure_logging",
        "get_logger",
    ]
    assert not hasattr(observability, "get_logs_dir")
