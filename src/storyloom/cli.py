"""storyloom CLI - typer application entry point.

Commands operate on snapshot files written by ``export_snapshot``.
"""

from __future__ import annotations

import asyncio
import atexit
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from storyloom.config import CONFLICT_STRATEGIES, ConfigError, StoryloomConfig, load_config
from storyloom.graph.coherence import CoherenceSolver
from storyloom.graph.errors import SnapshotFormatError
from storyloom.graph.mirror import MirrorReconciler
from storyloom.graph.snapshots import SnapshotManager, export_snapshot, import_snapshot
from storyloom.graph.store import GraphStore
from storyloom.observability import close_file_logging, configure_logging, get_logger

if TYPE_CHECKING:
    from storyloom.graph.validation_types import FindingReport
    from storyloom.models.snapshot import GraphSnapshot

# Load environment variables from .env file
load_dotenv()

app = typer.Typer(
    name="storyloom",
    help="storyloom: versioned, branchable story graphs.",
    no_args_is_help=True,
)
console = Console()

# Global state for logging flags (set by callback, used by commands)
_verbose: int = 0
_log_enabled: bool = False
_project_dir: Path = Path()


@app.callback()
def main(
    verbose: Annotated[
        int,
        typer.Option(
            "-v",
            "--verbose",
            count=True,
            help="Increase verbosity: -v for INFO, -vv for DEBUG.",
        ),
    ] = 0,
    log: Annotated[
        bool,
        typer.Option("--log", help="Enable file logging to {project}/logs/storyloom.jsonl."),
    ] = False,
    project: Annotated[
        Path,
        typer.Option(
            "--project",
            "-p",
            help="Project directory holding storyloom.yaml (default: current directory).",
            envvar="STORYLOOM_PROJECT",
        ),
    ] = Path(),
) -> None:
    """storyloom: versioned, branchable story graphs."""
    global _verbose, _log_enabled, _project_dir
    _verbose = verbose
    _log_enabled = log
    _project_dir = project

    configure_logging(verbosity=verbose, log_to_file=log, project_path=project if log else None)
    if log:
        atexit.register(close_file_logging)


@app.command()
def version() -> None:
    """Show version information."""
    from storyloom import __version__

    console.print(f"storyloom v{__version__}")


def _load_config() -> StoryloomConfig:
    try:
        return load_config(_project_dir)
    except ConfigError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


def _read_snapshot(path: Path) -> GraphSnapshot:
    """Read a snapshot file, exiting with an error message on failure."""
    if not path.exists():
        console.print(f"[red]Error:[/red] File not found: {path}")
        raise typer.Exit(1)
    try:
        return import_snapshot(path)
    except SnapshotFormatError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


def _read_store(path: Path) -> GraphStore:
    """Load a snapshot file into a fresh store, exiting on failure."""
    try:
        return GraphStore(_read_snapshot(path))
    except SnapshotFormatError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e


def _print_findings(report: FindingReport) -> None:
    if not report.findings:
        return
    table = Table(title="Findings")
    table.add_column("Severity")
    table.add_column("Kind")
    table.add_column("Message")
    for finding in report.findings:
        style = "red" if finding.severity == "error" else "yellow"
        table.add_row(f"[{style}]{finding.severity}[/{style}]", finding.kind, finding.message)
    console.print(table)


@app.command()
def check(
    file: Annotated[Path, typer.Argument(help="Snapshot JSON file")],
) -> None:
    """Check a snapshot for structural coherence.

    Exits with status 1 when any error is found.
    """
    log = get_logger(__name__)
    snapshot = _read_snapshot(file)
    report = CoherenceSolver().check(snapshot)
    log.debug("cli_check", file=str(file), findings=len(report.findings))

    _print_findings(report)
    counts = ", ".join(f"{k}={v}" for k, v in report.counts.items())
    console.print(f"[dim]{counts}[/dim]")
    if report.coherent:
        console.print(f"[green]✓[/green] Coherent ({report.summary})")
    else:
        console.print(f"[red]✗[/red] Incoherent ({report.summary})")
        raise typer.Exit(1)


@app.command()
def drift(
    base: Annotated[Path, typer.Argument(help="Base snapshot JSON file")],
    other: Annotated[Path, typer.Argument(help="Compared snapshot JSON file")],
) -> None:
    """Score the divergence between two snapshots."""
    config = _load_config()
    reconciler = MirrorReconciler(config.mirror)
    result = reconciler.calculate_drift(_read_snapshot(base), _read_snapshot(other))

    if result.differences:
        table = Table(title="Differences")
        table.add_column("Type")
        table.add_column("Entity")
        table.add_column("Weight", justify="right")
        table.add_column("Fields")
        for diff in result.differences:
            table.add_row(diff.type, diff.entity_id, str(diff.weight), ", ".join(diff.fields))
        console.print(table)

    auto = "yes" if reconciler.should_auto_sync(result) else "no"
    console.print(
        f"Drift score: [bold]{result.score}[/bold] / {config.mirror.weights.max_score} "
        f"(auto-sync: {auto})"
    )


@app.command()
def sync(
    source: Annotated[Path, typer.Argument(help="Source snapshot JSON file")],
    target: Annotated[Path, typer.Argument(help="Target snapshot JSON file")],
    output: Annotated[
        Path | None,
        typer.Option(
            "--output", "-o", help="Where to write the synchronized target (default: target)."
        ),
    ] = None,
    strategy: Annotated[
        str | None,
        typer.Option(
            "--strategy", "-s", help=f"Conflict strategy: {', '.join(CONFLICT_STRATEGIES)}."
        ),
    ] = None,
) -> None:
    """Bring the target snapshot in line with the source snapshot.

    With automatic snapshots enabled in storyloom.yaml, a sync that leaves
    unresolved conflicts is rolled back and the target is written unchanged.
    """
    if strategy is not None and strategy not in CONFLICT_STRATEGIES:
        console.print(f"[red]Error:[/red] Unknown strategy '{strategy}'")
        raise typer.Exit(1)

    config = _load_config()
    source_snapshot = _read_snapshot(source)
    store = _read_store(target)
    reconciler = MirrorReconciler(config.mirror)
    snapshots = SnapshotManager.from_config(config.snapshots)
    checkpoint = (
        snapshots.create_auto_snapshot(store, "sync") if snapshots.auto_snapshots_enabled else None
    )
    report = asyncio.run(reconciler.synchronize(source_snapshot, store, strategy=strategy))  # type: ignore[arg-type]
    if not report.success and checkpoint is not None:
        snapshots.rollback(checkpoint.id, store)
        console.print("[yellow]Unresolved conflicts; target rolled back[/yellow]")

    destination = output or target
    export_snapshot(store.create_snapshot(), destination)

    for name, count in sorted(report.changes.items()):
        console.print(f"  {name}: {count}")
    for conflict in report.conflicts:
        mark = "[yellow]~[/yellow]" if conflict.resolved else "[red]![/red]"
        console.print(f"  {mark} {conflict.entity_id}: {conflict.reason}")
    before = report.drift_before.score if report.drift_before else 0
    after = report.drift_after.score if report.drift_after else 0
    console.print(f"Drift {before} → {after}; wrote {destination}")
    if not report.success:
        raise typer.Exit(1)


@app.command()
def stats(
    file: Annotated[Path, typer.Argument(help="Snapshot JSON file")],
) -> None:
    """Show entity counts and costs for a snapshot."""
    snapshot = _read_snapshot(file)
    try:
        summary = GraphStore(snapshot).stats()
    except SnapshotFormatError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    table = Table(title=f"{file.name} ({snapshot.metadata.version})")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Scenes", str(summary.scene_count))
    table.add_row("Arcs", str(summary.arc_count))
    table.add_row("Characters", str(summary.character_count))
    table.add_row("Total cost", f"{summary.total_cost:.1f}")
    table.add_row("Avg scenes per arc", f"{summary.avg_scenes_per_arc:.1f}")
    console.print(table)


if __name__ == "__main__":
    app()
