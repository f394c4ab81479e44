"""Graph package - versioned, branchable story graph.

``GraphStore`` holds scenes, arcs and characters with referential integrity.
Around it sit read-only validators (coherence, temporal), the branch manager,
rollback history and the mirror reconciler, all of which work on whole-graph
snapshots.
"""

from storyloom.graph.audit import AuditSink, DecisionEntry, DecisionLedger, notify_audit
from storyloom.graph.branches import (
    MAIN_BRANCH,
    Branch,
    BranchManager,
    MergeConflict,
    MergeResult,
)
from storyloom.graph.coherence import CoherenceReport, CoherenceSolver
from storyloom.graph.errors import (
    EntityExistsError,
    EntityNotFoundError,
    EntityValidationError,
    FieldViolation,
    NameConflictError,
    PolicyViolationError,
    SnapshotFormatError,
    StoryGraphError,
)
from storyloom.graph.mirror import (
    DriftDifference,
    DriftMonitor,
    MirrorDrift,
    MirrorReconciler,
    SyncConflict,
    SyncReport,
)
from storyloom.graph.snapshots import (
    SnapshotManager,
    SnapshotRecord,
    export_snapshot,
    import_snapshot,
)
from storyloom.graph.store import GraphStats, GraphStore
from storyloom.graph.temporal import TemporalReport, TimelineManager
from storyloom.graph.validation_types import Finding, FindingReport

__all__ = [
    "MAIN_BRANCH",
    "AuditSink",
    "Branch",
    "BranchManager",
    "CoherenceReport",
    "CoherenceSolver",
    "DecisionEntry",
    "DecisionLedger",
    "DriftDifference",
    "DriftMonitor",
    "EntityExistsError",
    "EntityNotFoundError",
    "EntityValidationError",
    "FieldViolation",
    "Finding",
    "FindingReport",
    "GraphStats",
    "GraphStore",
    "MergeConflict",
    "MergeResult",
    "MirrorDrift",
    "MirrorReconciler",
    "NameConflictError",
    "PolicyViolationError",
    "SnapshotFormatError",
    "SnapshotManager",
    "SnapshotRecord",
    "StoryGraphError",
    "SyncConflict",
    "SyncReport",
    "TemporalReport",
    "TimelineManager",
    "export_snapshot",
    "import_snapshot",
    "notify_audit",
]
