"""Named branches over whole-graph snapshots.

A branch is a named, switchable pointer to a snapshot. ``main`` exists from
the start and is protected. Changes to the live store are only recorded on
a branch by an explicit ``save_branch``; switching discards unsaved work.

Merging compares the source branch's snapshot with the current branch's
snapshot, scene by scene and arc by arc:

- present in source only: included;
- present in current only: ``scene_deleted`` / ``arc_deleted`` conflict;
- present in both with different content: ``scene_modified`` /
  ``arc_modified`` conflict.

Any conflict aborts the merge with nothing applied.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Literal

from storyloom.graph.audit import notify_audit
from storyloom.graph.diff import differing_fields
from storyloom.graph.errors import (
    EntityNotFoundError,
    EntityValidationError,
    FieldViolation,
    NameConflictError,
    PolicyViolationError,
)
from storyloom.models.base import utc_now
from storyloom.models.snapshot import GraphSnapshot, SnapshotMetadata, compute_checksum
from storyloom.observability.logging import get_logger

if TYPE_CHECKING:
    from pydantic import BaseModel

    from storyloom.graph.audit import AuditSink
    from storyloom.graph.store import GraphStore

log = get_logger(__name__)

MAIN_BRANCH = "main"

ConflictType = Literal["scene_modified", "scene_deleted", "arc_modified", "arc_deleted"]


@dataclass
class Branch:
    """A named snapshot with lineage.

    Attributes:
        name: Unique branch name.
        snapshot: Last saved state of the branch.
        parent: Branch that was current when this one was created.
        protected: Protected branches cannot be deleted.
    """

    name: str
    snapshot: GraphSnapshot
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    parent: str | None = None
    protected: bool = False
    description: str | None = None
    author: str | None = None
    tags: list[str] = field(default_factory=list)


@dataclass
class MergeConflict:
    """One reason a merge cannot proceed automatically."""

    type: ConflictType
    entity_id: str
    message: str
    fields: list[str] = field(default_factory=list)


@dataclass
class MergeResult:
    """Outcome of a merge.

    Attributes:
        success: True if the merge was applied.
        conflicts: Conflicts that blocked the merge.
        merged_snapshot: The applied snapshot, on success.
    """

    success: bool
    conflicts: list[MergeConflict] = field(default_factory=list)
    merged_snapshot: GraphSnapshot | None = None


def _entity_conflicts(
    kind: Literal["scene", "arc"],
    source: dict[str, BaseModel],
    current: dict[str, BaseModel],
) -> list[MergeConflict]:
    conflicts: list[MergeConflict] = []
    for entity_id, source_entity in source.items():
        current_entity = current.get(entity_id)
        if current_entity is None:
            continue
        changed = differing_fields(current_entity, source_entity)
        if changed:
            conflicts.append(
                MergeConflict(
                    type=f"{kind}_modified",  # type: ignore[arg-type]
                    entity_id=entity_id,
                    message=f"{kind.capitalize()} {entity_id} differs between branches",
                    fields=changed,
                )
            )
    for entity_id in current:
        if entity_id not in source:
            conflicts.append(
                MergeConflict(
                    type=f"{kind}_deleted",  # type: ignore[arg-type]
                    entity_id=entity_id,
                    message=f"{kind.capitalize()} {entity_id} exists only on the current branch",
                )
            )
    return conflicts


class BranchManager:
    """State machine over named branches with a current-branch pointer."""

    def __init__(self, store: GraphStore | None = None, audit: AuditSink | None = None) -> None:
        """Create the manager with a protected ``main`` branch.

        Args:
            store: Store whose current state seeds ``main``; empty if omitted.
            audit: Optional sink notified of create, merge and delete.
        """
        snapshot = store.create_snapshot() if store is not None else GraphSnapshot.empty()
        self._branches: dict[str, Branch] = {
            MAIN_BRANCH: Branch(
                name=MAIN_BRANCH,
                snapshot=snapshot,
                protected=True,
                description="Main branch",
            )
        }
        self._current = MAIN_BRANCH
        self._audit = audit

    def _require(self, name: str, context: str) -> Branch:
        branch = self._branches.get(name)
        if branch is None:
            raise EntityNotFoundError("branch", name, list(self._branches), context)
        return branch

    def create_branch(
        self,
        name: str,
        store: GraphStore,
        description: str | None = None,
        author: str | None = None,
        tags: list[str] | None = None,
    ) -> Branch:
        """Create a branch from the current state of *store*.

        The current branch becomes the new branch's parent. The current
        branch pointer does not move.

        Raises:
            EntityValidationError: If the name is blank.
            NameConflictError: If the name is ``main`` or already taken.
        """
        if not name.strip():
            raise EntityValidationError("branch", name, [FieldViolation("name", "must not be blank")])
        if name == MAIN_BRANCH:
            raise NameConflictError("create_branch", name, "name is reserved")
        if name in self._branches:
            raise NameConflictError("create_branch", name, "a branch with this name exists")

        branch = Branch(
            name=name,
            snapshot=store.create_snapshot(),
            parent=self._current,
            description=description,
            author=author,
            tags=list(tags or []),
        )
        self._branches[name] = branch
        log.info("branch_created", branch=name, parent=self._current)
        notify_audit(
            self._audit,
            "BRANCH",
            f"Created branch '{name}' from '{self._current}'",
            author or "system",
            {"branch": name, "parent": self._current},
        )
        return branch

    def switch_branch(self, name: str, store: GraphStore) -> None:
        """Load *name*'s snapshot into *store* and make it current.

        Unsaved changes in *store* are discarded.

        Raises:
            EntityNotFoundError: If the branch doesn't exist.
        """
        branch = self._require(name, "switch_branch")
        store.load_snapshot(branch.snapshot)
        previous, self._current = self._current, name
        log.info("branch_switched", branch=name, previous=previous)

    def save_branch(self, store: GraphStore) -> Branch:
        """Overwrite the current branch's snapshot with *store*'s state."""
        branch = self._branches[self._current]
        branch.snapshot = store.create_snapshot()
        branch.updated_at = utc_now()
        log.debug("branch_saved", branch=branch.name)
        return branch

    def merge_branch(self, source: str, store: GraphStore) -> MergeResult:
        """Merge branch *source* into the current branch.

        On success the merged snapshot is loaded into *store* and saved as
        the current branch. On conflict nothing changes.

        Raises:
            EntityNotFoundError: If the source branch doesn't exist.
            PolicyViolationError: If *source* is the current branch.
        """
        source_branch = self._require(source, "merge_branch source")
        if source == self._current:
            raise PolicyViolationError("merge_branch", source, "cannot merge a branch into itself")
        target_branch = self._branches[self._current]
        src, cur = source_branch.snapshot, target_branch.snapshot

        conflicts = _entity_conflicts("scene", src.scene_map(), cur.scene_map())  # type: ignore[arg-type]
        conflicts += _entity_conflicts("arc", src.arc_map(), cur.arc_map())  # type: ignore[arg-type]
        if conflicts:
            log.info(
                "merge_conflicted",
                source=source,
                target=self._current,
                conflicts=len(conflicts),
            )
            return MergeResult(success=False, conflicts=conflicts)

        # Conflict-free: the source's scenes and arcs contain the current
        # ones unchanged. Characters come from both, source winning.
        characters = cur.character_map()
        characters.update(src.character_map())
        scenes, arcs = list(src.scenes), list(src.arcs)
        merged_characters = list(characters.values())
        merged = GraphSnapshot(
            scenes=scenes,
            arcs=arcs,
            characters=merged_characters,
            metadata=SnapshotMetadata(
                version=cur.metadata.version,
                checksum=compute_checksum(scenes, arcs, merged_characters),
            ),
        )
        store.load_snapshot(merged)
        self.save_branch(store)

        log.info("branch_merged", source=source, target=self._current, scenes=len(scenes))
        notify_audit(
            self._audit,
            "MERGE",
            f"Merged '{source}' into '{self._current}'",
            "system",
            {"source": source, "target": self._current},
        )
        return MergeResult(success=True, merged_snapshot=merged)

    def delete_branch(self, name: str) -> None:
        """Delete a branch.

        Raises:
            EntityNotFoundError: If the branch doesn't exist.
            PolicyViolationError: If the branch is protected or current.
        """
        branch = self._require(name, "delete_branch")
        if branch.protected:
            raise PolicyViolationError("delete_branch", name, "branch is protected")
        if name == self._current:
            raise PolicyViolationError("delete_branch", name, "branch is checked out")
        del self._branches[name]
        log.info("branch_deleted", branch=name)
        notify_audit(self._audit, "STOP", f"Deleted branch '{name}'", "system", {"branch": name})

    def list_branches(self) -> list[Branch]:
        """All branches in creation order."""
        return list(self._branches.values())

    def get_branch(self, name: str) -> Branch | None:
        """Get a branch, or None if not found."""
        return self._branches.get(name)

    def current_branch(self) -> Branch:
        """The checked-out branch."""
        return self._branches[self._current]

    @property
    def current_branch_name(self) -> str:
        """Name of the checked-out branch."""
        return self._current

    def branch_exists(self, name: str) -> bool:
        """Check whether a branch exists."""
        return name in self._branches
