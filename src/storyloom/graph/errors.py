"""Error types for story graph operations.

Three families of errors abort the triggering call and leave state untouched:

- validation errors: malformed input (empty required field, number out of
  range, malformed snapshot);
- reference errors: an operation named an identifier that does not exist
  (scene, arc, character, branch, snapshot, timeline);
- policy errors: a structurally disallowed operation (deleting a protected or
  checked-out branch, reusing a reserved or taken name).

Diagnostic findings (cycles, broken links, conflicts, ...) are never raised;
they are returned as data by the solvers.

Every error carries the identifier, field and violated bound involved and can
render itself as an actionable message via ``to_feedback()``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from difflib import get_close_matches
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from pydantic import ValidationError

EntityKind = Literal["scene", "arc", "character", "branch", "snapshot", "timeline"]


def split_scoped_id(scoped_id: str) -> tuple[str, str]:
    """Split 'kind::raw' into (kind, raw). Unscoped ids give ('', id).

    Examples:
        >>> split_scoped_id("scene::ab12")
        ('scene', 'ab12')
        >>> split_scoped_id("main")
        ('', 'main')
    """
    if "::" in scoped_id:
        kind, raw = scoped_id.split("::", 1)
        return kind, raw
    return "", scoped_id


class StoryGraphError(Exception):
    """Base class for rejected story graph operations.

    Subclasses must implement to_feedback() to provide an actionable message
    for whoever renders the rejection.
    """

    def to_feedback(self) -> str:
        """Format the error as an actionable, human-readable message."""
        raise NotImplementedError


@dataclass
class FieldViolation:
    """One failed field constraint.

    Attributes:
        field: Dotted path of the offending field (e.g. ``relationships.0.strength``).
        message: What is wrong.
        bound: The violated constraint, when there is one (e.g. ``<= 10``).
    """

    field: str
    message: str
    bound: str | None = None

    def __str__(self) -> str:
        text = f"{self.field}: {self.message}"
        if self.bound:
            text += f" (bound: {self.bound})"
        return text


_BOUND_KEYS = ("ge", "gt", "le", "lt", "min_length", "max_length", "pattern", "expected")
_BOUND_SYMBOLS = {"ge": ">=", "gt": ">", "le": "<=", "lt": "<"}


def violations_from_pydantic(exc: ValidationError) -> list[FieldViolation]:
    """Translate a pydantic ValidationError into field violations."""
    violations: list[FieldViolation] = []
    for err in exc.errors():
        loc = ".".join(str(part) for part in err.get("loc", ())) or "<root>"
        ctx = err.get("ctx") or {}
        bound = None
        for key in _BOUND_KEYS:
            if key in ctx:
                bound = f"{_BOUND_SYMBOLS.get(key, key)} {ctx[key]}"
                break
        violations.append(FieldViolation(field=loc, message=err.get("msg", ""), bound=bound))
    return violations


@dataclass
class EntityValidationError(StoryGraphError):
    """Raised when an entity fails field validation before insertion or update.

    Attributes:
        kind: Entity kind being validated.
        entity_id: Identifier of the entity (may be a generated id not yet stored).
        violations: Each failed constraint.
    """

    kind: EntityKind
    entity_id: str
    violations: list[FieldViolation] = field(default_factory=list)

    def __post_init__(self) -> None:
        details = "; ".join(str(v) for v in self.violations) or "invalid"
        super().__init__(f"Invalid {self.kind} '{self.entity_id}': {details}")

    @property
    def fields(self) -> list[str]:
        """Names of the offending fields."""
        return [v.field for v in self.violations]

    def to_feedback(self) -> str:
        """Format as actionable feedback."""
        lines = [
            f"## Validation Error: {self.kind} `{self.entity_id}`",
            "",
            "**Problems**:",
        ]
        for v in self.violations:
            line = f"  - `{v.field}`: {v.message}"
            if v.bound:
                line += f" (must satisfy {v.bound})"
            lines.append(line)
        lines.extend(["", "Nothing was changed. Fix the listed fields and retry."])
        return "\n".join(lines)


@dataclass
class SnapshotFormatError(StoryGraphError):
    """Raised when a snapshot cannot be loaded (duplicate ids, bad payload).

    Attributes:
        reason: What is wrong with the snapshot.
        entity_id: Offending identifier, when one can be named.
    """

    reason: str
    entity_id: str = ""

    def __post_init__(self) -> None:
        msg = f"Malformed snapshot: {self.reason}"
        if self.entity_id:
            msg += f" ({self.entity_id})"
        super().__init__(msg)

    def to_feedback(self) -> str:
        """Format as actionable feedback."""
        return f"""## Error: Malformed Snapshot

**Problem**: {self.reason}
**Identifier**: `{self.entity_id or "n/a"}`

The current state was left untouched.
"""


@dataclass
class EntityNotFoundError(StoryGraphError):
    """Raised when an operation references an identifier that does not exist.

    Attributes:
        kind: Kind of the missing entity.
        entity_id: The identifier that was referenced.
        available: Valid identifiers of that kind.
        context: Where the reference occurred.
    """

    kind: EntityKind
    entity_id: str
    available: list[str] = field(default_factory=list)
    context: str = ""

    def __post_init__(self) -> None:
        msg = f"{self.kind.capitalize()} '{self.entity_id}' not found"
        if self.context:
            msg += f" ({self.context})"
        super().__init__(msg)

    def suggestions(self) -> list[str]:
        """Existing identifiers that look like typos of the requested one."""
        # Compare raw ids so the shared kind prefix does not inflate similarity
        prefix, raw_id = split_scoped_id(self.entity_id)
        raw_available = [split_scoped_id(a)[1] for a in self.available]
        matches = get_close_matches(raw_id, raw_available, n=3, cutoff=0.6)
        if prefix:
            return [f"{prefix}::{m}" for m in matches]
        return matches

    def to_feedback(self) -> str:
        """Format as actionable feedback."""
        lines = [
            f"## Reference Error: {self.kind.capitalize()} Not Found",
            "",
            f"**You referenced**: `{self.entity_id}`",
        ]
        if self.context:
            lines.append(f"**Context**: {self.context}")

        suggestions = self.suggestions()
        if suggestions:
            lines.extend(["", "**Did you mean one of these?**"])
            lines.extend(f"  - `{s}`" for s in suggestions)

        if self.available:
            lines.extend(["", f"**Valid {self.kind} IDs**:"])
            for a in sorted(self.available)[:20]:
                lines.append(f"  - `{a}`")
            if len(self.available) > 20:
                lines.append(f"  - ... and {len(self.available) - 20} more")

        return "\n".join(lines)


@dataclass
class PolicyViolationError(StoryGraphError):
    """Raised when a structural operation is not allowed.

    Attributes:
        operation: The rejected operation (e.g. ``delete_branch``).
        target: The identifier or name the operation targeted.
        reason: Why it is not allowed.
    """

    operation: str
    target: str
    reason: str

    def __post_init__(self) -> None:
        super().__init__(f"Cannot {self.operation} '{self.target}': {self.reason}")

    def to_feedback(self) -> str:
        """Format as actionable feedback."""
        return f"""## Policy Error: {self.operation}

**Target**: `{self.target}`
**Problem**: {self.reason}

Nothing was changed.
"""


@dataclass
class NameConflictError(PolicyViolationError):
    """Raised when a reserved or already-taken name is reused."""


@dataclass
class EntityExistsError(PolicyViolationError):
    """Raised when inserting an entity whose identifier is already stored."""
