"""Shared diagnostic types used by the coherence and temporal validators."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal

Severity = Literal["error", "warning"]


@dataclass
class Finding:
    """One diagnostic produced by a validator.

    Attributes:
        kind: Identifier for the problem (e.g. ``broken_link``).
        severity: "error" or "warning".
        message: Human-readable description.
        affected_ids: Entity identifiers involved, without repeats.
        affected_characters: Character identifiers involved (temporal checks).
        timeline_ids: Timeline names involved (temporal checks).
    """

    kind: str
    severity: Severity
    message: str
    affected_ids: list[str] = field(default_factory=list)
    affected_characters: list[str] = field(default_factory=list)
    timeline_ids: list[str] = field(default_factory=list)


@dataclass
class FindingReport:
    """Findings plus per-check counters.

    Attributes:
        findings: Every finding, in the order checks produced them.
        counts: Named counters describing how much was inspected.
    """

    findings: list[Finding] = field(default_factory=list)
    counts: dict[str, int] = field(default_factory=dict)

    @property
    def errors(self) -> list[Finding]:
        """Findings with severity 'error'."""
        return [f for f in self.findings if f.severity == "error"]

    @property
    def warnings(self) -> list[Finding]:
        """Findings with severity 'warning'."""
        return [f for f in self.findings if f.severity == "warning"]

    @property
    def has_errors(self) -> bool:
        """True if any finding is an error."""
        return any(f.severity == "error" for f in self.findings)

    def of_kind(self, kind: str) -> list[Finding]:
        """Findings of one kind."""
        return [f for f in self.findings if f.kind == kind]

    @property
    def summary(self) -> str:
        """Human-readable summary of all findings."""
        errors = len(self.errors)
        warnings = len(self.warnings)
        if not errors and not warnings:
            return "no problems"

        parts: list[str] = []
        if errors:
            parts.append(f"{errors} errors")
        if warnings:
            parts.append(f"{warnings} warnings")
        return ", ".join(parts)
