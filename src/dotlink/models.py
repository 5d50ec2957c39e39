"""Shared models and enums for dotlink."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Mapping

from .operations import Operation
from .paths import PackagePath


class EntryKind(str, Enum):
    """Kinds of filesystem entries seen by the scanner and the port."""

    FILE = "file"
    DIR = "dir"
    SYMLINK = "symlink"


class ConflictPolicy(str, Enum):
    """What the planner does when a regular file or directory is in the way."""

    FAIL = "fail"
    BACKUP = "backup"
    OVERWRITE = "overwrite"
    SKIP = "skip"


class SymlinkMode(str, Enum):
    RELATIVE = "relative"
    ABSOLUTE = "absolute"


class ScanMode(str, Enum):
    """How far the orphan scan walks the target directory."""

    OFF = "off"
    SCOPED = "scoped"
    DEEP = "deep"


class PackageSource(str, Enum):
    MANAGED = "managed"
    ADOPTED = "adopted"


# ---------------------------------------------------------------------------
# Scanning


@dataclass(frozen=True, slots=True)
class InventoryEntry:
    """One entry of a package tree: where it lives and where it should appear."""

    source: PackagePath
    rel_source: str
    rel_target: str
    kind: EntryKind


@dataclass(frozen=True, slots=True)
class PackageInventory:
    """Ordered, pre-order listing of a package's linkable entries."""

    package: str
    root: PackagePath
    entries: tuple[InventoryEntry, ...]
    partial_dirs: frozenset[str] = frozenset()

    @property
    def empty(self) -> bool:
        return not self.entries


# ---------------------------------------------------------------------------
# Planning


class ConflictType(str, Enum):
    FILE_EXISTS = "file_exists"
    DIR_EXISTS = "dir_exists"
    WRONG_TARGET = "wrong_target"
    ALREADY_MANAGED = "already_managed"
    PERMISSION = "permission"
    CIRCULAR = "circular"


@dataclass(frozen=True, slots=True)
class Conflict:
    """A target path the planner refuses to clobber."""

    type: ConflictType
    path: str
    details: str
    context: Mapping[str, str] = field(default_factory=dict)
    suggestions: tuple[str, ...] = ()


class WarningSeverity(str, Enum):
    INFO = "info"
    CAUTION = "caution"
    DANGER = "danger"


@dataclass(frozen=True, slots=True)
class PlanWarning:
    message: str
    path: str | None = None
    severity: WarningSeverity = WarningSeverity.CAUTION


@dataclass(frozen=True, slots=True)
class PackageChange:
    """Manifest update a plan applies to one package once it has executed.

    ``links`` is ``None`` when the package is removed from the manifest.
    """

    name: str
    links: tuple[str, ...] | None
    source: PackageSource = PackageSource.MANAGED
    backups: Mapping[str, str] = field(default_factory=dict)
    directories: tuple[str, ...] = ()

    @property
    def removed(self) -> bool:
        return self.links is None


@dataclass(frozen=True, slots=True)
class Plan:
    """Operations plus the conflicts and warnings found while planning them.

    The operations carry no meaningful order; the executor derives one from
    their declared dependencies.
    """

    operations: tuple[Operation, ...] = ()
    conflicts: tuple[Conflict, ...] = ()
    warnings: tuple[PlanWarning, ...] = ()
    changes: tuple[PackageChange, ...] = ()

    @property
    def executable(self) -> bool:
        return not self.conflicts

    @property
    def empty(self) -> bool:
        return not self.operations

    @property
    def packages(self) -> tuple[str, ...]:
        return tuple(change.name for change in self.changes)

    def summary(self) -> dict[str, int]:
        counts = Counter(op.kind.value for op in self.operations)
        summary = dict(sorted(counts.items()))
        summary["operations"] = len(self.operations)
        summary["conflicts"] = len(self.conflicts)
        summary["warnings"] = len(self.warnings)
        return summary

    def change_for(self, package: str) -> PackageChange | None:
        for change in self.changes:
            if change.name == package:
                return change
        return None


# ---------------------------------------------------------------------------
# Execution


@dataclass(frozen=True, slots=True)
class OperationError:
    operation_id: str
    message: str


@dataclass(frozen=True, slots=True)
class ExecutionResult:
    """What the executor did, or would have done in a dry run."""

    executed: tuple[str, ...] = ()
    failed: tuple[str, ...] = ()
    rolled_back: tuple[str, ...] = ()
    errors: tuple[OperationError, ...] = ()
    planned: tuple[str, ...] = ()
    dry_run: bool = False
    batches: int = 0

    @property
    def success(self) -> bool:
        return not self.failed and not self.errors


# ---------------------------------------------------------------------------
# Status


@dataclass(frozen=True, slots=True)
class PackageStatus:
    name: str
    source: PackageSource
    installed_at: datetime
    links: tuple[str, ...]
    healthy: bool
    reason: str | None = None

    @property
    def link_count(self) -> int:
        return len(self.links)


# ---------------------------------------------------------------------------
# Diagnostics


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"

    @property
    def rank(self) -> int:
        return {"info": 0, "warning": 1, "error": 2}[self.value]


class HealthStatus(str, Enum):
    OK = "ok"
    WARNINGS = "warnings"
    ERRORS = "errors"


class IssueType(str, Enum):
    BROKEN_LINK = "broken_link"
    WRONG_TARGET = "wrong_target"
    PERMISSION = "permission"
    ORPHANED_LINK = "orphaned_link"
    MANIFEST_INCONSISTENT = "manifest_inconsistent"


class LinkState(str, Enum):
    HEALTHY = "healthy"
    BROKEN = "broken"
    WRONG_TARGET = "wrong_target"
    PERMISSION = "permission"


@dataclass(frozen=True, slots=True)
class LinkHealth:
    state: LinkState
    severity: Severity = Severity.INFO
    message: str = ""
    suggestion: str | None = None

    @property
    def healthy(self) -> bool:
        return self.state is LinkState.HEALTHY


@dataclass(frozen=True, slots=True)
class Issue:
    type: IssueType
    severity: Severity
    path: str
    message: str
    suggestion: str | None = None
    package: str | None = None


@dataclass(frozen=True, slots=True)
class Orphan:
    """A symlink in the target directory that no package claims."""

    path: str
    target: str
    broken: bool


@dataclass(frozen=True, slots=True)
class DiagnosticStats:
    total_links: int = 0
    managed_links: int = 0
    broken_links: int = 0
    orphaned_links: int = 0


@dataclass(frozen=True, slots=True)
class DiagnosticReport:
    overall: HealthStatus
    stats: DiagnosticStats
    issues: tuple[Issue, ...] = ()
    orphans: tuple[Orphan, ...] = ()
    truncated: bool = False

    @classmethod
    def from_issues(
        cls,
        issues: tuple[Issue, ...],
        stats: DiagnosticStats,
        *,
        orphans: tuple[Orphan, ...] = (),
        truncated: bool = False,
    ) -> "DiagnosticReport":
        worst = max((issue.severity.rank for issue in issues), default=-1)
        if not issues:
            overall = HealthStatus.OK
        elif worst >= Severity.ERROR.rank:
            overall = HealthStatus.ERRORS
        else:
            overall = HealthStatus.WARNINGS
        return cls(overall=overall, stats=stats, issues=issues, orphans=orphans, truncated=truncated)


class Confidence(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


@dataclass(frozen=True, slots=True)
class OrphanGroup:
    """Orphans sharing a heuristic category, e.g. links into ``~/.cargo/bin``."""

    category: str
    description: str
    confidence: Confidence
    patterns: tuple[str, ...]
    orphans: tuple[Orphan, ...]


class TriageDecision(str, Enum):
    IGNORE = "ignore"
    PATTERN = "pattern"
    ADOPT = "adopt"
    SKIP = "skip"


@dataclass(frozen=True, slots=True)
class TriageChoice:
    decision: TriageDecision
    package: str | None = None

    @classmethod
    def parse(cls, text: str) -> "TriageChoice":
        """Parse ``ignore``, ``pattern``, ``skip`` or ``adopt:<package>``."""

        raw, _, package = text.strip().partition(":")
        try:
            decision = TriageDecision(raw.lower())
        except ValueError as exc:
            raise ValueError(f"Unknown triage decision {text!r}") from exc
        if decision is TriageDecision.ADOPT and not package:
            raise ValueError("Adopting needs a package name, e.g. 'adopt:tools'")
        return cls(decision, package or None)


@dataclass(frozen=True, slots=True)
class TriageResult:
    ignored: int = 0
    patterns_added: tuple[str, ...] = ()
    adopted: int = 0
    skipped: int = 0
    errors: tuple[OperationError, ...] = ()
    groups: tuple[OrphanGroup, ...] = ()
    dry_run: bool = False
