"""Diagnostics: link health, manifest consistency, orphan scanning and triage grouping."""

from __future__ import annotations

import errno
import fnmatch
import logging
import os
import posixpath
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable

from .cancellation import CancelToken
from .errors import InvalidPathError, PermissionDeniedError
from .filesystem import FileSystem
from .ignore import MANIFEST_FILENAME, IgnoreSet
from .manifest import Manifest
from .models import (
    Confidence,
    DiagnosticReport,
    DiagnosticStats,
    EntryKind,
    Issue,
    IssueType,
    LinkHealth,
    LinkState,
    Orphan,
    OrphanGroup,
    ScanMode,
    Severity,
)
from .paths import PackagePath, TargetPath
from .planner import resolve_link

logger = logging.getLogger(__name__)

DEFAULT_SKIP_PATTERNS: tuple[str, ...] = (
    ".git",
    ".svn",
    ".hg",
    "node_modules",
    "__pycache__",
    ".cache",
    ".venv",
    ".Trash",
    "Library",
)
SCOPED_DEFAULT_DEPTH = 3
DEEP_DEFAULT_DEPTH = 10


@dataclass(frozen=True, slots=True)
class ScanOptions:
    mode: ScanMode = ScanMode.SCOPED
    max_depth: int | None = None
    max_workers: int | None = None
    max_issues: int = 0
    skip_patterns: tuple[str, ...] = DEFAULT_SKIP_PATTERNS

    @property
    def depth(self) -> int:
        if self.max_depth is not None:
            return self.max_depth
        return DEEP_DEFAULT_DEPTH if self.mode is ScanMode.DEEP else SCOPED_DEFAULT_DEPTH

    @property
    def workers(self) -> int:
        return max(1, self.max_workers or os.cpu_count() or 1)


def _within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip("/") + "/")


def scan_roots(links: Iterable[str]) -> list[str]:
    """Directories a scoped scan starts from: every ancestor of a managed link.

    The target directory itself is always included as ``""``. A root below
    another root is dropped since walking the outer one reaches it.
    """

    candidates = {""}
    for rel in links:
        parent = posixpath.dirname(rel)
        while parent:
            candidates.add(parent)
            parent = posixpath.dirname(parent)
    roots: list[str] = []
    for root in sorted(candidates, key=lambda rel: (rel.count("/"), rel)):
        if not any(outer == "" or _within(root, outer) for outer in roots):
            roots.append(root)
    return roots


def remanage_hint(package: str) -> str:
    return f"Run 'dotlink remanage {package}' to restore link"


def pattern_matches(pattern: str, rel: str, target: str) -> bool:
    """Match a doctor ignore pattern against a link's relative path or its target."""

    if IgnoreSet([pattern]).is_ignored(rel):
        return True
    return fnmatch.fnmatchcase(target, pattern)


class Diagnostics:
    """Read-only health checks over the target directory and the manifest."""

    def __init__(
        self,
        fs: FileSystem,
        *,
        target_dir: TargetPath,
        package_dir: PackagePath,
        scan: ScanOptions | None = None,
    ) -> None:
        self.fs = fs
        self.target_dir = target_dir
        self.package_dir = package_dir
        self.scan = scan or ScanOptions()

    # links --------------------------------------------------------------

    def check_link(self, token: CancelToken, package: str, rel: str, package_root: PackagePath) -> LinkHealth:
        """Classify one managed link."""

        path = str(self.target_dir.join(rel))
        try:
            info = self.fs.lstat(token, path)
        except FileNotFoundError:
            return LinkHealth(LinkState.BROKEN, Severity.ERROR, "Link does not exist", remanage_hint(package))
        except PermissionDeniedError:
            return LinkHealth(
                LinkState.PERMISSION,
                Severity.ERROR,
                f"Permission denied reading {rel}",
                f"Check the permissions of {posixpath.dirname(path)}",
            )
        if not info.is_symlink:
            kind = "directory" if info.is_dir else "regular file"
            return LinkHealth(
                LinkState.WRONG_TARGET,
                Severity.ERROR,
                f"Expected symlink but found {kind}",
                f"Move {rel} aside, then run 'dotlink remanage {package}'",
            )
        try:
            text = self.fs.read_link(token, path)
        except PermissionDeniedError:
            return LinkHealth(LinkState.PERMISSION, Severity.ERROR, f"Permission denied reading link {rel}")
        resolved = resolve_link(path, text)
        if not _within(resolved, str(package_root)):
            return LinkHealth(
                LinkState.WRONG_TARGET,
                Severity.ERROR,
                f"Link points outside package '{package}': {text}",
                remanage_hint(package),
            )
        if not self.target_exists(token, path):
            return LinkHealth(
                LinkState.BROKEN, Severity.ERROR, f"Link target does not exist: {text}", remanage_hint(package)
            )
        return LinkHealth(LinkState.HEALTHY)

    def target_exists(self, token: CancelToken, path: str) -> bool:
        try:
            self.fs.stat(token, path)
        except FileNotFoundError:
            return False
        except OSError as exc:
            if exc.errno == errno.ELOOP:
                return False
            raise
        return True

    def check_links(self, token: CancelToken, manifest: Manifest) -> list[Issue]:
        issues: list[Issue] = []
        for name in manifest.package_names():
            info = manifest.packages[name]
            base = PackagePath(info.package_dir) if info.package_dir else self.package_dir
            root = base.join(name)
            for rel in info.links:
                token.raise_if_cancelled()
                try:
                    health = self.check_link(token, name, rel, root)
                except InvalidPathError:
                    # reported by check_manifest
                    continue
                if health.healthy:
                    continue
                issue_type = {
                    LinkState.BROKEN: IssueType.BROKEN_LINK,
                    LinkState.WRONG_TARGET: IssueType.WRONG_TARGET,
                    LinkState.PERMISSION: IssueType.PERMISSION,
                }[health.state]
                issues.append(Issue(issue_type, health.severity, rel, health.message, health.suggestion, name))
        return issues

    # manifest -----------------------------------------------------------

    def check_manifest(self, manifest: Manifest) -> list[Issue]:
        """Report internal inconsistencies of the manifest document."""

        issues: list[Issue] = []
        owners: dict[str, str] = {}
        for name in manifest.package_names():
            info = manifest.packages[name]
            if info.link_count != len(info.links):
                issues.append(
                    Issue(
                        IssueType.MANIFEST_INCONSISTENT,
                        Severity.WARNING,
                        name,
                        f"Package '{name}' records link_count {info.link_count} but lists {len(info.links)} link(s)",
                        f"Run 'dotlink remanage {name}' to rewrite its entry",
                        name,
                    )
                )
            for rel in info.links:
                if rel.startswith("/") or ".." in rel.split("/"):
                    issues.append(
                        Issue(
                            IssueType.MANIFEST_INCONSISTENT,
                            Severity.WARNING,
                            rel,
                            f"Link path {rel!r} is not relative to the target directory",
                            package=name,
                        )
                    )
                    continue
                other = owners.setdefault(rel, name)
                if other != name:
                    issues.append(
                        Issue(
                            IssueType.MANIFEST_INCONSISTENT,
                            Severity.WARNING,
                            rel,
                            f"{rel} is claimed by both '{other}' and '{name}'",
                            f"Run 'dotlink unmanage {name}' and manage it again",
                            name,
                        )
                    )
        for name in sorted(set(manifest.hashes) - set(manifest.packages)):
            issues.append(
                Issue(
                    IssueType.MANIFEST_INCONSISTENT,
                    Severity.INFO,
                    name,
                    f"Content hash recorded for package '{name}' which is not installed",
                )
            )
        return issues

    # orphans ------------------------------------------------------------

    def find_orphans(self, token: CancelToken, manifest: Manifest, *, limit: int = 0) -> tuple[list[Orphan], bool]:
        """Return unmanaged symlinks under the target directory, sorted by path.

        ``limit`` stops the walk once that many orphans were found; the second
        element of the result tells whether it did.
        """

        if self.scan.mode is ScanMode.OFF:
            return [], False
        managed = set(manifest.link_owners())
        walker = _OrphanWalk(self, token, manifest, managed, limit)
        if self.scan.mode is ScanMode.DEEP:
            roots = [""]
        else:
            roots = scan_roots(rel for rel in managed if not rel.startswith("/"))
        walker.run(roots)
        orphans = sorted(walker.orphans.values(), key=lambda orphan: orphan.path)
        if limit:
            orphans = orphans[:limit]
        logger.debug("Orphan scan (%s) found %d orphan(s)", self.scan.mode.value, len(orphans))
        return orphans, walker.stopped.is_set()

    def is_ignored(self, manifest: Manifest, orphan: Orphan) -> bool:
        if manifest.is_link_ignored(orphan.path, orphan.target):
            return True
        if manifest.doctor is None:
            return False
        return any(pattern_matches(pattern, orphan.path, orphan.target) for pattern in manifest.doctor.ignored_patterns)

    def orphan_issue(self, orphan: Orphan) -> Issue:
        if orphan.broken:
            return Issue(
                IssueType.ORPHANED_LINK,
                Severity.ERROR,
                orphan.path,
                f"Broken unmanaged symlink to {orphan.target}",
                f"Remove it or run 'dotlink doctor ignore {orphan.path}'",
            )
        return Issue(
            IssueType.ORPHANED_LINK,
            Severity.WARNING,
            orphan.path,
            f"Unmanaged symlink to {orphan.target}",
            f"Run 'dotlink adopt {orphan.path} --package <name>' or 'dotlink doctor ignore {orphan.path}'",
        )

    # report -------------------------------------------------------------

    def diagnose(self, token: CancelToken, manifest: Manifest) -> DiagnosticReport:
        issues = self.check_manifest(manifest)
        link_issues = self.check_links(token, manifest)
        issues.extend(link_issues)

        max_issues = self.scan.max_issues
        truncated = False
        orphans: list[Orphan] = []
        if max_issues and len(issues) >= max_issues:
            truncated = len(issues) > max_issues
            issues = issues[:max_issues]
        else:
            budget = max_issues - len(issues) if max_issues else 0
            orphans, truncated = self.find_orphans(token, manifest, limit=budget)
            issues.extend(self.orphan_issue(orphan) for orphan in orphans)

        managed = sum(len(info.links) for info in manifest.packages.values())
        stats = DiagnosticStats(
            total_links=managed + len(orphans),
            managed_links=managed,
            broken_links=sum(1 for issue in link_issues if issue.type is IssueType.BROKEN_LINK)
            + sum(1 for orphan in orphans if orphan.broken),
            orphaned_links=len(orphans),
        )
        report = DiagnosticReport.from_issues(tuple(issues), stats, orphans=tuple(orphans), truncated=truncated)
        logger.info("Doctor finished: %s with %d issue(s)", report.overall.value, len(report.issues))
        return report


class _OrphanWalk:
    """One orphan scan: a worker pool over subdirectories of the scan roots.

    Symlinks are recorded but never followed, so link cycles cannot recurse.
    """

    def __init__(
        self,
        diagnostics: Diagnostics,
        token: CancelToken,
        manifest: Manifest,
        managed: set[str],
        limit: int,
    ) -> None:
        self.fs = diagnostics.fs
        self.diagnostics = diagnostics
        self.target = str(diagnostics.target_dir)
        self.token = token
        self.manifest = manifest
        self.managed = managed
        self.limit = limit
        self.skip = diagnostics.scan.skip_patterns
        self.depth = diagnostics.scan.depth
        self.workers = diagnostics.scan.workers
        self.orphans: dict[str, Orphan] = {}
        self.visited: set[str] = set()
        self.lock = threading.Lock()
        self.stopped = threading.Event()

    def run(self, roots: Iterable[str]) -> None:
        subdirs: list[tuple[str, int]] = []
        for root in roots:
            subdirs.extend(self.visit(root, root.count("/") + 1 if root else 0))
        if not subdirs:
            return
        with ThreadPoolExecutor(max_workers=min(self.workers, len(subdirs)), thread_name_prefix="dotlink-scan") as pool:
            for future in [pool.submit(self.walk, rel, depth) for rel, depth in subdirs]:
                future.result()

    def walk(self, rel: str, depth: int) -> None:
        for child, child_depth in self.visit(rel, depth):
            self.walk(child, child_depth)

    def visit(self, rel: str, depth: int) -> list[tuple[str, int]]:
        """Record orphans directly inside ``rel`` and return its subdirectories to descend into."""

        if self.stopped.is_set():
            return []
        self.token.raise_if_cancelled()
        with self.lock:
            if rel in self.visited:
                return []
            self.visited.add(rel)
        directory = posixpath.join(self.target, rel) if rel else self.target
        try:
            entries = self.fs.read_dir(self.token, directory)
        except (FileNotFoundError, NotADirectoryError, PermissionDeniedError) as exc:
            logger.debug("Skipping %s during orphan scan: %s", directory, exc)
            return []

        subdirs: list[tuple[str, int]] = []
        for entry in entries:
            if self.stopped.is_set():
                break
            if entry.name == MANIFEST_FILENAME or any(fnmatch.fnmatchcase(entry.name, p) for p in self.skip):
                continue
            child = posixpath.join(rel, entry.name) if rel else entry.name
            if entry.kind is EntryKind.SYMLINK:
                if child not in self.managed:
                    self.record(child)
            elif entry.kind is EntryKind.DIR and depth + 1 < self.depth:
                subdirs.append((child, depth + 1))
        return subdirs

    def record(self, rel: str) -> None:
        path = posixpath.join(self.target, rel)
        text = self.fs.read_link(self.token, path)
        broken = not self.diagnostics.target_exists(self.token, path)
        orphan = Orphan(path=rel, target=resolve_link(path, text), broken=broken)
        if self.diagnostics.is_ignored(self.manifest, orphan):
            return
        with self.lock:
            if self.stopped.is_set():
                return
            self.orphans[rel] = orphan
            if self.limit and len(self.orphans) >= self.limit:
                self.stopped.set()


# ---------------------------------------------------------------------------
# Triage


@dataclass(frozen=True, slots=True)
class OrphanCategory:
    name: str
    description: str
    confidence: Confidence
    patterns: tuple[str, ...] = field(default_factory=tuple)

    def matches(self, target: str) -> bool:
        return any(fnmatch.fnmatchcase(target, pattern) for pattern in self.patterns)


CATEGORIES: tuple[OrphanCategory, ...] = (
    OrphanCategory("cargo", "Rust toolchain binaries", Confidence.HIGH, ("*/.cargo/bin/*", "*/cargo/bin/*")),
    OrphanCategory("npm", "Node.js packages", Confidence.HIGH, ("*/.npm/*", "*/node_modules/*", "*/.nvm/*")),
    OrphanCategory("system", "System binaries", Confidence.HIGH, ("/usr/bin/*", "/usr/local/bin/*", "/opt/*")),
    OrphanCategory("vscode", "VS Code extensions", Confidence.HIGH, ("*/.vscode/*", "*/.vscode-server/*")),
    OrphanCategory("flatpak", "Flatpak exports", Confidence.HIGH, ("*/flatpak/exports/*", "/var/lib/flatpak/*")),
    OrphanCategory("jetbrains", "JetBrains tooling", Confidence.HIGH, ("*/JetBrains/*", "*/.jetbrains/*")),
)
OTHER = OrphanCategory("other", "Uncategorized symlinks", Confidence.LOW)


def categorize(orphan: Orphan) -> OrphanCategory:
    for category in CATEGORIES:
        if category.matches(orphan.target):
            return category
    return OTHER


def group_orphans(orphans: Iterable[Orphan]) -> list[OrphanGroup]:
    """Group orphans by category, known categories first and ``other`` last."""

    grouped: dict[str, list[Orphan]] = {}
    for orphan in orphans:
        grouped.setdefault(categorize(orphan).name, []).append(orphan)
    groups: list[OrphanGroup] = []
    for category in (*CATEGORIES, OTHER):
        members = grouped.get(category.name)
        if not members:
            continue
        groups.append(
            OrphanGroup(
                category=category.name,
                description=category.description,
                confidence=category.confidence,
                patterns=category.patterns,
                orphans=tuple(members),
            )
        )
    return groups
