"""High-level dotlink operations.

:class:`Client` composes the scanner, planner, executor, manifest store and
diagnostics. Every mutating call takes the manifest lock, loads the manifest
once, plans, executes and saves the manifest as the final step of the
execution so a failed save rolls the filesystem back as well.
"""

from __future__ import annotations

import logging
import os
import posixpath
import threading
from contextlib import contextmanager
from typing import Callable, Iterable, Iterator, Sequence

from .cancellation import CancelToken
from .config import Config
from .doctor import Diagnostics, group_orphans
from .dotfiles import DotfileTranslator
from .errors import DotlinkError, InvalidPathError, PackageNotFoundError
from .executor import Executor, ExecutorOptions
from .filesystem import FileSystem, OSFileSystem
from .ignore import IgnoreSet
from .manifest import (
    MANIFEST_VERSION,
    DoctorState,
    IgnoredLink,
    Manifest,
    ManifestStore,
    PackageInfo,
    UpgradeResult,
    compute_package_hash,
    utcnow,
)
from .models import (
    Confidence,
    DiagnosticReport,
    ExecutionResult,
    OperationError,
    OrphanGroup,
    PackageInventory,
    PackageStatus,
    Plan,
    ScanMode,
    TriageChoice,
    TriageDecision,
    TriageResult,
    WarningSeverity,
)
from .paths import FilePath, PackagePath, TargetPath
from .planner import Planner, PlannerOptions, resolve_link
from .scanner import PackageScanner, validate_package_name

logger = logging.getLogger(__name__)

TriageCallback = Callable[[OrphanGroup], TriageChoice | str]


class Client:
    """Entry point for managing, inspecting and repairing dotfile packages.

    Operations on one client are serialised; across processes the manifest
    lock serialises mutations.
    """

    def __init__(self, config: Config, *, fs: FileSystem | None = None) -> None:
        self.config = config
        self.fs = fs or OSFileSystem()
        self.package_dir = PackagePath(str(config.package_dir))
        self.target_dir = TargetPath(str(config.target_dir))
        self.translator = DotfileTranslator(config.dotfile_prefix, config.dotfile_translate)
        self.ignore = IgnoreSet.build(use_defaults=config.ignore_use_defaults, patterns=config.ignore_patterns)
        self.scanner = PackageScanner(self.fs, self.package_dir, ignore=self.ignore, translator=self.translator)
        self.planner = Planner(
            self.fs,
            package_dir=self.package_dir,
            target_dir=self.target_dir,
            translator=self.translator,
            ignore=self.ignore,
            options=PlannerOptions(
                folding=config.folding,
                conflict_policy=config.conflict_policy,
                symlink_mode=config.symlink_mode,
                backup_suffix=config.backup_suffix,
                backup_dir=FilePath(str(config.backup_dir)) if config.backup_dir else None,
            ),
        )
        self.executor = Executor(
            self.fs,
            ExecutorOptions(dry_run=config.dry_run, max_parallel=config.max_parallel, atomic=config.atomic),
        )
        self.store = ManifestStore.in_directory(
            self.fs,
            str(config.effective_manifest_dir),
            target_dir=str(self.target_dir),
            package_dir=str(self.package_dir),
        )
        self._lock = threading.RLock()

    @property
    def dry_run(self) -> bool:
        return self.config.dry_run

    # plumbing -----------------------------------------------------------

    @contextmanager
    def _manifest(self, token: CancelToken, *, mutate: bool = True) -> Iterator[Manifest]:
        with self._lock:
            if not mutate or self.dry_run:
                yield self.store.load(token)
                return
            with self.store.lock(token):
                yield self.store.load(token)

    def _execute(self, token: CancelToken, plan: Plan, manifest: Manifest) -> ExecutionResult:
        for warning in plan.warnings:
            level = logging.INFO if warning.severity is WarningSeverity.INFO else logging.WARNING
            logger.log(level, "%s", warning.message)

        def commit() -> None:
            self._record(token, manifest, plan)
            self.store.save(token, manifest)

        return self.executor.execute(token, plan, commit=commit)

    def _record(self, token: CancelToken, manifest: Manifest, plan: Plan) -> None:
        for change in plan.changes:
            if change.removed:
                manifest.remove_package(change.name)
                continue
            previous = manifest.get_package(change.name)
            manifest.set_package(
                PackageInfo(
                    name=change.name,
                    installed_at=previous.installed_at if previous is not None else utcnow(),
                    links=list(change.links or ()),
                    backups=dict(change.backups),
                    directories=list(change.directories),
                    source=change.source,
                    target_dir=str(self.target_dir),
                    package_dir=str(self.package_dir),
                )
            )
            inventory = self.scanner.scan(token, change.name)
            manifest.hashes[change.name] = compute_package_hash(self.fs, token, inventory)

    def _names(self, packages: Iterable[str]) -> list[str]:
        names = [validate_package_name(name) for name in packages]
        if not names:
            raise InvalidPathError("", "at least one package name is required")
        return list(dict.fromkeys(names))

    def _target(self, raw: str | os.PathLike[str]) -> TargetPath:
        text = os.fspath(raw)
        if not text.startswith("/"):
            text = posixpath.join(str(self.target_dir), text)
        target = TargetPath(text)
        if target == self.target_dir or not target.is_within(self.target_dir):
            raise InvalidPathError(text, f"must be inside the target directory {self.target_dir}")
        return target

    # manage -------------------------------------------------------------

    def plan_manage(self, *packages: str, token: CancelToken | None = None) -> Plan:
        token = token or CancelToken.background()
        with self._manifest(token, mutate=False) as manifest:
            return self._plan_manage(token, manifest, self._names(packages))

    def _plan_manage(self, token: CancelToken, manifest: Manifest, names: Sequence[str]) -> Plan:
        inventories = self.scanner.scan_many(token, names, max_workers=self.config.max_parallel)
        for inventory in inventories:
            if inventory.empty:
                logger.warning("Package %s has nothing to link; leaving it alone", inventory.package)
        inventories = [inventory for inventory in inventories if not inventory.empty]
        return self.planner.plan_manage(token, inventories, manifest)

    def manage(self, *packages: str, token: CancelToken | None = None) -> ExecutionResult:
        """Link every entry of ``packages`` into the target directory."""

        token = token or CancelToken.background()
        names = self._names(packages)
        with self._manifest(token) as manifest:
            plan = self._plan_manage(token, manifest, names)
            if not plan.changes:
                logger.info("Nothing to manage for %s", ", ".join(names))
                return ExecutionResult(dry_run=self.dry_run)
            return self._execute(token, plan, manifest)

    def remanage(self, *packages: str, token: CancelToken | None = None) -> ExecutionResult:
        """Bring installed packages in line with their current content.

        Packages whose content hash is unchanged and whose links are all healthy
        are left untouched.
        """

        token = token or CancelToken.background()
        names = self._names(packages)
        with self._manifest(token) as manifest:
            inventories = []
            for inventory in self.scanner.scan_many(token, names, max_workers=self.config.max_parallel):
                if self._unchanged(token, manifest, inventory.package, inventory):
                    logger.info("Package %s is unchanged; skipping", inventory.package)
                    continue
                inventories.append(inventory)
            if not inventories:
                return ExecutionResult(dry_run=self.dry_run)
            plan = self.planner.plan_remanage(token, inventories, manifest)
            return self._execute(token, plan, manifest)

    def _unchanged(self, token: CancelToken, manifest: Manifest, name: str, inventory: PackageInventory) -> bool:
        info = manifest.get_package(name)
        stored = manifest.hashes.get(name)
        if info is None or stored is None or stored != compute_package_hash(self.fs, token, inventory):
            return False
        diagnostics = self._diagnostics()
        root = self.package_root(info)
        return all(diagnostics.check_link(token, name, rel, root).healthy for rel in info.links)

    def package_root(self, info: PackageInfo) -> PackagePath:
        base = PackagePath(info.package_dir) if info.package_dir else self.package_dir
        return base.join(info.name)

    # unmanage -----------------------------------------------------------

    def unmanage(
        self,
        *packages: str,
        restore: bool = True,
        purge: bool = False,
        cleanup: bool = False,
        token: CancelToken | None = None,
    ) -> ExecutionResult:
        """Remove the links of ``packages`` and drop them from the manifest.

        Args:
            restore: Copy adopted content back and restore files backed up by ``manage``.
            purge: Also delete the package directories.
            cleanup: Only drop manifest entries of packages whose directory or links are gone.
        """

        token = token or CancelToken.background()
        names = self._names(packages)
        with self._manifest(token) as manifest:
            installed = [name for name in names if manifest.get_package(name) is not None]
            for name in names:
                if name not in installed:
                    logger.warning("Package %s is not installed; skipping", name)
            if not installed:
                raise PackageNotFoundError(names[0], where="the manifest")
            if cleanup:
                return self._cleanup(token, manifest, installed)
            plan = self.planner.plan_unmanage(token, installed, manifest, restore=restore, purge=purge)
            return self._execute(token, plan, manifest)

    def unmanage_all(
        self,
        *,
        restore: bool = True,
        purge: bool = False,
        token: CancelToken | None = None,
    ) -> ExecutionResult:
        token = token or CancelToken.background()
        with self._manifest(token) as manifest:
            names = manifest.package_names()
            if not names:
                logger.info("No packages are installed")
                return ExecutionResult(dry_run=self.dry_run)
            plan = self.planner.plan_unmanage(token, names, manifest, restore=restore, purge=purge)
            return self._execute(token, plan, manifest)

    def _cleanup(self, token: CancelToken, manifest: Manifest, names: Sequence[str]) -> ExecutionResult:
        removed: list[str] = []
        for name in names:
            info = manifest.packages[name]
            package_gone = not self.fs.is_dir(token, self.package_root(info))
            links_gone = not any(self.fs.exists(token, self.target_dir.join(rel)) for rel in info.links)
            if package_gone or links_gone:
                removed.append(name)
            else:
                logger.warning("Package %s still has links; use unmanage without --cleanup", name)
        if self.dry_run:
            return ExecutionResult(planned=tuple(f"forget package {name}" for name in removed), dry_run=True)
        for name in removed:
            manifest.remove_package(name)
            logger.info("Removed stale manifest entry for %s", name)
        if removed:
            self.store.save(token, manifest)
        return ExecutionResult(executed=tuple(f"forget:{name}" for name in removed))

    # adopt --------------------------------------------------------------

    def plan_adopt(
        self,
        paths: Sequence[str | os.PathLike[str]],
        package: str,
        *,
        token: CancelToken | None = None,
    ) -> Plan:
        token = token or CancelToken.background()
        targets = [self._target(path) for path in paths]
        with self._manifest(token, mutate=False) as manifest:
            return self.planner.plan_adopt(token, validate_package_name(package), targets, manifest)

    def adopt(
        self,
        paths: Sequence[str | os.PathLike[str]],
        package: str,
        *,
        token: CancelToken | None = None,
    ) -> ExecutionResult:
        """Move existing files into ``package`` and link them back in place.

        Relative paths are taken relative to the target directory.
        """

        token = token or CancelToken.background()
        if not paths:
            raise InvalidPathError("", "at least one path is required")
        targets = [self._target(path) for path in paths]
        name = validate_package_name(package)
        with self._manifest(token) as manifest:
            plan = self.planner.plan_adopt(token, name, targets, manifest)
            return self._execute(token, plan, manifest)

    # status -------------------------------------------------------------

    def list_packages(self, *, token: CancelToken | None = None) -> list[str]:
        token = token or CancelToken.background()
        with self._manifest(token, mutate=False) as manifest:
            return manifest.package_names()

    def status(self, *packages: str, token: CancelToken | None = None) -> list[PackageStatus]:
        """Report installed packages, or only ``packages`` when given."""

        token = token or CancelToken.background()
        with self._manifest(token, mutate=False) as manifest:
            names = list(packages) or manifest.package_names()
            diagnostics = self._diagnostics()
            statuses: list[PackageStatus] = []
            for name in names:
                info = manifest.get_package(name)
                if info is None:
                    raise PackageNotFoundError(name, where="the manifest")
                reason = None
                root = self.package_root(info)
                for rel in info.links:
                    health = diagnostics.check_link(token, name, rel, root)
                    if not health.healthy:
                        reason = f"{rel}: {health.message}"
                        break
                statuses.append(
                    PackageStatus(
                        name=name,
                        source=info.source,
                        installed_at=info.installed_at,
                        links=tuple(info.links),
                        healthy=reason is None,
                        reason=reason,
                    )
                )
            return statuses

    # doctor -------------------------------------------------------------

    def _diagnostics(self, *, scan_mode: ScanMode | None = None, max_issues: int | None = None) -> Diagnostics:
        return Diagnostics(
            self.fs,
            target_dir=self.target_dir,
            package_dir=self.package_dir,
            scan=self.config.scan.options(mode=scan_mode, max_issues=max_issues),
        )

    def doctor(
        self,
        *,
        scan_mode: ScanMode | None = None,
        max_issues: int | None = None,
        token: CancelToken | None = None,
    ) -> DiagnosticReport:
        token = token or CancelToken.background()
        with self._manifest(token, mutate=False) as manifest:
            return self._diagnostics(scan_mode=scan_mode, max_issues=max_issues).diagnose(token, manifest)

    def _save(self, token: CancelToken, manifest: Manifest) -> None:
        if self.dry_run:
            logger.info("[dry-run] Manifest not saved")
            return
        self.store.save(token, manifest)

    def ignore_link(
        self,
        path: str | os.PathLike[str],
        reason: str = "",
        *,
        token: CancelToken | None = None,
    ) -> IgnoredLink:
        """Acknowledge an unmanaged symlink so doctor stops reporting it while it points where it does now."""

        token = token or CancelToken.background()
        target = self._target(path)
        rel = target.relative_to(self.target_dir)
        if not self.fs.is_symlink(token, target):
            raise InvalidPathError(str(target), "is not a symlink")
        resolved = resolve_link(str(target), self.fs.read_link(token, target))
        with self._manifest(token) as manifest:
            entry = manifest.ignore_link(rel, resolved, reason=reason)
            self._save(token, manifest)
        logger.info("Ignoring %s -> %s", rel, resolved)
        return entry

    def unignore_link(self, path: str | os.PathLike[str], *, token: CancelToken | None = None) -> bool:
        token = token or CancelToken.background()
        rel = self._target(path).relative_to(self.target_dir)
        with self._manifest(token) as manifest:
            removed = manifest.unignore_link(rel)
            if removed:
                self._save(token, manifest)
        return removed

    def ignore_pattern(self, pattern: str, *, token: CancelToken | None = None) -> bool:
        token = token or CancelToken.background()
        if not pattern.strip():
            raise InvalidPathError(pattern, "ignore patterns must not be empty")
        with self._manifest(token) as manifest:
            added = manifest.add_ignored_pattern(pattern.strip())
            if added:
                self._save(token, manifest)
        return added

    def unignore_pattern(self, pattern: str, *, token: CancelToken | None = None) -> bool:
        token = token or CancelToken.background()
        with self._manifest(token) as manifest:
            removed = manifest.remove_ignored_pattern(pattern.strip())
            if removed:
                self._save(token, manifest)
        return removed

    def list_ignored(self, *, token: CancelToken | None = None) -> DoctorState:
        token = token or CancelToken.background()
        with self._manifest(token, mutate=False) as manifest:
            return manifest.doctor_state().model_copy(deep=True)

    def triage(
        self,
        decide: TriageCallback | None = None,
        *,
        auto_ignore_high_confidence: bool = False,
        scan_mode: ScanMode | None = None,
        token: CancelToken | None = None,
    ) -> TriageResult:
        """Group orphaned links by category and apply a decision to each group.

        ``decide`` receives each :class:`OrphanGroup` and returns a
        :class:`TriageChoice` or one of ``ignore``, ``pattern``,
        ``adopt:<package>`` and ``skip``. With ``auto_ignore_high_confidence``
        high-confidence groups are ignored by pattern and the rest skipped.
        """

        token = token or CancelToken.background()
        with self._manifest(token) as manifest:
            orphans, _ = self._diagnostics(scan_mode=scan_mode, max_issues=0).find_orphans(token, manifest)
            groups = group_orphans(orphans)
            ignored = adopted = skipped = 0
            patterns: list[str] = []
            errors: list[OperationError] = []

            for group in groups:
                choice = self._triage_choice(group, decide, auto_ignore_high_confidence)
                if choice.decision is TriageDecision.SKIP:
                    skipped += len(group.orphans)
                elif choice.decision is TriageDecision.PATTERN and group.patterns:
                    for pattern in group.patterns:
                        if manifest.add_ignored_pattern(pattern):
                            patterns.append(pattern)
                elif choice.decision in (TriageDecision.IGNORE, TriageDecision.PATTERN):
                    for orphan in group.orphans:
                        manifest.ignore_link(orphan.path, orphan.target, reason=f"triage: {group.category}")
                        ignored += 1
                else:
                    for orphan in group.orphans:
                        try:
                            self._adopt_in(token, manifest, orphan.path, choice.package or "")
                        except DotlinkError as exc:
                            errors.append(OperationError(orphan.path, str(exc)))
                            continue
                        adopted += 1

            if not self.dry_run and (ignored or patterns or adopted):
                self.store.save(token, manifest)
            return TriageResult(
                ignored=ignored,
                patterns_added=tuple(patterns),
                adopted=adopted,
                skipped=skipped,
                errors=tuple(errors),
                groups=tuple(groups),
                dry_run=self.dry_run,
            )

    @staticmethod
    def _triage_choice(
        group: OrphanGroup,
        decide: TriageCallback | None,
        auto_ignore_high_confidence: bool,
    ) -> TriageChoice:
        if decide is not None:
            choice = decide(group)
            return TriageChoice.parse(choice) if isinstance(choice, str) else choice
        if auto_ignore_high_confidence and group.confidence is Confidence.HIGH:
            return TriageChoice(TriageDecision.PATTERN)
        return TriageChoice(TriageDecision.SKIP)

    def _adopt_in(self, token: CancelToken, manifest: Manifest, path: str, package: str) -> None:
        target = self._target(path)
        plan = self.planner.plan_adopt(token, validate_package_name(package), [target], manifest)
        self._execute(token, plan, manifest)

    # maintenance --------------------------------------------------------

    def upgrade_manifest(self, *, token: CancelToken | None = None) -> UpgradeResult:
        token = token or CancelToken.background()
        with self._lock:
            if self.dry_run:
                found = self.store.stored_version(token) or MANIFEST_VERSION
                return UpgradeResult(found, MANIFEST_VERSION, None)
            with self.store.lock(token):
                return self.store.upgrade(token)
