"""Planning: turn package requests into conflict-checked filesystem operations.

A planning session inspects the filesystem lazily and keeps an overlay of the
state its planned operations will produce. Every new operation at a path
depends on the operations that last changed that path and on the creation of
its parent directory, so the executor can order and parallelise the plan from
the declared dependencies alone.
"""

from __future__ import annotations

import errno
import logging
import posixpath
from dataclasses import dataclass, field, replace
from typing import Iterable, Sequence

from .cancellation import CancelToken
from .dotfiles import DotfileTranslator
from .errors import CyclicDependencyError, InvalidPathError, PermissionDeniedError, SourceNotFoundError
from .filesystem import FileSystem
from .graph import DependencyGraph
from .ignore import IGNORE_FILENAME, IgnoreSet
from .manifest import Manifest, PackageInfo
from .models import (
    Conflict,
    ConflictPolicy,
    ConflictType,
    EntryKind,
    InventoryEntry,
    PackageChange,
    PackageInventory,
    PackageSource,
    Plan,
    PlanWarning,
    SymlinkMode,
    WarningSeverity,
)
from .operations import (
    DirCopy,
    DirCreate,
    DirDelete,
    DirRemoveAll,
    FileBackup,
    FileDelete,
    FileMove,
    LinkCreate,
    LinkDelete,
    Operation,
    with_dependencies,
)
from .paths import AnyPath, FilePath, PackagePath, TargetPath

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PlannerOptions:
    folding: bool = True
    conflict_policy: ConflictPolicy = ConflictPolicy.FAIL
    symlink_mode: SymlinkMode = SymlinkMode.RELATIVE
    backup_suffix: str = ".bak"
    backup_dir: FilePath | None = None


def resolve_link(link_path: str, link_text: str) -> str:
    """Lexically resolve a symlink's text against the directory holding it."""

    return posixpath.normpath(posixpath.join(posixpath.dirname(link_path), link_text))


def _within(path: str, root: str) -> bool:
    return path == root or path.startswith(root.rstrip("/") + "/")


def _depth(relative: str) -> int:
    return relative.count("/")


class _Blocked(Exception):
    """Raised inside a session once a conflict or skip warning has been recorded."""


@dataclass(slots=True)
class _Slot:
    """Observed or planned state of one path.

    ``after`` lists the operations that must finish before anything else
    touches the path. ``owner`` is set for links planned in this session.
    """

    kind: EntryKind | None
    resolved: str | None = None
    after: tuple[str, ...] = ()
    owner: str | None = None


@dataclass(slots=True)
class _PackageState:
    source: PackageSource
    links: list[str] = field(default_factory=list)
    backups: dict[str, str] = field(default_factory=dict)
    directories: list[str] = field(default_factory=list)
    removed: bool = False


class Planner:
    """Builds plans for manage, unmanage, remanage and adopt requests."""

    def __init__(
        self,
        fs: FileSystem,
        *,
        package_dir: PackagePath,
        target_dir: TargetPath,
        translator: DotfileTranslator,
        ignore: IgnoreSet,
        options: PlannerOptions | None = None,
    ) -> None:
        self.fs = fs
        self.package_dir = package_dir
        self.target_dir = target_dir
        self.translator = translator
        self.ignore = ignore
        self.options = options or PlannerOptions()

    def plan_manage(
        self,
        token: CancelToken,
        inventories: Sequence[PackageInventory],
        manifest: Manifest,
    ) -> Plan:
        session = _Session(self, token, manifest)
        for inventory in inventories:
            session.manage(inventory)
        return session.finish()

    def plan_remanage(
        self,
        token: CancelToken,
        inventories: Sequence[PackageInventory],
        manifest: Manifest,
    ) -> Plan:
        """Re-plan installed packages, removing links their content no longer provides."""

        session = _Session(self, token, manifest)
        for inventory in inventories:
            session.remanage(inventory)
        return session.finish()

    def plan_unmanage(
        self,
        token: CancelToken,
        packages: Sequence[str],
        manifest: Manifest,
        *,
        restore: bool = True,
        purge: bool = False,
    ) -> Plan:
        session = _Session(self, token, manifest)
        for name in packages:
            info = manifest.get_package(name)
            if info is None:
                session.warn(f"Package '{name}' is not installed", None, WarningSeverity.INFO)
                continue
            session.unmanage(info, restore=restore, purge=purge)
        return session.finish()

    def plan_adopt(
        self,
        token: CancelToken,
        package: str,
        paths: Sequence[TargetPath],
        manifest: Manifest,
    ) -> Plan:
        session = _Session(self, token, manifest)
        session.adopt(package, paths)
        return session.finish()


class _Session:
    def __init__(self, planner: Planner, token: CancelToken, manifest: Manifest) -> None:
        self.fs = planner.fs
        self.token = token
        self.manifest = manifest
        self.package_dir = planner.package_dir
        self.target_dir = planner.target_dir
        self.translator = planner.translator
        self.ignore = planner.ignore
        self.options = planner.options

        self.ops: dict[str, Operation] = {}
        self.slots: dict[str, _Slot] = {}
        self.conflicts: list[Conflict] = []
        self.warnings: list[PlanWarning] = []
        self.packages: dict[str, _PackageState] = {}
        self.claims: dict[str, str] = manifest.link_owners()

    # results ------------------------------------------------------------

    def finish(self) -> Plan:
        operations = tuple(self.ops.values())
        cycle = DependencyGraph.build(operations).find_cycle()
        if cycle is not None:
            raise CyclicDependencyError([op.describe() for op in cycle])

        changes: list[PackageChange] = []
        for name, state in self.packages.items():
            if state.removed:
                changes.append(PackageChange(name=name, links=None, source=state.source))
                continue
            changes.append(
                PackageChange(
                    name=name,
                    links=tuple(state.links),
                    source=state.source,
                    backups=dict(state.backups),
                    directories=tuple(state.directories),
                )
            )
        plan = Plan(
            operations=operations,
            conflicts=tuple(self.conflicts),
            warnings=tuple(self.warnings),
            changes=tuple(changes),
        )
        logger.info(
            "Planned %d operation(s), %d conflict(s), %d warning(s)",
            len(operations),
            len(self.conflicts),
            len(self.warnings),
        )
        return plan

    def conflict(
        self,
        kind: ConflictType,
        path: str,
        details: str,
        *suggestions: str,
        **context: str,
    ) -> None:
        logger.debug("Conflict at %s: %s", path, details)
        self.conflicts.append(Conflict(kind, path, details, dict(context), tuple(suggestions)))

    def warn(self, message: str, path: str | None, severity: WarningSeverity = WarningSeverity.CAUTION) -> None:
        logger.debug("Plan warning: %s", message)
        self.warnings.append(PlanWarning(message, path, severity))

    # operation bookkeeping ---------------------------------------------

    def add(self, op: Operation) -> str:
        existing = self.ops.get(op.id)
        if existing is None:
            self.ops[op.id] = op
        elif replace(existing, depends_on=()) == replace(op, depends_on=()):
            self.ops[op.id] = with_dependencies(existing, *op.depends_on)
        else:
            raise ValueError(f"conflicting operations planned with id {op.id!r}")
        return op.id

    def slot(self, path: AnyPath) -> _Slot:
        key = str(path)
        found = self.slots.get(key)
        if found is not None:
            return found
        try:
            info = self.fs.lstat(self.token, key)
        except (FileNotFoundError, NotADirectoryError):
            found = _Slot(None)
        else:
            if info.is_symlink:
                found = _Slot(EntryKind.SYMLINK, resolved=resolve_link(key, self.fs.read_link(self.token, key)))
            else:
                found = _Slot(info.kind)
        self.slots[key] = found
        return found

    def inspect(self, path: AnyPath, rel: str) -> _Slot:
        try:
            return self.slot(path)
        except PermissionDeniedError:
            self.conflict(
                ConflictType.PERMISSION,
                rel,
                "Permission denied while inspecting target",
                "Check permissions of the target path and its parent directory",
            )
        except OSError as exc:
            if exc.errno != errno.ELOOP:
                raise
            self.conflict(
                ConflictType.CIRCULAR,
                rel,
                "Symlink loop while resolving target",
                "Remove the looping symlink and retry",
            )
        raise _Blocked

    def is_dir(self, slot: _Slot) -> bool:
        if slot.kind is EntryKind.DIR:
            return True
        if slot.kind is EntryKind.SYMLINK and slot.resolved is not None:
            resolved = self.slots.get(slot.resolved)
            if resolved is not None:
                return self.is_dir(resolved)
            return self.fs.is_dir(self.token, slot.resolved)
        return False

    def state(self, package: str) -> _PackageState:
        state = self.packages.get(package)
        if state is None:
            info = self.manifest.get_package(package)
            if info is None:
                state = _PackageState(PackageSource.MANAGED)
            else:
                state = _PackageState(
                    info.source,
                    links=list(info.links),
                    backups=dict(info.backups),
                    directories=list(info.directories),
                )
            self.packages[package] = state
        return state

    def owner_of(self, rel: str) -> str | None:
        return self.claims.get(rel)

    def claim(self, package: str, rel: str) -> None:
        state = self.state(package)
        if rel not in state.links:
            state.links.append(rel)
        self.claims[rel] = package

    def release(self, rel: str) -> None:
        owner = self.claims.pop(rel, None)
        if owner is not None:
            state = self.state(owner)
            if rel in state.links:
                state.links.remove(rel)

    def rel(self, target: TargetPath) -> str:
        return target.relative_to(self.target_dir)

    # primitive plans ----------------------------------------------------

    def ensure_dir(self, path: AnyPath, *, record_for: str | None = None) -> tuple[str, ...]:
        """Make sure ``path`` is (or will be) a directory and return what to wait for."""

        slot = self.slot(path)
        if self.is_dir(slot):
            return slot.after
        if slot.kind is not None:
            self.conflict(
                ConflictType.FILE_EXISTS,
                str(path),
                "Expected a directory but found a file",
                "Move the file out of the way and retry",
            )
            raise _Blocked
        parent_after = self.ensure_dir(path.parent, record_for=record_for) if str(path) != "/" else ()
        op = DirCreate(path, depends_on=slot.after + parent_after)
        self.add(op)
        self.slots[str(path)] = _Slot(EntryKind.DIR, after=(op.id,))
        if record_for is not None and isinstance(path, TargetPath) and path.is_within(self.target_dir):
            directories = self.state(record_for).directories
            rel = self.rel(path)
            if rel != "." and rel not in directories:
                directories.append(rel)
        return (op.id,)

    def link(self, package: str, source: PackagePath, target: TargetPath, after: tuple[str, ...]) -> str:
        parent_after = self.ensure_dir(target.parent, record_for=package)
        op = LinkCreate(
            source,
            target,
            relative=self.options.symlink_mode is SymlinkMode.RELATIVE,
            depends_on=tuple(dict.fromkeys(after + parent_after)),
        )
        self.add(op)
        self.slots[str(target)] = _Slot(EntryKind.SYMLINK, resolved=str(source), after=(op.id,), owner=package)
        self.claim(package, self.rel(target))
        return op.id

    def unlink(self, target: TargetPath, slot: _Slot) -> tuple[str, ...]:
        """Plan removal of the symlink at ``target``, cancelling a planned one instead if possible."""

        planned = next(
            (
                self.ops[op_id]
                for op_id in slot.after
                if isinstance(self.ops.get(op_id), LinkCreate) and self.ops[op_id].target == target
            ),
            None,
        )
        if planned is not None:
            del self.ops[planned.id]
            after = planned.depends_on
        else:
            op = LinkDelete(target, depends_on=slot.after)
            self.add(op)
            after = (op.id,)
        self.slots[str(target)] = _Slot(None, after=after)
        return after

    def clear(self, package: str, rel: str, target: TargetPath, slot: _Slot) -> tuple[str, ...]:
        """Apply the conflict policy to a regular file or directory in the way."""

        policy = self.options.conflict_policy
        is_dir = slot.kind is EntryKind.DIR
        label = "directory" if is_dir else "file"
        if policy is ConflictPolicy.FAIL:
            self.conflict(
                ConflictType.DIR_EXISTS if is_dir else ConflictType.FILE_EXISTS,
                rel,
                f"A {label} already exists at the target",
                "Re-run with --on-conflict backup to keep a copy of it",
                f"Run 'dotlink adopt {rel} --package {package}' to move it into the package",
                package=package,
            )
            raise _Blocked
        if policy is ConflictPolicy.SKIP:
            self.warn(f"Skipped {rel}: a {label} already exists", rel)
            raise _Blocked

        if policy is ConflictPolicy.OVERWRITE:
            op: Operation
            if is_dir:
                op = DirRemoveAll(target, depends_on=slot.after)
            else:
                op = FileDelete(target, depends_on=slot.after)
            self.add(op)
            self.warn(f"Overwriting existing {label} {rel}", rel, WarningSeverity.DANGER)
            self.slots[str(target)] = _Slot(None, after=(op.id,))
            return (op.id,)

        backup, backup_after = self.backup_path(rel, target)
        record = backup.relative_to(self.target_dir) if backup.is_within(self.target_dir) else str(backup)
        if is_dir:
            move = FileMove(target, backup, depends_on=slot.after + backup_after)
            self.add(move)
            done = (move.id,)
            self.slots[str(backup)] = _Slot(EntryKind.DIR, after=done)
        else:
            copy = FileBackup(target, backup, depends_on=slot.after + backup_after)
            self.add(copy)
            self.slots[str(backup)] = _Slot(EntryKind.FILE, after=(copy.id,))
            delete = FileDelete(target, depends_on=(copy.id,))
            self.add(delete)
            done = (delete.id,)
        self.state(package).backups[rel] = record
        self.slots[str(target)] = _Slot(None, after=done)
        self.warn(f"Backing up existing {label} {rel} to {record}", rel, WarningSeverity.INFO)
        return done

    def backup_path(self, rel: str, target: TargetPath) -> tuple[FilePath, tuple[str, ...]]:
        if self.options.backup_dir is not None:
            backup = self.options.backup_dir.join(rel)
            after = self.ensure_dir(backup.parent)
        else:
            backup = FilePath(str(target) + self.options.backup_suffix)
            after = ()
        if self.slot(backup).kind is not None:
            self.conflict(
                ConflictType.FILE_EXISTS,
                rel,
                f"Backup destination {backup} already exists",
                "Remove or rename the old backup and retry",
            )
            raise _Blocked
        return backup, after

    # manage -------------------------------------------------------------

    def manage(self, inventory: PackageInventory) -> None:
        if inventory.empty:
            self.warn(f"Package '{inventory.package}' has nothing to link", None, WarningSeverity.INFO)
            return
        previous = self.manifest.get_package(inventory.package)
        source = previous.source if previous is not None else PackageSource.MANAGED
        state = _PackageState(
            source,
            backups=dict(previous.backups) if previous else {},
            directories=list(previous.directories) if previous else [],
        )
        self.packages[inventory.package] = state

        children: dict[str, list[InventoryEntry]] = {}
        for entry in inventory.entries:
            children.setdefault(posixpath.dirname(entry.rel_target), []).append(entry)
        for entry in children.get("", []):
            self.place(inventory, entry, children)

    def place(
        self,
        inventory: PackageInventory,
        entry: InventoryEntry,
        children: dict[str, list[InventoryEntry]],
    ) -> None:
        self.token.raise_if_cancelled()
        package = inventory.package
        target = self.target_dir.join(entry.rel_target)
        try:
            slot = self.inspect(target, entry.rel_target)
            if entry.kind is EntryKind.DIR:
                descend = self.place_dir(inventory, entry, target, slot)
            else:
                self.place_leaf(package, entry, target, slot)
                descend = False
        except _Blocked:
            return
        if descend:
            for child in children.get(entry.rel_target, []):
                self.place(inventory, child, children)

    def place_leaf(self, package: str, entry: InventoryEntry, target: TargetPath, slot: _Slot) -> None:
        rel = entry.rel_target
        if slot.kind is None:
            self.link(package, entry.source, target, slot.after)
        elif slot.kind is EntryKind.SYMLINK:
            if slot.resolved == str(entry.source):
                self.claim(package, rel)
                return
            after = self.replace_link(package, rel, target, slot)
            self.link(package, entry.source, target, after)
        else:
            after = self.clear(package, rel, target, slot)
            self.link(package, entry.source, target, after)

    def place_dir(self, inventory: PackageInventory, entry: InventoryEntry, target: TargetPath, slot: _Slot) -> bool:
        """Plan a package directory; return ``True`` if its children must be placed individually."""

        package = inventory.package
        rel = entry.rel_target
        foldable = self.options.folding and entry.rel_source not in inventory.partial_dirs

        if slot.kind is EntryKind.DIR:
            return True
        if slot.kind is EntryKind.SYMLINK:
            resolved = slot.resolved or ""
            if resolved == str(entry.source):
                if foldable:
                    self.claim(package, rel)
                    return False
                self.release(rel)
                after = self.unlink(target, slot)
                self.make_dir(package, target, after)
                return True
            owner = self.owner_of(rel) if slot.owner is None else slot.owner
            if _within(resolved, str(self.package_dir)) and owner not in (None, package) and self.is_dir(slot):
                self.unfold(target, slot, owner)
                return True
            after = self.replace_link(package, rel, target, slot)
        elif slot.kind is not None:
            after = self.clear(package, rel, target, slot)
        else:
            after = slot.after

        if foldable:
            self.link(package, entry.source, target, after)
            return False
        self.make_dir(package, target, after)
        return True

    def make_dir(self, package: str, target: TargetPath, after: tuple[str, ...]) -> tuple[str, ...]:
        self.slots[str(target)] = _Slot(None, after=after)
        return self.ensure_dir(target, record_for=package)

    def replace_link(self, package: str, rel: str, target: TargetPath, slot: _Slot) -> tuple[str, ...]:
        resolved = slot.resolved or ""
        owner = slot.owner or self.owner_of(rel)
        if not _within(resolved, str(self.package_dir)):
            self.conflict(
                ConflictType.WRONG_TARGET,
                rel,
                f"Existing symlink points outside the package directory: {resolved}",
                f"Remove {rel} or adopt it with 'dotlink adopt {rel} --package {package}'",
                package=package,
                link_target=resolved,
            )
            raise _Blocked
        if owner is not None and owner != package:
            self.conflict(
                ConflictType.ALREADY_MANAGED,
                rel,
                f"Link belongs to package '{owner}'",
                f"Run 'dotlink unmanage {owner}' first",
                package=package,
                owner=owner,
            )
            raise _Blocked
        self.release(rel)
        return self.unlink(target, slot)

    def unfold(self, target: TargetPath, slot: _Slot, owner: str) -> None:
        """Replace another package's folded directory link with a real directory of links."""

        rel = self.rel(target)
        source_dir = PackagePath(slot.resolved or "")
        logger.info("Unfolding %s owned by package %s", rel, owner)
        self.release(rel)
        after = self.unlink(target, slot)
        self.make_dir(owner, target, after)
        owner_root = self.package_dir.join(owner)
        for child in self.fs.read_dir(self.token, source_dir):
            if child.name == IGNORE_FILENAME:
                continue
            child_source = source_dir.join(child.name)
            if child_source.is_within(owner_root) and self.ignore.is_ignored(child_source.relative_to(owner_root)):
                continue
            child_target = target.join(self.translator.translate(child.name))
            self.link(owner, child_source, child_target, ())

    # remanage -----------------------------------------------------------

    def remanage(self, inventory: PackageInventory) -> None:
        info = self.manifest.get_package(inventory.package)
        if info is None:
            self.manage(inventory)
            return
        self.manage(inventory)
        if inventory.package not in self.packages:
            self.packages[inventory.package] = _PackageState(
                info.source, backups=dict(info.backups), directories=list(info.directories)
            )
        current = set(self.packages[inventory.package].links)
        root = self.package_root(info)
        for rel in info.links:
            if rel in current:
                continue
            target = self.target_dir.join(rel)
            try:
                slot = self.inspect(target, rel)
            except _Blocked:
                continue
            if slot.kind is EntryKind.SYMLINK and slot.owner is None and _within(slot.resolved or "", str(root)):
                self.claims.pop(rel, None)
                self.unlink(target, slot)
        self.cleanup_dirs(inventory.package, info.directories)

    # unmanage -----------------------------------------------------------

    def package_root(self, info: PackageInfo) -> PackagePath:
        base = PackagePath(info.package_dir) if info.package_dir else self.package_dir
        return base.join(info.name)

    def unmanage(self, info: PackageInfo, *, restore: bool, purge: bool) -> None:
        name = info.name
        root = self.package_root(info)
        first_op = len(self.ops)
        self.packages[name] = _PackageState(info.source, removed=True)

        for rel in sorted(info.links, key=_depth, reverse=True):
            self.token.raise_if_cancelled()
            target = self.target_dir.join(rel)
            self.claims.pop(rel, None)
            try:
                self.detach_ancestors(rel, root)
                slot = self.inspect(target, rel)
            except _Blocked:
                continue
            if slot.kind is None:
                self.warn(f"Link {rel} is already gone", rel, WarningSeverity.INFO)
                after: tuple[str, ...] = slot.after
            elif slot.kind is not EntryKind.SYMLINK:
                self.warn(f"{rel} is no longer a symlink; leaving it in place", rel)
                continue
            elif not _within(slot.resolved or "", str(root)):
                self.warn(f"{rel} points to {slot.resolved}, outside package '{name}'; leaving it", rel)
                continue
            else:
                source = slot.resolved or ""
                after = self.unlink(target, slot)
                if restore and rel not in info.backups and info.source is PackageSource.ADOPTED:
                    self.restore_copy(PackagePath(source), target, after)
                    continue
            if restore and rel in info.backups:
                self.restore_backup(rel, info.backups[rel], target, after)

        self.cleanup_dirs(name, info.directories)

        if purge:
            deps = tuple(list(self.ops)[first_op:])
            self.add(DirRemoveAll(root, depends_on=deps))
            self.warn(f"Package directory {root} will be deleted", str(root), WarningSeverity.DANGER)

    def restore_copy(self, source: PackagePath, target: TargetPath, after: tuple[str, ...]) -> None:
        try:
            info = self.fs.lstat(self.token, source)
        except FileNotFoundError:
            self.warn(f"Cannot restore {target}: {source} is missing", str(target))
            return
        op: Operation
        if info.is_dir:
            op = DirCopy(source, target, depends_on=after)
        else:
            op = FileBackup(source, target, depends_on=after)
        self.add(op)
        self.slots[str(target)] = _Slot(info.kind, after=(op.id,))

    def restore_backup(self, rel: str, recorded: str, target: TargetPath, after: tuple[str, ...]) -> None:
        backup = FilePath(recorded) if recorded.startswith("/") else FilePath(str(self.target_dir.join(recorded)))
        backup_slot = self.slot(backup)
        if backup_slot.kind is None:
            self.warn(f"Backup {recorded} for {rel} is missing; nothing to restore", rel)
            return
        op = FileMove(backup, target, depends_on=after + backup_slot.after)
        self.add(op)
        self.slots[str(backup)] = _Slot(None, after=(op.id,))
        self.slots[str(target)] = _Slot(backup_slot.kind, after=(op.id,))

    def detach_ancestors(self, rel: str, root: PackagePath) -> None:
        """Split any folded ancestor of ``rel`` so removing ``rel`` leaves package content alone."""

        parts = rel.split("/")
        for end in range(1, len(parts)):
            ancestor_rel = "/".join(parts[:end])
            ancestor = self.target_dir.join(ancestor_rel)
            slot = self.inspect(ancestor, ancestor_rel)
            if slot.kind is not EntryKind.SYMLINK:
                if slot.kind is None:
                    return
                continue
            if not _within(slot.resolved or "", str(self.package_dir)) or not self.is_dir(slot):
                return
            owner = slot.owner or self.owner_of(ancestor_rel)
            logger.info("Unfolding %s to remove %s", ancestor_rel, rel)
            if owner is not None:
                self.unfold(ancestor, slot, owner)
            else:
                self.split_unowned(ancestor, slot)

    def split_unowned(self, target: TargetPath, slot: _Slot) -> None:
        source_dir = PackagePath(slot.resolved or "")
        after = self.unlink(target, slot)
        self.slots[str(target)] = _Slot(None, after=after)
        self.ensure_dir(target)
        for child in self.fs.read_dir(self.token, source_dir):
            child_target = target.join(self.translator.translate(child.name))
            op = LinkCreate(
                source_dir.join(child.name),
                child_target,
                relative=self.options.symlink_mode is SymlinkMode.RELATIVE,
                depends_on=self.slots[str(target)].after,
            )
            self.add(op)
            self.slots[str(child_target)] = _Slot(EntryKind.SYMLINK, resolved=str(op.source), after=(op.id,))

    def cleanup_dirs(self, package: str, directories: Iterable[str]) -> None:
        """Remove directories this package created once nothing else remains in them."""

        remaining = self.packages[package].directories if not self.packages[package].removed else []
        for rel in sorted(set(directories), key=_depth, reverse=True):
            path = self.target_dir.join(rel)
            try:
                slot = self.inspect(path, rel)
            except _Blocked:
                continue
            if slot.kind is not EntryKind.DIR:
                if rel in remaining:
                    remaining.remove(rel)
                continue
            empty, after = self.will_be_empty(path)
            if not empty:
                continue
            op = DirDelete(path, depends_on=slot.after + after)
            self.add(op)
            self.slots[str(path)] = _Slot(None, after=(op.id,))
            if rel in remaining:
                remaining.remove(rel)

    def will_be_empty(self, directory: TargetPath) -> tuple[bool, tuple[str, ...]]:
        key = str(directory)
        names: set[str] = set()
        try:
            names.update(child.name for child in self.fs.read_dir(self.token, key))
        except (FileNotFoundError, NotADirectoryError):
            pass
        prefix = key.rstrip("/") + "/"
        for path in self.slots:
            if path.startswith(prefix) and "/" not in path[len(prefix) :]:
                names.add(path[len(prefix) :])
        after: list[str] = []
        for name in sorted(names):
            child = self.slot(directory.join(name))
            if child.kind is not None:
                return False, ()
            after.extend(child.after)
        return True, tuple(dict.fromkeys(after))

    # adopt --------------------------------------------------------------

    def adopt(self, package: str, paths: Sequence[TargetPath]) -> None:
        root = self.package_dir.join(package)
        state = self.state(package)
        state.source = PackageSource.ADOPTED
        if not self.fs.is_dir(self.token, self.package_dir):
            raise SourceNotFoundError(str(self.package_dir))

        for target in paths:
            self.token.raise_if_cancelled()
            if not target.is_within(self.target_dir) or target == self.target_dir:
                raise InvalidPathError(str(target), f"must be inside the target directory {self.target_dir}")
            rel = self.rel(target)
            try:
                self.adopt_one(package, root, target, rel)
            except _Blocked:
                continue

    def adopt_one(self, package: str, root: PackagePath, target: TargetPath, rel: str) -> None:
        slot = self.inspect(target, rel)
        if slot.kind is None:
            raise SourceNotFoundError(str(target), operation="adopt")
        owner = self.owner_of(rel)
        into_packages = slot.kind is EntryKind.SYMLINK and _within(slot.resolved or "", str(self.package_dir))
        if into_packages or owner is not None:
            self.conflict(
                ConflictType.ALREADY_MANAGED,
                rel,
                f"{rel} is already a symlink" + (f" owned by package '{owner}'" if owner else " into a package"),
                "Only regular files, directories and foreign symlinks can be adopted",
                package=package,
            )
            raise _Blocked
        if slot.kind is EntryKind.SYMLINK:
            self.warn(f"Adopting symlink {rel} -> {slot.resolved}; the link text is moved unchanged", rel)
        destination = root.join(self.translator.untranslate_path(rel))
        if self.slot(destination).kind is not None:
            self.conflict(
                ConflictType.FILE_EXISTS,
                rel,
                f"{destination} already exists in package '{package}'",
                f"Remove it from the package or run 'dotlink manage {package}' instead",
                package=package,
            )
            raise _Blocked
        parent_after = self.ensure_dir(destination.parent)
        move = FileMove(target, destination, depends_on=slot.after + parent_after)
        self.add(move)
        self.slots[str(destination)] = _Slot(slot.kind, after=(move.id,))
        self.slots[str(target)] = _Slot(None, after=(move.id,))
        self.link(package, destination, target, (move.id,))
