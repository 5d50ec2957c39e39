"""Plan execution with dependency batches, bounded parallelism and rollback."""

from __future__ import annotations

import errno
import logging
import os
import posixpath
import threading
import uuid
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Callable, Sequence

from .cancellation import CancelToken
from .errors import (
    ConflictError,
    ExecutorFailure,
    OperationCancelledError,
    ParentNotFoundError,
    SourceNotFoundError,
)
from .filesystem import FileSystem
from .graph import DependencyGraph
from .models import EntryKind, ExecutionResult, OperationError, Plan
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
    OperationKind,
)
from .paths import AnyPath

logger = logging.getLogger(__name__)

Undo = Callable[[CancelToken], None]


@dataclass(frozen=True, slots=True)
class ExecutorOptions:
    dry_run: bool = False
    max_parallel: int = 1
    atomic: bool = True


@dataclass(slots=True)
class _Completion:
    op: Operation
    undo: Undo | None


STAGING_MARKER = ".dotlink-rm-"


@dataclass(slots=True)
class _StagedRemoval:
    """Undo for a tree moved aside instead of deleted.

    Calling it moves the tree back; ``finish`` deletes it once the plan has
    been committed.
    """

    fs: FileSystem
    original: str
    staged: str

    def __call__(self, rollback: CancelToken) -> None:
        self.fs.rename(rollback, self.staged, self.original)

    def finish(self, token: CancelToken) -> None:
        self.fs.remove_all(token, self.staged)


def copy_tree(fs: FileSystem, token: CancelToken, source: str, destination: str) -> None:
    """Copy ``source`` to ``destination`` keeping content, modes and symlinks."""

    info = fs.lstat(token, source)
    if info.is_symlink:
        fs.symlink(token, fs.read_link(token, source), destination)
    elif info.is_dir:
        fs.mkdir(token, destination, 0o700)
        for child in fs.read_dir(token, source):
            copy_tree(fs, token, posixpath.join(source, child.name), posixpath.join(destination, child.name))
        fs.chmod(token, destination, info.mode)
    else:
        fs.write_file(token, destination, fs.read_file(token, source), info.mode)


class Executor:
    """Applies plans through the filesystem port.

    Operations run in dependency levels: every operation of one batch finishes
    before the next batch starts, and up to ``max_parallel`` operations of a
    batch run at once. With ``atomic`` set, the first failure or a
    cancellation rolls completed operations back in reverse completion order.
    """

    def __init__(self, fs: FileSystem, options: ExecutorOptions | None = None) -> None:
        self._fs = fs
        self.options = options or ExecutorOptions()
        self._handlers: dict[OperationKind, Callable[[CancelToken, Operation], Undo | None]] = {
            OperationKind.LINK_CREATE: self._link_create,  # type: ignore[dict-item]
            OperationKind.LINK_DELETE: self._link_delete,  # type: ignore[dict-item]
            OperationKind.DIR_CREATE: self._dir_create,  # type: ignore[dict-item]
            OperationKind.DIR_DELETE: self._dir_delete,  # type: ignore[dict-item]
            OperationKind.DIR_REMOVE_ALL: self._dir_remove_all,  # type: ignore[dict-item]
            OperationKind.DIR_COPY: self._dir_copy,  # type: ignore[dict-item]
            OperationKind.FILE_MOVE: self._file_move,  # type: ignore[dict-item]
            OperationKind.FILE_BACKUP: self._file_backup,  # type: ignore[dict-item]
            OperationKind.FILE_DELETE: self._file_delete,  # type: ignore[dict-item]
        }

    def execute(
        self,
        token: CancelToken,
        plan: Plan,
        *,
        commit: Callable[[], None] | None = None,
    ) -> ExecutionResult:
        """Run ``plan``; ``commit`` runs after the last batch and its failure rolls the plan back."""

        if plan.conflicts:
            raise ConflictError(plan.conflicts)
        graph = DependencyGraph.build(plan.operations)
        batches = graph.batches()

        if self.options.dry_run:
            planned = tuple(op.describe() for batch in batches for op in batch)
            for line in planned:
                logger.info("[dry-run] %s", line)
            return ExecutionResult(planned=planned, dry_run=True, batches=len(batches))

        self.prepare(token, graph.topological_sort())
        return self._run(token, batches, commit)

    # preparation --------------------------------------------------------

    def prepare(self, token: CancelToken, ordered: Sequence[Operation]) -> None:
        """Check every operation's preconditions before anything is changed.

        Paths produced by earlier operations in ``ordered`` count as present.
        """

        produced: set[str] = set()

        def present(path: AnyPath) -> bool:
            key = str(path)
            if key in produced or any(key.startswith(item + "/") for item in produced):
                return True
            return self._fs.exists(token, key)

        def require_parent(path: AnyPath, op: Operation) -> None:
            parent = posixpath.dirname(str(path))
            if parent not in produced and not self._fs.is_dir(token, parent):
                raise ParentNotFoundError(parent, operation=op.describe())

        for op in ordered:
            token.raise_if_cancelled()
            if isinstance(op, LinkCreate):
                if not present(op.source):
                    raise SourceNotFoundError(str(op.source), operation=op.describe())
                require_parent(op.target, op)
                produced.add(str(op.target))
            elif isinstance(op, DirCreate):
                require_parent(op.path, op)
                produced.add(str(op.path))
            elif isinstance(op, (FileMove, DirCopy)):
                if not present(op.source):
                    raise SourceNotFoundError(str(op.source), operation=op.describe())
                require_parent(op.destination, op)
                produced.add(str(op.destination))
            elif isinstance(op, FileBackup):
                if not present(op.source):
                    raise SourceNotFoundError(str(op.source), operation=op.describe())
                require_parent(op.backup, op)
                produced.add(str(op.backup))

    # running ------------------------------------------------------------

    def _run(
        self,
        token: CancelToken,
        batches: list[list[Operation]],
        commit: Callable[[], None] | None,
    ) -> ExecutionResult:
        completions: list[_Completion] = []
        failed: list[str] = []
        errors: list[OperationError] = []
        first_error: BaseException | None = None
        guard = threading.Lock()

        def run_one(op: Operation) -> None:
            undo = self.apply(token, op)
            with guard:
                completions.append(_Completion(op, undo))
            logger.debug("Executed %s", op.describe())

        for index, batch in enumerate(batches):
            if token.cancelled:
                first_error = OperationCancelledError()
                break
            logger.debug("Running batch %d with %d operation(s)", index, len(batch))
            for op, exc in self._run_batch(batch, run_one):
                failed.append(op.id)
                errors.append(OperationError(op.id, str(exc)))
                logger.error("Failed to %s: %s", op.describe(), exc)
                if first_error is None:
                    first_error = exc
            if first_error is not None:
                break

        if first_error is None and commit is not None:
            try:
                commit()
            except Exception as exc:  # noqa: BLE001 - a failed commit fails the plan
                logger.error("Commit after execution failed: %s", exc)
                first_error = exc

        executed = tuple(completion.op.id for completion in completions)
        if first_error is None:
            self.finish(completions)
            logger.info("Executed %d operation(s) in %d batch(es)", len(executed), len(batches))
            return ExecutionResult(executed=executed, batches=len(batches))

        rolled_back: list[str] = []
        rollback_errors: list[BaseException] = []
        if self.options.atomic:
            rolled_back, rollback_errors = self.rollback(completions)
        else:
            self.finish(completions)
        result = ExecutionResult(
            executed=executed,
            failed=tuple(failed),
            rolled_back=tuple(rolled_back),
            errors=tuple(errors),
            batches=len(batches),
        )
        raise ExecutorFailure(first_error, result=result, rollback_errors=rollback_errors)

    def _run_batch(
        self,
        batch: list[Operation],
        run_one: Callable[[Operation], None],
    ) -> list[tuple[Operation, BaseException]]:
        failures: list[tuple[Operation, BaseException]] = []
        workers = min(self.options.max_parallel, len(batch))
        if workers <= 1:
            for op in batch:
                try:
                    run_one(op)
                except Exception as exc:  # noqa: BLE001 - reported through ExecutorFailure
                    failures.append((op, exc))
                    break
            return failures

        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="dotlink-exec") as pool:
            futures: dict[Future[None], Operation] = {pool.submit(run_one, op): op for op in batch}
            done, pending = wait(futures, return_when=FIRST_EXCEPTION)
            if pending:
                for future in pending:
                    future.cancel()
                more, _ = wait(pending)
                done |= more
        for future, op in futures.items():
            if future.cancelled():
                continue
            exc = future.exception()
            if exc is not None:
                failures.append((op, exc))
        return failures

    def rollback(self, completions: list[_Completion]) -> tuple[list[str], list[BaseException]]:
        """Undo ``completions`` newest first, continuing past individual failures."""

        token = CancelToken.background()
        rolled_back: list[str] = []
        errors: list[BaseException] = []
        logger.warning("Rolling back %d operation(s)", len(completions))
        for completion in reversed(completions):
            if completion.undo is None:
                continue
            try:
                completion.undo(token)
            except Exception as exc:  # noqa: BLE001 - collected and chained to the failure
                logger.error("Rollback of %s failed: %s", completion.op.describe(), exc)
                errors.append(exc)
                continue
            rolled_back.append(completion.op.id)
        return rolled_back, errors

    def finish(self, completions: list[_Completion]) -> None:
        """Delete trees that removals moved aside; the plan can no longer be rolled back."""

        token = CancelToken.background()
        for completion in completions:
            if not isinstance(completion.undo, _StagedRemoval):
                continue
            try:
                completion.undo.finish(token)
            except OSError as exc:
                logger.error("Could not delete %s: %s; remove it by hand", completion.undo.staged, exc)

    def apply(self, token: CancelToken, op: Operation) -> Undo | None:
        """Perform ``op`` and return a callable that reverses it, if it can be reversed."""

        return self._handlers[op.kind](token, op)

    # handlers -----------------------------------------------------------

    def _link_create(self, token: CancelToken, op: LinkCreate) -> Undo | None:
        target = str(op.target)
        if op.relative:
            link_text = os.path.relpath(str(op.source), posixpath.dirname(target))
        else:
            link_text = str(op.source)
        try:
            self._fs.symlink(token, link_text, target)
        except FileExistsError:
            if self._fs.is_symlink(token, target) and self._fs.read_link(token, target) == link_text:
                return None
            raise

        def undo(rollback: CancelToken) -> None:
            self._fs.remove(rollback, target)

        return undo

    def _link_delete(self, token: CancelToken, op: LinkDelete) -> Undo | None:
        target = str(op.target)
        try:
            link_text = self._fs.read_link(token, target)
            self._fs.remove(token, target)
        except FileNotFoundError:
            return None

        def undo(rollback: CancelToken) -> None:
            self._fs.symlink(rollback, link_text, target)

        return undo

    def _dir_create(self, token: CancelToken, op: DirCreate) -> Undo | None:
        path = str(op.path)
        try:
            self._fs.mkdir(token, path)
        except FileExistsError:
            if self._fs.is_dir(token, path):
                return None
            raise

        def undo(rollback: CancelToken) -> None:
            try:
                self._fs.remove(rollback, path)
            except OSError as exc:
                if exc.errno != errno.ENOTEMPTY:
                    raise
                logger.warning("Leaving %s in place: directory is not empty", path)

        return undo

    def _dir_delete(self, token: CancelToken, op: DirDelete) -> Undo | None:
        path = str(op.path)
        try:
            mode = self._fs.lstat(token, path).mode
            self._fs.remove(token, path)
        except FileNotFoundError:
            return None

        def undo(rollback: CancelToken) -> None:
            self._fs.mkdir(rollback, path, mode)
            self._fs.chmod(rollback, path, mode)

        return undo

    def _dir_remove_all(self, token: CancelToken, op: DirRemoveAll) -> Undo | None:
        path = str(op.path)
        if not self._fs.exists(token, path):
            return None
        staged = f"{path}{STAGING_MARKER}{uuid.uuid4().hex[:12]}"
        self._fs.rename(token, path, staged)
        logger.debug("Moved %s aside to %s until the plan is committed", path, staged)
        return _StagedRemoval(self._fs, path, staged)

    def _dir_copy(self, token: CancelToken, op: DirCopy) -> Undo | None:
        destination = str(op.destination)
        copy_tree(self._fs, token, str(op.source), destination)

        def undo(rollback: CancelToken) -> None:
            self._fs.remove_all(rollback, destination)

        return undo

    def _file_move(self, token: CancelToken, op: FileMove) -> Undo | None:
        source, destination = str(op.source), str(op.destination)
        self._move(token, source, destination)

        def undo(rollback: CancelToken) -> None:
            self._move(rollback, destination, source)

        return undo

    def _move(self, token: CancelToken, source: str, destination: str) -> None:
        try:
            self._fs.rename(token, source, destination)
        except OSError as exc:
            if exc.errno != errno.EXDEV:
                raise
            logger.debug("Cross-device move of %s; copying instead", source)
            copy_tree(self._fs, token, source, destination)
            self._fs.remove_all(token, source)

    def _file_backup(self, token: CancelToken, op: FileBackup) -> Undo | None:
        backup = str(op.backup)
        copy_tree(self._fs, token, str(op.source), backup)

        def undo(rollback: CancelToken) -> None:
            self._fs.remove_all(rollback, backup)

        return undo

    def _file_delete(self, token: CancelToken, op: FileDelete) -> Undo | None:
        path = str(op.path)
        try:
            info = self._fs.lstat(token, path)
        except FileNotFoundError:
            return None
        if info.kind is EntryKind.SYMLINK:
            link_text = self._fs.read_link(token, path)
            self._fs.remove(token, path)

            def undo_link(rollback: CancelToken) -> None:
                self._fs.symlink(rollback, link_text, path)

            return undo_link

        data = self._fs.read_file(token, path)
        self._fs.remove(token, path)

        def undo_file(rollback: CancelToken) -> None:
            self._fs.write_file(rollback, path, data, info.mode)

        return undo_file
