"""Filesystem port with host and in-memory implementations.

Both implementations raise the standard ``FileNotFoundError``,
``FileExistsError``, ``IsADirectoryError``, ``NotADirectoryError`` and
``OSError`` (``ENOTEMPTY``, ``ELOOP``, ``EXDEV``) so callers behave the same
against either. Permission failures surface as ``PermissionDeniedError``.
Every call checks its cancellation token before touching the filesystem.
"""

from __future__ import annotations

import errno
import fcntl
import os
import posixpath
import shutil
import stat
import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Union

from .cancellation import CancelToken
from .errors import PermissionDeniedError
from .models import EntryKind
from .paths import clean_path

PathLike = Union[str, "os.PathLike[str]"]


@dataclass(frozen=True, slots=True)
class FileInfo:
    name: str
    kind: EntryKind
    size: int
    mode: int
    mtime: float

    @property
    def is_dir(self) -> bool:
        return self.kind is EntryKind.DIR

    @property
    def is_symlink(self) -> bool:
        return self.kind is EntryKind.SYMLINK


@dataclass(frozen=True, slots=True)
class DirEntry:
    name: str
    kind: EntryKind


class FileSystem(ABC):
    """Abstract filesystem used by the scanner, planner, executor and doctor."""

    @abstractmethod
    def stat(self, token: CancelToken, path: PathLike) -> FileInfo: ...

    @abstractmethod
    def lstat(self, token: CancelToken, path: PathLike) -> FileInfo: ...

    @abstractmethod
    def read_dir(self, token: CancelToken, path: PathLike) -> list[DirEntry]:
        """Return the entries of ``path`` sorted by name."""

    @abstractmethod
    def read_link(self, token: CancelToken, path: PathLike) -> str: ...

    @abstractmethod
    def read_file(self, token: CancelToken, path: PathLike) -> bytes: ...

    @abstractmethod
    def write_file(self, token: CancelToken, path: PathLike, data: bytes, mode: int = 0o644) -> None:
        """Create or truncate ``path`` with ``data`` and set its mode."""

    @abstractmethod
    def mkdir(self, token: CancelToken, path: PathLike, mode: int = 0o755) -> None: ...

    @abstractmethod
    def mkdir_all(self, token: CancelToken, path: PathLike, mode: int = 0o755) -> None: ...

    @abstractmethod
    def remove(self, token: CancelToken, path: PathLike) -> None:
        """Remove a file, symlink or empty directory."""

    @abstractmethod
    def remove_all(self, token: CancelToken, path: PathLike) -> None:
        """Remove ``path`` and its contents. A missing path is not an error."""

    @abstractmethod
    def symlink(self, token: CancelToken, link_target: str, path: PathLike) -> None:
        """Create ``path`` as a symlink whose text is ``link_target``."""

    @abstractmethod
    def rename(self, token: CancelToken, source: PathLike, destination: PathLike) -> None: ...

    @abstractmethod
    def chmod(self, token: CancelToken, path: PathLike, mode: int) -> None: ...

    @abstractmethod
    @contextmanager
    def lock(self, token: CancelToken, path: PathLike) -> Iterator[None]:
        """Hold an exclusive advisory lock on ``path`` for the duration of the block."""

    def exists(self, token: CancelToken, path: PathLike) -> bool:
        """Return ``True`` if any entry, including a dangling symlink, is at ``path``."""

        try:
            self.lstat(token, path)
        except (FileNotFoundError, NotADirectoryError):
            return False
        return True

    def is_dir(self, token: CancelToken, path: PathLike) -> bool:
        """Return ``True`` if ``path`` resolves to a directory, following symlinks."""

        try:
            return self.stat(token, path).is_dir
        except (FileNotFoundError, NotADirectoryError):
            return False
        except OSError as exc:
            if exc.errno == errno.ELOOP:
                return False
            raise

    def is_symlink(self, token: CancelToken, path: PathLike) -> bool:
        try:
            return self.lstat(token, path).is_symlink
        except (FileNotFoundError, NotADirectoryError):
            return False


# ---------------------------------------------------------------------------
# Host filesystem


@contextmanager
def _guard(token: CancelToken, path: PathLike) -> Iterator[None]:
    token.raise_if_cancelled()
    try:
        yield
    except PermissionError as exc:
        raise PermissionDeniedError(os.fspath(path), cause=exc) from exc


def _kind_from_mode(mode: int) -> EntryKind:
    if stat.S_ISLNK(mode):
        return EntryKind.SYMLINK
    if stat.S_ISDIR(mode):
        return EntryKind.DIR
    return EntryKind.FILE


def _info_from_stat(path: str, result: os.stat_result) -> FileInfo:
    return FileInfo(
        name=posixpath.basename(path),
        kind=_kind_from_mode(result.st_mode),
        size=result.st_size,
        mode=stat.S_IMODE(result.st_mode),
        mtime=result.st_mtime,
    )


class OSFileSystem(FileSystem):
    """Filesystem port backed by the host operating system."""

    def stat(self, token: CancelToken, path: PathLike) -> FileInfo:
        with _guard(token, path):
            return _info_from_stat(os.fspath(path), os.stat(path))

    def lstat(self, token: CancelToken, path: PathLike) -> FileInfo:
        with _guard(token, path):
            return _info_from_stat(os.fspath(path), os.lstat(path))

    def read_dir(self, token: CancelToken, path: PathLike) -> list[DirEntry]:
        entries: list[DirEntry] = []
        with _guard(token, path), os.scandir(path) as iterator:
            for item in iterator:
                if item.is_symlink():
                    kind = EntryKind.SYMLINK
                elif item.is_dir(follow_symlinks=False):
                    kind = EntryKind.DIR
                else:
                    kind = EntryKind.FILE
                entries.append(DirEntry(item.name, kind))
        entries.sort(key=lambda entry: entry.name)
        return entries

    def read_link(self, token: CancelToken, path: PathLike) -> str:
        with _guard(token, path):
            return os.readlink(path)

    def read_file(self, token: CancelToken, path: PathLike) -> bytes:
        with _guard(token, path), open(path, "rb") as handle:
            return handle.read()

    def write_file(self, token: CancelToken, path: PathLike, data: bytes, mode: int = 0o644) -> None:
        with _guard(token, path):
            fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
            with os.fdopen(fd, "wb") as handle:
                handle.write(data)
                handle.flush()
                os.fsync(handle.fileno())
            os.chmod(path, mode)

    def mkdir(self, token: CancelToken, path: PathLike, mode: int = 0o755) -> None:
        with _guard(token, path):
            os.mkdir(path, mode)

    def mkdir_all(self, token: CancelToken, path: PathLike, mode: int = 0o755) -> None:
        with _guard(token, path):
            os.makedirs(path, mode, exist_ok=True)

    def remove(self, token: CancelToken, path: PathLike) -> None:
        with _guard(token, path):
            if stat.S_ISDIR(os.lstat(path).st_mode):
                os.rmdir(path)
            else:
                os.unlink(path)

    def remove_all(self, token: CancelToken, path: PathLike) -> None:
        with _guard(token, path):
            try:
                mode = os.lstat(path).st_mode
            except FileNotFoundError:
                return
            if stat.S_ISDIR(mode):
                shutil.rmtree(path)
            else:
                os.unlink(path)

    def symlink(self, token: CancelToken, link_target: str, path: PathLike) -> None:
        with _guard(token, path):
            os.symlink(link_target, path)

    def rename(self, token: CancelToken, source: PathLike, destination: PathLike) -> None:
        with _guard(token, destination):
            os.rename(source, destination)

    def chmod(self, token: CancelToken, path: PathLike, mode: int) -> None:
        with _guard(token, path):
            os.chmod(path, mode)

    @contextmanager
    def lock(self, token: CancelToken, path: PathLike) -> Iterator[None]:
        with _guard(token, path):
            handle = open(path, "a+")
        try:
            with _guard(token, path):
                fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)
        finally:
            handle.close()


# ---------------------------------------------------------------------------
# In-memory filesystem


_MAX_SYMLINK_HOPS = 40


@dataclass(slots=True)
class _Node:
    kind: EntryKind
    mode: int
    data: bytes = b""
    link_target: str = ""
    mtime: float = field(default_factory=time.time)


class MemoryFileSystem(FileSystem):
    """Fully in-memory filesystem for tests.

    Paths are absolute POSIX strings. Symlinks are resolved lexically, parent
    directories must exist, directories without the owner write bit reject
    changes to their entries, and non-empty directories cannot be removed.
    """

    def __init__(self) -> None:
        self._nodes: dict[str, _Node] = {"/": _Node(EntryKind.DIR, 0o755)}
        self._mutex = threading.RLock()
        self._locks: dict[str, threading.Lock] = {}

    # public API ---------------------------------------------------------

    def stat(self, token: CancelToken, path: PathLike) -> FileInfo:
        token.raise_if_cancelled()
        with self._mutex:
            real = self._real(path, follow=True)
            return self._info(real, self._node(real))

    def lstat(self, token: CancelToken, path: PathLike) -> FileInfo:
        token.raise_if_cancelled()
        with self._mutex:
            real = self._real(path, follow=False)
            return self._info(real, self._node(real))

    def read_dir(self, token: CancelToken, path: PathLike) -> list[DirEntry]:
        token.raise_if_cancelled()
        with self._mutex:
            real = self._real(path, follow=True)
            node = self._node(real)
            if node.kind is not EntryKind.DIR:
                raise NotADirectoryError(errno.ENOTDIR, "Not a directory", os.fspath(path))
            if not node.mode & 0o400:
                raise PermissionDeniedError(os.fspath(path))
            entries = [
                DirEntry(posixpath.basename(child), self._nodes[child].kind) for child in self._children(real)
            ]
        entries.sort(key=lambda entry: entry.name)
        return entries

    def read_link(self, token: CancelToken, path: PathLike) -> str:
        token.raise_if_cancelled()
        with self._mutex:
            node = self._node(self._real(path, follow=False))
            if node.kind is not EntryKind.SYMLINK:
                raise OSError(errno.EINVAL, "Invalid argument", os.fspath(path))
            return node.link_target

    def read_file(self, token: CancelToken, path: PathLike) -> bytes:
        token.raise_if_cancelled()
        with self._mutex:
            node = self._node(self._real(path, follow=True))
            if node.kind is EntryKind.DIR:
                raise IsADirectoryError(errno.EISDIR, "Is a directory", os.fspath(path))
            if not node.mode & 0o400:
                raise PermissionDeniedError(os.fspath(path))
            return node.data

    def write_file(self, token: CancelToken, path: PathLike, data: bytes, mode: int = 0o644) -> None:
        token.raise_if_cancelled()
        with self._mutex:
            real = self._real(path, follow=True)
            existing = self._nodes.get(real)
            if existing is not None and existing.kind is EntryKind.DIR:
                raise IsADirectoryError(errno.EISDIR, "Is a directory", os.fspath(path))
            self._check_parent(real, os.fspath(path))
            self._nodes[real] = _Node(EntryKind.FILE, mode & 0o7777, data=bytes(data))

    def mkdir(self, token: CancelToken, path: PathLike, mode: int = 0o755) -> None:
        token.raise_if_cancelled()
        with self._mutex:
            real = self._real(path, follow=False)
            if real in self._nodes:
                raise FileExistsError(errno.EEXIST, "File exists", os.fspath(path))
            self._check_parent(real, os.fspath(path))
            self._nodes[real] = _Node(EntryKind.DIR, mode & 0o7777)

    def mkdir_all(self, token: CancelToken, path: PathLike, mode: int = 0o755) -> None:
        token.raise_if_cancelled()
        with self._mutex:
            current = "/"
            for part in self._normalize(path).strip("/").split("/"):
                if not part:
                    continue
                candidate = self._real(posixpath.join(current, part), follow=True)
                node = self._nodes.get(candidate)
                if node is None:
                    self._check_parent(candidate, candidate)
                    self._nodes[candidate] = _Node(EntryKind.DIR, mode & 0o7777)
                elif node.kind is not EntryKind.DIR:
                    raise FileExistsError(errno.EEXIST, "File exists", candidate)
                current = candidate

    def remove(self, token: CancelToken, path: PathLike) -> None:
        token.raise_if_cancelled()
        with self._mutex:
            real = self._real(path, follow=False)
            node = self._node(real)
            if real == "/":
                raise PermissionDeniedError("/")
            if node.kind is EntryKind.DIR and any(True for _ in self._children(real)):
                raise OSError(errno.ENOTEMPTY, "Directory not empty", os.fspath(path))
            self._check_parent(real, os.fspath(path))
            del self._nodes[real]

    def remove_all(self, token: CancelToken, path: PathLike) -> None:
        token.raise_if_cancelled()
        with self._mutex:
            real = self._real(path, follow=False)
            if real not in self._nodes:
                return
            if real == "/":
                raise PermissionDeniedError("/")
            self._check_parent(real, os.fspath(path))
            for key in self._descendants(real):
                del self._nodes[key]
            del self._nodes[real]

    def symlink(self, token: CancelToken, link_target: str, path: PathLike) -> None:
        token.raise_if_cancelled()
        with self._mutex:
            real = self._real(path, follow=False)
            if real in self._nodes:
                raise FileExistsError(errno.EEXIST, "File exists", os.fspath(path))
            self._check_parent(real, os.fspath(path))
            self._nodes[real] = _Node(EntryKind.SYMLINK, 0o777, link_target=link_target)

    def rename(self, token: CancelToken, source: PathLike, destination: PathLike) -> None:
        token.raise_if_cancelled()
        with self._mutex:
            src = self._real(source, follow=False)
            dst = self._real(destination, follow=False)
            node = self._node(src)
            self._check_parent(src, os.fspath(source))
            self._check_parent(dst, os.fspath(destination))
            if src == dst:
                return
            if dst.startswith(src + "/"):
                raise OSError(errno.EINVAL, "Invalid argument", os.fspath(destination))
            existing = self._nodes.get(dst)
            if existing is not None:
                if existing.kind is EntryKind.DIR:
                    if node.kind is not EntryKind.DIR:
                        raise IsADirectoryError(errno.EISDIR, "Is a directory", os.fspath(destination))
                    if any(True for _ in self._children(dst)):
                        raise OSError(errno.ENOTEMPTY, "Directory not empty", os.fspath(destination))
                elif node.kind is EntryKind.DIR:
                    raise NotADirectoryError(errno.ENOTDIR, "Not a directory", os.fspath(destination))
            moved = {key: self._nodes.pop(key) for key in self._descendants(src)}
            self._nodes[dst] = self._nodes.pop(src)
            for key, child in moved.items():
                self._nodes[dst + key[len(src) :]] = child

    def chmod(self, token: CancelToken, path: PathLike, mode: int) -> None:
        token.raise_if_cancelled()
        with self._mutex:
            self._node(self._real(path, follow=True)).mode = mode & 0o7777

    @contextmanager
    def lock(self, token: CancelToken, path: PathLike) -> Iterator[None]:
        token.raise_if_cancelled()
        key = self._normalize(path)
        with self._mutex:
            lock = self._locks.setdefault(key, threading.Lock())
        with lock:
            yield

    # helpers ------------------------------------------------------------

    @staticmethod
    def _normalize(path: PathLike) -> str:
        return clean_path(path)

    def _resolve(self, path: str) -> str:
        """Follow every symlink along ``path``, including the last component."""

        pending = [part for part in path.strip("/").split("/") if part]
        current = "/"
        hops = 0
        while pending:
            part = pending.pop(0)
            candidate = posixpath.join(current, part)
            node = self._nodes.get(candidate)
            if node is not None and node.kind is EntryKind.SYMLINK:
                hops += 1
                if hops > _MAX_SYMLINK_HOPS:
                    raise OSError(errno.ELOOP, "Too many levels of symbolic links", path)
                resolved = posixpath.normpath(posixpath.join(current, node.link_target))
                pending = [p for p in resolved.strip("/").split("/") if p] + pending
                current = "/"
                continue
            current = candidate
        return current

    def _real(self, path: PathLike, *, follow: bool) -> str:
        normalized = self._normalize(path)
        if normalized == "/":
            return "/"
        parent, name = posixpath.split(normalized)
        real = posixpath.join(self._resolve(parent), name)
        if follow:
            return self._resolve(real)
        return real

    def _node(self, real: str) -> _Node:
        node = self._nodes.get(real)
        if node is None:
            parent = self._nodes.get(posixpath.dirname(real))
            if parent is not None and parent.kind is not EntryKind.DIR:
                raise NotADirectoryError(errno.ENOTDIR, "Not a directory", real)
            raise FileNotFoundError(errno.ENOENT, "No such file or directory", real)
        return node

    def _check_parent(self, real: str, display: str) -> None:
        parent = self._nodes.get(posixpath.dirname(real))
        if parent is None:
            raise FileNotFoundError(errno.ENOENT, "No such file or directory", display)
        if parent.kind is not EntryKind.DIR:
            raise NotADirectoryError(errno.ENOTDIR, "Not a directory", display)
        if not parent.mode & 0o200:
            raise PermissionDeniedError(display)

    def _children(self, real: str) -> Iterator[str]:
        prefix = real.rstrip("/") + "/"
        for key in list(self._nodes):
            if key != real and key.startswith(prefix) and "/" not in key[len(prefix) :]:
                yield key

    def _descendants(self, real: str) -> list[str]:
        prefix = real.rstrip("/") + "/"
        return [key for key in self._nodes if key.startswith(prefix) and key != real]

    @staticmethod
    def _info(real: str, node: _Node) -> FileInfo:
        size = len(node.data) if node.kind is EntryKind.FILE else len(node.link_target)
        return FileInfo(
            name=posixpath.basename(real),
            kind=node.kind,
            size=size,
            mode=node.mode,
            mtime=node.mtime,
        )
