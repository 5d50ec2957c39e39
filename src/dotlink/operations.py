"""Filesystem operations produced by the planner and applied by the executor.

Operations form a tagged sum: each variant is a frozen dataclass with its own
fields and a ``kind`` discriminator. Equality is structural. Identifiers are
derived from the operation's content unless the planner supplies one, so the
same act planned twice collapses to a single operation.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import Enum
from typing import ClassVar

from .paths import AnyPath, PackagePath, TargetPath


class OperationKind(str, Enum):
    LINK_CREATE = "link_create"
    LINK_DELETE = "link_delete"
    DIR_CREATE = "dir_create"
    DIR_DELETE = "dir_delete"
    DIR_REMOVE_ALL = "dir_remove_all"
    DIR_COPY = "dir_copy"
    FILE_MOVE = "file_move"
    FILE_BACKUP = "file_backup"
    FILE_DELETE = "file_delete"


def _default_id(op: object, *parts: object) -> None:
    if not op.id:  # type: ignore[attr-defined]
        key = "->".join(str(part) for part in parts)
        object.__setattr__(op, "id", f"{op.kind.value}:{key}")  # type: ignore[attr-defined]


@dataclass(frozen=True, slots=True)
class LinkCreate:
    """Create ``target`` as a symlink to ``source``."""

    kind: ClassVar[OperationKind] = OperationKind.LINK_CREATE

    source: PackagePath
    target: TargetPath
    relative: bool = True
    id: str = ""
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _default_id(self, self.target)

    def describe(self) -> str:
        return f"create link {self.target} -> {self.source}"


@dataclass(frozen=True, slots=True)
class LinkDelete:
    kind: ClassVar[OperationKind] = OperationKind.LINK_DELETE

    target: TargetPath
    id: str = ""
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _default_id(self, self.target)

    def describe(self) -> str:
        return f"delete link {self.target}"


@dataclass(frozen=True, slots=True)
class DirCreate:
    kind: ClassVar[OperationKind] = OperationKind.DIR_CREATE

    path: AnyPath
    id: str = ""
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _default_id(self, self.path)

    def describe(self) -> str:
        return f"create directory {self.path}"


@dataclass(frozen=True, slots=True)
class DirDelete:
    """Remove an empty directory."""

    kind: ClassVar[OperationKind] = OperationKind.DIR_DELETE

    path: AnyPath
    id: str = ""
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _default_id(self, self.path)

    def describe(self) -> str:
        return f"delete directory {self.path}"


@dataclass(frozen=True, slots=True)
class DirRemoveAll:
    """Remove a directory and everything beneath it.

    The tree is moved aside first and only deleted once the plan is committed.
    """

    kind: ClassVar[OperationKind] = OperationKind.DIR_REMOVE_ALL

    path: AnyPath
    id: str = ""
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _default_id(self, self.path)

    def describe(self) -> str:
        return f"recursively delete directory {self.path}"


@dataclass(frozen=True, slots=True)
class DirCopy:
    """Copy a directory tree, keeping the source in place."""

    kind: ClassVar[OperationKind] = OperationKind.DIR_COPY

    source: AnyPath
    destination: AnyPath
    id: str = ""
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _default_id(self, self.source, self.destination)

    def describe(self) -> str:
        return f"copy directory {self.source} -> {self.destination}"


@dataclass(frozen=True, slots=True)
class FileMove:
    """Rename a file or directory, copying across devices when needed."""

    kind: ClassVar[OperationKind] = OperationKind.FILE_MOVE

    source: AnyPath
    destination: AnyPath
    id: str = ""
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _default_id(self, self.source, self.destination)

    def describe(self) -> str:
        return f"move file {self.source} -> {self.destination}"


@dataclass(frozen=True, slots=True)
class FileBackup:
    """Copy a file to ``backup`` with the same content and mode."""

    kind: ClassVar[OperationKind] = OperationKind.FILE_BACKUP

    source: AnyPath
    backup: AnyPath
    id: str = ""
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _default_id(self, self.source, self.backup)

    def describe(self) -> str:
        return f"backup file {self.source} -> {self.backup}"


@dataclass(frozen=True, slots=True)
class FileDelete:
    kind: ClassVar[OperationKind] = OperationKind.FILE_DELETE

    path: AnyPath
    id: str = ""
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _default_id(self, self.path)

    def describe(self) -> str:
        return f"delete file {self.path}"


Operation = (
    LinkCreate | LinkDelete | DirCreate | DirDelete | DirRemoveAll | DirCopy | FileMove | FileBackup | FileDelete
)


def with_dependencies(op: Operation, *depends_on: str) -> Operation:
    """Return a copy of ``op`` that additionally depends on ``depends_on``."""

    merged = tuple(dict.fromkeys((*op.depends_on, *(dep for dep in depends_on if dep))))
    return replace(op, depends_on=merged)

