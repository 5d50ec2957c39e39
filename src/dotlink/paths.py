"""Typed absolute paths used throughout dotlink."""

from __future__ import annotations

import os
import posixpath
from dataclasses import dataclass
from typing import TypeVar

from .errors import InvalidPathError

_P = TypeVar("_P", bound="_TypedPath")


def clean_path(raw: str | os.PathLike[str]) -> str:
    """Validate ``raw`` and return its cleaned absolute form.

    Duplicate separators, trailing separators and ``.`` segments are removed.
    Relative paths and paths with ``..`` segments are rejected.
    """

    text = os.fspath(raw)
    if not text:
        raise InvalidPathError(text, "path is empty")
    if not text.startswith("/"):
        raise InvalidPathError(text, "path must be absolute")
    if ".." in text.split("/"):
        raise InvalidPathError(text, "path must not contain '..'")
    cleaned = posixpath.normpath(text)
    # normpath keeps a leading double slash
    if cleaned.startswith("//"):
        cleaned = "/" + cleaned.lstrip("/")
    return cleaned


def clean_relative(raw: str) -> str:
    """Return ``raw`` as a cleaned relative POSIX path, rejecting traversal."""

    if not raw or raw.startswith("/"):
        raise InvalidPathError(raw, "expected a non-empty relative path")
    if ".." in raw.split("/"):
        raise InvalidPathError(raw, "path must not contain '..'")
    cleaned = posixpath.normpath(raw)
    if cleaned == ".":
        raise InvalidPathError(raw, "expected a non-empty relative path")
    return cleaned


@dataclass(frozen=True, slots=True)
class _TypedPath:
    value: str

    def __post_init__(self) -> None:
        object.__setattr__(self, "value", clean_path(self.value))

    def __str__(self) -> str:
        return self.value

    def __fspath__(self) -> str:
        return self.value

    @property
    def name(self) -> str:
        return posixpath.basename(self.value)

    @property
    def parent(self: _P) -> _P:
        return type(self)(posixpath.dirname(self.value))

    def join(self: _P, *parts: str) -> _P:
        for part in parts:
            if part.startswith("/"):
                raise InvalidPathError(part, "cannot join an absolute path")
        return type(self)(posixpath.join(self.value, *parts))

    def is_within(self, other: "_TypedPath | str") -> bool:
        """Return ``True`` if this path equals ``other`` or lies beneath it."""

        root = str(other)
        if root == "/":
            return True
        return self.value == root or self.value.startswith(root + "/")

    def relative_to(self, other: "_TypedPath | str") -> str:
        root = str(other)
        if not self.is_within(root):
            raise InvalidPathError(self.value, f"not inside {root}")
        if self.value == root:
            return "."
        return posixpath.relpath(self.value, root)


@dataclass(frozen=True, slots=True)
class PackagePath(_TypedPath):
    """A location inside the package directory."""


@dataclass(frozen=True, slots=True)
class TargetPath(_TypedPath):
    """A location inside the target directory where links materialise."""


@dataclass(frozen=True, slots=True)
class FilePath(_TypedPath):
    """Any other absolute location, such as backups or staging files."""


AnyPath = PackagePath | TargetPath | FilePath
