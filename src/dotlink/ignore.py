"""Glob-based ignore rules with ``!`` overrides.

Patterns are matched against ``/``-separated paths relative to a root. A
pattern without a slash matches any single path segment, so ``.git`` ignores
``.git`` and everything under it wherever it appears. A pattern containing a
slash is anchored to the root (or to the directory of the ignore file that
declared it). ``*`` matches within a segment, ``**`` spans segments, and the
last matching pattern decides.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable

MANIFEST_FILENAME = ".dot-manifest.json"
IGNORE_FILENAME = ".dotignore"

DEFAULT_PATTERNS: tuple[str, ...] = (
    ".git",
    ".svn",
    ".hg",
    ".bzr",
    "CVS",
    ".DS_Store",
    "Thumbs.db",
    "desktop.ini",
    "*.swp",
    "*.swo",
    "*~",
    ".#*",
    "#*#",
    MANIFEST_FILENAME,
    IGNORE_FILENAME,
)


def _glob_to_regex(glob: str) -> str:
    out: list[str] = []
    i = 0
    length = len(glob)
    while i < length:
        char = glob[i]
        if glob.startswith("**/", i):
            out.append("(?:.*/)?")
            i += 3
            continue
        if glob.startswith("/**", i) and i + 3 == length:
            out.append("(?:/.*)?")
            i += 3
            continue
        if glob.startswith("**", i):
            out.append(".*")
            i += 2
            continue
        if char == "*":
            out.append("[^/]*")
        elif char == "?":
            out.append("[^/]")
        elif char == "[":
            end = glob.find("]", i + 1)
            if end == -1:
                out.append(re.escape(char))
            else:
                body = glob[i + 1 : end]
                if body.startswith("!"):
                    body = "^" + body[1:]
                out.append(f"[{body.replace(chr(92), chr(92) * 2)}]")
                i = end + 1
                continue
        else:
            out.append(re.escape(char))
        i += 1
    return "".join(out)


@dataclass(frozen=True, slots=True)
class IgnorePattern:
    source: str
    regex: re.Pattern[str]
    negated: bool
    anchored: bool
    base: str = ""

    @classmethod
    def compile(cls, raw: str, *, base: str = "") -> IgnorePattern:
        text = raw.strip()
        negated = False
        if text.startswith("!"):
            negated = True
            text = text[1:]
        elif text.startswith("\\!") or text.startswith("\\#"):
            text = text[1:]
        text = text.rstrip("/")
        anchored = "/" in text
        text = text.lstrip("/")
        if not text:
            raise ValueError(f"empty ignore pattern: {raw!r}")
        return cls(
            source=raw.strip(),
            regex=re.compile(_glob_to_regex(text)),
            negated=negated,
            anchored=anchored,
            base=base.strip("/"),
        )

    def matches(self, relative: str) -> bool:
        if self.base:
            if not relative.startswith(self.base + "/"):
                return False
            relative = relative[len(self.base) + 1 :]
        parts = relative.split("/")
        if not self.anchored:
            return any(self.regex.fullmatch(part) for part in parts)
        for end in range(1, len(parts) + 1):
            if self.regex.fullmatch("/".join(parts[:end])):
                return True
        return False


class IgnoreSet:
    """An immutable, ordered collection of ignore patterns."""

    def __init__(self, patterns: Iterable[IgnorePattern | str] = ()) -> None:
        compiled: list[IgnorePattern] = []
        for pattern in patterns:
            compiled.append(pattern if isinstance(pattern, IgnorePattern) else IgnorePattern.compile(pattern))
        self._patterns = tuple(compiled)

    @classmethod
    def build(cls, *, use_defaults: bool = True, patterns: Iterable[str] = ()) -> IgnoreSet:
        base = list(DEFAULT_PATTERNS) if use_defaults else []
        return cls([*base, *patterns])

    @property
    def patterns(self) -> tuple[str, ...]:
        return tuple(pattern.source for pattern in self._patterns)

    def __len__(self) -> int:
        return len(self._patterns)

    def extend(self, patterns: Iterable[str], *, base: str = "") -> IgnoreSet:
        """Return a new set with ``patterns`` appended, scoped below ``base``."""

        extra = [IgnorePattern.compile(pattern, base=base) for pattern in patterns]
        if not extra:
            return self
        return IgnoreSet([*self._patterns, *extra])

    def is_ignored(self, relative: str) -> bool:
        ignored = False
        for pattern in self._patterns:
            if pattern.matches(relative):
                ignored = not pattern.negated
        return ignored


def parse_ignore_file(text: str) -> list[str]:
    """Parse ignore-file text: one pattern per line, ``#`` comments, blank lines skipped."""

    patterns: list[str] = []
    for line in text.splitlines():
        stripped = line.strip()
        if not stripped or stripped.startswith("#"):
            continue
        patterns.append(stripped)
    return patterns
