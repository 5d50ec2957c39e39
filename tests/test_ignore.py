from __future__ import annotations

import pytest

from dotlink.ignore import IgnorePattern, IgnoreSet, parse_ignore_file


def test_defaults_ignore_vcs_and_editor_files() -> None:
    ignore = IgnoreSet.build()

    assert ignore.is_ignored(".git")
    assert ignore.is_ignored("dot-vim/.git/config")
    assert ignore.is_ignored("notes.txt.swp")
    assert ignore.is_ignored("backup~")
    assert ignore.is_ignored(".dot-manifest.json")
    assert not ignore.is_ignored("dot-vimrc")


def test_defaults_can_be_disabled() -> None:
    assert not IgnoreSet.build(use_defaults=False).is_ignored(".git")


def test_pattern_with_slash_is_anchored() -> None:
    ignore = IgnoreSet(["docs/*.md"])

    assert ignore.is_ignored("docs/readme.md")
    assert ignore.is_ignored("docs/readme.md/inner")
    assert not ignore.is_ignored("pkg/docs/readme.md")


def test_double_star_spans_segments() -> None:
    ignore = IgnoreSet(["**/build"])

    assert ignore.is_ignored("build")
    assert ignore.is_ignored("a/b/build")
    assert not ignore.is_ignored("a/builder")


def test_last_matching_pattern_wins() -> None:
    ignore = IgnoreSet(["*.log", "!keep.log"])

    assert ignore.is_ignored("debug.log")
    assert not ignore.is_ignored("keep.log")


def test_extend_scopes_patterns_to_base() -> None:
    ignore = IgnoreSet().extend(["*.tmp"], base="dot-config")

    assert ignore.is_ignored("dot-config/cache.tmp")
    assert not ignore.is_ignored("cache.tmp")


def test_empty_pattern_is_rejected() -> None:
    with pytest.raises(ValueError):
        IgnorePattern.compile("  ")


def test_parse_ignore_file_skips_comments_and_blanks() -> None:
    text = "# editor state\n\n*.swp\n  build/  \n"

    assert parse_ignore_file(text) == ["*.swp", "build/"]
