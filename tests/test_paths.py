from __future__ import annotations

import pytest

from dotlink.dotfiles import DotfileTranslator
from dotlink.errors import InvalidPathError
from dotlink.paths import FilePath, PackagePath, TargetPath, clean_path, clean_relative


def test_clean_path_normalises_separators_and_dots() -> None:
    assert clean_path("/home//u/./.config/") == "/home/u/.config"
    assert clean_path("//etc") == "/etc"
    assert clean_path("/") == "/"


@pytest.mark.parametrize("raw", ["", "relative/path", "/home/u/../root"])
def test_clean_path_rejects_invalid_input(raw: str) -> None:
    with pytest.raises(InvalidPathError):
        clean_path(raw)


def test_clean_relative() -> None:
    assert clean_relative("a//b/./c") == "a/b/c"
    with pytest.raises(InvalidPathError):
        clean_relative("../escape")
    with pytest.raises(InvalidPathError):
        clean_relative(".")


def test_typed_paths_join_and_relate() -> None:
    target = TargetPath("/home/u")
    vimrc = target.join(".vimrc")

    assert isinstance(vimrc, TargetPath)
    assert str(vimrc) == "/home/u/.vimrc"
    assert vimrc.parent == target
    assert vimrc.name == ".vimrc"
    assert vimrc.relative_to(target) == ".vimrc"
    assert target.relative_to(target) == "."


def test_is_within_respects_segment_boundaries() -> None:
    assert TargetPath("/home/u/.vimrc").is_within("/home/u")
    assert not TargetPath("/home/user2/.vimrc").is_within("/home/user")
    assert TargetPath("/anything").is_within("/")
    with pytest.raises(InvalidPathError):
        TargetPath("/home/user2").relative_to("/home/user")


def test_join_rejects_absolute_and_traversal() -> None:
    with pytest.raises(InvalidPathError):
        PackagePath("/pkgs").join("/etc/passwd")
    with pytest.raises(InvalidPathError):
        PackagePath("/pkgs").join("../etc")


def test_path_kinds_are_distinct_types() -> None:
    assert PackagePath("/x") != TargetPath("/x")
    assert FilePath("/x") == FilePath("/x//")


def test_translator_maps_dot_prefix() -> None:
    translator = DotfileTranslator()

    assert translator.translate("dot-vimrc") == ".vimrc"
    assert translator.translate("dot-") == "dot-"
    assert translator.translate("README") == "README"
    assert translator.untranslate(".vimrc") == "dot-vimrc"
    assert translator.translate_path("dot-config/nvim/init.vim") == ".config/nvim/init.vim"
    assert translator.untranslate_path(".config/nvim") == "dot-config/nvim"
    assert translator.package_name_for(".ssh/config") == "dot-ssh"


def test_translator_can_be_disabled() -> None:
    translator = DotfileTranslator(enabled=False)

    assert translator.translate("dot-vimrc") == "dot-vimrc"
    assert translator.untranslate(".vimrc") == ".vimrc"
