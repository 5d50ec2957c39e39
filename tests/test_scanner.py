from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from dotlink.cancellation import CancelToken
from dotlink.dotfiles import DotfileTranslator
from dotlink.errors import DotlinkError, InvalidPathError, OperationCancelledError, PackageNotFoundError
from dotlink.filesystem import MemoryFileSystem
from dotlink.ignore import IgnoreSet
from dotlink.models import EntryKind
from dotlink.paths import PackagePath
from dotlink.scanner import PackageScanner

if TYPE_CHECKING:
    from conftest import MemTree


def _scanner(fs: MemoryFileSystem) -> PackageScanner:
    return PackageScanner(fs, PackagePath("/pkgs"), ignore=IgnoreSet.build(), translator=DotfileTranslator())


def test_scan_lists_entries_in_pre_order(memfs: MemoryFileSystem, tree: MemTree, token: CancelToken) -> None:
    tree.file("/pkgs/vim/dot-vimrc", "set nu\n")
    tree.file("/pkgs/vim/dot-vim/colors/dark.vim")
    tree.file("/pkgs/vim/.git/HEAD")
    tree.file("/pkgs/vim/notes.swp")

    inventory = _scanner(memfs).scan(token, "vim")

    assert inventory.package == "vim"
    assert str(inventory.root) == "/pkgs/vim"
    assert [entry.rel_source for entry in inventory.entries] == [
        "dot-vim",
        "dot-vim/colors",
        "dot-vim/colors/dark.vim",
        "dot-vimrc",
    ]
    assert [entry.rel_target for entry in inventory.entries] == [
        ".vim",
        ".vim/colors",
        ".vim/colors/dark.vim",
        ".vimrc",
    ]
    assert inventory.entries[0].kind is EntryKind.DIR
    assert inventory.partial_dirs == frozenset()


def test_dotignore_is_scoped_and_marks_directory_partial(
    memfs: MemoryFileSystem, tree: MemTree, token: CancelToken
) -> None:
    tree.file("/pkgs/app/dot-config/.dotignore", "# generated\n*.log\n")
    tree.file("/pkgs/app/dot-config/settings.conf")
    tree.file("/pkgs/app/dot-config/debug.log")
    tree.file("/pkgs/app/top.log")

    inventory = _scanner(memfs).scan(token, "app")

    assert [entry.rel_source for entry in inventory.entries] == [
        "dot-config",
        "dot-config/settings.conf",
        "top.log",
    ]
    assert inventory.partial_dirs == frozenset({"dot-config"})


def test_undecodable_dotignore_names_the_file(memfs: MemoryFileSystem, tree: MemTree, token: CancelToken) -> None:
    tree.dir("/pkgs/app")
    memfs.write_file(token, "/pkgs/app/.dotignore", b"\xff\xfe*.log\n")

    with pytest.raises(DotlinkError) as excinfo:
        _scanner(memfs).scan(token, "app")

    assert "/pkgs/app/.dotignore" in excinfo.value.message
    assert excinfo.value.exit_code == 1
    assert isinstance(excinfo.value.__cause__, UnicodeDecodeError)


def test_package_with_only_ignored_content_is_empty(
    memfs: MemoryFileSystem, tree: MemTree, token: CancelToken
) -> None:
    tree.file("/pkgs/junk/.DS_Store")

    assert _scanner(memfs).scan(token, "junk").empty


def test_missing_package_raises(memfs: MemoryFileSystem, token: CancelToken) -> None:
    with pytest.raises(PackageNotFoundError) as excinfo:
        _scanner(memfs).scan(token, "nope")

    assert excinfo.value.exit_code == 5


@pytest.mark.parametrize("name", ["", "..", "a/b"])
def test_invalid_package_names_are_rejected(memfs: MemoryFileSystem, token: CancelToken, name: str) -> None:
    with pytest.raises(InvalidPathError):
        _scanner(memfs).scan(token, name)


def test_scan_many_keeps_request_order(memfs: MemoryFileSystem, tree: MemTree, token: CancelToken) -> None:
    for name in ("zsh", "git", "vim", "tmux"):
        tree.file(f"/pkgs/{name}/dot-{name}rc")

    inventories = _scanner(memfs).scan_many(token, ["zsh", "git", "vim", "tmux"], max_workers=4)

    assert [inventory.package for inventory in inventories] == ["zsh", "git", "vim", "tmux"]


def test_scan_honours_cancellation(memfs: MemoryFileSystem, tree: MemTree) -> None:
    tree.file("/pkgs/vim/dot-vimrc")
    token = CancelToken()
    token.cancel()

    with pytest.raises(OperationCancelledError):
        _scanner(memfs).scan(token, "vim")
