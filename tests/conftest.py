from __future__ import annotations

import posixpath
from dataclasses import dataclass
from pathlib import Path

import pytest

from dotlink.cancellation import CancelToken
from dotlink.client import Client
from dotlink.config import Config
from dotlink.filesystem import MemoryFileSystem

PACKAGES = "/pkgs"
TARGET = "/home/u"


@pytest.fixture
def fake_home(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Path:
    home = tmp_path / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    return home


@pytest.fixture
def token() -> CancelToken:
    return CancelToken.background()


@pytest.fixture
def memfs(token: CancelToken) -> MemoryFileSystem:
    fs = MemoryFileSystem()
    fs.mkdir_all(token, PACKAGES)
    fs.mkdir_all(token, TARGET)
    return fs


@dataclass
class MemTree:
    """Builds fixtures inside a :class:`MemoryFileSystem`, creating parents as needed."""

    fs: MemoryFileSystem
    token: CancelToken

    def file(self, path: str, data: str = "", mode: int = 0o644) -> str:
        self.fs.mkdir_all(self.token, posixpath.dirname(path))
        self.fs.write_file(self.token, path, data.encode("utf-8"), mode)
        return path

    def link(self, path: str, text: str) -> str:
        self.fs.mkdir_all(self.token, posixpath.dirname(path))
        self.fs.symlink(self.token, text, path)
        return path

    def dir(self, path: str) -> str:
        self.fs.mkdir_all(self.token, path)
        return path

    def read(self, path: str) -> str:
        return self.fs.read_file(self.token, path).decode("utf-8")

    def exists(self, path: str) -> bool:
        return self.fs.exists(self.token, path)


@pytest.fixture
def tree(memfs: MemoryFileSystem, token: CancelToken) -> MemTree:
    return MemTree(memfs, token)


@dataclass
class Workspace:
    packages: Path
    home: Path
    state: Path

    def client(self, **overrides: object) -> Client:
        values: dict[str, object] = {
            "package_dir": self.packages,
            "target_dir": self.home,
            "manifest_dir": self.state,
            "max_parallel": 1,
        }
        values.update(overrides)
        return Client(Config.build(**values))

    def write(self, relative: str, text: str = "") -> Path:
        path = self.packages / relative
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        return path


@pytest.fixture
def workspace(tmp_path: Path) -> Workspace:
    root = tmp_path.resolve()
    packages = root / "dotfiles"
    home = root / "home"
    state = root / "state"
    for directory in (packages, home, state):
        directory.mkdir()
    return Workspace(packages=packages, home=home, state=state)
