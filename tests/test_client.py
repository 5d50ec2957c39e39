from __future__ import annotations

import json
import os
import stat
import threading
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

from dotlink.cancellation import CancelToken
from dotlink.client import Client
from dotlink.config import Config
from dotlink.errors import (
    ConflictError,
    ExecutorFailure,
    InvalidPathError,
    OperationCancelledError,
    PackageNotFoundError,
)
from dotlink.filesystem import MemoryFileSystem, PathLike
from dotlink.models import (
    ConflictPolicy,
    HealthStatus,
    IssueType,
    OrphanGroup,
    PackageSource,
    ScanMode,
    TriageChoice,
    TriageDecision,
)

if TYPE_CHECKING:
    from conftest import Workspace


def _snapshot(root: Path) -> dict[str, tuple]:
    state: dict[str, tuple] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for name in dirnames + filenames:
            path = Path(dirpath) / name
            rel = str(path.relative_to(root))
            if path.is_symlink():
                state[rel] = ("link", os.readlink(path))
            elif path.is_dir():
                state[rel] = ("dir", stat.S_IMODE(path.lstat().st_mode))
            else:
                state[rel] = ("file", path.read_bytes(), stat.S_IMODE(path.lstat().st_mode))
    return state


def _manifest(workspace: Workspace) -> dict:
    return json.loads((workspace.state / ".dot-manifest.json").read_text())


# ---------------------------------------------------------------------------
# Scenarios


def test_manage_links_package_and_records_it(workspace: Workspace) -> None:
    workspace.write("vim/dot-vimrc", "set nocompatible\n")
    client = workspace.client()

    result = client.manage("vim")

    link = workspace.home / ".vimrc"
    assert result.success
    assert link.is_symlink()
    assert link.resolve() == workspace.packages / "vim" / "dot-vimrc"
    assert not os.path.isabs(os.readlink(link))
    entry = _manifest(workspace)["packages"]["vim"]
    assert entry["links"] == [".vimrc"]
    assert entry["source"] == "managed"
    assert entry["link_count"] == 1


def test_folding_links_a_directory_owned_by_one_package(workspace: Workspace) -> None:
    workspace.write("tools/bin/a", "#!/bin/sh\n")
    workspace.write("tools/bin/b", "#!/bin/sh\n")

    workspace.client().manage("tools")

    bin_dir = workspace.home / "bin"
    assert bin_dir.is_symlink()
    assert bin_dir.resolve() == workspace.packages / "tools" / "bin"
    assert _manifest(workspace)["packages"]["tools"]["links"] == ["bin"]


def test_without_folding_every_file_is_linked(workspace: Workspace) -> None:
    workspace.write("tools/bin/a", "#!/bin/sh\n")
    workspace.write("tools/bin/b", "#!/bin/sh\n")

    workspace.client(folding=False).manage("tools")

    bin_dir = workspace.home / "bin"
    assert bin_dir.is_dir() and not bin_dir.is_symlink()
    assert (bin_dir / "a").is_symlink()
    assert (bin_dir / "b").is_symlink()
    assert sorted(_manifest(workspace)["packages"]["tools"]["links"]) == ["bin/a", "bin/b"]


def test_backup_policy_moves_existing_file_aside(workspace: Workspace) -> None:
    workspace.write("shell/dot-bashrc", "new")
    (workspace.home / ".bashrc").write_text("old")

    workspace.client(conflict_policy=ConflictPolicy.BACKUP).manage("shell")

    assert (workspace.home / ".bashrc").is_symlink()
    assert (workspace.home / ".bashrc").read_text() == "new"
    backup = workspace.home / ".bashrc.bak"
    assert backup.is_file() and not backup.is_symlink()
    assert backup.read_text() == "old"
    assert _manifest(workspace)["packages"]["shell"]["backups"] == {".bashrc": ".bashrc.bak"}


def test_fail_policy_reports_conflict_and_changes_nothing(workspace: Workspace) -> None:
    workspace.write("shell/dot-bashrc", "new")
    (workspace.home / ".bashrc").write_text("old")
    before = _snapshot(workspace.home)

    with pytest.raises(ConflictError) as excinfo:
        workspace.client().manage("shell")

    assert excinfo.value.exit_code == 3
    assert _snapshot(workspace.home) == before
    assert not (workspace.state / ".dot-manifest.json").exists()


def test_adopt_then_unmanage_restores_the_original_file(workspace: Workspace) -> None:
    config_dir = workspace.home / ".config" / "nvim"
    config_dir.mkdir(parents=True)
    (config_dir / "init.vim").write_text("C")
    (config_dir / "init.vim").chmod(0o600)
    before = _snapshot(workspace.home)
    client = workspace.client()

    client.adopt([".config/nvim/init.vim"], "nvim")

    stored = workspace.packages / "nvim" / "dot-config" / "nvim" / "init.vim"
    assert stored.read_text() == "C"
    assert (config_dir / "init.vim").is_symlink()
    assert (config_dir / "init.vim").resolve() == stored
    entry = _manifest(workspace)["packages"]["nvim"]
    assert entry["source"] == "adopted"
    assert entry["links"] == [".config/nvim/init.vim"]

    client.unmanage("nvim", restore=True)

    assert _snapshot(workspace.home) == before
    assert "nvim" not in _manifest(workspace)["packages"]


def test_doctor_reports_link_whose_source_was_deleted(workspace: Workspace) -> None:
    source = workspace.write("vim/dot-vimrc", "set nocompatible\n")
    client = workspace.client()
    client.manage("vim")
    source.unlink()

    report = client.doctor()

    assert report.overall is HealthStatus.ERRORS
    assert len(report.issues) == 1
    issue = report.issues[0]
    assert issue.type is IssueType.BROKEN_LINK
    assert issue.path == ".vimrc"
    assert "remanage vim" in (issue.suggestion or "")
    assert report.stats.broken_links == 1


# ---------------------------------------------------------------------------
# Round trips and boundaries


def test_manage_then_unmanage_restores_target_state(workspace: Workspace) -> None:
    workspace.write("shell/dot-bashrc", "new")
    workspace.write("shell/dot-config/fish/config.fish", "set -x EDITOR vim\n")
    (workspace.home / ".bashrc").write_text("old")
    (workspace.home / ".config").mkdir()
    (workspace.home / ".config" / "keep").write_text("untouched")
    before = _snapshot(workspace.home)
    client = workspace.client(conflict_policy=ConflictPolicy.BACKUP)

    client.manage("shell")
    assert (workspace.home / ".config" / "fish").is_symlink()
    client.unmanage("shell")

    assert _snapshot(workspace.home) == before
    assert _manifest(workspace)["packages"] == {}


def test_every_package_file_resolves_through_the_target(workspace: Workspace) -> None:
    files = [
        workspace.write("desk/dot-config/sway/config", "bar"),
        workspace.write("desk/dot-config/waybar/style.css", "*{}"),
        workspace.write("desk/dot-profile", "export A=1"),
    ]
    (workspace.home / ".config").mkdir()

    workspace.client().manage("desk")

    for source in files:
        rel = source.relative_to(workspace.packages / "desk")
        target = workspace.home / str(rel).replace("dot-", ".")
        assert target.resolve() == source


def test_ignored_only_package_leaves_manifest_untouched(workspace: Workspace) -> None:
    workspace.write("empty/.git/HEAD", "ref: refs/heads/main\n")
    workspace.write("empty/.DS_Store", "")

    result = workspace.client().manage("empty")

    assert result.executed == ()
    assert not (workspace.state / ".dot-manifest.json").exists()
    assert list(workspace.home.iterdir()) == []


def test_manage_unknown_package_raises(workspace: Workspace) -> None:
    with pytest.raises(PackageNotFoundError) as excinfo:
        workspace.client().manage("missing")

    assert excinfo.value.exit_code == 5


def test_unmanage_unknown_package_raises(workspace: Workspace) -> None:
    with pytest.raises(PackageNotFoundError):
        workspace.client().unmanage("missing")


def test_invalid_package_name_is_rejected(workspace: Workspace) -> None:
    with pytest.raises(InvalidPathError):
        workspace.client().manage("../etc")


def test_dry_run_changes_nothing(workspace: Workspace) -> None:
    workspace.write("vim/dot-vimrc", "set nocompatible\n")

    result = workspace.client(dry_run=True).manage("vim")

    assert result.dry_run
    assert any(".vimrc" in line for line in result.planned)
    assert result.executed == ()
    assert not (workspace.home / ".vimrc").exists()
    assert not (workspace.state / ".dot-manifest.json").exists()


def test_plan_manage_does_not_execute(workspace: Workspace) -> None:
    workspace.write("vim/dot-vimrc", "set nocompatible\n")

    plan = workspace.client().plan_manage("vim")

    assert plan.packages == ("vim",)
    assert plan.summary()["link_create"] == 1
    assert not (workspace.home / ".vimrc").exists()


def test_failed_manifest_save_rolls_links_back(workspace: Workspace, monkeypatch: pytest.MonkeyPatch) -> None:
    workspace.write("vim/dot-vimrc", "set nocompatible\n")
    workspace.write("vim/dot-vim/colors/dark.vim", "hi Normal\n")
    client = workspace.client()

    def broken_save(token: CancelToken, manifest: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(client.store, "save", broken_save)

    with pytest.raises(ExecutorFailure) as excinfo:
        client.manage("vim")

    assert excinfo.value.result.rolled_back
    assert list(workspace.home.iterdir()) == []


def _break_save(client: Client, monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_save(token: CancelToken, manifest: object) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(client.store, "save", broken_save)


def test_failed_save_after_overwriting_a_directory_restores_it(
    workspace: Workspace, monkeypatch: pytest.MonkeyPatch
) -> None:
    workspace.write("app/dot-app", "new")
    kept = workspace.home / ".app" / "themes"
    kept.mkdir(parents=True)
    (kept / "precious").write_text("keep me")
    before = _snapshot(workspace.home)
    client = workspace.client(conflict_policy=ConflictPolicy.OVERWRITE)
    _break_save(client, monkeypatch)

    with pytest.raises(ExecutorFailure) as excinfo:
        client.manage("app")

    assert excinfo.value.result.rolled_back
    assert _snapshot(workspace.home) == before
    assert (kept / "precious").read_text() == "keep me"


def test_failed_save_after_overwriting_a_file_restores_it(
    workspace: Workspace, monkeypatch: pytest.MonkeyPatch
) -> None:
    workspace.write("shell/dot-bashrc", "new")
    bashrc = workspace.home / ".bashrc"
    bashrc.write_text("old")
    bashrc.chmod(0o600)
    before = _snapshot(workspace.home)
    client = workspace.client(conflict_policy=ConflictPolicy.OVERWRITE)
    _break_save(client, monkeypatch)

    with pytest.raises(ExecutorFailure):
        client.manage("shell")

    assert _snapshot(workspace.home) == before


def test_failed_save_after_purge_keeps_the_package(workspace: Workspace, monkeypatch: pytest.MonkeyPatch) -> None:
    workspace.write("vim/dot-vimrc", "set nocompatible\n")
    workspace.write("vim/dot-vim/colors/dark.vim", "hi Normal\n")
    client = workspace.client()
    client.manage("vim")
    home_before = _snapshot(workspace.home)
    packages_before = _snapshot(workspace.packages)
    _break_save(client, monkeypatch)

    with pytest.raises(ExecutorFailure):
        client.unmanage("vim", purge=True)

    assert _snapshot(workspace.packages) == packages_before
    assert _snapshot(workspace.home) == home_before
    assert (workspace.home / ".vimrc").is_symlink()
    assert client.list_packages() == ["vim"]


def test_overwritten_directory_is_gone_after_commit(workspace: Workspace) -> None:
    workspace.write("app/dot-app", "new")
    (workspace.home / ".app").mkdir()
    (workspace.home / ".app" / "old").write_text("old")

    workspace.client(conflict_policy=ConflictPolicy.OVERWRITE).manage("app")

    assert (workspace.home / ".app").read_text() == "new"
    assert sorted(path.name for path in workspace.home.iterdir()) == [".app"]


def test_purge_deletes_package_directory(workspace: Workspace) -> None:
    workspace.write("vim/dot-vimrc", "set nocompatible\n")
    client = workspace.client()
    client.manage("vim")

    client.unmanage("vim", purge=True)

    assert not (workspace.packages / "vim").exists()
    assert not (workspace.home / ".vimrc").exists()
    assert client.list_packages() == []


def test_cleanup_forgets_packages_whose_directory_is_gone(workspace: Workspace) -> None:
    source = workspace.write("vim/dot-vimrc", "set nocompatible\n")
    client = workspace.client()
    client.manage("vim")
    source.unlink()
    source.parent.rmdir()

    result = client.unmanage("vim", cleanup=True)

    assert result.executed == ("forget:vim",)
    assert client.list_packages() == []


def test_unmanage_all_removes_every_package(workspace: Workspace) -> None:
    workspace.write("vim/dot-vimrc", "set nocompatible\n")
    workspace.write("zsh/dot-zshrc", "bindkey -v\n")
    client = workspace.client()
    client.manage("vim", "zsh")

    client.unmanage_all()

    assert client.list_packages() == []
    assert list(workspace.home.iterdir()) == []


# ---------------------------------------------------------------------------
# Remanage and status


def test_remanage_skips_unchanged_packages(workspace: Workspace) -> None:
    workspace.write("vim/dot-vimrc", "set nocompatible\n")
    client = workspace.client()
    client.manage("vim")

    result = client.remanage("vim")

    assert result.executed == ()


def test_remanage_links_new_files_and_drops_stale_links(workspace: Workspace) -> None:
    old = workspace.write("vim/dot-vimrc", "set nocompatible\n")
    client = workspace.client()
    client.manage("vim")
    old.unlink()
    workspace.write("vim/dot-gvimrc", "set guifont=Mono\n")

    result = client.remanage("vim")

    assert result.success
    assert (workspace.home / ".gvimrc").is_symlink()
    assert not os.path.lexists(workspace.home / ".vimrc")
    assert _manifest(workspace)["packages"]["vim"]["links"] == [".gvimrc"]


def test_remanage_repairs_removed_link(workspace: Workspace) -> None:
    workspace.write("vim/dot-vimrc", "set nocompatible\n")
    client = workspace.client()
    client.manage("vim")
    (workspace.home / ".vimrc").unlink()

    client.remanage("vim")

    assert (workspace.home / ".vimrc").is_symlink()


def test_status_and_list(workspace: Workspace) -> None:
    workspace.write("vim/dot-vimrc", "set nocompatible\n")
    workspace.write("zsh/dot-zshrc", "bindkey -v\n")
    client = workspace.client()
    client.manage("vim", "zsh")
    (workspace.home / ".zshrc").unlink()

    assert client.list_packages() == ["vim", "zsh"]
    statuses = {status.name: status for status in client.status()}
    assert statuses["vim"].healthy
    assert statuses["vim"].source is PackageSource.MANAGED
    assert statuses["vim"].link_count == 1
    assert not statuses["zsh"].healthy
    assert (statuses["zsh"].reason or "").startswith(".zshrc")

    with pytest.raises(PackageNotFoundError):
        client.status("missing")


# ---------------------------------------------------------------------------
# Doctor, ignore and triage


def test_doctor_max_issues_truncates(workspace: Workspace) -> None:
    workspace.write("vim/dot-vimrc", "x")
    client = workspace.client()
    client.manage("vim")
    for name in ("one", "two", "three"):
        (workspace.home / name).symlink_to(workspace.home.parent / f"missing-{name}")

    report = client.doctor(max_issues=2)

    assert len(report.issues) == 2
    assert report.truncated


def test_ignored_link_is_not_reported(workspace: Workspace) -> None:
    workspace.write("vim/dot-vimrc", "x")
    elsewhere = workspace.home.parent / "elsewhere"
    elsewhere.write_text("tool")
    client = workspace.client()
    client.manage("vim")
    (workspace.home / "tool").symlink_to(elsewhere)

    assert client.doctor().overall is HealthStatus.WARNINGS
    entry = client.ignore_link("tool", reason="installed by hand")

    assert entry.reason == "installed by hand"
    assert client.doctor().overall is HealthStatus.OK
    assert "tool" in client.list_ignored().ignored_links
    assert client.unignore_link("tool")
    assert client.doctor().overall is HealthStatus.WARNINGS


def test_ignore_link_requires_a_symlink(workspace: Workspace) -> None:
    (workspace.home / "plain").write_text("x")

    with pytest.raises(InvalidPathError):
        workspace.client().ignore_link("plain")


def test_ignore_pattern_round_trip(workspace: Workspace) -> None:
    client = workspace.client()

    assert client.ignore_pattern("*/.cargo/bin/*")
    assert not client.ignore_pattern("*/.cargo/bin/*")
    assert client.list_ignored().ignored_patterns == ["*/.cargo/bin/*"]
    assert client.unignore_pattern("*/.cargo/bin/*")
    assert client.list_ignored().ignored_patterns == []

    with pytest.raises(InvalidPathError):
        client.ignore_pattern("  ")


def test_triage_auto_ignores_high_confidence_groups(workspace: Workspace) -> None:
    cargo = workspace.home / ".cargo" / "bin"
    cargo.mkdir(parents=True)
    (cargo / "rg").write_text("binary")
    (workspace.home / "rg").symlink_to(cargo / "rg")
    stray = workspace.home.parent / "stray"
    stray.write_text("x")
    (workspace.home / "stray").symlink_to(stray)
    client = workspace.client()

    result = client.triage(auto_ignore_high_confidence=True, scan_mode=ScanMode.DEEP)

    assert result.patterns_added == ("*/.cargo/bin/*", "*/cargo/bin/*")
    assert result.skipped == 1
    remaining = client.doctor(scan_mode=ScanMode.DEEP)
    assert [issue.path for issue in remaining.issues] == ["stray"]


def test_triage_callback_ignores_each_link(workspace: Workspace) -> None:
    stray = workspace.home.parent / "stray"
    stray.write_text("x")
    (workspace.home / "a").symlink_to(stray)
    (workspace.home / "b").symlink_to(stray)
    seen: list[OrphanGroup] = []

    def decide(group: OrphanGroup) -> str:
        seen.append(group)
        return "ignore"

    client = workspace.client()
    result = client.triage(decide, scan_mode=ScanMode.DEEP)

    assert result.ignored == 2
    assert [group.category for group in seen] == ["other"]
    assert sorted(client.list_ignored().ignored_links) == ["a", "b"]
    assert client.doctor(scan_mode=ScanMode.DEEP).overall is HealthStatus.OK


def test_triage_adopts_into_package(workspace: Workspace) -> None:
    elsewhere = workspace.home.parent / "elsewhere"
    elsewhere.write_text("tool")
    (workspace.home / "mytool").symlink_to(elsewhere)
    client = workspace.client()

    result = client.triage(lambda group: TriageChoice(TriageDecision.ADOPT, "tools"), scan_mode=ScanMode.DEEP)

    assert result.adopted == 1
    assert result.errors == ()
    assert (workspace.packages / "tools" / "mytool").is_symlink()
    assert (workspace.home / "mytool").resolve() == elsewhere
    assert _manifest(workspace)["packages"]["tools"]["source"] == "adopted"
    assert client.doctor().overall is HealthStatus.OK


# ---------------------------------------------------------------------------
# Manifest maintenance


def _write_legacy_manifest(workspace: Workspace) -> Path:
    path = workspace.state / ".dot-manifest.json"
    legacy = {
        "version": "1.0",
        "updated_at": "2024-01-01T00:00:00+00:00",
        "packages": {"vim": {"name": "vim", "installed_at": "2024-01-01T00:00:00+00:00", "links": [".vimrc"]}},
    }
    path.write_text(json.dumps(legacy))
    return path


def test_upgrade_manifest_migrates_and_keeps_backup(workspace: Workspace) -> None:
    path = _write_legacy_manifest(workspace)

    result = workspace.client().upgrade_manifest()

    assert result.changed
    assert result.from_version == "1.0"
    assert result.backup is not None and os.path.exists(str(result.backup))
    upgraded = json.loads(path.read_text())
    assert upgraded["version"] == "2.0"
    assert upgraded["packages"]["vim"]["link_count"] == 1


def test_upgrade_manifest_dry_run_only_reports(workspace: Workspace) -> None:
    path = _write_legacy_manifest(workspace)
    original = path.read_text()

    result = workspace.client(dry_run=True).upgrade_manifest()

    assert result.from_version == "1.0"
    assert result.backup is None
    assert path.read_text() == original


# ---------------------------------------------------------------------------
# Cancellation, ordering and atomic saves on the memory filesystem


class _CancelAfterFirstLink(MemoryFileSystem):
    def __init__(self, trigger: CancelToken) -> None:
        super().__init__()
        self.trigger = trigger

    def symlink(self, token: CancelToken, link_target: str, path: PathLike) -> None:
        super().symlink(token, link_target, path)
        self.trigger.cancel("interrupted")


class _RecordingFileSystem(MemoryFileSystem):
    def __init__(self) -> None:
        super().__init__()
        self.events: list[tuple[str, str]] = []
        self._events_lock = threading.Lock()

    def mkdir(self, token: CancelToken, path: PathLike, mode: int = 0o755) -> None:
        super().mkdir(token, path, mode)
        with self._events_lock:
            self.events.append(("mkdir", str(path)))

    def symlink(self, token: CancelToken, link_target: str, path: PathLike) -> None:
        super().symlink(token, link_target, path)
        with self._events_lock:
            self.events.append(("symlink", str(path)))


class _FailingManifestRename(MemoryFileSystem):
    fail = False

    def rename(self, token: CancelToken, source: PathLike, destination: PathLike) -> None:
        if self.fail and str(destination).endswith(".dot-manifest.json"):
            raise OSError("simulated crash before rename")
        super().rename(token, source, destination)


def _memory_client(fs: MemoryFileSystem, **overrides: object) -> Client:
    token = CancelToken.background()
    fs.mkdir_all(token, "/pkgs/desk/dot-config")
    fs.mkdir_all(token, "/home/u")
    for name in ("dot-config/a", "dot-config/b", "dot-vimrc"):
        fs.write_file(token, f"/pkgs/desk/{name}", b"x", 0o644)
    values: dict[str, object] = {"package_dir": "/pkgs", "target_dir": "/home/u", "max_parallel": 1}
    values.update(overrides)
    return Client(Config.build(**values), fs=fs)


def test_cancellation_rolls_back_completed_batches() -> None:
    token = CancelToken.background()
    fs = _CancelAfterFirstLink(token)
    client = _memory_client(fs, folding=False)

    with pytest.raises(ExecutorFailure) as excinfo:
        client.manage("desk", token=token)

    assert excinfo.value.cancelled
    assert isinstance(excinfo.value.cause, OperationCancelledError)
    check = CancelToken.background()
    assert fs.read_dir(check, "/home/u") == []


def test_parallel_execution_creates_parents_before_children() -> None:
    fs = _RecordingFileSystem()
    client = _memory_client(fs, folding=False, max_parallel=4)

    client.manage("desk")

    order = [path for _, path in fs.events]
    assert order.index("/home/u/.config") < order.index("/home/u/.config/a")
    assert order.index("/home/u/.config") < order.index("/home/u/.config/b")
    assert ("symlink", "/home/u/.vimrc") in fs.events


def test_interrupted_manifest_save_keeps_previous_manifest() -> None:
    fs = _FailingManifestRename()
    client = _memory_client(fs)
    token = CancelToken.background()
    client.manage("desk")
    saved = fs.read_file(token, "/home/u/.dot-manifest.json")
    fs.mkdir_all(token, "/pkgs/zsh")
    fs.write_file(token, "/pkgs/zsh/dot-zshrc", b"bindkey -v", 0o644)
    fs.fail = True

    with pytest.raises(ExecutorFailure):
        client.manage("zsh")

    assert fs.read_file(token, "/home/u/.dot-manifest.json") == saved
    assert not fs.exists(token, "/home/u/.zshrc")
    assert client.list_packages() == ["desk"]
