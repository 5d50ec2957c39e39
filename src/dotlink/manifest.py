"""Manifest persistence for dotlink.

The manifest is a single JSON document recording installed packages, their
links, backups and content hashes, plus doctor state. Writes go to a sibling
temporary file which is flushed and renamed over the final path, so readers
never observe a partial document. Mutations are serialised across processes
by an advisory lock on ``<manifest>.lock``.
"""

from __future__ import annotations

import hashlib
import json
import logging
import posixpath
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Iterator

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .cancellation import CancelToken
from .errors import ManifestCorruptError, ManifestVersionMismatchError
from .filesystem import FileSystem
from .ignore import MANIFEST_FILENAME
from .models import EntryKind, PackageInventory, PackageSource
from .paths import FilePath

logger = logging.getLogger(__name__)

MANIFEST_VERSION = "2.0"
LOCK_SUFFIX = ".lock"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _version_key(version: str) -> tuple[int, ...]:
    try:
        return tuple(int(part) for part in version.split("."))
    except ValueError:
        return ()


class PackageInfo(BaseModel):
    """Recorded state of one installed package."""

    model_config = ConfigDict(extra="ignore")

    name: str
    installed_at: datetime = Field(default_factory=utcnow)
    link_count: int = 0
    links: list[str] = Field(default_factory=list)
    backups: dict[str, str] = Field(default_factory=dict)
    directories: list[str] = Field(default_factory=list)
    source: PackageSource = PackageSource.MANAGED
    target_dir: str = ""
    package_dir: str = ""


class RepositoryInfo(BaseModel):
    model_config = ConfigDict(extra="ignore")

    url: str
    branch: str = ""
    cloned_at: datetime | None = None
    commit: str = ""


class IgnoredLink(BaseModel):
    model_config = ConfigDict(extra="ignore")

    target: str
    target_hash: str
    acknowledged_at: datetime = Field(default_factory=utcnow)
    reason: str = ""


class DoctorState(BaseModel):
    model_config = ConfigDict(extra="ignore")

    ignored_links: dict[str, IgnoredLink] = Field(default_factory=dict)
    ignored_patterns: list[str] = Field(default_factory=list)


def target_hash(target: str) -> str:
    return hashlib.sha256(target.encode("utf-8")).hexdigest()


class Manifest(BaseModel):
    """In-memory manifest document."""

    model_config = ConfigDict(extra="ignore")

    version: str = MANIFEST_VERSION
    updated_at: datetime = Field(default_factory=utcnow)
    packages: dict[str, PackageInfo] = Field(default_factory=dict)
    hashes: dict[str, str] = Field(default_factory=dict)
    repository: RepositoryInfo | None = None
    doctor: DoctorState | None = None

    # packages -----------------------------------------------------------

    def package_names(self) -> list[str]:
        return sorted(self.packages)

    def get_package(self, name: str) -> PackageInfo | None:
        return self.packages.get(name)

    def set_package(self, info: PackageInfo) -> None:
        info.link_count = len(info.links)
        self.packages[info.name] = info

    def remove_package(self, name: str) -> PackageInfo | None:
        self.hashes.pop(name, None)
        return self.packages.pop(name, None)

    def link_owners(self) -> dict[str, str]:
        """Map every recorded link path to the package that owns it."""

        owners: dict[str, str] = {}
        for name in self.package_names():
            for link in self.packages[name].links:
                owners.setdefault(link, name)
        return owners

    # doctor state -------------------------------------------------------

    def doctor_state(self) -> DoctorState:
        if self.doctor is None:
            self.doctor = DoctorState()
        return self.doctor

    def ignore_link(self, path: str, target: str, *, reason: str = "") -> IgnoredLink:
        entry = IgnoredLink(target=target, target_hash=target_hash(target), reason=reason)
        self.doctor_state().ignored_links[path] = entry
        return entry

    def unignore_link(self, path: str) -> bool:
        if self.doctor is None:
            return False
        return self.doctor.ignored_links.pop(path, None) is not None

    def add_ignored_pattern(self, pattern: str) -> bool:
        patterns = self.doctor_state().ignored_patterns
        if pattern in patterns:
            return False
        patterns.append(pattern)
        return True

    def remove_ignored_pattern(self, pattern: str) -> bool:
        if self.doctor is None or pattern not in self.doctor.ignored_patterns:
            return False
        self.doctor.ignored_patterns.remove(pattern)
        return True

    def is_link_ignored(self, path: str, target: str) -> bool:
        """Return ``True`` if ``path`` was acknowledged and still points where it did."""

        if self.doctor is None:
            return False
        entry = self.doctor.ignored_links.get(path)
        return entry is not None and entry.target_hash == target_hash(target)


# ---------------------------------------------------------------------------
# Migrations


def _migrate_1_0(raw: dict[str, Any], defaults: dict[str, str]) -> dict[str, Any]:
    packages: dict[str, Any] = {}
    for name, info in (raw.get("packages") or {}).items():
        info = dict(info)
        info.setdefault("name", name)
        if not info.get("target_dir"):
            info["target_dir"] = defaults.get("target_dir", "")
        if not info.get("package_dir"):
            info["package_dir"] = defaults.get("package_dir", "")
        info["links"] = list(info.get("links") or [])
        info["link_count"] = len(info["links"])
        info.setdefault("source", PackageSource.MANAGED.value)
        packages[name] = info

    migrated: dict[str, Any] = {
        "version": "2.0",
        "updated_at": raw.get("updated_at") or utcnow().isoformat(),
        "packages": packages,
        "hashes": dict(raw.get("hashes") or {}),
    }
    repository = raw.get("repository")
    if repository:
        repository = dict(repository)
        if "commit_sha" in repository:
            repository.setdefault("commit", repository.pop("commit_sha"))
        migrated["repository"] = repository
    if raw.get("doctor"):
        migrated["doctor"] = raw["doctor"]
    return migrated


_MIGRATIONS: dict[str, Callable[[dict[str, Any], dict[str, str]], dict[str, Any]]] = {
    "1.0": _migrate_1_0,
}


def migrate_document(raw: dict[str, Any], defaults: dict[str, str]) -> dict[str, Any]:
    """Bring a raw manifest document up to the current version."""

    version = raw.get("version")
    while version != MANIFEST_VERSION:
        step = _MIGRATIONS.get(str(version))
        if step is None:
            break
        logger.info("Migrating manifest from version %s", version)
        raw = step(raw, defaults)
        version = raw.get("version")
    return raw


# ---------------------------------------------------------------------------
# Content hashing


def compute_package_hash(fs: FileSystem, token: CancelToken, inventory: PackageInventory) -> str:
    """SHA-256 over the sorted listing of entry names, kinds, sizes and modes."""

    hasher = hashlib.sha256()
    for entry in sorted(inventory.entries, key=lambda item: item.rel_source):
        info = fs.lstat(token, entry.source)
        if entry.kind is EntryKind.SYMLINK:
            payload = fs.read_link(token, entry.source)
        elif entry.kind is EntryKind.DIR:
            payload = "-"
        else:
            payload = str(info.size)
        for part in (entry.rel_source, entry.kind.value, payload, format(info.mode, "o")):
            hasher.update(part.encode("utf-8"))
            hasher.update(b"\0")
    return hasher.hexdigest()


# ---------------------------------------------------------------------------
# Store


@dataclass(frozen=True, slots=True)
class UpgradeResult:
    from_version: str
    to_version: str
    backup: FilePath | None

    @property
    def changed(self) -> bool:
        return self.from_version != self.to_version


class ManifestStore:
    """Loads and atomically saves the manifest through the filesystem port."""

    def __init__(
        self,
        fs: FileSystem,
        path: FilePath,
        *,
        target_dir: str = "",
        package_dir: str = "",
    ) -> None:
        self._fs = fs
        self.path = path
        self._defaults = {"target_dir": target_dir, "package_dir": package_dir}

    @classmethod
    def in_directory(cls, fs: FileSystem, directory: FilePath | str, **defaults: str) -> ManifestStore:
        return cls(fs, FilePath(posixpath.join(str(directory), MANIFEST_FILENAME)), **defaults)

    @property
    def lock_path(self) -> FilePath:
        return FilePath(str(self.path) + LOCK_SUFFIX)

    @contextmanager
    def lock(self, token: CancelToken) -> Iterator[None]:
        """Serialise manifest mutations across processes."""

        parent = self.path.parent
        if not self._fs.is_dir(token, parent):
            self._fs.mkdir_all(token, parent)
        with self._fs.lock(token, self.lock_path):
            yield

    def exists(self, token: CancelToken) -> bool:
        return self._fs.exists(token, self.path)

    def stored_version(self, token: CancelToken) -> str | None:
        """Return the version recorded on disk without migrating, or ``None`` without a manifest."""

        raw = self._read_raw(token)
        return None if raw is None else str(raw.get("version", ""))

    def load(self, token: CancelToken) -> Manifest:
        """Read the manifest, migrating older versions in memory.

        A missing file yields a fresh, empty manifest.
        """

        raw = self._read_raw(token)
        if raw is None:
            return Manifest()
        version = str(raw.get("version", ""))
        if version != MANIFEST_VERSION:
            raw = self._migrate_or_reject(raw, version)
        try:
            manifest = Manifest.model_validate(raw)
        except ValidationError as exc:
            raise ManifestCorruptError(str(self.path), "schema validation failed", cause=exc) from exc
        self._fill_defaults(manifest)
        return manifest

    def save(self, token: CancelToken, manifest: Manifest) -> None:
        """Write the manifest atomically and bump ``updated_at``."""

        now = utcnow()
        previous = manifest.updated_at
        if previous.tzinfo is None:
            previous = previous.replace(tzinfo=timezone.utc)
        if now <= previous:
            now = previous + timedelta(microseconds=1)
        manifest.updated_at = now
        manifest.version = MANIFEST_VERSION
        for info in manifest.packages.values():
            info.link_count = len(info.links)

        payload = manifest.model_dump(mode="json", exclude_none=True)
        data = (json.dumps(payload, indent=2, sort_keys=True) + "\n").encode("utf-8")
        tmp = FilePath(str(self.path) + ".tmp")
        parent = self.path.parent
        if not self._fs.is_dir(token, parent):
            self._fs.mkdir_all(token, parent)
        self._fs.write_file(token, tmp, data, 0o644)
        try:
            self._fs.rename(token, tmp, self.path)
        except OSError:
            try:
                self._fs.remove(CancelToken.background(), tmp)
            except OSError as exc:
                logger.warning("Could not remove %s: %s", tmp, exc)
            raise
        logger.info("Saved manifest %s (%d packages)", self.path, len(manifest.packages))

    def upgrade(self, token: CancelToken) -> UpgradeResult:
        """Migrate the stored document to the current version, keeping a timestamped backup."""

        raw = self._read_raw(token)
        if raw is None:
            return UpgradeResult(MANIFEST_VERSION, MANIFEST_VERSION, None)
        version = str(raw.get("version", ""))
        if version == MANIFEST_VERSION:
            return UpgradeResult(version, version, None)

        manifest = self.load(token)
        stamp = utcnow().strftime("%Y%m%d-%H%M%S")
        backup = FilePath(f"{self.path}.{stamp}.bak")
        self._fs.write_file(token, backup, self._fs.read_file(token, self.path), 0o644)
        self.save(token, manifest)
        logger.info("Upgraded manifest from %s to %s (backup %s)", version, MANIFEST_VERSION, backup)
        return UpgradeResult(version, MANIFEST_VERSION, backup)

    # internals ----------------------------------------------------------

    def _read_raw(self, token: CancelToken) -> dict[str, Any] | None:
        try:
            data = self._fs.read_file(token, self.path)
        except FileNotFoundError:
            return None
        try:
            raw = json.loads(data.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ManifestCorruptError(str(self.path), "invalid JSON", cause=exc) from exc
        if not isinstance(raw, dict):
            raise ManifestCorruptError(str(self.path), "top-level value must be an object")
        return raw

    def _migrate_or_reject(self, raw: dict[str, Any], version: str) -> dict[str, Any]:
        found = _version_key(version)
        if not found:
            raise ManifestCorruptError(str(self.path), f"unknown version {version!r}")
        if found > _version_key(MANIFEST_VERSION):
            raise ManifestVersionMismatchError(version, MANIFEST_VERSION)
        migrated = migrate_document(raw, self._defaults)
        if migrated.get("version") != MANIFEST_VERSION:
            raise ManifestCorruptError(str(self.path), f"no migration from version {version}")
        return migrated

    def _fill_defaults(self, manifest: Manifest) -> None:
        for info in manifest.packages.values():
            if not info.target_dir:
                info.target_dir = self._defaults["target_dir"]
            if not info.package_dir:
                info.package_dir = self._defaults["package_dir"]
