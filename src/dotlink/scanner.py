"""Package scanning: walk a package tree and produce its inventory."""

from __future__ import annotations

import logging
import posixpath
from concurrent.futures import ThreadPoolExecutor
from typing import Sequence

from .cancellation import CancelToken
from .dotfiles import DotfileTranslator
from .errors import DotlinkError, InvalidPathError, PackageNotFoundError
from .filesystem import FileSystem
from .ignore import IGNORE_FILENAME, IgnoreSet, parse_ignore_file
from .models import EntryKind, InventoryEntry, PackageInventory
from .paths import PackagePath

logger = logging.getLogger(__name__)


def validate_package_name(name: str) -> str:
    if not name or name in (".", "..") or "/" in name or "\0" in name:
        raise InvalidPathError(name, "package names must be a single path segment")
    return name


class PackageScanner:
    """Produces deterministic, pre-order inventories of packages.

    Entries matched by the ignore set are skipped together with their
    subtrees. A ``.dotignore`` file inside the package adds patterns scoped to
    its directory and is never part of the inventory.
    """

    def __init__(
        self,
        fs: FileSystem,
        package_dir: PackagePath,
        *,
        ignore: IgnoreSet,
        translator: DotfileTranslator,
    ) -> None:
        self._fs = fs
        self._package_dir = package_dir
        self._ignore = ignore
        self._translator = translator

    def scan(self, token: CancelToken, package: str) -> PackageInventory:
        validate_package_name(package)
        root = self._package_dir.join(package)
        if not self._fs.is_dir(token, root):
            raise PackageNotFoundError(package, where=str(self._package_dir))

        entries: list[InventoryEntry] = []
        partial: set[str] = set()
        self._walk(token, root, "", self._ignore, entries, partial)
        logger.debug("Scanned package %s: %d entries", package, len(entries))
        return PackageInventory(
            package=package,
            root=root,
            entries=tuple(entries),
            partial_dirs=frozenset(partial),
        )

    def scan_many(
        self,
        token: CancelToken,
        packages: Sequence[str],
        *,
        max_workers: int = 1,
    ) -> list[PackageInventory]:
        """Scan several packages, concurrently when ``max_workers`` allows it.

        Results keep the order of ``packages``.
        """

        if max_workers <= 1 or len(packages) <= 1:
            return [self.scan(token, package) for package in packages]
        with ThreadPoolExecutor(max_workers=min(max_workers, len(packages))) as pool:
            futures = [pool.submit(self.scan, token, package) for package in packages]
            return [future.result() for future in futures]

    def _walk(
        self,
        token: CancelToken,
        directory: PackagePath,
        rel_dir: str,
        ignore: IgnoreSet,
        entries: list[InventoryEntry],
        partial: set[str],
    ) -> bool:
        """Append the entries below ``directory``; return ``True`` if anything was left out."""

        token.raise_if_cancelled()
        listing = self._fs.read_dir(token, directory)
        skipped = False
        if any(item.name == IGNORE_FILENAME for item in listing):
            ignore_path = directory.join(IGNORE_FILENAME)
            try:
                text = self._fs.read_file(token, ignore_path).decode("utf-8")
            except UnicodeDecodeError as exc:
                raise DotlinkError(
                    f"Cannot read {ignore_path}: not valid UTF-8",
                    suggestion="Save the ignore file as UTF-8 text",
                    details={"path": str(ignore_path)},
                    cause=exc,
                ) from exc
            ignore = ignore.extend(parse_ignore_file(text), base=rel_dir)
            skipped = True

        for item in listing:
            token.raise_if_cancelled()
            if item.name == IGNORE_FILENAME:
                continue
            rel_source = posixpath.join(rel_dir, item.name) if rel_dir else item.name
            if ignore.is_ignored(rel_source):
                logger.debug("Ignoring %s", rel_source)
                skipped = True
                continue
            source = directory.join(item.name)
            entries.append(
                InventoryEntry(
                    source=source,
                    rel_source=rel_source,
                    rel_target=self._translator.translate_path(rel_source),
                    kind=item.kind,
                )
            )
            if item.kind is EntryKind.DIR and self._walk(token, source, rel_source, ignore, entries, partial):
                partial.add(rel_source)
                skipped = True
        return skipped
