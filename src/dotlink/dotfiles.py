"""Translation between package-side names (``dot-vimrc``) and target names (``.vimrc``)."""

from __future__ import annotations

from dataclasses import dataclass

DEFAULT_PREFIX = "dot-"


@dataclass(frozen=True, slots=True)
class DotfileTranslator:
    prefix: str = DEFAULT_PREFIX
    enabled: bool = True

    def translate(self, name: str) -> str:
        """Return the target-side spelling of a package entry name."""

        if not self.enabled or not self.prefix:
            return name
        if name.startswith(self.prefix) and len(name) > len(self.prefix):
            return "." + name[len(self.prefix) :]
        return name

    def untranslate(self, name: str) -> str:
        """Return the package-side spelling of a target entry name."""

        if not self.enabled or not self.prefix:
            return name
        if name.startswith(".") and name not in (".", ".."):
            return self.prefix + name[1:]
        return name

    def translate_path(self, relative: str) -> str:
        return "/".join(self.translate(part) for part in relative.split("/"))

    def untranslate_path(self, relative: str) -> str:
        return "/".join(self.untranslate(part) for part in relative.split("/"))

    def package_name_for(self, relative: str) -> str:
        """Derive a package name from a target path, e.g. ``.ssh/config`` -> ``dot-ssh``."""

        first = relative.strip("/").split("/", 1)[0]
        return self.untranslate(first)
