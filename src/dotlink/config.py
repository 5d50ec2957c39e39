"""TOML configuration loading for dotlink."""

from __future__ import annotations

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, Mapping

import tomli_w
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .doctor import DEFAULT_SKIP_PATTERNS, ScanOptions
from .errors import ConfigError
from .models import ConflictPolicy, ScanMode, SymlinkMode

DEFAULT_CONFIG_FILENAME = "dotlink.toml"

_PATH_FIELDS = ("package_dir", "target_dir", "manifest_dir", "backup_dir")


def _expand_path(raw: str | os.PathLike[str] | Path, *, base_dir: Path) -> Path:
    """Return an absolute ``Path`` by expanding env vars and user segments."""

    text = str(raw)
    expanded = Path(os.path.expandvars(text)).expanduser()
    if expanded.is_absolute():
        return expanded.resolve(strict=False)
    return (base_dir / expanded).resolve(strict=False)


def _default_parallelism() -> int:
    return os.cpu_count() or 1


class ScanConfig(BaseModel):
    """Orphan scan settings (the ``[scan]`` table)."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    mode: ScanMode = ScanMode.SCOPED
    max_depth: int | None = Field(default=None, ge=1)
    max_workers: int = Field(default_factory=_default_parallelism, ge=1)
    max_issues: int = Field(default=0, ge=0)
    skip_patterns: tuple[str, ...] = DEFAULT_SKIP_PATTERNS

    def options(self, **overrides: Any) -> ScanOptions:
        values: Dict[str, Any] = {
            "mode": self.mode,
            "max_depth": self.max_depth,
            "max_workers": self.max_workers,
            "max_issues": self.max_issues,
            "skip_patterns": self.skip_patterns,
        }
        values.update({key: value for key, value in overrides.items() if value is not None})
        return ScanOptions(**values)


class Config(BaseModel):
    """Everything the client needs, fully resolved."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    package_dir: Path
    target_dir: Path = Field(default_factory=Path.home)
    manifest_dir: Path | None = None
    dry_run: bool = False
    atomic: bool = True
    max_parallel: int = Field(default_factory=_default_parallelism, ge=1)
    symlink_mode: SymlinkMode = SymlinkMode.RELATIVE
    folding: bool = True
    conflict_policy: ConflictPolicy = ConflictPolicy.FAIL
    backup_suffix: str = ".bak"
    backup_dir: Path | None = None
    dotfile_prefix: str = "dot-"
    dotfile_translate: bool = True
    ignore_use_defaults: bool = True
    ignore_patterns: tuple[str, ...] = ()
    scan: ScanConfig = Field(default_factory=ScanConfig)

    @field_validator(*_PATH_FIELDS)
    @classmethod
    def _absolute(cls, value: Path | None) -> Path | None:
        if value is None:
            return None
        return _expand_path(value, base_dir=Path.cwd())

    @field_validator("backup_suffix")
    @classmethod
    def _suffix(cls, value: str) -> str:
        if not value or "/" in value:
            raise ValueError("backup_suffix must be a non-empty file name suffix")
        return value

    @model_validator(mode="after")
    def _distinct_dirs(self) -> "Config":
        if self.package_dir == self.target_dir:
            raise ValueError("package_dir and target_dir must differ")
        return self

    @property
    def effective_manifest_dir(self) -> Path:
        return self.manifest_dir or self.target_dir

    @classmethod
    def build(cls, **values: Any) -> "Config":
        """Validate ``values`` and report problems as :class:`ConfigError`."""

        try:
            return cls(**values)
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration: {_describe(exc)}", cause=exc) from exc

    def to_toml(self) -> Dict[str, Any]:
        data = self.model_dump(
            mode="json",
            exclude_none=True,
            exclude={"scan", "ignore_patterns", "ignore_use_defaults"},
        )
        data["scan"] = self.scan.model_dump(mode="json", exclude_none=True)
        data["ignore"] = {"use_defaults": self.ignore_use_defaults, "patterns": list(self.ignore_patterns)}
        return data


def _describe(exc: ValidationError) -> str:
    parts = []
    for error in exc.errors():
        location = ".".join(str(item) for item in error["loc"]) or "config"
        parts.append(f"{location}: {error['msg']}")
    return "; ".join(parts)


def load_config(path: Path | None = None, **overrides: Any) -> Config:
    """Load and validate a configuration.

    Args:
        path: Optional path to a TOML file or to a directory holding ``dotlink.toml``.
            Without it, ``dotlink.toml`` in the current working directory is used if present.
        overrides: Values that take precedence over the file, e.g. from CLI flags.
            ``None`` values are ignored.
    """

    config_path = _resolve_config_path(path)
    values: Dict[str, Any] = {}
    if config_path is not None:
        with config_path.open("rb") as handle:
            try:
                data = tomllib.load(handle)
            except tomllib.TOMLDecodeError as exc:
                raise ConfigError(f"Could not parse '{config_path}': {exc}", cause=exc) from exc
        values = _values_from_toml(data, base_dir=config_path.parent)

    for key, value in overrides.items():
        if value is None:
            continue
        if key == "scan" and isinstance(value, Mapping):
            values["scan"] = {**values.get("scan", {}), **value}
        else:
            values[key] = value

    if "package_dir" not in values:
        raise ConfigError(
            "No package directory configured",
            suggestion=f"Pass --dir or set package_dir in {DEFAULT_CONFIG_FILENAME}",
        )
    return Config.build(**values)


def render_config(config: Config) -> str:
    """Return ``config`` as TOML text."""

    return tomli_w.dumps(config.to_toml())


def _values_from_toml(data: Mapping[str, Any], *, base_dir: Path) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for key, raw in data.items():
        if key == "scan":
            if not isinstance(raw, Mapping):
                raise ConfigError("[scan] must be a table")
            values["scan"] = dict(raw)
        elif key == "ignore":
            if not isinstance(raw, Mapping):
                raise ConfigError("[ignore] must be a table")
            unknown = set(raw) - {"use_defaults", "patterns"}
            if unknown:
                raise ConfigError(f"Unknown [ignore] setting(s): {', '.join(sorted(unknown))}")
            if "use_defaults" in raw:
                values["ignore_use_defaults"] = raw["use_defaults"]
            if "patterns" in raw:
                values["ignore_patterns"] = tuple(raw["patterns"])
        elif key in _PATH_FIELDS:
            values[key] = _expand_path(raw, base_dir=base_dir)
        else:
            values[key] = raw
    return values


def _resolve_config_path(path: Path | None) -> Path | None:
    if path is None:
        candidate = Path.cwd() / DEFAULT_CONFIG_FILENAME
        return candidate.resolve(strict=False) if candidate.is_file() else None

    path = Path(path)
    if not path.exists():
        raise ConfigError(f"Configuration file '{path}' does not exist")
    if path.is_dir():
        candidate = path / DEFAULT_CONFIG_FILENAME
        if not candidate.exists():
            raise ConfigError(f"Expected to find '{DEFAULT_CONFIG_FILENAME}' inside '{path}', but none was located")
        path = candidate

    return path.resolve(strict=False)
