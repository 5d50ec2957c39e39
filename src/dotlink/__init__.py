"""Core package for the dotlink project."""

from .cancellation import CancelToken
from .cli import app, run
from .client import Client
from .config import Config, ScanConfig, load_config
from .errors import (
    ConflictError,
    DotlinkError,
    ExecutorFailure,
    InvalidPathError,
    PackageNotFoundError,
    PermissionDeniedError,
)
from .filesystem import FileSystem, MemoryFileSystem, OSFileSystem
from .manifest import Manifest
from .models import (
    ConflictPolicy,
    DiagnosticReport,
    ExecutionResult,
    HealthStatus,
    PackageStatus,
    Plan,
    ScanMode,
    SymlinkMode,
    TriageResult,
)

__all__ = [
    "CancelToken",
    "Client",
    "Config",
    "ScanConfig",
    "load_config",
    "DotlinkError",
    "ConflictError",
    "ExecutorFailure",
    "InvalidPathError",
    "PackageNotFoundError",
    "PermissionDeniedError",
    "FileSystem",
    "MemoryFileSystem",
    "OSFileSystem",
    "Manifest",
    "ConflictPolicy",
    "DiagnosticReport",
    "ExecutionResult",
    "HealthStatus",
    "PackageStatus",
    "Plan",
    "ScanMode",
    "SymlinkMode",
    "TriageResult",
    "app",
    "run",
]
