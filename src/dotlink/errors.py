"""Error taxonomy for dotlink.

Every error carries a one-line ``message``, an optional one-line ``suggestion``
and the process exit code the command-line layer should use for it.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    from .models import Conflict, ExecutionResult

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_INVALID_ARGUMENTS = 2
EXIT_CONFLICT = 3
EXIT_PERMISSION_DENIED = 4
EXIT_PACKAGE_NOT_FOUND = 5


class DotlinkError(RuntimeError):
    """Base class for every error raised by dotlink."""

    exit_code: int = EXIT_ERROR

    def __init__(
        self,
        message: str,
        *,
        suggestion: str | None = None,
        details: dict[str, Any] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.suggestion = suggestion
        self.details = details or {}
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        return self.message


class ConfigError(DotlinkError):
    """Raised when a configuration file cannot be parsed or validated."""

    exit_code = EXIT_INVALID_ARGUMENTS


class InvalidPathError(DotlinkError):
    """A path is relative, empty, or contains ``..`` segments."""

    exit_code = EXIT_INVALID_ARGUMENTS

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(
            f"Invalid path '{path}': {reason}",
            suggestion="Pass an absolute path without '..' segments",
            details={"path": path, "reason": reason},
        )
        self.path = path


class PackageNotFoundError(DotlinkError):
    exit_code = EXIT_PACKAGE_NOT_FOUND

    def __init__(self, package: str, *, where: str) -> None:
        super().__init__(
            f"Package '{package}' not found in {where}",
            suggestion="Run 'dotlink list' to see installed packages or check --dir",
            details={"package": package, "where": where},
        )
        self.package = package


class ConflictError(DotlinkError):
    """Raised when a plan with conflicts is handed to the executor."""

    exit_code = EXIT_CONFLICT

    def __init__(self, conflicts: Sequence["Conflict"]) -> None:
        first = conflicts[0] if conflicts else None
        count = len(conflicts)
        if first is None:
            message = "Plan has conflicts"
        elif count == 1:
            message = f"Conflict at {first.path}: {first.details}"
        else:
            message = f"{count} conflicts, first at {first.path}: {first.details}"
        suggestion = first.suggestions[0] if first is not None and first.suggestions else None
        super().__init__(
            message,
            suggestion=suggestion or "Re-run with --on-conflict backup or --on-conflict skip",
        )
        self.conflicts = tuple(conflicts)


class PermissionDeniedError(DotlinkError):
    exit_code = EXIT_PERMISSION_DENIED

    def __init__(self, path: str, *, cause: BaseException | None = None) -> None:
        super().__init__(
            f"Permission denied: {path}",
            suggestion="Check ownership and permissions of the path or its parent directory",
            details={"path": path},
            cause=cause,
        )
        self.path = path


class CyclicDependencyError(DotlinkError):
    def __init__(self, cycle: Sequence[str]) -> None:
        super().__init__(
            "Dependency cycle: " + " -> ".join(cycle),
            suggestion="Report this plan; operations must not depend on each other in a loop",
            details={"cycle": list(cycle)},
        )
        self.cycle = tuple(cycle)


class ManifestVersionMismatchError(DotlinkError):
    def __init__(self, found: str, supported: str) -> None:
        super().__init__(
            f"Manifest version {found} is newer than supported version {supported}",
            suggestion="Upgrade dotlink to a release that understands this manifest",
            details={"found": found, "supported": supported},
        )
        self.found = found
        self.supported = supported


class ManifestCorruptError(DotlinkError):
    def __init__(self, path: str, reason: str, *, cause: BaseException | None = None) -> None:
        super().__init__(
            f"Manifest {path} is unreadable: {reason}",
            suggestion="Restore the manifest from a backup or remove it and re-run 'dotlink manage'",
            details={"path": path, "reason": reason},
            cause=cause,
        )


class SourceNotFoundError(DotlinkError):
    def __init__(self, path: str, *, operation: str | None = None) -> None:
        super().__init__(
            f"Source does not exist: {path}",
            suggestion="Check that the package directory is intact and re-plan",
            details={"path": path, "operation": operation},
        )
        self.path = path


class ParentNotFoundError(DotlinkError):
    def __init__(self, path: str, *, operation: str | None = None) -> None:
        super().__init__(
            f"Parent directory does not exist: {path}",
            suggestion="Create the parent directory or re-plan against the current state",
            details={"path": path, "operation": operation},
        )
        self.path = path


class OperationCancelledError(DotlinkError):
    def __init__(self, message: str = "Operation cancelled") -> None:
        super().__init__(message, suggestion="Re-run the command to try again")


class ExecutorFailure(DotlinkError):
    """Wraps the error that stopped execution together with the rollback outcome."""

    def __init__(
        self,
        cause: BaseException,
        *,
        result: "ExecutionResult",
        rollback_errors: Sequence[BaseException] = (),
    ) -> None:
        message = f"Execution failed: {cause}"
        if rollback_errors:
            message += f" (rollback reported {len(rollback_errors)} error(s))"
        elif result.rolled_back:
            message += f" (rolled back {len(result.rolled_back)} operation(s))"
        suggestion = cause.suggestion if isinstance(cause, DotlinkError) else None
        super().__init__(message, suggestion=suggestion, cause=cause)
        self.result = result
        self.rollback_errors = tuple(rollback_errors)

    @property
    def cancelled(self) -> bool:
        return isinstance(self.cause, OperationCancelledError)


def exit_code_for(exc: BaseException) -> int:
    """Map an exception to the process exit code reported by the CLI."""

    if isinstance(exc, ExecutorFailure) and exc.cause is not None:
        return exit_code_for(exc.cause)
    if isinstance(exc, DotlinkError):
        return exc.exit_code
    if isinstance(exc, PermissionError):
        return EXIT_PERMISSION_DENIED
    return EXIT_ERROR
