from __future__ import annotations

from typing import Iterable, Optional, Sequence


class ButlerError(Exception):
    """Base class for every error raised by the toolkit."""


class ValidationError(ButlerError, ValueError):
    """Raised when inputs are malformed; fatal to the whole run."""

    def __init__(self, message: str, problems: Optional[Iterable[str]] = None):
        self.problems = list(problems or [])
        if self.problems:
            message = f"{message}: {'; '.join(self.problems)}"
        super().__init__(message)


class MissingBindingError(ValidationError):
    """A template referenced bindings that were not supplied."""

    def __init__(self, missing: Iterable[str], template: Optional[str] = None):
        self.missing = sorted(set(missing))
        self.template = template
        label = f"template {template}" if template else "template"
        super().__init__(f"{label} is missing required bindings", self.missing)


class ResolutionError(ButlerError):
    """Plugin dependency resolution failed; fatal to the whole run."""


class PluginConflictError(ResolutionError):
    def __init__(
        self,
        name: str,
        first_version: str,
        first_path: Sequence[str],
        second_version: str,
        second_path: Sequence[str],
    ):
        self.name = name
        self.first_version = first_version
        self.first_path = tuple(first_path)
        self.second_version = second_version
        self.second_path = tuple(second_path)
        super().__init__(
            f"plugin '{name}' is pinned to conflicting versions: "
            f"{first_version} via {' -> '.join(self.first_path)} and "
            f"{second_version} via {' -> '.join(self.second_path)}"
        )


class PluginCycleError(ResolutionError):
    def __init__(self, cycle: Sequence[str]):
        self.cycle = tuple(cycle)
        super().__init__(f"plugin dependency cycle: {' -> '.join(self.cycle)}")


class ConnectivityError(ButlerError):
    """The host could not be reached; fatal to that host only."""

    def __init__(self, host: str, detail: str):
        self.host = host
        self.detail = detail
        super().__init__(f"host {host} is unreachable: {detail}")


class CommandError(ButlerError):
    """A command exited with a non-zero status while ``check`` was requested."""

    def __init__(self, command: Sequence[str], returncode: int, stdout: str = "", stderr: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        summary = (stderr or stdout or "").strip().splitlines()
        tail = f": {summary[0]}" if summary else ""
        super().__init__(f"rc={returncode} running {' '.join(self.command)}{tail}")


class ExecutionTimeout(ButlerError):
    def __init__(self, command: Sequence[str], timeout: Optional[float]):
        self.command = list(command)
        self.timeout = timeout
        super().__init__(f"timed out after {timeout}s running {' '.join(self.command)}")


class OperationError(ButlerError):
    """An operation failed; the subclass tells the engine how far it spreads."""

    fatal = False

    def __init__(self, operation: str, detail: str):
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} failed: {detail}")


class FatalOperationError(OperationError):
    fatal = True


class AdvisoryOperationError(OperationError):
    fatal = False


class SyncError(ButlerError):
    """One job could not be created, updated or deleted."""

    def __init__(self, action: str, job: str, detail: str):
        self.action = action
        self.job = job
        self.detail = detail
        super().__init__(f"{action} {job} failed: {detail}")


class ControllerError(ButlerError):
    """The controller HTTP API returned an error."""


class RepositoryError(ButlerError):
    """The job-definition repository could not be fetched or read."""
