from __future__ import annotations

from typing import Any, Iterable, Optional, Sequence
import logging

from .base import Operation
from ..executors import CommandResult, Executor
from ..types import HostConfig

logger = logging.getLogger(__name__)


class ExecOperation(Operation):
    """Run a command with Puppet-style guards that make it idempotent.

    ``creates`` names a path whose presence means the script already ran,
    ``unless`` is a command whose success means the same, and ``only_if`` is
    a command that must succeed for the script to be needed. A refresh-only
    script (``refresh_on``) has no guard: its post-condition is a successful
    exit status.
    """

    kind = "run-script"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("exec operation requires a name")
        self.script = str(raw_name)

        raw_command = spec.get("command") or spec.get("cmd")
        if raw_command is None:
            raise ValueError("exec operation requires a command")
        self.command = self._normalize_command(raw_command)
        self.only_if = self._normalize_command(spec["only_if"]) if spec.get("only_if") else None
        self.unless = self._normalize_command(spec["unless"]) if spec.get("unless") else None
        self.creates = str(spec["creates"]) if spec.get("creates") else None
        if not (self.creates or self.unless or self.only_if or self.refresh_on):
            raise ValueError(
                f"exec '{self.script}' needs creates, unless, only_if or refresh_on to stay idempotent"
            )
        self.cwd = str(spec["cwd"]) if spec.get("cwd") else None
        self.env = self._normalize_env(spec.get("env") or spec.get("environment"))
        self.allowed_returns = self._normalize_returns(spec.get("returns", [0]))
        self._last: Optional[CommandResult] = None

    @property
    def target(self) -> str:
        return self.script

    def check(self, host: HostConfig, executor: Executor) -> bool:
        if self.creates and self._run_guard(["test", "-e", self.creates], executor).ok:
            return True
        if self.unless and self._run_guard(self.unless, executor).ok:
            return True
        if self.only_if and not self._run_guard(self.only_if, executor).ok:
            return True
        return False

    def verify(self, host: HostConfig, executor: Executor) -> bool:
        if self._last is None or self._last.returncode not in self.allowed_returns:
            return False
        if self.creates or self.unless:
            return self.check(host, executor)
        return True

    def execute(self, host: HostConfig, executor: Executor) -> str:
        result = executor.run(self.command, check=False, mutable=True, env=self.env, cwd=self.cwd)
        self._last = result
        if result.returncode not in self.allowed_returns:
            if logger.isEnabledFor(logging.DEBUG):
                logger.debug(
                    "exec failed name=%s rc=%s cmd=%s",
                    self.script,
                    result.returncode,
                    " ".join(self.command),
                )
            raise RuntimeError(self._error_detail(result))
        return f"ran (rc={result.returncode})"

    def _run_guard(self, command: Sequence[str], executor: Executor) -> CommandResult:
        return executor.run(command, check=False, mutable=False, env=self.env, cwd=self.cwd)

    @staticmethod
    def _normalize_command(value: Any) -> list[str]:
        if isinstance(value, str):
            return ["sh", "-c", value]
        if isinstance(value, Sequence):
            return [str(v) for v in value]
        raise ValueError("exec command must be a string or list")

    @staticmethod
    def _normalize_env(value: Any) -> Optional[dict[str, str]]:
        if value is None:
            return None
        if isinstance(value, dict):
            return {str(k): str(v) for k, v in value.items()}
        if isinstance(value, Iterable) and not isinstance(value, (str, bytes)):
            env: dict[str, str] = {}
            for item in value:
                key, sep, val = str(item).partition("=")
                if not sep:
                    raise ValueError("env list entries must be KEY=VALUE")
                env[key] = val
            return env
        raise ValueError("exec env must be a mapping or list of KEY=VALUE strings")

    @staticmethod
    def _normalize_returns(value: Any) -> list[int]:
        if value is None:
            return [0]
        if isinstance(value, int):
            return [int(value)]
        if isinstance(value, Iterable):
            return [int(v) for v in value]
        raise ValueError("exec returns must be an int or list of ints")

    @staticmethod
    def _error_detail(result: CommandResult) -> str:
        for text in (result.stderr, result.stdout):
            stripped = (text or "").strip()
            if not stripped:
                continue
            line = stripped.splitlines()[0]
            line = (line[:157] + "...") if len(line) > 160 else line
            return f"rc={result.returncode}: {line}"
        return f"rc={result.returncode}"
