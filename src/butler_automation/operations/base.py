from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Optional

from ..executors import Executor
from ..types import ActionResult, HostConfig

FATAL = "fatal"
ADVISORY = "advisory"


class Operation(ABC):
    """Shared surface for idempotent convergence steps.

    ``check`` is the idempotency predicate: when it holds, ``apply`` records the
    operation as unchanged without touching the host. Otherwise ``execute`` runs
    and ``verify`` must confirm the post-condition before the step counts as
    changed.
    """

    kind = "operation"

    def __init__(self, spec: dict[str, Any]):
        self.spec = spec
        self.tier = str(spec.get("tier", FATAL))
        if self.tier not in {FATAL, ADVISORY}:
            raise ValueError(f"{self.kind} tier must be '{FATAL}' or '{ADVISORY}'")
        self.retries = int(spec.get("retries", 0))
        if self.retries < 0:
            raise ValueError(f"{self.kind} retries must not be negative")
        raw_timeout = spec.get("timeout")
        self.timeout: Optional[float] = float(raw_timeout) if raw_timeout is not None else None
        notify = spec.get("notify") or ()
        self.notify: tuple[str, ...] = (notify,) if isinstance(notify, str) else tuple(notify)
        refresh_on = spec.get("refresh_on")
        self.refresh_on: Optional[str] = str(refresh_on) if refresh_on else None

    @property
    def fatal(self) -> bool:
        return self.tier == FATAL

    @property
    @abstractmethod
    def target(self) -> str:
        """Resource the operation converges."""

    @property
    def name(self) -> str:
        return f"{self.kind}[{self.target}]"

    @abstractmethod
    def check(self, host: HostConfig, executor: Executor) -> bool:
        """Return True when the host already satisfies the post-condition."""

    @abstractmethod
    def execute(self, host: HostConfig, executor: Executor) -> str:
        """Mutate the host towards the post-condition; returns a short detail."""

    def verify(self, host: HostConfig, executor: Executor) -> bool:
        return self.check(host, executor)

    def on_refresh(self, host: HostConfig, executor: Executor) -> str:
        return self.execute(host, executor)

    def apply(self, host: HostConfig, executor: Executor) -> ActionResult:
        if self.check(host, executor):
            return self._result(host, changed=False, details="noop")
        detail = self.execute(host, executor)
        return self._confirm(host, executor, detail)

    def refresh(self, host: HostConfig, executor: Executor) -> ActionResult:
        detail = self.on_refresh(host, executor)
        return self._confirm(host, executor, detail)

    def _confirm(self, host: HostConfig, executor: Executor, detail: str) -> ActionResult:
        if executor.dry_run:
            return self._result(host, changed=True, details="dry-run")
        if not self.verify(host, executor):
            return self._result(
                host,
                changed=False,
                details=f"post-condition not met after {detail}",
                failed=True,
            )
        return self._result(host, changed=True, details=detail)

    def _result(self, host: HostConfig, *, changed: bool, details: str, failed: bool = False) -> ActionResult:
        return ActionResult(
            host=host.name,
            action=self.kind,
            changed=changed,
            details=details,
            failed=failed,
            resource=self.target,
            fatal=self.fatal,
        )

    @staticmethod
    def _parse_mode(value: Optional[object]) -> Optional[int]:
        if value is None:
            return None
        if isinstance(value, int):
            return value
        text = str(value).strip()
        if not text:
            return None
        base = 8 if text.startswith("0") else 10
        return int(text, base)
