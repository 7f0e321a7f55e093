from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from .base import Operation
from ..executors import Executor
from ..types import HostConfig

logger = logging.getLogger(__name__)


@dataclass
class SystemCtl:
    executable: str = "systemctl"

    def available(self, executor: Executor) -> bool:
        result = executor.run(["sh", "-c", f"command -v {self.executable}"], check=False, mutable=False)
        return result.ok

    def is_enabled(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-enabled", service], check=False, mutable=False)
        return result.returncode == 0

    def is_active(self, executor: Executor, service: str) -> bool:
        result = executor.run([self.executable, "is-active", service], check=False, mutable=False)
        return result.returncode == 0

    def enable(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "enable", service])

    def start(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "start", service])

    def stop(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "stop", service])

    def restart(self, executor: Executor, service: str) -> None:
        executor.run([self.executable, "restart", service])


class ServiceOperation(Operation):
    """Keep a systemd service enabled and in the requested run state."""

    kind = "ensure-service-state"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        if not raw_name:
            raise ValueError("service operation requires a name")
        self.service = str(raw_name)
        self._enabled = self._coerce_bool(spec.get("enabled"))
        self._state = spec.get("state", "running")
        if self._state not in {"running", "stopped"}:
            raise ValueError("service state must be 'running' or 'stopped'")
        self.systemctl = SystemCtl()

    @property
    def target(self) -> str:
        return self.service

    @staticmethod
    def _coerce_bool(value: Any | None) -> bool | None:
        if value is None:
            return None
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            lowered = value.strip().lower()
            if lowered in {"true", "yes", "on", "1"}:
                return True
            if lowered in {"false", "no", "off", "0"}:
                return False
            raise ValueError(f"Unable to interpret boolean value '{value}'")
        return bool(value)

    def check(self, host: HostConfig, executor: Executor) -> bool:
        if self._enabled and not self.systemctl.is_enabled(executor, self.service):
            return False
        active = self.systemctl.is_active(executor, self.service)
        return active if self._state == "running" else not active

    def execute(self, host: HostConfig, executor: Executor) -> str:
        if not self.systemctl.available(executor):
            raise RuntimeError(f"systemctl is not available on {host.name}")

        changes: list[str] = []
        if self._enabled and not self.systemctl.is_enabled(executor, self.service):
            logger.debug("Enabling service %s", self.service)
            self.systemctl.enable(executor, self.service)
            changes.append("enabled")

        active = self.systemctl.is_active(executor, self.service)
        if self._state == "running" and not active:
            logger.debug("Starting service %s", self.service)
            self.systemctl.start(executor, self.service)
            changes.append("started")
        elif self._state == "stopped" and active:
            logger.debug("Stopping service %s", self.service)
            self.systemctl.stop(executor, self.service)
            changes.append("stopped")
        return ", ".join(changes) if changes else "noop"

    def on_refresh(self, host: HostConfig, executor: Executor) -> str:
        logger.debug("Restarting service %s", self.service)
        self.systemctl.restart(executor, self.service)
        return "restarted"
