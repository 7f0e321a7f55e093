from __future__ import annotations

import hashlib
from pathlib import PurePosixPath
from typing import Optional

from .base import Operation
from ..executors import Executor
from ..types import HostConfig


class FileOperation(Operation):
    """Ensure a rendered artifact is present with the requested contents and mode."""

    kind = "render-file"

    def __init__(self, spec: dict[str, object]):
        super().__init__(spec)
        raw_path = spec.get("path")
        if not raw_path:
            raise ValueError("file operation requires a path")
        self.path = PurePosixPath(str(raw_path))
        raw_content = spec.get("content")
        if raw_content is None:
            raise ValueError("file operation requires content")
        self.content = raw_content if isinstance(raw_content, bytes) else str(raw_content).encode("utf-8")
        self.mode = self._parse_mode(spec.get("mode"))
        self.owner: Optional[str] = str(spec["owner"]) if spec.get("owner") else None
        self.group: Optional[str] = str(spec["group"]) if spec.get("group") else None

    @property
    def target(self) -> str:
        return str(self.path)

    @property
    def digest(self) -> str:
        return hashlib.sha256(self.content).hexdigest()

    def check(self, host: HostConfig, executor: Executor) -> bool:
        return not self._drift(executor)

    def execute(self, host: HostConfig, executor: Executor) -> str:
        reasons = self._drift(executor)
        executor.transfer(
            self.content,
            self.path,
            mode=self.mode,
            owner=self.owner,
            group=self.group,
        )
        return ", ".join(reasons)

    def _drift(self, executor: Executor) -> list[str]:
        if executor.checksum(self.path) != self.digest:
            return ["content"]
        reasons: list[str] = []
        if self.mode is None and self.owner is None and self.group is None:
            return reasons
        attributes = executor.file_attributes(self.path)
        if attributes is None:
            return ["content"]
        mode, owner, group = attributes
        if self.mode is not None and mode != self.mode:
            reasons.append(f"mode->{self.mode:04o}")
        if self.owner is not None and owner != self.owner:
            reasons.append(f"owner->{self.owner}")
        if self.group is not None and group != self.group:
            reasons.append(f"group->{self.group}")
        return reasons
