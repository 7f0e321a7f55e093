from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .operations.base import Operation


@dataclass(frozen=True)
class HostConfig:
    name: str
    connection: str = "local"
    address: Optional[str] = None
    user: Optional[str] = None
    port: Optional[int] = None
    identity_file: Optional[str] = None
    labels: tuple[str, ...] = ()
    variables: Mapping[str, Any] = field(default_factory=dict)

    def has_label(self, label: str) -> bool:
        return label in self.labels


class Outcome(str, Enum):
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class ActionResult:
    host: str
    action: str
    changed: bool
    details: str
    failed: bool = False
    resource: Optional[str] = None
    skipped: bool = False
    fatal: bool = False

    @property
    def outcome(self) -> Outcome:
        if self.skipped:
            return Outcome.SKIPPED
        if self.failed:
            return Outcome.FAILED
        if self.changed:
            return Outcome.CHANGED
        return Outcome.UNCHANGED

    @property
    def name(self) -> str:
        return f"{self.action}[{self.resource}]" if self.resource else self.action

    def to_dict(self) -> dict[str, Any]:
        return {"name": self.name, "outcome": self.outcome.value, "detail": self.details}


@dataclass(frozen=True)
class Plan:
    """Ordered operations for one host; built once per run and then discarded."""

    host: HostConfig
    operations: tuple["Operation", ...] = ()

    def __iter__(self) -> Iterator["Operation"]:
        return iter(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    @property
    def empty(self) -> bool:
        return not self.operations
