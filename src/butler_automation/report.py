from __future__ import annotations

import json
from dataclasses import dataclass, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Iterable, Optional

from .types import ActionResult, HostConfig

if TYPE_CHECKING:  # pragma: no cover
    from .jobs import SyncReport
    from .operations.base import Operation

SUCCESS = "success"
PARTIAL = "partial"
FAILED = "failed"

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_ABORTED = 2
EXIT_ADVISORY = 3


class HostStatus(str, Enum):
    CONVERGED = "converged"
    PARTIAL = "partial"
    ABORTED = "aborted"
    UNREACHABLE = "unreachable"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class HostReport:
    host: str
    results: tuple[ActionResult, ...] = ()
    status: HostStatus = HostStatus.CONVERGED
    error: Optional[str] = None
    job_sync: Optional["SyncReport"] = None

    @property
    def changed(self) -> bool:
        return any(result.changed for result in self.results)

    @property
    def failures(self) -> list[ActionResult]:
        return [result for result in self.results if result.failed]

    def with_job_sync(self, sync: "SyncReport") -> "HostReport":
        return replace(self, job_sync=sync)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "status": self.status.value,
            "operations": [result.to_dict() for result in self.results],
        }
        if self.error:
            data["error"] = self.error
        if self.job_sync is not None:
            data["job_sync"] = self.job_sync.to_dict()
        return data


class HostReportBuilder:
    """Accumulates results for one host; ``build`` freezes them."""

    def __init__(self, host: str):
        self.host = host
        self._results: list[ActionResult] = []
        self._status: Optional[HostStatus] = None
        self._error: Optional[str] = None

    @property
    def results(self) -> list[ActionResult]:
        return list(self._results)

    def record(self, result: ActionResult) -> None:
        self._results.append(result)

    def skip(self, operations: Iterable["Operation"], detail: str) -> None:
        for operation in operations:
            self._results.append(
                ActionResult(
                    host=self.host,
                    action=operation.kind,
                    changed=False,
                    details=detail,
                    resource=operation.target,
                    skipped=True,
                    fatal=operation.fatal,
                )
            )

    def abort(self, error: str, remaining: Iterable["Operation"] = ()) -> None:
        self.skip(remaining, "skipped after fatal failure")
        self._status = HostStatus.ABORTED
        self._error = error

    def unreachable(self, error: str, remaining: Iterable["Operation"] = ()) -> None:
        self.skip(remaining, "skipped, host unreachable")
        self._status = HostStatus.UNREACHABLE
        self._error = error

    def cancel(self, remaining: Iterable["Operation"] = ()) -> None:
        self.skip(remaining, "skipped, run cancelled")
        self._status = HostStatus.CANCELLED
        self._error = "run cancelled"

    def build(self) -> HostReport:
        status = self._status
        if status is None:
            status = HostStatus.PARTIAL if any(r.failed for r in self._results) else HostStatus.CONVERGED
        return HostReport(self.host, tuple(self._results), status, self._error)


def unreachable_report(host: HostConfig, error: str) -> HostReport:
    return HostReport(host.name, (), HostStatus.UNREACHABLE, error)


@dataclass(frozen=True)
class RunReport:
    hosts: tuple[HostReport, ...] = ()

    def __iter__(self):
        return iter(self.hosts)

    def get(self, name: str) -> Optional[HostReport]:
        for report in self.hosts:
            if report.host == name:
                return report
        return None

    @property
    def results(self) -> list[ActionResult]:
        return [result for report in self.hosts for result in report.results]

    @property
    def overall_status(self) -> str:
        statuses = {report.status for report in self.hosts}
        if statuses & {HostStatus.ABORTED, HostStatus.UNREACHABLE}:
            return FAILED
        if statuses & {HostStatus.PARTIAL, HostStatus.CANCELLED}:
            return PARTIAL
        for report in self.hosts:
            if report.job_sync is not None and report.job_sync.status != SUCCESS:
                return PARTIAL
        return SUCCESS

    @property
    def exit_code(self) -> int:
        status = self.overall_status
        if status == FAILED:
            return EXIT_ABORTED
        if status == PARTIAL:
            return EXIT_ADVISORY
        return EXIT_OK

    def to_dict(self) -> dict[str, Any]:
        return {
            "overall_status": self.overall_status,
            "hosts": {report.host: report.to_dict() for report in self.hosts},
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2, sort_keys=False)
