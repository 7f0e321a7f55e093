from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from .errors import AdvisoryOperationError, ConnectivityError, FatalOperationError, OperationError
from .executors import Executor
from .operations.base import Operation
from .report import HostReport, HostReportBuilder
from .types import ActionResult, HostConfig, Plan

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[HostConfig, Operation], None]


class ConvergenceEngine:
    """Applies one host's plan strictly in order.

    Each operation is checked, executed when needed and re-checked. A failed
    fatal operation aborts the host and the rest of the plan is recorded as
    skipped; a failed advisory operation is recorded and the plan continues.
    Refresh-only operations run when an earlier operation that changed the
    host notified their key.
    """

    def __init__(
        self,
        *,
        cancel_event: Optional[threading.Event] = None,
        default_timeout: Optional[float] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ):
        self.cancel_event = cancel_event
        self.default_timeout = default_timeout
        self.progress_callback = progress_callback

    def apply(self, plan: Plan, executor: Executor) -> HostReport:
        host = plan.host
        builder = HostReportBuilder(host.name)
        operations = list(plan)
        notified: set[str] = set()

        for index, operation in enumerate(operations):
            if self.cancel_event is not None and self.cancel_event.is_set():
                logger.info("host=%s cancelled before %s", host.name, operation.name)
                builder.cancel(operations[index:])
                break
            if operation.refresh_on and operation.refresh_on not in notified:
                builder.record(self._not_notified(host, operation))
                continue
            if self.progress_callback:
                self.progress_callback(host, operation)

            try:
                result = self._run(operation, host, executor)
            except ConnectivityError as exc:
                builder.record(self._failed(host, operation, str(exc)))
                builder.unreachable(str(exc), operations[index + 1:])
                break
            except FatalOperationError as exc:
                logger.error("action=%s host=%s aborting: %s", operation.name, host.name, exc.detail)
                builder.record(self._failed(host, operation, exc.detail))
                builder.abort(str(exc), operations[index + 1:])
                break
            except AdvisoryOperationError as exc:
                logger.warning("action=%s host=%s advisory failure: %s", operation.name, host.name, exc.detail)
                builder.record(self._failed(host, operation, exc.detail))
                continue

            logger.debug("action=%s host=%s changed=%s", operation.name, host.name, result.changed)
            builder.record(result)
            if result.changed:
                notified.update(operation.notify)
            if operation.refresh_on:
                notified.discard(operation.refresh_on)

        report = builder.build()
        logger.info("host=%s status=%s", host.name, report.status.value)
        return report

    def _run(self, operation: Operation, host: HostConfig, executor: Executor) -> ActionResult:
        timeout = operation.timeout if operation.timeout is not None else self.default_timeout
        attempts = operation.retries + 1
        detail = ""
        for attempt in range(1, attempts + 1):
            try:
                with executor.operation_timeout(timeout):
                    if operation.refresh_on:
                        result = operation.refresh(host, executor)
                    else:
                        result = operation.apply(host, executor)
            except ConnectivityError:
                raise
            except Exception as exc:  # noqa: BLE001
                detail = str(exc) or exc.__class__.__name__
                logger.debug(
                    "action=%s host=%s attempt=%d failed: %s",
                    operation.name,
                    host.name,
                    attempt,
                    detail,
                    exc_info=not isinstance(exc, OperationError),
                )
            else:
                if not result.failed:
                    return result
                detail = result.details
            if attempt < attempts:
                logger.info("action=%s host=%s retrying (%d/%d)", operation.name, host.name, attempt, operation.retries)

        error_cls = FatalOperationError if operation.fatal else AdvisoryOperationError
        raise error_cls(operation.name, detail)

    @staticmethod
    def _failed(host: HostConfig, operation: Operation, detail: str) -> ActionResult:
        return ActionResult(
            host=host.name,
            action=operation.kind,
            changed=False,
            details=detail,
            failed=True,
            resource=operation.target,
            fatal=operation.fatal,
        )

    @staticmethod
    def _not_notified(host: HostConfig, operation: Operation) -> ActionResult:
        return ActionResult(
            host=host.name,
            action=operation.kind,
            changed=False,
            details="not notified",
            resource=operation.target,
            fatal=operation.fatal,
        )
