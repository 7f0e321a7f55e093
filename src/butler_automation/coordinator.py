from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Iterable, Optional

from .config import DEFAULT_MAX_CONCURRENCY
from .controller import ControllerClient
from .desired import DesiredState
from .engine import ConvergenceEngine, ProgressCallback
from .errors import ButlerError, ConnectivityError
from .executors import Executor, executor_for
from .facts import FactGatherer, FactQuery
from .jobs import JobApi, JobDefinition, JobSyncController, RemovalPolicy, SyncReport
from .planner import TaskPlanner
from .plugins import DependencyLookup, PluginResolver, ResolvedSet
from .render import ConfigRenderer, RenderedArtifacts, render_artifacts, template_context
from .report import HostReport, HostStatus, RunReport, unreachable_report
from .secrets import SecretResolver
from .types import HostConfig

logger = logging.getLogger(__name__)

CONTROLLER_LABEL = "controller"

ExecutorFactory = Callable[..., Executor]
ClientFactory = Callable[[HostConfig, DesiredState], JobApi]


@dataclass(frozen=True)
class PreparedRun:
    """Per-run inputs computed once and shared read-only by every host."""

    desired: DesiredState
    plugins: ResolvedSet
    artifacts: RenderedArtifacts
    reload_token: Optional[str] = None


def default_client_factory(user: Optional[str], token: Optional[str]) -> ClientFactory:
    def factory(host: HostConfig, desired: DesiredState) -> JobApi:
        base_url = host.variables.get("controller_url") or f"http://{host.address or 'localhost'}:{desired.http_port}"
        return ControllerClient(str(base_url), user=user, token=token)

    return factory


@dataclass(frozen=True)
class JobSyncSettings:
    jobs: tuple[JobDefinition, ...]
    policy: RemovalPolicy = RemovalPolicy.LEAVE
    protected: tuple[str, ...] = ()
    label: str = CONTROLLER_LABEL
    client_factory: ClientFactory = field(default_factory=lambda: default_client_factory(None, None))


class HostSetCoordinator:
    """Fans one convergence run out over a host set.

    Validation, plugin resolution and rendering happen once in ``prepare``;
    any failure there is global and no host is touched. Each host then runs
    on its own worker thread, and whatever happens on one host stays in that
    host's report.
    """

    def __init__(
        self,
        catalog: DependencyLookup,
        *,
        renderer: Optional[ConfigRenderer] = None,
        secrets: Optional[SecretResolver] = None,
        executor_factory: ExecutorFactory = executor_for,
        max_concurrency: int = DEFAULT_MAX_CONCURRENCY,
        dry_run: bool = False,
        operation_timeout: Optional[float] = None,
        connect_timeout: int = 10,
        cancel_event: Optional[threading.Event] = None,
        progress_callback: Optional[ProgressCallback] = None,
        job_sync: Optional[JobSyncSettings] = None,
    ):
        self.catalog = catalog
        self.renderer = renderer or ConfigRenderer()
        self.secrets = secrets or SecretResolver()
        self.executor_factory = executor_factory
        self.max_concurrency = max(1, max_concurrency)
        self.dry_run = dry_run
        self.operation_timeout = operation_timeout
        self.connect_timeout = connect_timeout
        self.cancel_event = cancel_event or threading.Event()
        self.job_sync = job_sync
        self.engine = ConvergenceEngine(
            cancel_event=self.cancel_event,
            default_timeout=operation_timeout,
            progress_callback=progress_callback,
        )

    def prepare(self, desired: DesiredState) -> PreparedRun:
        desired.validate()
        plugins = PluginResolver().resolve(desired.plugins, self.catalog)
        context = template_context(desired, self.secrets)
        artifacts = render_artifacts(desired, context, self.renderer)
        token = context.get("casc_reload_token")
        logger.info("prepared run plugins=%d artifacts=%d", len(plugins), len(artifacts))
        return PreparedRun(desired, plugins, artifacts, str(token) if token else None)

    def run(self, hosts: Iterable[HostConfig], desired: DesiredState, concurrency: Optional[int] = None) -> RunReport:
        hosts = list(hosts)
        prepared = self.prepare(desired)
        if not hosts:
            return RunReport(())

        workers = min(concurrency or len(hosts), self.max_concurrency, len(hosts))
        workers = max(1, workers)
        planner = TaskPlanner(prepared.plugins, prepared.artifacts, reload_token=prepared.reload_token)
        query = FactQuery.for_run(desired, prepared.artifacts)
        logger.info("converging hosts=%d workers=%d dry_run=%s", len(hosts), workers, self.dry_run)

        reports: dict[str, HostReport] = {}
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="butler-host") as pool:
            futures = {pool.submit(self._converge_host, host, prepared, planner, query): host for host in hosts}
            for future in as_completed(futures):
                host = futures[future]
                try:
                    reports[host.name] = future.result()
                except Exception as exc:  # noqa: BLE001
                    logger.error("host=%s failed unexpectedly: %s", host.name, exc, exc_info=True)
                    reports[host.name] = HostReport(host.name, (), HostStatus.ABORTED, str(exc))
        return RunReport(tuple(reports[host.name] for host in hosts))

    def cancel(self) -> None:
        self.cancel_event.set()

    def _converge_host(
        self,
        host: HostConfig,
        prepared: PreparedRun,
        planner: TaskPlanner,
        query: FactQuery,
    ) -> HostReport:
        if self.cancel_event.is_set():
            return HostReport(host.name, (), HostStatus.CANCELLED, "run cancelled")
        try:
            executor = self.executor_factory(host, dry_run=self.dry_run, connect_timeout=self.connect_timeout)
            with executor.operation_timeout(self.operation_timeout):
                facts = FactGatherer(executor).gather(query)
            plan = planner.plan(prepared.desired, facts, host)
        except ConnectivityError as exc:
            logger.warning("host=%s unreachable: %s", host.name, exc.detail)
            return unreachable_report(host, str(exc))
        except Exception as exc:  # noqa: BLE001
            logger.error("host=%s planning failed: %s", host.name, exc, exc_info=True)
            return HostReport(host.name, (), HostStatus.ABORTED, f"planning failed: {exc}")

        logger.info("host=%s planned operations=%d", host.name, len(plan))
        report = self.engine.apply(plan, executor)
        if self._should_sync(host, report):
            report = report.with_job_sync(self._sync_jobs(host, prepared.desired))
        return report

    def _should_sync(self, host: HostConfig, report: HostReport) -> bool:
        if self.job_sync is None or self.dry_run:
            return False
        if not host.has_label(self.job_sync.label):
            return False
        return report.status in {HostStatus.CONVERGED, HostStatus.PARTIAL}

    def _sync_jobs(self, host: HostConfig, desired: DesiredState) -> SyncReport:
        settings = self.job_sync
        assert settings is not None
        controller = JobSyncController(settings.policy, settings.protected)
        try:
            client = settings.client_factory(host, desired)
            return controller.reconcile(settings.jobs, client)
        except ButlerError as exc:
            logger.error("host=%s job sync failed: %s", host.name, exc)
            return SyncReport((), error=str(exc))
