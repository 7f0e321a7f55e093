from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
from pathlib import Path
from typing import Optional, Sequence

from .config import ButlerConfig, load_config
from .coordinator import CONTROLLER_LABEL, HostSetCoordinator, JobSyncSettings, default_client_factory
from .desired import DesiredState, load_desired_state
from .errors import RepositoryError, ResolutionError, ValidationError
from .inventory import InventoryLoader
from .jobs import RemovalPolicy, SyncResult, fetch_job_repository, load_job_repository
from .operations.base import Operation
from .plugins import DependencyLookup, StaticCatalog, UpdateCenterCatalog
from .report import EXIT_INVALID, RunReport
from .types import ActionResult, HostConfig


class Ansi:
    GREEN = "\033[92m"
    YELLOW = "\033[93m"
    RED = "\033[91m"
    BLUE = "\033[94m"
    ORANGE = "\033[38;5;208m"
    RESET = "\033[0m"


def colorize(text: str, color: Optional[str]) -> str:
    if not color:
        return text
    if not sys.stdout.isatty() or os.environ.get("NO_COLOR"):
        return text
    return f"{color}{text}{Ansi.RESET}"


_last_progress_len = 0
_progress_lock = threading.Lock()


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Butler CI controller convergence runner")
    parser.add_argument(
        "desired_state",
        nargs="?",
        default=None,
        type=Path,
        help="Path to a desired-state file (default from config or /etc/butler/desired.toml)",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path("/etc/butler/main.conf"),
        help="Path to butler config file (default: /etc/butler/main.conf)",
    )
    parser.add_argument("--inventory", type=Path, help="Host inventory (default: the local host)")
    parser.add_argument("--concurrency", type=int, help="Hosts converged in parallel (default: all)")
    parser.add_argument("--operation-timeout", type=float, help="Default per-operation timeout in seconds")
    parser.add_argument("--catalog-file", type=Path, help="Local plugin catalog instead of the update center")
    parser.add_argument(
        "--removal-policy",
        choices=[policy.value for policy in RemovalPolicy],
        help="What to do with controller jobs missing from the job repository",
    )
    parser.add_argument("--report", type=Path, help="Write the JSON run report to this path")
    parser.add_argument("--skip-job-sync", action="store_true", help="Converge hosts without syncing jobs")
    parser.add_argument("--dry-run", action="store_true", help="Calculate changes without executing")
    parser.add_argument(
        "--log-level",
        default="INFO",
        help="Python logging level (default: INFO)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    configure_logging(args.log_level)

    try:
        cfg = load_config(args.config)
        _apply_aws_env(cfg)
        desired = load_desired_state(args.desired_state or cfg.desired_state)
        hosts = InventoryLoader(
            default_user=cfg.ssh_user,
            default_identity_file=cfg.ssh_identity_file,
        ).load(args.inventory or cfg.inventory)
    except ValidationError as exc:
        print(colorize(f"Validation failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_INVALID

    job_sync = None
    if not args.skip_job_sync and not args.dry_run and any(h.has_label(CONTROLLER_LABEL) for h in hosts):
        try:
            job_sync = _job_sync_settings(cfg, desired, args.removal_policy)
        except (RepositoryError, ValidationError) as exc:
            print(colorize(f"Job repository failed: {exc}", Ansi.RED), file=sys.stderr)
            return EXIT_INVALID

    try:
        catalog = _catalog(cfg, args.catalog_file)
    except (OSError, ValueError) as exc:
        print(colorize(f"Plugin catalog failed: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_INVALID

    cancel_event = threading.Event()
    _install_signal_handlers(cancel_event)
    coordinator = HostSetCoordinator(
        catalog,
        max_concurrency=cfg.max_concurrency,
        dry_run=args.dry_run,
        operation_timeout=args.operation_timeout or cfg.operation_timeout,
        connect_timeout=cfg.ssh_connect_timeout,
        cancel_event=cancel_event,
        progress_callback=print_progress,
        job_sync=job_sync,
    )
    try:
        report = coordinator.run(hosts, desired, args.concurrency or cfg.concurrency)
    except (ValidationError, ResolutionError) as exc:
        _clear_progress()
        print(colorize(f"Run refused: {exc}", Ansi.RED), file=sys.stderr)
        return EXIT_INVALID

    _clear_progress()
    print_report(report, logging.getLogger().getEffectiveLevel())

    report_path = args.report or cfg.report_file
    if report_path:
        report_path.parent.mkdir(parents=True, exist_ok=True)
        report_path.write_text(report.to_json() + "\n")
    return report.exit_code


def print_report(report: RunReport, log_level: int) -> None:
    summary = Summary()
    for host_report in report:
        for result in host_report.results:
            summary.add(result)
            if should_display_result(result, log_level):
                print(format_result(result))
        if host_report.error:
            print(colorize(f"{host_report.host} {host_report.status.value} - {host_report.error}", Ansi.RED))
        if host_report.job_sync is not None:
            if host_report.job_sync.error:
                print(colorize(f"{host_report.host}::job-sync failed - {host_report.job_sync.error}", Ansi.RED))
            for sync_result in host_report.job_sync.results:
                line = format_sync_result(host_report.host, sync_result)
                if line:
                    print(line)
    print(summary.render())
    color = {"success": Ansi.GREEN, "partial": Ansi.ORANGE}.get(report.overall_status, Ansi.RED)
    print(colorize(f"Overall: {report.overall_status}", color))


def format_result(result: ActionResult) -> str:
    status = result.outcome.value
    color: Optional[str] = None
    if result.failed:
        color = Ansi.RED if result.fatal else Ansi.ORANGE
    elif result.skipped:
        color = Ansi.YELLOW
    elif result.changed:
        color = Ansi.GREEN
    else:
        color = Ansi.BLUE
    resource = f"[{result.resource}]" if result.resource else ""
    line = f"{result.host}::{result.action}{resource} {status} - {result.details}"
    return colorize(line, color)


def format_sync_result(host: str, result: SyncResult) -> Optional[str]:
    data = result.to_dict()
    if data["outcome"] == "unchanged":
        return None
    color = Ansi.RED if result.failed else Ansi.GREEN
    return colorize(f"{host}::job-{data['action']}[{data['name']}] {data['outcome']} - {data['detail']}", color)


def should_display_result(result: ActionResult, log_level: int) -> bool:
    if result.failed or result.changed or result.skipped:
        return True
    return log_level <= logging.DEBUG


def print_progress(host: HostConfig, operation: Operation) -> None:
    global _last_progress_len
    line = f"{host.name}::{operation.name} pending..."
    with _progress_lock:
        _last_progress_len = len(line)
        print(colorize(line, Ansi.YELLOW), end="\r", flush=True)


def _clear_progress() -> None:
    global _last_progress_len
    with _progress_lock:
        if _last_progress_len:
            print(" " * _last_progress_len, end="\r", flush=True)
            _last_progress_len = 0


def _catalog(cfg: ButlerConfig, catalog_file: Optional[Path]) -> DependencyLookup:
    path = catalog_file or cfg.plugin_catalog_file
    if path:
        return StaticCatalog.from_file(path)
    return UpdateCenterCatalog(cfg.plugin_catalog_url)


def _job_sync_settings(cfg: ButlerConfig, desired: DesiredState, policy: Optional[str]) -> JobSyncSettings:
    checkout = fetch_job_repository(desired.job_repo, cfg.job_checkout_dir)
    jobs = load_job_repository(checkout, desired.job_repo.jobs_path)
    logging.info("Loaded %d job definitions from %s", len(jobs), desired.job_repo.url)
    token = os.environ.get(cfg.controller_token_env)
    return JobSyncSettings(
        jobs=tuple(jobs),
        policy=RemovalPolicy(policy or cfg.removal_policy or desired.removal_policy),
        protected=(desired.seed_job_name,),
        client_factory=default_client_factory(cfg.controller_user, token),
    )


def _install_signal_handlers(cancel_event: threading.Event) -> None:
    def _cancel(signum, frame) -> None:  # noqa: ARG001
        if cancel_event.is_set():
            raise KeyboardInterrupt
        logging.warning("Cancelling: in-flight operations will finish, nothing new starts")
        cancel_event.set()

    if threading.current_thread() is threading.main_thread():
        signal.signal(signal.SIGINT, _cancel)
        signal.signal(signal.SIGTERM, _cancel)


def _apply_aws_env(cfg: ButlerConfig) -> None:
    if cfg.aws_profile and "AWS_PROFILE" not in os.environ:
        os.environ["AWS_PROFILE"] = cfg.aws_profile
    if cfg.aws_region:
        if "AWS_REGION" not in os.environ:
            os.environ["AWS_REGION"] = cfg.aws_region
        if "AWS_DEFAULT_REGION" not in os.environ:
            os.environ["AWS_DEFAULT_REGION"] = cfg.aws_region


class Summary:
    def __init__(self) -> None:
        self.changes = 0
        self.additions = 0
        self.rollbacks = 0
        self.skipped = 0
        self.failures = 0

    def add(self, result: ActionResult) -> None:
        if result.failed:
            self.failures += 1
            return
        if result.skipped:
            self.skipped += 1
            return
        if not result.changed:
            return
        self.changes += 1
        if _looks_like_rollback(result):
            self.rollbacks += 1
        else:
            self.additions += 1

    def render(self) -> str:
        parts = [
            f"Changes: {self.changes}",
            f"Additions: {self.additions}",
            f"Rollbacks: {self.rollbacks}",
            f"Skipped: {self.skipped}",
            f"Failures: {self.failures}",
        ]
        text = " | ".join(parts)
        color = Ansi.GREEN if self.failures == 0 else Ansi.RED
        return colorize(text, color)


def _looks_like_rollback(result: ActionResult) -> bool:
    text = (result.details or "").lower()
    rollback_tokens = {"removed", "deleted", "stopped", "downgraded"}
    return any(token in text for token in rollback_tokens)


if __name__ == "__main__":
    raise SystemExit(main())
