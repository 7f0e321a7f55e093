import json
from pathlib import Path

import yaml

from butler_automation import cli
from butler_automation.errors import SyncError
from butler_automation.jobs import SyncAction, SyncItem, SyncResult
from butler_automation.report import HostReport, HostStatus, RunReport
from butler_automation.types import ActionResult


def test_format_result_failed(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    result = ActionResult(host="ci1", action="install-plugin", changed=False, details="boom", failed=True, resource="git@5.2.1")
    line = cli.format_result(result)
    assert line.startswith("ci1::install-plugin[git@5.2.1] failed - boom")


def test_format_result_success(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    result = ActionResult(host="ci1", action="install-package", changed=True, details="installed jenkins=2.440.3")
    line = cli.format_result(result)
    assert line.startswith("ci1::install-package changed - installed")


def test_format_sync_result_hides_unchanged(monkeypatch):
    monkeypatch.setenv("NO_COLOR", "1")
    created = SyncResult(SyncItem(SyncAction.CREATE, "build-app", reason="new"))
    failed = SyncResult(SyncItem(SyncAction.DELETE, "old", reason="orphan"), SyncError("delete", "old", "HTTP 403"))
    kept = SyncResult(SyncItem(SyncAction.LEAVE, "seed", reason="protected"))

    assert cli.format_sync_result("ci1", created) == "ci1::job-create[build-app] changed - new"
    assert cli.format_sync_result("ci1", failed) == "ci1::job-delete[old] failed - HTTP 403"
    assert cli.format_sync_result("ci1", kept) is None


def test_summary_counts():
    summary = cli.Summary()
    summary.add(ActionResult("ci1", "install-package", True, "installed curl"))
    summary.add(ActionResult("ci1", "ensure-service-state", True, "stopped"))
    summary.add(ActionResult("ci1", "render-file", False, "noop"))
    summary.add(ActionResult("ci1", "install-plugin", False, "skipped after fatal failure", skipped=True))
    summary.add(ActionResult("ci1", "install-plugin", False, "boom", failed=True))

    assert (summary.changes, summary.additions, summary.rollbacks) == (2, 1, 1)
    assert (summary.skipped, summary.failures) == (1, 1)


def write_inputs(tmp_path: Path, desired_data: dict) -> dict[str, Path]:
    desired = tmp_path / "desired.yaml"
    desired.write_text(yaml.safe_dump(desired_data))
    catalog = tmp_path / "catalog.json"
    catalog.write_text(json.dumps({"plugins": {"git": {"5.2.1": {"dependencies": []}}}}))
    return {"desired": desired, "catalog": catalog, "config": tmp_path / "missing.conf"}


def test_main_rejects_invalid_desired_state(tmp_path, desired_data, capsys):
    del desired_data["job_repo"]
    paths = write_inputs(tmp_path, desired_data)

    code = cli.main([str(paths["desired"]), "--config", str(paths["config"])])

    assert code == 1
    assert "missing required key 'job_repo'" in capsys.readouterr().err


def test_main_writes_report_and_returns_exit_code(tmp_path, desired_data, monkeypatch):
    paths = write_inputs(tmp_path, desired_data)
    seen = {}

    class StubCoordinator:
        def __init__(self, catalog, **kwargs):
            seen["kwargs"] = kwargs

        def run(self, hosts, desired, concurrency=None):
            seen["hosts"] = [host.name for host in hosts]
            seen["concurrency"] = concurrency
            failed = ActionResult("local", "install-plugin", False, "download failed", failed=True, resource="blueocean@1.27.9")
            return RunReport((HostReport("local", (failed,), HostStatus.PARTIAL),))

    monkeypatch.setattr(cli, "HostSetCoordinator", StubCoordinator)
    monkeypatch.setattr(cli, "_install_signal_handlers", lambda event: None)
    report_path = tmp_path / "out" / "report.json"

    code = cli.main(
        [
            str(paths["desired"]),
            "--config",
            str(paths["config"]),
            "--catalog-file",
            str(paths["catalog"]),
            "--report",
            str(report_path),
            "--concurrency",
            "2",
            "--skip-job-sync",
            "--dry-run",
        ]
    )

    assert code == 3
    assert seen["hosts"] == ["local"]
    assert seen["concurrency"] == 2
    assert seen["kwargs"]["dry_run"] is True
    assert seen["kwargs"]["job_sync"] is None
    data = json.loads(report_path.read_text())
    assert data["overall_status"] == "partial"
    assert data["hosts"]["local"]["operations"][0]["outcome"] == "failed"


def test_main_reports_job_repository_failure(tmp_path, desired_data, monkeypatch, capsys):
    paths = write_inputs(tmp_path, desired_data)

    def broken_fetch(repo, checkout_dir, runner=None):
        raise cli.RepositoryError("git clone failed: repository not found")

    monkeypatch.setattr(cli, "fetch_job_repository", broken_fetch)

    code = cli.main([str(paths["desired"]), "--config", str(paths["config"])])

    assert code == 1
    assert "repository not found" in capsys.readouterr().err


def test_main_rejects_invalid_config(tmp_path, desired_data, capsys):
    paths = write_inputs(tmp_path, desired_data)
    paths["config"].write_text('[defaults]\nremoval_policy = "purge"\n')

    code = cli.main([str(paths["desired"]), "--config", str(paths["config"])])

    assert code == 1
    assert "removal_policy must be one of" in capsys.readouterr().err
