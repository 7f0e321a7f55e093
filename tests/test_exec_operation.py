from pathlib import Path

import pytest

from butler_automation.executors import LocalExecutor
from butler_automation.operations.exec import ExecOperation
from butler_automation.types import HostConfig


def test_exec_runs_when_creates_is_missing(tmp_path: Path) -> None:
    host = HostConfig("local")
    target = tmp_path / "out.txt"
    op = ExecOperation({"name": "write-file", "command": f"echo hi > {target}", "creates": str(target)})
    result = op.apply(host, LocalExecutor(host))

    assert target.read_text().strip() == "hi"
    assert result.changed is True
    assert "ran" in result.details


def test_exec_skips_when_creates_exists(tmp_path: Path) -> None:
    host = HostConfig("local")
    target = tmp_path / "exists"
    target.write_text("present")
    op = ExecOperation({"name": "guard", "command": "echo should-not-run", "creates": str(target)})
    result = op.apply(host, LocalExecutor(host))

    assert result.changed is False
    assert result.details == "noop"


def test_exec_only_if_and_unless_guards() -> None:
    host = HostConfig("local")
    result_only_if = ExecOperation({"name": "guarded", "command": "exit 9", "only_if": "false"}).apply(
        host, LocalExecutor(host)
    )
    result_unless = ExecOperation({"name": "guarded2", "command": "exit 9", "unless": "true"}).apply(
        host, LocalExecutor(host)
    )

    assert result_only_if.changed is False
    assert result_unless.changed is False


def test_exec_requires_a_guard() -> None:
    with pytest.raises(ValueError):
        ExecOperation({"name": "unguarded", "command": "true"})


def test_exec_refresh_only_runs_on_refresh() -> None:
    host = HostConfig("local")
    op = ExecOperation({"name": "reload", "command": "exit 3", "returns": [0, 3], "refresh_on": "reload"})
    result = op.refresh(host, LocalExecutor(host))

    assert result.changed is True
    assert result.failed is False


def test_exec_disallowed_return_code_raises() -> None:
    host = HostConfig("local")
    op = ExecOperation({"name": "rc-fail", "command": "echo broken >&2; exit 5", "refresh_on": "reload"})

    with pytest.raises(RuntimeError) as excinfo:
        op.refresh(host, LocalExecutor(host))
    assert str(excinfo.value) == "rc=5: broken"


def test_exec_unless_must_hold_afterwards(tmp_path: Path) -> None:
    host = HostConfig("local")
    marker = tmp_path / "marker"
    op = ExecOperation({"name": "no-op", "command": "true", "unless": f"test -e {marker}"})
    result = op.apply(host, LocalExecutor(host))

    assert result.failed is True
    assert "post-condition not met" in result.details


def test_exec_passes_env(tmp_path: Path) -> None:
    host = HostConfig("local")
    marker = tmp_path / "marker"
    op = ExecOperation(
        {
            "name": "env-check",
            "command": f'test "$FOO" = bar && touch {marker}',
            "env": ["FOO=bar"],
            "creates": str(marker),
        }
    )
    result = op.apply(host, LocalExecutor(host))

    assert result.failed is False
    assert result.changed is True


def test_exec_dry_run_reports_change_without_running(tmp_path: Path) -> None:
    host = HostConfig("local")
    target = tmp_path / "never"
    op = ExecOperation({"name": "dry", "command": f"touch {target}", "creates": str(target)})
    result = op.apply(host, LocalExecutor(host, dry_run=True))

    assert result.changed is True
    assert result.details == "dry-run"
    assert not target.exists()
