import threading

from butler_automation.engine import ConvergenceEngine
from butler_automation.errors import ConnectivityError
from butler_automation.executors import CommandResult, Executor, LocalExecutor
from butler_automation.operations.base import Operation
from butler_automation.report import HostStatus
from butler_automation.types import HostConfig, Outcome, Plan

HOST = HostConfig(name="ci1")


class NullExecutor(Executor):
    def __init__(self, dry_run: bool = False):
        super().__init__(HOST, dry_run=dry_run)

    def _spawn(self, command, *, env, cwd, timeout):  # type: ignore[override]
        return CommandResult(command, "", "", 0)


class FakeOperation(Operation):
    """Converges one key in a shared dict standing in for host state."""

    kind = "fake"

    def __init__(self, key, *, state, value="on", fail=False, break_after=False, failures=0, raise_exc=None, **spec):
        super().__init__(spec)
        self.key = key
        self.state = state
        self.value = value
        self.fail = fail
        self.break_after = break_after
        self.failures = failures
        self.raise_exc = raise_exc
        self.calls = 0

    @property
    def target(self):
        return self.key

    def check(self, host, executor):
        return self.state.get(self.key) == self.value

    def execute(self, host, executor):
        self.calls += 1
        if self.raise_exc is not None:
            raise self.raise_exc
        if self.fail or self.calls <= self.failures:
            raise RuntimeError(f"{self.key} exploded")
        if not self.break_after:
            self.state[self.key] = self.value
        return f"set {self.key}"

    def on_refresh(self, host, executor):
        self.calls += 1
        self.state.setdefault("refreshed", []).append(self.key)
        return "refreshed"

    def verify(self, host, executor):
        if self.refresh_on:
            return True
        return super().verify(host, executor)


def outcomes(report):
    return [(result.resource, result.outcome) for result in report.results]


def test_second_run_is_all_unchanged():
    state: dict = {}

    def plan():
        return Plan(HOST, (FakeOperation("a", state=state), FakeOperation("b", state=state)))

    first = ConvergenceEngine().apply(plan(), NullExecutor())
    second = ConvergenceEngine().apply(plan(), NullExecutor())

    assert [result.changed for result in first.results] == [True, True]
    assert first.status is HostStatus.CONVERGED
    assert second.changed is False
    assert [result.details for result in second.results] == ["noop", "noop"]


def test_fatal_failure_aborts_and_skips_rest():
    state: dict = {}
    ops = (
        FakeOperation("a", state=state),
        FakeOperation("b", state=state, fail=True),
        FakeOperation("c", state=state),
    )

    report = ConvergenceEngine().apply(Plan(HOST, ops), NullExecutor())

    assert report.status is HostStatus.ABORTED
    assert outcomes(report) == [("a", Outcome.CHANGED), ("b", Outcome.FAILED), ("c", Outcome.SKIPPED)]
    assert report.results[1].details == "b exploded"
    assert ops[2].calls == 0
    assert "c" not in state


def test_advisory_failure_continues():
    state: dict = {}
    ops = (
        FakeOperation("a", state=state, fail=True, tier="advisory"),
        FakeOperation("b", state=state),
    )

    report = ConvergenceEngine().apply(Plan(HOST, ops), NullExecutor())

    assert report.status is HostStatus.PARTIAL
    assert outcomes(report) == [("a", Outcome.FAILED), ("b", Outcome.CHANGED)]
    assert report.results[0].fatal is False


def test_unmet_post_condition_is_a_failure():
    state: dict = {}
    ops = (FakeOperation("a", state=state, break_after=True),)

    report = ConvergenceEngine().apply(Plan(HOST, ops), NullExecutor())

    assert report.status is HostStatus.ABORTED
    assert report.results[0].details == "post-condition not met after set a"


def test_retries_until_success():
    state: dict = {}
    op = FakeOperation("a", state=state, failures=2, retries=2)

    report = ConvergenceEngine().apply(Plan(HOST, (op,)), NullExecutor())

    assert op.calls == 3
    assert report.status is HostStatus.CONVERGED


def test_retries_exhausted_reports_last_error():
    state: dict = {}
    op = FakeOperation("a", state=state, failures=5, retries=1, tier="advisory")

    report = ConvergenceEngine().apply(Plan(HOST, (op,)), NullExecutor())

    assert op.calls == 2
    assert report.results[0].failed is True
    assert report.results[0].details == "a exploded"


class SleepOperation(Operation):
    kind = "sleep"

    @property
    def target(self):
        return "sleep"

    def check(self, host, executor):
        return False

    def execute(self, host, executor):
        executor.run(["sleep", "5"])
        return "slept"


def test_operation_timeout_fails_the_operation():
    host = HostConfig("local")
    plan = Plan(host, (SleepOperation({"timeout": 0.2}),))

    report = ConvergenceEngine().apply(plan, LocalExecutor(host))

    assert report.status is HostStatus.ABORTED
    assert report.results[0].details.startswith("timed out after")


def test_refresh_runs_only_when_notified():
    state: dict = {"b": "on"}
    ops = (
        FakeOperation("a", state=state, notify=["restart"]),
        FakeOperation("b", state=state, notify=["reload"]),
        FakeOperation("restart-svc", state=state, refresh_on="restart"),
        FakeOperation("reload-svc", state=state, refresh_on="reload"),
    )

    report = ConvergenceEngine().apply(Plan(HOST, ops), NullExecutor())

    assert state["refreshed"] == ["restart-svc"]
    assert outcomes(report)[2:] == [("restart-svc", Outcome.CHANGED), ("reload-svc", Outcome.UNCHANGED)]
    assert report.results[3].details == "not notified"


def test_refresh_key_is_consumed_once():
    state: dict = {}
    ops = (
        FakeOperation("a", state=state, notify=["restart"]),
        FakeOperation("restart-1", state=state, refresh_on="restart"),
        FakeOperation("b", state={"b": "on"}),
        FakeOperation("restart-2", state=state, refresh_on="restart"),
    )

    ConvergenceEngine().apply(Plan(HOST, ops), NullExecutor())

    assert state["refreshed"] == ["restart-1"]


def test_cancel_skips_remaining_operations():
    state: dict = {}
    cancel = threading.Event()
    seen = []

    def progress(host, operation):
        seen.append(operation.target)
        cancel.set()

    ops = (FakeOperation("a", state=state), FakeOperation("b", state=state))
    engine = ConvergenceEngine(cancel_event=cancel, progress_callback=progress)

    report = engine.apply(Plan(HOST, ops), NullExecutor())

    assert seen == ["a"]
    assert report.status is HostStatus.CANCELLED
    assert outcomes(report) == [("a", Outcome.CHANGED), ("b", Outcome.SKIPPED)]


def test_connectivity_loss_marks_host_unreachable():
    state: dict = {}
    ops = (
        FakeOperation("a", state=state, raise_exc=ConnectivityError("ci1", "broken pipe"), retries=3),
        FakeOperation("b", state=state),
    )

    report = ConvergenceEngine().apply(Plan(HOST, ops), NullExecutor())

    assert ops[0].calls == 1
    assert report.status is HostStatus.UNREACHABLE
    assert report.error == "host ci1 is unreachable: broken pipe"
    assert outcomes(report) == [("a", Outcome.FAILED), ("b", Outcome.SKIPPED)]


def test_dry_run_reports_changes_without_verifying():
    state: dict = {}
    ops = (FakeOperation("a", state=state, break_after=True),)

    report = ConvergenceEngine().apply(Plan(HOST, ops), NullExecutor(dry_run=True))

    assert report.status is HostStatus.CONVERGED
    assert report.results[0].details == "dry-run"
