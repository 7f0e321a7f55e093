"""Mirrors a job-definition repository into the controller's live job set.

``JobSyncController.sync`` is a pure three-way comparison by name that yields
a ``SyncPlan``. Jobs and views are compared in separate namespaces, as the
controller keeps them. ``apply`` carries the plan out against the controller
API, creates first, then updates, then deletes. One job failing never stops
the others.
"""

from __future__ import annotations

import hashlib
import logging
import re
import subprocess
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Protocol, Sequence

import yaml

from .desired import JobRepo
from .errors import RepositoryError, SyncError, ValidationError

logger = logging.getLogger(__name__)

PIPELINE_DEFINITION = "org.jenkinsci.plugins.workflow.cps.CpsFlowDefinition"
MULTIBRANCH_ROOT = "org.jenkinsci.plugins.workflow.multibranch.WorkflowMultiBranchProject"
_XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>")


class JobKind(str, Enum):
    PIPELINE = "pipeline"
    FREESTYLE = "freestyle"
    MULTIBRANCH = "multibranch"
    VIEW = "view"


class RemovalPolicy(str, Enum):
    LEAVE = "leave"
    DELETE_ORPHANS = "delete-orphans"


@dataclass(frozen=True)
class JobDefinition:
    """A job or view. Pipelines carry their script, everything else config XML."""

    name: str
    kind: JobKind
    body: str
    origin: Optional[str] = None

    @property
    def body_hash(self) -> str:
        return hashlib.sha256(normalize_body(self.kind, self.body).encode("utf-8")).hexdigest()

    @property
    def key(self) -> tuple[str, str]:
        """Jobs and views live in separate namespaces on the controller."""

        return ("view" if self.kind == JobKind.VIEW else "job", self.name)


class SyncAction(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"
    LEAVE = "leave"


@dataclass(frozen=True)
class SyncItem:
    action: SyncAction
    name: str
    local: Optional[JobDefinition] = None
    remote: Optional[JobDefinition] = None
    reason: str = ""


@dataclass(frozen=True)
class SyncPlan:
    items: tuple[SyncItem, ...] = ()

    def of(self, action: SyncAction) -> list[SyncItem]:
        return [item for item in self.items if item.action == action]

    @property
    def creates(self) -> list[SyncItem]:
        return self.of(SyncAction.CREATE)

    @property
    def updates(self) -> list[SyncItem]:
        return self.of(SyncAction.UPDATE)

    @property
    def deletes(self) -> list[SyncItem]:
        return self.of(SyncAction.DELETE)

    @property
    def leaves(self) -> list[SyncItem]:
        return self.of(SyncAction.LEAVE)

    @property
    def empty(self) -> bool:
        return not any(item.action != SyncAction.LEAVE for item in self.items)


@dataclass(frozen=True)
class SyncResult:
    item: SyncItem
    error: Optional[SyncError] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def to_dict(self) -> dict[str, Any]:
        if self.error is not None:
            outcome, detail = "failed", self.error.detail
        elif self.item.action == SyncAction.LEAVE:
            outcome, detail = "unchanged", self.item.reason
        else:
            outcome, detail = "changed", self.item.reason
        return {"name": self.item.name, "action": self.item.action.value, "outcome": outcome, "detail": detail}


@dataclass(frozen=True)
class SyncReport:
    results: tuple[SyncResult, ...] = ()
    error: Optional[str] = None

    @property
    def failures(self) -> list[SyncResult]:
        return [result for result in self.results if result.failed]

    @property
    def status(self) -> str:
        if self.error is not None:
            return "failed"
        if not self.failures:
            return "success"
        attempted = [r for r in self.results if r.item.action != SyncAction.LEAVE]
        return "failed" if len(self.failures) == len(attempted) else "partial"

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"status": self.status, "jobs": [result.to_dict() for result in self.results]}
        if self.error is not None:
            data["error"] = self.error
        return data


class JobApi(Protocol):
    def list_jobs(self) -> list[JobDefinition]:
        ...

    def create_job(self, job: JobDefinition) -> None:
        ...

    def update_job(self, job: JobDefinition, previous: Optional[JobDefinition] = None) -> None:
        ...

    def delete_job(self, job: JobDefinition) -> None:
        ...


class JobSyncController:
    def __init__(self, policy: RemovalPolicy = RemovalPolicy.LEAVE, protected: Iterable[str] = ()):
        self.policy = RemovalPolicy(policy)
        self.protected = frozenset(protected)

    def sync(
        self,
        local: Iterable[JobDefinition],
        remote: Iterable[JobDefinition],
        policy: Optional[RemovalPolicy] = None,
    ) -> SyncPlan:
        policy = RemovalPolicy(policy) if policy is not None else self.policy
        local_jobs = _index(local, "local")
        remote_jobs = _index(remote, "remote")
        items: list[SyncItem] = []
        for key in sorted(set(local_jobs) | set(remote_jobs)):
            namespace, name = key
            wanted = local_jobs.get(key)
            live = remote_jobs.get(key)
            if live is None:
                items.append(SyncItem(SyncAction.CREATE, name, wanted, None, "new"))
            elif wanted is None:
                if namespace == "job" and name in self.protected:
                    items.append(SyncItem(SyncAction.LEAVE, name, None, live, "protected"))
                elif policy == RemovalPolicy.DELETE_ORPHANS:
                    items.append(SyncItem(SyncAction.DELETE, name, None, live, "orphan"))
                else:
                    items.append(SyncItem(SyncAction.LEAVE, name, None, live, "orphan kept"))
            elif wanted.kind != live.kind:
                items.append(SyncItem(SyncAction.UPDATE, name, wanted, live, f"kind {live.kind.value}->{wanted.kind.value}"))
            elif wanted.body_hash != live.body_hash:
                items.append(SyncItem(SyncAction.UPDATE, name, wanted, live, "body changed"))
            else:
                items.append(SyncItem(SyncAction.LEAVE, name, wanted, live, "up to date"))
        return SyncPlan(tuple(items))

    def apply(self, plan: SyncPlan, api: JobApi) -> SyncReport:
        results: list[SyncResult] = []
        for action in (SyncAction.CREATE, SyncAction.UPDATE, SyncAction.DELETE):
            for item in plan.of(action):
                results.append(self._apply_item(item, api))
        results.extend(SyncResult(item) for item in plan.leaves)
        report = SyncReport(tuple(results))
        logger.info(
            "job sync created=%d updated=%d deleted=%d failed=%d",
            len(plan.creates),
            len(plan.updates),
            len(plan.deletes),
            len(report.failures),
        )
        return report

    def reconcile(self, local: Iterable[JobDefinition], api: JobApi) -> SyncReport:
        remote = api.list_jobs()
        return self.apply(self.sync(local, remote), api)

    @staticmethod
    def _apply_item(item: SyncItem, api: JobApi) -> SyncResult:
        try:
            if item.action == SyncAction.CREATE:
                assert item.local is not None
                api.create_job(item.local)
            elif item.action == SyncAction.UPDATE:
                assert item.local is not None
                api.update_job(item.local, item.remote)
            else:
                assert item.remote is not None
                api.delete_job(item.remote)
        except Exception as exc:  # noqa: BLE001
            logger.warning("job sync %s %s failed: %s", item.action.value, item.name, exc)
            return SyncResult(item, SyncError(item.action.value, item.name, str(exc)))
        logger.debug("job sync %s %s", item.action.value, item.name)
        return SyncResult(item)


def _index(jobs: Iterable[JobDefinition], label: str) -> dict[tuple[str, str], JobDefinition]:
    index: dict[tuple[str, str], JobDefinition] = {}
    duplicates: list[str] = []
    for job in jobs:
        if job.key in index:
            duplicates.append(f"{label} {job.key[0]} '{job.name}' is defined more than once")
            continue
        index[job.key] = job
    if duplicates:
        raise ValidationError("job names must be unique", duplicates)
    return index


# Body normalisation and pipeline XML -----------------------------------------
def normalize_body(kind: JobKind, body: str) -> str:
    if kind == JobKind.PIPELINE and not body.lstrip().startswith("<"):
        lines = body.replace("\r\n", "\n").strip().split("\n")
        return "\n".join(line.rstrip() for line in lines)
    try:
        return ET.canonicalize(xml_data=_XML_DECLARATION.sub("", body, count=1), strip_text=True)
    except ET.ParseError:
        return body.strip()


def pipeline_config_xml(script: str, description: str = "") -> str:
    root = ET.Element("flow-definition", plugin="workflow-job")
    ET.SubElement(root, "description").text = description
    ET.SubElement(root, "keepDependencies").text = "false"
    ET.SubElement(root, "properties")
    definition = ET.SubElement(root, "definition", {"class": PIPELINE_DEFINITION, "plugin": "workflow-cps"})
    ET.SubElement(definition, "script").text = script
    ET.SubElement(definition, "sandbox").text = "true"
    ET.SubElement(root, "triggers")
    ET.SubElement(root, "disabled").text = "false"
    return "<?xml version='1.0' encoding='UTF-8'?>\n" + ET.tostring(root, encoding="unicode")


def extract_pipeline_script(config_xml: str) -> Optional[str]:
    """Return the inline script of a pipeline config, or None for anything else."""

    try:
        root = ET.fromstring(_XML_DECLARATION.sub("", config_xml, count=1))
    except ET.ParseError:
        return None
    if root.tag != "flow-definition":
        return None
    definition = root.find("definition")
    if definition is None or definition.get("class") != PIPELINE_DEFINITION:
        return None
    return definition.findtext("script")


def kind_from_config(config_xml: str) -> JobKind:
    try:
        root = ET.fromstring(_XML_DECLARATION.sub("", config_xml, count=1))
    except ET.ParseError:
        return JobKind.FREESTYLE
    if root.tag == "flow-definition":
        return JobKind.PIPELINE
    if root.tag == MULTIBRANCH_ROOT:
        return JobKind.MULTIBRANCH
    return JobKind.FREESTYLE


# Repository loading ----------------------------------------------------------
def load_job_repository(root: Path, jobs_path: str = "jobs") -> list[JobDefinition]:
    """Read job definitions from a checkout.

    ``*.yaml`` descriptors name their job and kind explicitly; bare
    ``*.groovy`` files are pipelines, ``*.xml`` files are job configs and
    ``views/*.xml`` are views, each named after the file.
    """

    base = Path(root) / jobs_path
    if not base.is_dir():
        raise RepositoryError(f"job directory {base} does not exist")
    jobs: list[JobDefinition] = []
    for path in sorted(p for p in base.rglob("*") if p.is_file()):
        relative = path.relative_to(root).as_posix()
        suffix = path.suffix.lower()
        if path.parent == base / "views" and suffix == ".xml":
            jobs.append(JobDefinition(path.stem, JobKind.VIEW, path.read_text(), relative))
        elif suffix in {".yaml", ".yml"}:
            jobs.extend(_load_descriptor(path, relative))
        elif suffix == ".groovy":
            jobs.append(JobDefinition(path.stem, JobKind.PIPELINE, path.read_text(), relative))
        elif suffix == ".xml":
            jobs.append(_job_from_xml(path.stem, path.read_text(), relative))
        else:
            logger.debug("ignoring %s in job repository", relative)
    _index(jobs, "repository")
    return jobs


def _job_from_xml(name: str, text: str, origin: str) -> JobDefinition:
    kind = kind_from_config(text)
    if kind == JobKind.PIPELINE:
        script = extract_pipeline_script(text)
        if script is not None:
            return JobDefinition(name, kind, script, origin)
    return JobDefinition(name, kind, text, origin)


def _load_descriptor(path: Path, origin: str) -> list[JobDefinition]:
    try:
        data = yaml.safe_load(path.read_text())
    except yaml.YAMLError as exc:
        raise RepositoryError(f"{origin}: {exc}") from None
    entries = data if isinstance(data, list) else [data]
    jobs: list[JobDefinition] = []
    for entry in entries:
        if not isinstance(entry, dict) or not entry.get("name"):
            raise RepositoryError(f"{origin}: job descriptors need a name")
        try:
            kind = JobKind(str(entry.get("kind", JobKind.PIPELINE.value)))
        except ValueError:
            raise RepositoryError(f"{origin}: unknown job kind '{entry.get('kind')}'") from None
        if "file" in entry:
            body = (path.parent / str(entry["file"])).read_text()
        else:
            body = entry.get("script") or entry.get("config") or entry.get("body")
        if not body:
            raise RepositoryError(f"{origin}: job '{entry['name']}' has no script, config, body or file")
        jobs.append(JobDefinition(str(entry["name"]), kind, str(body), origin))
    return jobs


Runner = Callable[..., subprocess.CompletedProcess]


def fetch_job_repository(repo: JobRepo, checkout_dir: Path, runner: Runner = subprocess.run) -> Path:
    """Clone ``repo`` into ``checkout_dir`` or hard-reset an existing clone to its branch."""

    checkout_dir = Path(checkout_dir)
    if not checkout_dir.exists():
        logger.info("Cloning job repo %s (%s) into %s", repo.url, repo.branch, checkout_dir)
        _git(runner, ["git", "clone", "--branch", repo.branch, repo.url, str(checkout_dir)], "clone")
        return checkout_dir

    if not (checkout_dir / ".git").exists():
        raise RepositoryError(f"{checkout_dir} is not a git repository (.git missing)")

    logger.info("Fetching job repo in %s", checkout_dir)
    _git(runner, ["git", "-C", str(checkout_dir), "remote", "set-url", "origin", repo.url], "remote set-url")
    _git(runner, ["git", "-C", str(checkout_dir), "fetch", "--prune", "origin"], "fetch")
    target = f"origin/{repo.branch}"
    logger.info("Resetting job repo to %s", target)
    _git(runner, ["git", "-C", str(checkout_dir), "checkout", "-B", repo.branch, target], "checkout")
    _git(runner, ["git", "-C", str(checkout_dir), "reset", "--hard", target], "reset")
    return checkout_dir


def _git(runner: Runner, command: Sequence[str], label: str) -> None:
    result = runner(list(command), capture_output=True, text=True)
    if result.returncode != 0:
        detail = (result.stderr or "").strip() or (result.stdout or "").strip()
        raise RepositoryError(f"git {label} failed: {detail}")
