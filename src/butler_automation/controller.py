from __future__ import annotations

import logging
from typing import Any, Optional
from urllib.parse import quote

import requests

from .errors import ControllerError
from .jobs import JobDefinition, JobKind, extract_pipeline_script, pipeline_config_xml

logger = logging.getLogger(__name__)

JOB_CLASSES = {
    "org.jenkinsci.plugins.workflow.job.WorkflowJob": JobKind.PIPELINE,
    "hudson.model.FreeStyleProject": JobKind.FREESTYLE,
    "org.jenkinsci.plugins.workflow.multibranch.WorkflowMultiBranchProject": JobKind.MULTIBRANCH,
}
# The built-in "all" view has no editable configuration.
UNMANAGED_VIEW_CLASSES = {"hudson.model.AllView"}
XML_HEADERS = {"Content-Type": "application/xml; charset=utf-8"}


class ControllerClient:
    """Thin wrapper over the controller's job and view HTTP API."""

    def __init__(
        self,
        base_url: str,
        *,
        user: Optional[str] = None,
        token: Optional[str] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.session = session or requests.Session()
        if user and token:
            self.session.auth = (user, token)
        self.timeout = timeout
        self._crumb: Optional[dict[str, str]] = None

    # Low-level -------------------------------------------------------------
    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        headers = dict(kwargs.pop("headers", {}) or {})
        if method != "GET":
            headers.update(self.crumb())
        url = f"{self.base_url}{path}"
        try:
            response = self.session.request(method, url, headers=headers, timeout=self.timeout, **kwargs)
        except requests.RequestException as exc:
            raise ControllerError(f"{method} {path}: {exc}") from exc
        if response.status_code >= 400:
            raise ControllerError(f"{method} {path} returned {response.status_code}: {response.text[:200].strip()}")
        return response

    def crumb(self) -> dict[str, str]:
        if self._crumb is None:
            url = f"{self.base_url}/crumbIssuer/api/json"
            try:
                response = self.session.get(url, timeout=self.timeout)
            except requests.RequestException as exc:
                raise ControllerError(f"GET /crumbIssuer/api/json: {exc}") from exc
            if response.status_code == 404:
                # CSRF protection disabled.
                self._crumb = {}
            elif response.status_code >= 400:
                raise ControllerError(f"crumb request returned {response.status_code}")
            else:
                payload = response.json()
                self._crumb = {payload["crumbRequestField"]: payload["crumb"]}
        return self._crumb

    @staticmethod
    def _item_path(name: str, kind: JobKind) -> str:
        segment = "view" if kind == JobKind.VIEW else "job"
        return f"/{segment}/{quote(name, safe='')}"

    # Jobs and views --------------------------------------------------------
    def list_jobs(self) -> list[JobDefinition]:
        data = self._request("GET", "/api/json", params={"tree": "jobs[name,_class],views[name,_class]"}).json()
        jobs: list[JobDefinition] = []
        for entry in data.get("jobs", []):
            kind = JOB_CLASSES.get(entry.get("_class", ""))
            if kind is None:
                logger.debug("skipping unmanaged item %s (%s)", entry.get("name"), entry.get("_class"))
                continue
            config = self.get_config(entry["name"], kind)
            body = config
            if kind == JobKind.PIPELINE:
                script = extract_pipeline_script(config)
                body = script if script is not None else config
            jobs.append(JobDefinition(entry["name"], kind, body, origin="controller"))
        for entry in data.get("views", []):
            if entry.get("_class") in UNMANAGED_VIEW_CLASSES:
                continue
            jobs.append(
                JobDefinition(entry["name"], JobKind.VIEW, self.get_config(entry["name"], JobKind.VIEW), origin="controller")
            )
        return jobs

    def get_config(self, name: str, kind: JobKind) -> str:
        return self._request("GET", f"{self._item_path(name, kind)}/config.xml").text

    def config_xml(self, job: JobDefinition) -> str:
        if job.kind == JobKind.PIPELINE and not job.body.lstrip().startswith("<"):
            return pipeline_config_xml(job.body, description=f"Managed by butler from {job.origin or 'job repository'}")
        return job.body

    def create_job(self, job: JobDefinition) -> None:
        endpoint = "/createView" if job.kind == JobKind.VIEW else "/createItem"
        logger.info("creating %s %s", job.kind.value, job.name)
        self._request(
            "POST",
            endpoint,
            params={"name": job.name},
            data=self.config_xml(job).encode("utf-8"),
            headers=XML_HEADERS,
        )

    def update_job(self, job: JobDefinition, previous: Optional[JobDefinition] = None) -> None:
        if previous is not None and previous.kind != job.kind:
            # A job's type cannot change in place.
            self.delete_job(previous)
            self.create_job(job)
            return
        logger.info("updating %s %s", job.kind.value, job.name)
        self._request(
            "POST",
            f"{self._item_path(job.name, job.kind)}/config.xml",
            data=self.config_xml(job).encode("utf-8"),
            headers=XML_HEADERS,
        )

    def delete_job(self, job: JobDefinition) -> None:
        logger.info("deleting %s %s", job.kind.value, job.name)
        self._request("POST", f"{self._item_path(job.name, job.kind)}/doDelete")
