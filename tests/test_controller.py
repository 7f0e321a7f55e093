import pytest
import requests

from butler_automation.controller import ControllerClient
from butler_automation.errors import ControllerError
from butler_automation.jobs import JobDefinition, JobKind, extract_pipeline_script, pipeline_config_xml

FREESTYLE = "<project><builders/></project>"
VIEW = "<hudson.model.ListView><name>release</name></hudson.model.ListView>"


class FakeResponse:
    def __init__(self, status_code=200, payload=None, text=""):
        self.status_code = status_code
        self._payload = payload
        self.text = text

    def json(self):
        return self._payload


class FakeSession:
    """Routes (method, path) pairs to canned responses and records requests."""

    def __init__(self, routes=None, crumb=None):
        self.routes = routes or {}
        self.crumb_response = crumb or FakeResponse(payload={"crumbRequestField": "Jenkins-Crumb", "crumb": "abc"})
        self.requests: list[dict] = []
        self.auth = None

    def get(self, url, timeout=None):
        return self.crumb_response

    def request(self, method, url, headers=None, timeout=None, **kwargs):
        path = url.split("://", 1)[1].split("/", 1)[1]
        self.requests.append({"method": method, "path": "/" + path, "headers": headers, **kwargs})
        response = self.routes.get((method, "/" + path))
        if isinstance(response, Exception):
            raise response
        return response or FakeResponse()


def client(session) -> ControllerClient:
    return ControllerClient("http://ci.example.com:8080/", user="admin", token="t0ken", session=session)


def test_list_jobs_reads_configs_and_skips_unmanaged_items():
    session = FakeSession(
        {
            ("GET", "/api/json"): FakeResponse(
                payload={
                    "jobs": [
                        {"name": "build-app", "_class": "org.jenkinsci.plugins.workflow.job.WorkflowJob"},
                        {"name": "nightly", "_class": "hudson.model.FreeStyleProject"},
                        {"name": "team", "_class": "com.cloudbees.hudson.plugins.folder.Folder"},
                    ],
                    "views": [
                        {"name": "all", "_class": "hudson.model.AllView"},
                        {"name": "release", "_class": "hudson.model.ListView"},
                    ],
                }
            ),
            ("GET", "/job/build-app/config.xml"): FakeResponse(text=pipeline_config_xml("node { sh 'make' }")),
            ("GET", "/job/nightly/config.xml"): FakeResponse(text=FREESTYLE),
            ("GET", "/view/release/config.xml"): FakeResponse(text=VIEW),
        }
    )

    jobs = {job.name: job for job in client(session).list_jobs()}

    assert set(jobs) == {"build-app", "nightly", "release"}
    assert jobs["build-app"].body == "node { sh 'make' }"
    assert jobs["nightly"].kind == JobKind.FREESTYLE
    assert jobs["release"].kind == JobKind.VIEW
    assert session.auth == ("admin", "t0ken")


def test_create_sends_crumb_and_pipeline_xml():
    session = FakeSession()
    job = JobDefinition("build-app", JobKind.PIPELINE, "node { sh 'make' }", origin="jobs/build-app.groovy")

    client(session).create_job(job)

    sent = session.requests[0]
    assert sent["method"] == "POST"
    assert sent["path"] == "/createItem"
    assert sent["params"] == {"name": "build-app"}
    assert sent["headers"]["Jenkins-Crumb"] == "abc"
    assert extract_pipeline_script(sent["data"].decode("utf-8")) == "node { sh 'make' }"


def test_views_use_view_endpoints():
    session = FakeSession()
    view = JobDefinition("release", JobKind.VIEW, VIEW)
    api = client(session)

    api.create_job(view)
    api.update_job(view, view)
    api.delete_job(view)

    assert [request["path"] for request in session.requests] == [
        "/createView",
        "/view/release/config.xml",
        "/view/release/doDelete",
    ]


def test_missing_crumb_issuer_sends_no_crumb():
    session = FakeSession(crumb=FakeResponse(status_code=404))

    client(session).delete_job(JobDefinition("old", JobKind.FREESTYLE, FREESTYLE))

    assert session.requests[0]["headers"] == {}


def test_kind_change_deletes_then_recreates():
    session = FakeSession()
    previous = JobDefinition("nightly", JobKind.FREESTYLE, FREESTYLE)
    job = JobDefinition("nightly", JobKind.PIPELINE, "node {}")

    client(session).update_job(job, previous)

    assert [(r["method"], r["path"]) for r in session.requests] == [
        ("POST", "/job/nightly/doDelete"),
        ("POST", "/createItem"),
    ]


def test_job_names_are_url_quoted():
    session = FakeSession()

    client(session).update_job(JobDefinition("my job", JobKind.FREESTYLE, FREESTYLE))

    assert session.requests[0]["path"] == "/job/my%20job/config.xml"


def test_http_error_raises_controller_error():
    session = FakeSession({("POST", "/createItem"): FakeResponse(status_code=400, text="A job already exists")})

    with pytest.raises(ControllerError) as excinfo:
        client(session).create_job(JobDefinition("dup", JobKind.FREESTYLE, FREESTYLE))
    assert "400" in str(excinfo.value)
    assert "already exists" in str(excinfo.value)


def test_connection_error_raises_controller_error():
    session = FakeSession({("GET", "/api/json"): requests.ConnectionError("refused")})

    with pytest.raises(ControllerError):
        client(session).list_jobs()
