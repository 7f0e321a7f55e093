import copy

import pytest

from butler_automation.desired import DesiredState

DESIRED = {
    "software_version": "2.440.3",
    "plugin_list": {"git": "5.2.1"},
    "security": {
        "realm": "local",
        "users": [{"id": "admin", "password": "s3cret", "email": "admin@example.com"}],
    },
    "credentials": [
        {"id": "deploy", "kind": "usernamePassword", "username": "deploy", "secret": "hunter2"},
    ],
    "job_repo": {"url": "https://git.example.com/ci/jobs.git", "branch": "main"},
    "template_bindings": {
        "controller_url": "https://ci.example.com/",
        "admin_email": "ci@example.com",
        "casc_reload_token": "reload-me",
    },
}


@pytest.fixture
def desired_data() -> dict:
    return copy.deepcopy(DESIRED)


@pytest.fixture
def desired(desired_data) -> DesiredState:
    return DesiredState.from_mapping(desired_data)
