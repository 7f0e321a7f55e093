import json
from pathlib import Path

import pytest
import requests

from butler_automation.errors import PluginConflictError, PluginCycleError, ResolutionError
from butler_automation.plugins import PluginResolver, PluginSpec, StaticCatalog, UpdateCenterCatalog

EMPTY_SHA256_HEX = "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855"
EMPTY_SHA256_B64 = "47DEQpj8HBSa+/TImW+5JCeuQeRkm5NMpJWZG3hSuFU="


def catalog_data(credentials_structs: str = "325.v") -> dict:
    return {
        "plugins": {
            "git": {
                "5.2.1": {
                    "dependencies": [
                        {"name": "scm-api", "version": "683.v", "optional": False},
                        {"name": "credentials", "version": "1319.v", "optional": False},
                        {"name": "email-ext", "version": "2.1", "optional": True},
                    ],
                    "url": "https://updates.example.com/git.hpi",
                    "sha256": EMPTY_SHA256_B64,
                }
            },
            "scm-api": {"683.v": {"dependencies": [{"name": "structs", "version": "325.v"}]}},
            "credentials": {"1319.v": {"dependencies": [{"name": "structs", "version": credentials_structs}]}},
            "structs": {"325.v": {"dependencies": []}, "330.v": {"dependencies": []}},
            "dark-theme": {"439.v": {"dependencies": [{"name": "structs", "version": "325.v"}]}},
        }
    }


def test_closure_is_topologically_ordered() -> None:
    resolved = PluginResolver().resolve([PluginSpec("git", "5.2.1")], StaticCatalog(catalog_data()))

    names = resolved.names()
    assert set(names) == {"git", "scm-api", "credentials", "structs"}
    for plugin in resolved:
        for dependency in plugin.dependencies:
            assert names.index(dependency) < names.index(plugin.name)
    assert "email-ext" not in resolved


def test_artifact_metadata_is_carried() -> None:
    resolved = PluginResolver().resolve([PluginSpec("git", "5.2.1")], StaticCatalog(catalog_data()))

    git = resolved.get("git")
    assert git is not None
    assert git.url == "https://updates.example.com/git.hpi"
    assert git.sha256 == EMPTY_SHA256_HEX
    assert resolved.get("structs").required_by == ("git", "scm-api", "structs")


def test_conflicting_transitive_demands_name_both_paths() -> None:
    catalog = StaticCatalog(catalog_data(credentials_structs="330.v"))

    with pytest.raises(PluginConflictError) as excinfo:
        PluginResolver().resolve([PluginSpec("git", "5.2.1")], catalog)

    error = excinfo.value
    assert error.name == "structs"
    assert error.first_path == ("git", "scm-api", "structs")
    assert error.second_path == ("git", "credentials", "structs")
    assert "325.v" in str(error) and "330.v" in str(error)


def test_declared_pin_conflicts_with_dependency() -> None:
    declared = [PluginSpec("structs", "330.v"), PluginSpec("git", "5.2.1")]

    with pytest.raises(PluginConflictError):
        PluginResolver().resolve(declared, StaticCatalog(catalog_data()))


def test_duplicate_declarations_with_different_versions_conflict() -> None:
    declared = [PluginSpec("structs", "325.v"), PluginSpec("structs", "330.v")]

    with pytest.raises(PluginConflictError):
        PluginResolver().resolve(declared, StaticCatalog(catalog_data()))


def test_cycle_is_reported() -> None:
    catalog = StaticCatalog(
        {
            "a": {"1": {"dependencies": [{"name": "b", "version": "1"}]}},
            "b": {"1": {"dependencies": [{"name": "a", "version": "1"}]}},
        }
    )

    with pytest.raises(PluginCycleError) as excinfo:
        PluginResolver().resolve([PluginSpec("a", "1")], catalog)

    assert excinfo.value.cycle == ("a", "b", "a")


def test_optional_roots_mark_only_their_own_closure() -> None:
    declared = [PluginSpec("git", "5.2.1"), PluginSpec("dark-theme", "439.v", optional=True)]

    resolved = PluginResolver().resolve(declared, StaticCatalog(catalog_data()))

    assert resolved.get("dark-theme").optional is True
    # structs is shared with a required root.
    assert resolved.get("structs").optional is False
    assert resolved.get("git").optional is False


def test_explicit_dependencies_skip_the_catalog() -> None:
    class ExplodingCatalog(StaticCatalog):
        def dependencies(self, name, version):  # noqa: ARG002
            raise AssertionError("catalog should not be consulted")

    spec = PluginSpec("job-dsl", "1.87", dependencies=(PluginSpec("structs", "325.v", dependencies=()),))
    resolved = PluginResolver().resolve([spec], ExplodingCatalog({}))

    assert resolved.names() == ["structs", "job-dsl"]


def test_unknown_plugin_is_a_resolution_error() -> None:
    with pytest.raises(ResolutionError):
        PluginResolver().resolve([PluginSpec("missing", "1.0")], StaticCatalog(catalog_data()))


def test_static_catalog_from_json_file(tmp_path: Path) -> None:
    path = tmp_path / "catalog.json"
    path.write_text(json.dumps(catalog_data()))

    catalog = StaticCatalog.from_file(path)

    assert [dep.name for dep in catalog.dependencies("git", "5.2.1")] == ["scm-api", "credentials"]


class FakeResponse:
    def __init__(self, payload):
        self._payload = payload

    def raise_for_status(self) -> None:
        return None

    def json(self):
        return self._payload


class FakeSession:
    def __init__(self, payload=None, error: Exception | None = None):
        self.payload = payload
        self.error = error
        self.calls: list[str] = []

    def get(self, url, timeout=None):  # noqa: ARG002
        self.calls.append(url)
        if self.error:
            raise self.error
        return FakeResponse(self.payload)


def test_update_center_catalog_fetches_once() -> None:
    session = FakeSession(catalog_data())
    catalog = UpdateCenterCatalog("https://updates.example.com/plugin-versions.json", session=session)

    resolved = PluginResolver().resolve([PluginSpec("git", "5.2.1")], catalog)

    assert len(resolved) == 4
    assert session.calls == ["https://updates.example.com/plugin-versions.json"]


def test_update_center_errors_become_resolution_errors() -> None:
    session = FakeSession(error=requests.ConnectionError("no route"))
    catalog = UpdateCenterCatalog(session=session)

    with pytest.raises(ResolutionError):
        catalog.dependencies("git", "5.2.1")
