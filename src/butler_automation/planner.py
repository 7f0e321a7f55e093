"""Diffs desired state against gathered facts and emits an ordered plan.

The phase order is fixed: packages, service configuration, the running
service, plugins, plugin-dependent configuration and finally the seed job.
Only divergent dimensions produce operations, so a converged host plans to an
empty tuple. Refresh-only operations (daemon reload, restart, configuration
reload) are emitted just after the phase that can notify them and only when
some operation in the plan does.
"""

from __future__ import annotations

import logging
import shlex
from typing import Any, Optional

from .desired import DesiredState
from .errors import ValidationError
from .facts import HostFacts
from .operations import OPERATION_REGISTRY, ADVISORY, FATAL
from .operations.base import Operation
from .plugins import ResolvedSet
from .render import CASC_SECURITY, SEED_JOB, SERVICE_CONFIG, Artifact, RenderedArtifacts
from .types import HostConfig, Plan

logger = logging.getLogger(__name__)

DAEMON_RELOAD = "daemon-reload"
RESTART = "restart"
RELOAD = "reload"

DEFAULT_TIMEOUTS = {
    "install-package": 900.0,
    "install-plugin": 300.0,
    "run-script": 300.0,
}
PLUGIN_RETRIES = 2

OperationSpec = tuple[str, dict[str, Any]]


class TaskPlanner:
    def __init__(
        self,
        plugins: ResolvedSet,
        artifacts: RenderedArtifacts,
        *,
        reload_token: Optional[str] = None,
        registry: Optional[dict[str, type[Operation]]] = None,
    ):
        self.plugins = plugins
        self.artifacts = artifacts
        self.reload_token = reload_token
        self.registry = registry or OPERATION_REGISTRY

    def plan(self, desired: DesiredState, facts: HostFacts, host: Optional[HostConfig] = None) -> Plan:
        desired.validate()
        host = host or HostConfig(name=facts.host)

        specs: list[OperationSpec] = []
        specs += self._packages(desired, facts)
        specs += self._service_config(desired, facts)
        specs += self._refresh_daemon(specs)
        specs += self._service_running(desired, facts)
        specs += self._refresh_restart(desired, specs)
        plugin_specs = self._plugins(desired, facts)
        specs += plugin_specs
        specs += self._refresh_restart(desired, plugin_specs)
        casc_specs = self._render(facts, CASC_SECURITY, notify=(RELOAD,))
        specs += casc_specs
        specs += self._refresh_reload(desired, casc_specs)
        seed_specs = self._render(facts, SEED_JOB, notify=(RELOAD,))
        specs += seed_specs
        specs += self._refresh_reload(desired, seed_specs)

        operations = tuple(self.registry[kind](spec) for kind, spec in specs)
        logger.debug("planned host=%s operations=%s", host.name, [op.name for op in operations])
        return Plan(host, operations)

    # Phases --------------------------------------------------------------
    def _packages(self, desired: DesiredState, facts: HostFacts) -> list[OperationSpec]:
        specs: list[OperationSpec] = []
        base = {"manager": facts.package_manager, "timeout": DEFAULT_TIMEOUTS["install-package"], "tier": FATAL}
        missing = [pkg for pkg in desired.system_packages if facts.package_version(pkg) is None]
        if missing:
            specs.append(("install-package", {**base, "packages": missing}))
        if facts.package_version(desired.package_name) != desired.software_version:
            specs.append(
                (
                    "install-package",
                    {
                        **base,
                        "name": desired.package_name,
                        "version": desired.software_version,
                        "notify": [RESTART],
                    },
                )
            )
        return specs

    def _service_config(self, desired: DesiredState, facts: HostFacts) -> list[OperationSpec]:
        return self._render(facts, SERVICE_CONFIG, notify=(DAEMON_RELOAD, RESTART))

    def _service_running(self, desired: DesiredState, facts: HostFacts) -> list[OperationSpec]:
        name = desired.service_name
        if facts.service_enabled(name) and facts.service_active(name):
            return []
        return [("ensure-service-state", {"name": name, "enabled": True, "state": "running", "tier": FATAL})]

    def _plugins(self, desired: DesiredState, facts: HostFacts) -> list[OperationSpec]:
        specs: list[OperationSpec] = []
        for plugin in self.plugins:
            if facts.plugin_version(plugin.name) == plugin.version:
                continue
            spec: dict[str, Any] = {
                "name": plugin.name,
                "version": plugin.version,
                "plugins_dir": desired.plugins_dir,
                "owner": desired.service_user,
                "tier": ADVISORY if plugin.optional else FATAL,
                "retries": PLUGIN_RETRIES,
                "timeout": DEFAULT_TIMEOUTS["install-plugin"],
                "notify": [RESTART],
            }
            if plugin.url:
                spec["url"] = plugin.url
            if plugin.sha256:
                spec["sha256"] = plugin.sha256
            specs.append(("install-plugin", spec))
        return specs

    def _render(self, facts: HostFacts, role: str, *, notify: tuple[str, ...]) -> list[OperationSpec]:
        artifact = self.artifacts[role]
        if not _drifted(facts, artifact):
            return []
        return [("render-file", {**artifact.file_spec(), "tier": FATAL, "notify": list(notify)})]

    # Refresh-only operations ----------------------------------------------
    def _refresh_daemon(self, specs: list[OperationSpec]) -> list[OperationSpec]:
        if not _notifies(specs, DAEMON_RELOAD):
            return []
        return [
            (
                "run-script",
                {
                    "name": "systemd-daemon-reload",
                    "command": ["systemctl", "daemon-reload"],
                    "refresh_on": DAEMON_RELOAD,
                    "tier": FATAL,
                },
            )
        ]

    def _refresh_restart(self, desired: DesiredState, specs: list[OperationSpec]) -> list[OperationSpec]:
        if not _notifies(specs, RESTART):
            return []
        return [
            (
                "ensure-service-state",
                {
                    "name": desired.service_name,
                    "enabled": True,
                    "state": "running",
                    "refresh_on": RESTART,
                    "tier": FATAL,
                },
            )
        ]

    def _refresh_reload(self, desired: DesiredState, specs: list[OperationSpec]) -> list[OperationSpec]:
        if not _notifies(specs, RELOAD):
            return []
        if not self.reload_token:
            raise ValidationError("a configuration reload is needed but no casc_reload_token was bound")
        url = (
            f"http://127.0.0.1:{desired.http_port}/reload-configuration-as-code/"
            f"?casc-reload-token={self.reload_token}"
        )
        # The controller may still be starting after a restart earlier in the plan.
        command = (
            "curl -fsS -o /dev/null -X POST --retry 30 --retry-connrefused --retry-delay 5 "
            f"{shlex.quote(url)}"
        )
        return [
            (
                "run-script",
                {
                    "name": "casc-reload",
                    "command": command,
                    "refresh_on": RELOAD,
                    "tier": FATAL,
                    "timeout": DEFAULT_TIMEOUTS["run-script"],
                },
            )
        ]


def _notifies(specs: list[OperationSpec], key: str) -> bool:
    for _, spec in specs:
        if key in spec.get("notify", ()):
            return True
    return False


def _drifted(facts: HostFacts, artifact: Artifact) -> bool:
    if facts.file_checksum(artifact.path) != artifact.sha256:
        return True
    attributes = facts.file_attributes(artifact.path)
    if attributes is None:
        return True
    mode, owner, group = attributes
    if mode != artifact.mode:
        return True
    if artifact.owner and owner != artifact.owner:
        return True
    if artifact.group and group != artifact.group:
        return True
    return False
