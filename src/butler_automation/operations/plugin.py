from __future__ import annotations

from pathlib import PurePosixPath
from typing import Any, Optional
import shlex

from .base import Operation
from ..executors import Executor
from ..types import HostConfig

DEFAULT_PLUGINS_DIR = "/var/lib/jenkins/plugins"
DEFAULT_DOWNLOAD_URL = "https://updates.jenkins.io/download/plugins/{name}/{version}/{name}.hpi"

# Prints "<name> <Plugin-Version>" for every installed .jpi archive.
LIST_PLUGINS_SCRIPT = (
    'for f in {dir}/*.jpi; do [ -e "$f" ] || continue; '
    "v=$(unzip -p \"$f\" META-INF/MANIFEST.MF 2>/dev/null "
    "| sed -n 's/^Plugin-Version: *//p' | tr -d '\\r'); "
    'printf \'%s %s\\n\' "$(basename "$f" .jpi)" "$v"; done'
)


def installed_plugin_versions(executor: Executor, plugins_dir: str) -> dict[str, Optional[str]]:
    script = LIST_PLUGINS_SCRIPT.format(dir=shlex.quote(plugins_dir))
    result = executor.run(["sh", "-c", script], check=False, mutable=False)
    versions: dict[str, Optional[str]] = {}
    if not result.ok:
        return versions
    for line in result.stdout.splitlines():
        name, _, version = line.strip().partition(" ")
        if name:
            versions[name] = version.strip() or None
    return versions


class PluginOperation(Operation):
    """Download one pinned plugin archive into the controller's plugin directory."""

    kind = "install-plugin"

    def __init__(self, spec: dict[str, Any]):
        super().__init__(spec)
        raw_name = spec.get("name")
        raw_version = spec.get("version")
        if not raw_name or not raw_version:
            raise ValueError("plugin operation requires a name and version")
        self.plugin = str(raw_name)
        self.version = str(raw_version)
        self.plugins_dir = str(spec.get("plugins_dir") or DEFAULT_PLUGINS_DIR)
        self.url = str(spec.get("url") or DEFAULT_DOWNLOAD_URL.format(name=self.plugin, version=self.version))
        sha256 = spec.get("sha256")
        self.sha256: Optional[str] = str(sha256).lower() if sha256 else None
        self.owner: Optional[str] = str(spec["owner"]) if spec.get("owner") else None

    @property
    def target(self) -> str:
        return f"{self.plugin}@{self.version}"

    @property
    def archive(self) -> PurePosixPath:
        return PurePosixPath(self.plugins_dir) / f"{self.plugin}.jpi"

    def check(self, host: HostConfig, executor: Executor) -> bool:
        if self.sha256:
            return executor.checksum(self.archive) == self.sha256
        return installed_plugin_versions(executor, self.plugins_dir).get(self.plugin) == self.version

    def execute(self, host: HostConfig, executor: Executor) -> str:
        staging = executor.staging_path(self.archive)
        executor.run(["mkdir", "-p", self.plugins_dir])
        executor.run(["curl", "-fsSL", "--retry", "3", "-o", staging, self.url])
        if self.sha256:
            actual = executor.checksum(staging)
            if not executor.dry_run and actual != self.sha256:
                executor.run(["rm", "-f", staging], check=False)
                raise ValueError(f"checksum mismatch for {self.plugin}: expected {self.sha256}, got {actual}")
        if self.owner:
            executor.run(["chown", self.owner, staging])
        executor.run(["mv", "-f", staging, str(self.archive)])
        # Jenkins re-explodes the archive on the next start.
        executor.run(["rm", "-rf", str(PurePosixPath(self.plugins_dir) / self.plugin)])
        return f"installed {self.version}"
