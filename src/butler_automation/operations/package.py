from __future__ import annotations

from typing import Iterable, Optional
import logging

from .base import Operation
from ..executors import Executor
from ..types import HostConfig

logger = logging.getLogger(__name__)


class PackageOperation(Operation):
    """Install packages, optionally pinned to one version, with the host's package manager."""

    kind = "install-package"

    def __init__(self, spec: dict[str, object]):
        super().__init__(spec)
        packages = spec.get("name") or spec.get("packages")
        if isinstance(packages, str):
            self.packages = [packages]
        else:
            self.packages = list(packages or [])
        if not self.packages:
            raise ValueError("package operation requires at least one package")
        raw_version = spec.get("version")
        self.version = str(raw_version) if raw_version else None
        if self.version and len(self.packages) != 1:
            raise ValueError("package version pinning requires exactly one package")
        self.preferred_manager = spec.get("manager")
        self._manager: Optional[PackageManager] = None

    @property
    def target(self) -> str:
        rendered = ",".join(self.packages)
        return f"{rendered}={self.version}" if self.version else rendered

    def manager(self, executor: Executor) -> "PackageManager":
        if self._manager is None:
            self._manager = PackageManagerFactory.create(executor, self.preferred_manager)
            logger.debug("package-manager=%s host=%s", self._manager.name, executor.host.name)
        return self._manager

    def check(self, host: HostConfig, executor: Executor) -> bool:
        return not self._pending(executor)

    def execute(self, host: HostConfig, executor: Executor) -> str:
        manager = self.manager(executor)
        needed = self._pending(executor)
        manager.install(executor, [manager.pin(pkg, self.version) for pkg in needed])
        return f"manager={manager.name} installed={','.join(needed)}"

    def _pending(self, executor: Executor) -> list[str]:
        manager = self.manager(executor)
        pending = []
        for pkg in self.packages:
            installed = manager.installed_version(executor, pkg)
            if installed is None or (self.version and installed != self.version):
                pending.append(pkg)
        return pending


class PackageManagerFactory:
    _MANAGERS = [
        ("apt-get", "apt", lambda: AptPackageManager()),
        ("dnf", "dnf", lambda: DnfPackageManager()),
        ("yum", "yum", lambda: YumPackageManager()),
    ]

    @classmethod
    def create(cls, executor: Executor, preferred: Optional[object] = None) -> "PackageManager":
        if isinstance(preferred, str):
            preferred = preferred.lower()
            for _, key, factory in cls._MANAGERS:
                if key == preferred:
                    return factory()
            raise ValueError(f"Unknown package manager '{preferred}'")
        for binary, _, factory in cls._MANAGERS:
            probe = executor.run(["sh", "-c", f"command -v {binary}"], check=False, mutable=False)
            if probe.ok:
                return factory()
        raise RuntimeError(f"No supported package manager found on {executor.host.name}")


class PackageManager:
    name = "generic"

    def install(self, executor: Executor, packages: Iterable[str]) -> None:
        raise NotImplementedError

    def installed_version(self, executor: Executor, package: str) -> Optional[str]:
        raise NotImplementedError

    def pin(self, package: str, version: Optional[str]) -> str:
        return package


class AptPackageManager(PackageManager):
    name = "apt"

    def install(self, executor: Executor, packages: Iterable[str]) -> None:
        executor.run(
            ["apt-get", "install", "-y", "--allow-downgrades", *packages],
            env={"DEBIAN_FRONTEND": "noninteractive"},
        )

    def installed_version(self, executor: Executor, package: str) -> Optional[str]:
        result = executor.run(
            ["dpkg-query", "-W", "-f", "${Status} ${Version}", package],
            check=False,
            mutable=False,
        )
        if not result.ok:
            return None
        parts = result.stdout.split()
        # "install ok installed 2.440.1"
        if len(parts) >= 4 and parts[2] == "installed":
            return parts[3]
        return None

    def pin(self, package: str, version: Optional[str]) -> str:
        return f"{package}={version}" if version else package


class DnfPackageManager(PackageManager):
    name = "dnf"
    binary = "dnf"

    def install(self, executor: Executor, packages: Iterable[str]) -> None:
        executor.run([self.binary, "install", "-y", *packages])

    def installed_version(self, executor: Executor, package: str) -> Optional[str]:
        result = executor.run(["rpm", "-q", "--qf", "%{VERSION}", package], check=False, mutable=False)
        if not result.ok:
            return None
        return result.stdout.strip() or None

    def pin(self, package: str, version: Optional[str]) -> str:
        return f"{package}-{version}" if version else package


class YumPackageManager(DnfPackageManager):
    name = "yum"
    binary = "yum"
