from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Iterable, Iterator, Mapping, Optional
import logging

from .desired import DesiredState
from .executors import Executor
from .operations.package import PackageManagerFactory
from .operations.plugin import installed_plugin_versions
from .operations.service import SystemCtl
from .render import RenderedArtifacts

logger = logging.getLogger(__name__)

PACKAGE_MANAGER = "package-manager"


@dataclass(frozen=True)
class Fact:
    key: str
    value: Any


class HostFacts(Mapping[str, Any]):
    """Read-only view of what was observed on one host during this run."""

    def __init__(self, host: str, facts: Iterable[Fact] = ()):
        self.host = host
        self._values = MappingProxyType({fact.key: fact.value for fact in facts})

    def __getitem__(self, key: str) -> Any:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"HostFacts(host={self.host!r}, facts={dict(self._values)!r})"

    @property
    def package_manager(self) -> Optional[str]:
        return self.get(PACKAGE_MANAGER)

    def package_version(self, name: str) -> Optional[str]:
        return self.get(f"package:{name}")

    def service_enabled(self, name: str) -> bool:
        return bool(self.get(f"service:{name}:enabled"))

    def service_active(self, name: str) -> bool:
        return bool(self.get(f"service:{name}:active"))

    def file_checksum(self, path: str) -> Optional[str]:
        return self.get(f"file:{path}")

    def file_attributes(self, path: str) -> Optional[tuple[int, str, str]]:
        return self.get(f"file:{path}:attributes")

    def plugin_version(self, name: str) -> Optional[str]:
        return self.get(f"plugin:{name}")


@dataclass(frozen=True)
class FactQuery:
    """Which facts to collect; derived from the desired state once per run."""

    packages: tuple[str, ...] = ()
    services: tuple[str, ...] = ()
    files: tuple[str, ...] = ()
    plugins_dir: Optional[str] = None

    @classmethod
    def for_run(cls, desired: DesiredState, artifacts: RenderedArtifacts) -> "FactQuery":
        packages = tuple(dict.fromkeys((*desired.system_packages, desired.package_name)))
        return cls(
            packages=packages,
            services=(desired.service_name,),
            files=tuple(artifact.path for artifact in artifacts),
            plugins_dir=desired.plugins_dir,
        )


class FactGatherer:
    """Collects facts through read-only executor calls."""

    def __init__(self, executor: Executor, systemctl: Optional[SystemCtl] = None):
        self.executor = executor
        self.systemctl = systemctl or SystemCtl()

    def gather(self, query: FactQuery) -> HostFacts:
        executor = self.executor
        host = executor.host.name
        # A trivial command surfaces connectivity problems before anything else.
        executor.run(["true"], mutable=False)

        facts: list[Fact] = []
        if query.packages:
            manager = PackageManagerFactory.create(executor)
            facts.append(Fact(PACKAGE_MANAGER, manager.name))
            for package in query.packages:
                facts.append(Fact(f"package:{package}", manager.installed_version(executor, package)))
        for service in query.services:
            facts.append(Fact(f"service:{service}:enabled", self.systemctl.is_enabled(executor, service)))
            facts.append(Fact(f"service:{service}:active", self.systemctl.is_active(executor, service)))
        for path in query.files:
            facts.append(Fact(f"file:{path}", executor.checksum(path)))
            facts.append(Fact(f"file:{path}:attributes", executor.file_attributes(path)))
        if query.plugins_dir:
            for name, version in sorted(installed_plugin_versions(executor, query.plugins_dir).items()):
                facts.append(Fact(f"plugin:{name}", version))

        logger.debug("gathered host=%s facts=%d", host, len(facts))
        return HostFacts(host, facts)
