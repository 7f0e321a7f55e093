"""Plugin dependency resolution.

Declared plugins are expanded into their transitive closure by asking a
catalog for each plugin's dependencies. Every plugin name resolves to exactly
one version; two different demands for the same name are a conflict and
resolution stops. The result is ordered so dependencies install first.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Iterator, Mapping, Optional, Protocol, Sequence

import requests

from .errors import PluginConflictError, PluginCycleError, ResolutionError

logger = logging.getLogger(__name__)

DEFAULT_CATALOG_URL = "https://updates.jenkins.io/current/plugin-versions.json"


@dataclass(frozen=True)
class PluginSpec:
    name: str
    version: str
    dependencies: Optional[tuple["PluginSpec", ...]] = None
    optional: bool = False

    def __str__(self) -> str:
        return f"{self.name}:{self.version}"


@dataclass(frozen=True)
class PluginArtifact:
    url: Optional[str] = None
    sha256: Optional[str] = None


@dataclass(frozen=True)
class ResolvedPlugin:
    name: str
    version: str
    dependencies: tuple[str, ...] = ()
    required_by: tuple[str, ...] = ()
    optional: bool = False
    url: Optional[str] = None
    sha256: Optional[str] = None


@dataclass(frozen=True)
class ResolvedSet:
    """Version-pinned plugin closure in install order."""

    plugins: tuple[ResolvedPlugin, ...] = ()
    _index: Mapping[str, ResolvedPlugin] = field(default_factory=dict, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_index", {plugin.name: plugin for plugin in self.plugins})

    def __iter__(self) -> Iterator[ResolvedPlugin]:
        return iter(self.plugins)

    def __len__(self) -> int:
        return len(self.plugins)

    def __contains__(self, name: object) -> bool:
        return name in self._index

    def get(self, name: str) -> Optional[ResolvedPlugin]:
        return self._index.get(name)

    def names(self) -> list[str]:
        return [plugin.name for plugin in self.plugins]


class DependencyLookup(Protocol):
    def dependencies(self, name: str, version: str) -> Sequence[PluginSpec]:
        ...

    def artifact(self, name: str, version: str) -> PluginArtifact:
        ...


@dataclass
class _Demand:
    version: str
    path: tuple[str, ...]


class PluginResolver:
    """Computes the transitive, conflict-free closure of declared plugins."""

    def resolve(self, declared: Iterable[PluginSpec], catalog: DependencyLookup) -> ResolvedSet:
        roots = self._dedupe(declared)
        demands: dict[str, _Demand] = {}
        edges: dict[str, tuple[str, ...]] = {}
        order: list[str] = []
        stack: list[str] = []

        def visit(spec: PluginSpec, path: tuple[str, ...]) -> None:
            if spec.name in stack:
                cycle = stack[stack.index(spec.name):] + [spec.name]
                raise PluginCycleError(cycle)
            existing = demands.get(spec.name)
            if existing is not None:
                if existing.version != spec.version:
                    raise PluginConflictError(
                        spec.name, existing.version, existing.path, spec.version, path
                    )
                return
            demands[spec.name] = _Demand(spec.version, path)
            if spec.dependencies is not None:
                dependencies = list(spec.dependencies)
            else:
                dependencies = list(catalog.dependencies(spec.name, spec.version))
            edges[spec.name] = tuple(dep.name for dep in dependencies)
            stack.append(spec.name)
            for dependency in dependencies:
                visit(dependency, path + (dependency.name,))
            stack.pop()
            order.append(spec.name)

        for root in roots:
            visit(root, (root.name,))

        required = self._required_closure([root.name for root in roots if not root.optional], edges)
        plugins = []
        for name in order:
            demand = demands[name]
            artifact = catalog.artifact(name, demand.version)
            plugins.append(
                ResolvedPlugin(
                    name=name,
                    version=demand.version,
                    dependencies=edges.get(name, ()),
                    required_by=demand.path,
                    optional=name not in required,
                    url=artifact.url,
                    sha256=artifact.sha256,
                )
            )
        logger.debug("resolved plugins=%s", ",".join(f"{p.name}:{p.version}" for p in plugins))
        return ResolvedSet(tuple(plugins))

    @staticmethod
    def _dedupe(declared: Iterable[PluginSpec]) -> list[PluginSpec]:
        seen: dict[str, PluginSpec] = {}
        roots: list[PluginSpec] = []
        for spec in declared:
            previous = seen.get(spec.name)
            if previous is None:
                seen[spec.name] = spec
                roots.append(spec)
                continue
            if previous.version != spec.version:
                raise PluginConflictError(
                    spec.name,
                    previous.version,
                    ("declared", spec.name),
                    spec.version,
                    ("declared", spec.name),
                )
            if previous.optional and not spec.optional:
                roots[roots.index(previous)] = spec
                seen[spec.name] = spec
        return roots

    @staticmethod
    def _required_closure(names: Iterable[str], edges: Mapping[str, tuple[str, ...]]) -> set[str]:
        required: set[str] = set()
        pending = list(names)
        while pending:
            name = pending.pop()
            if name in required:
                continue
            required.add(name)
            pending.extend(edges.get(name, ()))
        return required


class StaticCatalog:
    """Catalog backed by an in-memory mapping shaped like ``plugin-versions.json``.

    ``{"plugins": {name: {version: {"dependencies": [...], "url": ..., "sha256": ...}}}}``
    """

    def __init__(self, data: Mapping[str, Any]):
        plugins = data.get("plugins", data)
        if not isinstance(plugins, Mapping):
            raise ValueError("plugin catalog must map plugin names to versions")
        self._plugins: Mapping[str, Any] = plugins

    @classmethod
    def from_file(cls, path: Path) -> "StaticCatalog":
        path = Path(path)
        text = path.read_text()
        if path.suffix.lower() == ".toml":
            return cls(tomllib.loads(text))
        return cls(json.loads(text))

    def _entry(self, name: str, version: str) -> Mapping[str, Any]:
        versions = self._plugins.get(name)
        if not isinstance(versions, Mapping):
            raise ResolutionError(f"plugin '{name}' is not in the catalog")
        entry = versions.get(version)
        if entry is None:
            raise ResolutionError(f"plugin '{name}' has no version {version} in the catalog")
        return entry

    def dependencies(self, name: str, version: str) -> list[PluginSpec]:
        entry = self._entry(name, version)
        dependencies = []
        for raw in entry.get("dependencies", []):
            if raw.get("optional"):
                continue
            dependencies.append(PluginSpec(name=str(raw["name"]), version=str(raw["version"])))
        return dependencies

    def artifact(self, name: str, version: str) -> PluginArtifact:
        versions = self._plugins.get(name)
        entry = versions.get(version) if isinstance(versions, Mapping) else None
        if entry is None:
            return PluginArtifact()
        return PluginArtifact(url=entry.get("url"), sha256=_hex_digest(entry.get("sha256")))


class UpdateCenterCatalog(StaticCatalog):
    """Catalog fetched lazily, once, from a Jenkins update center."""

    def __init__(
        self,
        url: str = DEFAULT_CATALOG_URL,
        *,
        session: Optional[requests.Session] = None,
        timeout: float = 60.0,
    ):
        self.url = url
        self.session = session or requests.Session()
        self.timeout = timeout
        self._lock = threading.Lock()
        self._loaded: Optional[Mapping[str, Any]] = None

    @property
    def _plugins(self) -> Mapping[str, Any]:  # type: ignore[override]
        with self._lock:
            if self._loaded is None:
                logger.info("Fetching plugin catalog %s", self.url)
                try:
                    response = self.session.get(self.url, timeout=self.timeout)
                    response.raise_for_status()
                    payload = response.json()
                except (requests.RequestException, ValueError) as exc:
                    raise ResolutionError(f"unable to load plugin catalog {self.url}: {exc}") from exc
                self._loaded = payload.get("plugins", {})
            return self._loaded


def _hex_digest(value: Optional[str]) -> Optional[str]:
    # Update centers publish base64 digests; local catalogs usually carry hex.
    if not value:
        return None
    text = str(value).strip()
    if len(text) == 64 and all(ch in "0123456789abcdefABCDEF" for ch in text):
        return text.lower()
    try:
        return base64.b64decode(text, validate=True).hex()
    except (binascii.Error, ValueError) as exc:
        raise ResolutionError(f"unrecognised sha256 digest '{text}'") from exc
