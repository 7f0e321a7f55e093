"""Configuration rendering.

Templates are Jinja2 sources rendered with ``StrictUndefined``. The names a
template needs are read from its AST before rendering so a missing binding is
reported in full instead of one ``UndefinedError`` at a time. Rendering never
touches a host: the same template and bindings always give the same bytes.
"""

from __future__ import annotations

import hashlib
import logging
import re
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Iterator, Mapping, Optional, Union

import jinja2
from jinja2 import meta

from .desired import DesiredState
from .errors import MissingBindingError, ValidationError
from .secrets import SecretResolver

logger = logging.getLogger(__name__)

SERVICE_CONFIG = "service-config"
CASC_SECURITY = "casc-security"
SEED_JOB = "seed-job"

_UNDEFINED_NAME = re.compile(r"'([^']+)' is undefined")


def _groovy_string(value: Any) -> str:
    text = str(value).replace("\\", "\\\\").replace("'", "\\'")
    text = text.replace("\r", "\\r").replace("\n", "\\n")
    return f"'{text}'"


class ConfigRenderer:
    def __init__(self, template_dir: Optional[Union[str, Path]] = None):
        loaders: list[jinja2.BaseLoader] = []
        if template_dir is not None:
            loaders.append(jinja2.FileSystemLoader(str(template_dir)))
        loaders.append(jinja2.PackageLoader("butler_automation", "templates"))
        self.env = jinja2.Environment(
            loader=jinja2.ChoiceLoader(loaders),
            undefined=jinja2.StrictUndefined,
            autoescape=False,
            keep_trailing_newline=True,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["groovy"] = _groovy_string

    def required_bindings(self, template_source: str) -> set[str]:
        ast = self.env.parse(template_source)
        return set(meta.find_undeclared_variables(ast)) - set(self.env.globals)

    def render(self, template_source: str, bindings: Mapping[str, Any], *, name: Optional[str] = None) -> bytes:
        missing = self.required_bindings(template_source) - set(bindings)
        if missing:
            raise MissingBindingError(missing, name)
        try:
            text = self.env.from_string(template_source).render(**bindings)
        except jinja2.UndefinedError as exc:
            # Attribute lookups on supplied bindings are only caught at render time.
            match = _UNDEFINED_NAME.search(str(exc))
            raise MissingBindingError([match.group(1) if match else str(exc)], name) from None
        return text.encode("utf-8")

    def render_named(self, template_name: str, bindings: Mapping[str, Any]) -> bytes:
        source, _, _ = self.env.loader.get_source(self.env, template_name)  # type: ignore[union-attr]
        return self.render(source, bindings, name=template_name)


@dataclass(frozen=True)
class Artifact:
    role: str
    path: str
    content: bytes
    mode: int = 0o644
    owner: Optional[str] = None
    group: Optional[str] = None

    @property
    def sha256(self) -> str:
        return hashlib.sha256(self.content).hexdigest()

    def file_spec(self) -> dict[str, Any]:
        spec: dict[str, Any] = {"path": self.path, "content": self.content, "mode": self.mode}
        if self.owner:
            spec["owner"] = self.owner
        if self.group:
            spec["group"] = self.group
        return spec


@dataclass(frozen=True)
class RenderedArtifacts:
    artifacts: tuple[Artifact, ...] = ()

    def __iter__(self) -> Iterator[Artifact]:
        return iter(self.artifacts)

    def __len__(self) -> int:
        return len(self.artifacts)

    def get(self, role: str) -> Optional[Artifact]:
        for artifact in self.artifacts:
            if artifact.role == role:
                return artifact
        return None

    def __getitem__(self, role: str) -> Artifact:
        artifact = self.get(role)
        if artifact is None:
            raise KeyError(role)
        return artifact


def template_context(desired: DesiredState, resolver: Optional[SecretResolver] = None) -> dict[str, Any]:
    """Merge user bindings with the values the built-in templates read.

    Secret references in bindings, user passwords and credential secrets are
    resolved here, once, so rendering itself stays free of side effects.
    """

    resolver = resolver or SecretResolver()
    security = asdict(desired.security)
    security["users"] = [
        {**user, "password": resolver.resolve_value(user["password"])} for user in security["users"]
    ]
    security["ldap"] = resolver.resolve_value(dict(security["ldap"]))
    credentials = [
        {**asdict(credential), "secret": resolver.resolve_value(credential.secret)}
        for credential in desired.credentials
    ]
    context = resolver.resolve(dict(desired.template_bindings))
    empty = [name for name, value in context.items() if _blank(value)]
    empty += [f"security.users['{user['id']}'].password" for user in security["users"] if _blank(user["password"])]
    empty += [f"credentials['{credential['id']}'].secret" for credential in credentials if _blank(credential["secret"])]
    if empty:
        raise ValidationError("bindings resolve to an empty value", empty)
    context.update(
        software_version=desired.software_version,
        security=security,
        credentials=credentials,
        job_repo=asdict(desired.job_repo),
        jenkins_home=desired.jenkins_home,
        casc_dir=desired.casc_path,
        http_port=desired.http_port,
        java_opts=desired.java_opts,
        num_executors=desired.num_executors,
        seed_job_name=desired.seed_job_name,
        service_name=desired.service_name,
    )
    return context


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def render_artifacts(
    desired: DesiredState,
    context: Mapping[str, Any],
    renderer: Optional[ConfigRenderer] = None,
) -> RenderedArtifacts:
    renderer = renderer or ConfigRenderer()
    user = desired.service_user
    casc = desired.casc_path.rstrip("/")
    artifacts = (
        Artifact(
            role=SERVICE_CONFIG,
            path=f"/etc/systemd/system/{desired.service_name}.service.d/override.conf",
            content=renderer.render_named("override.conf.j2", context),
            mode=0o644,
            owner="root",
            group="root",
        ),
        Artifact(
            role=CASC_SECURITY,
            path=f"{casc}/jenkins.yaml",
            content=renderer.render_named("jenkins.yaml.j2", context),
            mode=0o600,
            owner=user,
            group=user,
        ),
        Artifact(
            role=SEED_JOB,
            path=f"{casc}/seed-job.yaml",
            content=renderer.render_named("seed-job.yaml.j2", context),
            mode=0o640,
            owner=user,
            group=user,
        ),
    )
    for artifact in artifacts:
        logger.debug("rendered role=%s path=%s sha256=%s", artifact.role, artifact.path, artifact.sha256)
    return RenderedArtifacts(artifacts)
