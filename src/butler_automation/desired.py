from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional
import tomllib

import yaml

from .errors import ValidationError
from .plugins import PluginSpec

REQUIRED_KEYS = (
    "software_version",
    "plugin_list",
    "security",
    "credentials",
    "job_repo",
    "template_bindings",
)
REALMS = {"local", "ldap"}
CREDENTIAL_KINDS = {"usernamePassword", "string", "sshKey"}
REMOVAL_POLICIES = {"leave", "delete-orphans"}
DEFAULT_SYSTEM_PACKAGES = ("fontconfig", "curl", "unzip")

# Names the built-in templates bind themselves; template_bindings may not shadow them.
RESERVED_BINDINGS = frozenset(
    {
        "software_version",
        "security",
        "credentials",
        "job_repo",
        "jenkins_home",
        "casc_dir",
        "http_port",
        "java_opts",
        "num_executors",
        "seed_job_name",
        "service_name",
    }
)


@dataclass(frozen=True)
class UserSpec:
    id: str
    password: Any
    name: Optional[str] = None
    email: Optional[str] = None


@dataclass(frozen=True)
class SecurityConfig:
    realm: str
    users: tuple[UserSpec, ...] = ()
    admins: tuple[str, ...] = ()
    ldap: Mapping[str, Any] = field(default_factory=dict)
    allow_anonymous_read: bool = False


@dataclass(frozen=True)
class CredentialSpec:
    id: str
    kind: str
    secret: Any
    username: Optional[str] = None
    description: str = ""


@dataclass(frozen=True)
class JobRepo:
    url: str
    branch: str
    credentials_id: Optional[str] = None
    jobs_path: str = "jobs"
    seed_script: str = "seed/Jenkinsfile"


@dataclass(frozen=True)
class DesiredState:
    """What every controller host should converge to; immutable for a run."""

    software_version: str
    plugins: tuple[PluginSpec, ...]
    security: SecurityConfig
    credentials: tuple[CredentialSpec, ...]
    job_repo: JobRepo
    template_bindings: Mapping[str, Any]
    system_packages: tuple[str, ...] = DEFAULT_SYSTEM_PACKAGES
    package_name: str = "jenkins"
    service_name: str = "jenkins"
    service_user: str = "jenkins"
    jenkins_home: str = "/var/lib/jenkins"
    casc_dir: Optional[str] = None
    http_port: int = 8080
    java_opts: str = ""
    num_executors: int = 0
    seed_job_name: str = "seed"
    removal_policy: str = "leave"

    @property
    def plugins_dir(self) -> str:
        return f"{self.jenkins_home.rstrip('/')}/plugins"

    @property
    def casc_path(self) -> str:
        return self.casc_dir or f"{self.jenkins_home.rstrip('/')}/casc_configs"

    def problems(self) -> list[str]:
        problems: list[str] = []
        if not self.software_version:
            problems.append("software_version must not be empty")
        for plugin in self.plugins:
            if not plugin.name or not plugin.version:
                problems.append(f"plugin '{plugin.name}' must have a pinned version")
        if self.security.realm not in REALMS:
            problems.append(f"security.realm must be one of {sorted(REALMS)}")
        if self.security.realm == "local" and not self.security.users:
            problems.append("security.users must list at least one user for the local realm")
        if self.security.realm == "ldap" and not self.security.ldap.get("server"):
            problems.append("security.ldap.server is required for the ldap realm")
        for user in self.security.users:
            if not user.id or user.password in (None, ""):
                problems.append(f"security user '{user.id}' needs an id and password")
        for credential in self.credentials:
            if credential.kind not in CREDENTIAL_KINDS:
                problems.append(f"credential '{credential.id}' has unknown kind '{credential.kind}'")
            if credential.secret in (None, ""):
                problems.append(f"credential '{credential.id}' has no secret")
            if credential.kind in {"usernamePassword", "sshKey"} and not credential.username:
                problems.append(f"credential '{credential.id}' requires a username")
        if not self.job_repo.url:
            problems.append("job_repo.url must not be empty")
        if not self.job_repo.branch:
            problems.append("job_repo.branch must not be empty")
        shadowed = RESERVED_BINDINGS.intersection(self.template_bindings)
        if shadowed:
            problems.append(f"template_bindings may not override {sorted(shadowed)}")
        if self.removal_policy not in REMOVAL_POLICIES:
            problems.append(f"removal_policy must be one of {sorted(REMOVAL_POLICIES)}")
        return problems

    def validate(self) -> None:
        problems = self.problems()
        if problems:
            raise ValidationError("desired state is invalid", problems)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DesiredState":
        if not isinstance(data, Mapping):
            raise ValidationError("desired state must be a mapping")
        problems = [f"missing required key '{key}'" for key in REQUIRED_KEYS if key not in data]
        if problems:
            raise ValidationError("desired state is invalid", problems)

        try:
            desired = cls(
                software_version=str(data["software_version"] or ""),
                plugins=_parse_plugins(data["plugin_list"]),
                security=_parse_security(data["security"]),
                credentials=tuple(_parse_credential(raw) for raw in _as_list(data["credentials"], "credentials")),
                job_repo=_parse_job_repo(data["job_repo"]),
                template_bindings=dict(_as_mapping(data["template_bindings"], "template_bindings")),
                **_optional_fields(data),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationError("desired state is invalid", [_describe(exc)]) from None
        desired.validate()
        return desired


def load_desired_state(path: Path) -> DesiredState:
    path = Path(path)
    if not path.exists():
        raise ValidationError(f"desired state file {path} does not exist")
    suffix = path.suffix.lower()
    text = path.read_text()
    try:
        if suffix == ".toml":
            data = tomllib.loads(text)
        elif suffix in {".yaml", ".yml"}:
            data = yaml.safe_load(text)
        else:
            raise ValidationError(f"{path}: unsupported desired state format '{suffix}'")
    except tomllib.TOMLDecodeError as exc:
        raise ValidationError(f"{path}: {exc}") from None
    except yaml.YAMLError as exc:
        raise ValidationError(f"{path}: {exc}") from None
    try:
        return DesiredState.from_mapping(data or {})
    except ValidationError as exc:
        raise ValidationError(f"{path}: desired state is invalid", exc.problems or [str(exc)]) from None


def _parse_plugins(raw: Any) -> tuple[PluginSpec, ...]:
    plugins: list[PluginSpec] = []
    if isinstance(raw, Mapping):
        for name, value in raw.items():
            if isinstance(value, Mapping):
                plugins.append(
                    PluginSpec(
                        name=str(name),
                        version=str(value.get("version") or ""),
                        optional=bool(value.get("optional", False)),
                    )
                )
            else:
                plugins.append(PluginSpec(name=str(name), version=str(value or "")))
        return tuple(plugins)
    for item in _as_list(raw, "plugin_list"):
        if isinstance(item, Mapping):
            plugins.append(
                PluginSpec(
                    name=str(item["name"]),
                    version=str(item.get("version") or ""),
                    optional=bool(item.get("optional", False)),
                )
            )
        else:
            name, _, version = str(item).partition(":")
            plugins.append(PluginSpec(name=name.strip(), version=version.strip()))
    return tuple(plugins)


def _parse_security(raw: Any) -> SecurityConfig:
    data = _as_mapping(raw, "security")
    if "realm" not in data:
        raise KeyError("security.realm")
    if "users" not in data:
        raise KeyError("security.users")
    users = tuple(
        UserSpec(
            id=str(user["id"]),
            password=user.get("password"),
            name=user.get("name"),
            email=user.get("email"),
        )
        for user in _as_list(data["users"], "security.users")
    )
    admins = data.get("admins")
    if admins is None:
        admins = [user.id for user in users]
    return SecurityConfig(
        realm=str(data["realm"]),
        users=users,
        admins=tuple(str(admin) for admin in admins),
        ldap=dict(data.get("ldap") or {}),
        allow_anonymous_read=bool(data.get("allow_anonymous_read", False)),
    )


def _parse_credential(raw: Any) -> CredentialSpec:
    data = _as_mapping(raw, "credentials[]")
    return CredentialSpec(
        id=str(data["id"]),
        kind=str(data.get("kind", "usernamePassword")),
        secret=data.get("secret"),
        username=data.get("username"),
        description=str(data.get("description", "")),
    )


def _parse_job_repo(raw: Any) -> JobRepo:
    data = _as_mapping(raw, "job_repo")
    if "url" not in data:
        raise KeyError("job_repo.url")
    if "branch" not in data:
        raise KeyError("job_repo.branch")
    return JobRepo(
        url=str(data["url"] or ""),
        branch=str(data["branch"] or ""),
        credentials_id=data.get("credentials_id"),
        jobs_path=str(data.get("jobs_path", "jobs")),
        seed_script=str(data.get("seed_script", "seed/Jenkinsfile")),
    )


def _optional_fields(data: Mapping[str, Any]) -> dict[str, Any]:
    fields: dict[str, Any] = {}
    for key in ("package_name", "service_name", "service_user", "jenkins_home", "java_opts", "seed_job_name", "removal_policy"):
        if key in data:
            fields[key] = str(data[key])
    if "casc_dir" in data:
        fields["casc_dir"] = str(data["casc_dir"])
    for key in ("http_port", "num_executors"):
        if key in data:
            fields[key] = int(data[key])
    if "system_packages" in data:
        fields["system_packages"] = tuple(str(pkg) for pkg in _as_list(data["system_packages"], "system_packages"))
    return fields


def _as_mapping(value: Any, label: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise TypeError(f"{label} must be a mapping")
    return value


def _as_list(value: Any, label: str) -> list[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    raise TypeError(f"{label} must be a list")


def _describe(exc: Exception) -> str:
    if isinstance(exc, KeyError):
        return f"missing required key '{exc.args[0]}'"
    return str(exc)
