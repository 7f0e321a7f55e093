from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional
import tomllib

from .desired import REMOVAL_POLICIES
from .errors import ValidationError
from .plugins import DEFAULT_CATALOG_URL

DEFAULT_CONFIG = Path("/etc/butler/main.conf")
DEFAULT_DESIRED_STATE = Path("/etc/butler/desired.toml")
DEFAULT_CHECKOUT_DIR = Path("/var/lib/butler/job-repo")
DEFAULT_MAX_CONCURRENCY = 16


@dataclass
class ButlerConfig:
    desired_state: Path = DEFAULT_DESIRED_STATE
    inventory: Optional[Path] = None
    report_file: Optional[Path] = None
    concurrency: Optional[int] = None
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    operation_timeout: Optional[float] = None
    ssh_user: Optional[str] = None
    ssh_identity_file: Optional[str] = None
    ssh_connect_timeout: int = 10
    plugin_catalog_url: str = DEFAULT_CATALOG_URL
    plugin_catalog_file: Optional[Path] = None
    job_checkout_dir: Path = DEFAULT_CHECKOUT_DIR
    removal_policy: Optional[str] = None
    controller_user: Optional[str] = None
    controller_token_env: str = "BUTLER_CONTROLLER_TOKEN"
    aws_region: Optional[str] = None
    aws_profile: Optional[str] = None


def load_config(path: Path) -> ButlerConfig:
    if not path.exists():
        return ButlerConfig()
    try:
        data = tomllib.loads(path.read_text())
    except tomllib.TOMLDecodeError as exc:
        raise ValidationError(f"{path}: {exc}") from None
    defaults = data.get("defaults", {})

    def _path(key: str) -> Optional[Path]:
        value = defaults.get(key)
        return Path(value) if value else None

    def _str(key: str) -> Optional[str]:
        value = defaults.get(key)
        return str(value) if value else None

    removal_policy = _str("removal_policy")
    if removal_policy is not None and removal_policy not in REMOVAL_POLICIES:
        raise ValidationError(f"{path}: removal_policy must be one of {sorted(REMOVAL_POLICIES)}")

    concurrency = defaults.get("concurrency")
    timeout = defaults.get("operation_timeout")
    return ButlerConfig(
        desired_state=_path("desired_state") or DEFAULT_DESIRED_STATE,
        inventory=_path("inventory"),
        report_file=_path("report_file"),
        concurrency=int(concurrency) if concurrency else None,
        max_concurrency=int(defaults.get("max_concurrency", DEFAULT_MAX_CONCURRENCY)),
        operation_timeout=float(timeout) if timeout else None,
        ssh_user=_str("ssh_user"),
        ssh_identity_file=_str("ssh_identity_file"),
        ssh_connect_timeout=int(defaults.get("ssh_connect_timeout", 10)),
        plugin_catalog_url=_str("plugin_catalog_url") or DEFAULT_CATALOG_URL,
        plugin_catalog_file=_path("plugin_catalog_file"),
        job_checkout_dir=_path("job_checkout_dir") or DEFAULT_CHECKOUT_DIR,
        removal_policy=removal_policy,
        controller_user=_str("controller_user"),
        controller_token_env=_str("controller_token_env") or "BUTLER_CONTROLLER_TOKEN",
        aws_region=_str("aws_region"),
        aws_profile=_str("aws_profile"),
    )
