from __future__ import annotations

from pathlib import Path
from typing import Any, Optional
import tomllib

import yaml

from .errors import ValidationError
from .types import HostConfig

CONNECTIONS = {"local", "ssh"}
DEFAULT_HOSTS = {"local": {"connection": "local", "labels": ["controller"]}}


class InventoryLoader:
    """Loads the target host set from TOML or YAML files."""

    def __init__(self, *, default_user: Optional[str] = None, default_identity_file: Optional[str] = None):
        self.default_user = default_user
        self.default_identity_file = default_identity_file

    def load(self, path: Optional[Path]) -> list[HostConfig]:
        if path is None:
            return self._parse_hosts({})
        path = Path(path)
        if not path.exists():
            raise ValidationError(f"inventory file {path} does not exist")
        suffix = path.suffix.lower()
        text = path.read_text()
        try:
            if suffix in {".yaml", ".yml"}:
                data = yaml.safe_load(text) or {}
            else:
                data = tomllib.loads(text)
        except tomllib.TOMLDecodeError as exc:
            raise ValidationError(f"{path}: {exc}") from None
        except yaml.YAMLError as exc:
            raise ValidationError(f"{path}: {exc}") from None
        if not isinstance(data, dict):
            raise ValidationError(f"{path}: inventory must be a mapping with a 'hosts' table")
        try:
            return self._parse_hosts(data.get("hosts", {}))
        except ValidationError as exc:
            raise ValidationError(f"{path}: inventory is invalid", exc.problems or [str(exc)]) from None

    def _parse_hosts(self, host_data: Any) -> list[HostConfig]:
        if not host_data:
            host_data = DEFAULT_HOSTS
        if isinstance(host_data, list):
            entries = []
            for item in host_data:
                if not isinstance(item, dict) or not item.get("name"):
                    raise ValidationError("host list entries need a name")
                entries.append((str(item["name"]), item))
        elif isinstance(host_data, dict):
            entries = [(str(name), payload or {}) for name, payload in host_data.items()]
        else:
            raise ValidationError("hosts must be a table or a list")

        problems: list[str] = []
        hosts: list[HostConfig] = []
        seen: set[str] = set()
        for name, payload in entries:
            if name in seen:
                problems.append(f"host '{name}' is defined more than once")
                continue
            seen.add(name)
            connection = str(payload.get("connection", "local"))
            if connection not in CONNECTIONS:
                problems.append(f"host '{name}' has unknown connection '{connection}'")
                continue
            address = payload.get("address")
            if connection == "ssh" and not address:
                problems.append(f"host '{name}' needs an address for ssh")
                continue
            labels = payload.get("labels", [])
            if isinstance(labels, str):
                labels = [labels]
            port = payload.get("port")
            hosts.append(
                HostConfig(
                    name=name,
                    connection=connection,
                    address=str(address) if address else None,
                    user=payload.get("user") or (self.default_user if connection == "ssh" else None),
                    port=int(port) if port else None,
                    identity_file=payload.get("identity_file")
                    or (self.default_identity_file if connection == "ssh" else None),
                    labels=tuple(str(label) for label in labels),
                    variables=dict(payload.get("variables", {})),
                )
            )
        if problems:
            raise ValidationError("inventory is invalid", problems)
        return hosts
