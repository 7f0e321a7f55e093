from __future__ import annotations

import base64
import json
import os
from typing import Any, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ValidationError


class SecretResolver:
    """Resolves secret references in binding mappings.

    ``{"aws_secret": name, "key": field}`` reads AWS Secrets Manager and
    ``{"env": NAME}`` reads the process environment. Anything else passes
    through untouched.
    """

    def __init__(self):
        self._cache: dict[tuple[str, Optional[str]], Any] = {}

    def resolve(self, values: dict[str, Any]) -> dict[str, Any]:
        return {k: self._resolve_value(v) for k, v in values.items()}

    def resolve_value(self, value: Any) -> Any:
        return self._resolve_value(value)

    def _resolve_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            if "aws_secret" in value:
                return self._resolve_aws_secret(value)
            if set(value) == {"env"}:
                return self._resolve_env(str(value["env"]))
            return {k: self._resolve_value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return [self._resolve_value(v) for v in value]
        return value

    @staticmethod
    def _resolve_env(name: str) -> str:
        if name not in os.environ:
            raise ValidationError(f"environment variable {name} referenced by a binding is not set")
        return os.environ[name]

    def _resolve_aws_secret(self, spec: dict[str, Any]) -> Any:
        name = str(spec["aws_secret"])
        key = spec.get("key")
        cache_key = (name, key if key is None else str(key))
        if cache_key in self._cache:
            return self._cache[cache_key]

        try:
            client = boto3.client("secretsmanager")
            response = client.get_secret_value(SecretId=name)
        except (BotoCoreError, ClientError) as exc:
            raise ValidationError(f"unable to read secret {name}: {exc}") from exc
        secret_str = response.get("SecretString")
        if secret_str is None:
            binary = response.get("SecretBinary")
            if binary is None:
                raise ValidationError(f"Secret {name} has no SecretString or SecretBinary")
            secret_str = base64.b64decode(binary).decode()

        value: Any = secret_str
        if key is not None:
            try:
                payload = json.loads(secret_str)
            except json.JSONDecodeError:
                # Plain-text secrets ignore the key.
                payload = None
            if isinstance(payload, dict):
                if str(key) not in payload:
                    raise ValidationError(f"Secret {name} has no key '{key}'")
                value = payload[str(key)]

        self._cache[cache_key] = value
        return value
