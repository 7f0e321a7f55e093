from __future__ import annotations

from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import Iterator, Optional, Sequence, Union
import hashlib
import logging
import os
import shlex
import subprocess
import tempfile
import time
import uuid

from .errors import CommandError, ConnectivityError, ExecutionTimeout
from .types import HostConfig

logger = logging.getLogger(__name__)

SSH_CONNECTION_FAILURE = 255


@dataclass
class CommandResult:
    command: list[str]
    stdout: str
    stderr: str
    returncode: int

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class Executor:
    """Base executor abstraction used by operations and fact gathering."""

    def __init__(self, host: HostConfig, *, dry_run: bool = False):
        self.host = host
        self.dry_run = dry_run
        self._deadline: Optional[float] = None
        self._budget: Optional[float] = None

    @contextmanager
    def operation_timeout(self, seconds: Optional[float]) -> Iterator[None]:
        """Bound every call made inside the block by one shared deadline."""

        previous = (self._deadline, self._budget)
        if seconds is not None:
            self._deadline = time.monotonic() + seconds
            self._budget = seconds
        try:
            yield
        finally:
            self._deadline, self._budget = previous

    def run(
        self,
        command: Sequence[str],
        *,
        check: bool = True,
        mutable: bool = True,
        env: Optional[dict[str, str]] = None,
        cwd: Optional[Union[str, Path]] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run ``command`` and optionally skip it during dry-runs."""

        cmd_list = [str(part) for part in command]
        if self.dry_run and mutable:
            return CommandResult(cmd_list, "", "skipped (dry-run)", 0)

        effective = self._effective_timeout(cmd_list, timeout)
        try:
            result = self._spawn(cmd_list, env=env, cwd=cwd, timeout=effective)
        except subprocess.TimeoutExpired:
            raise ExecutionTimeout(cmd_list, effective) from None
        if check and result.returncode != 0:
            raise CommandError(cmd_list, result.returncode, result.stdout, result.stderr)
        return result

    def _effective_timeout(self, command: list[str], timeout: Optional[float]) -> Optional[float]:
        if self._deadline is None:
            return timeout
        remaining = self._deadline - time.monotonic()
        if remaining <= 0:
            raise ExecutionTimeout(command, self._budget)
        return remaining if timeout is None else min(timeout, remaining)

    def _spawn(
        self,
        command: list[str],
        *,
        env: Optional[dict[str, str]],
        cwd: Optional[Union[str, Path]],
        timeout: Optional[float],
    ) -> CommandResult:
        raise NotImplementedError

    # File primitives -----------------------------------------------------
    def checksum(self, path: Union[str, PurePosixPath]) -> Optional[str]:
        result = self.run(["sha256sum", str(path)], check=False, mutable=False)
        if not result.ok or not result.stdout.strip():
            return None
        return result.stdout.split()[0].lower()

    def file_attributes(self, path: Union[str, PurePosixPath]) -> Optional[tuple[int, str, str]]:
        """Return ``(mode, owner, group)`` for ``path`` or ``None`` when absent."""

        result = self.run(["stat", "-c", "%a %U %G", str(path)], check=False, mutable=False)
        if not result.ok:
            return None
        parts = result.stdout.split()
        if len(parts) != 3:
            return None
        return int(parts[0], 8), parts[1], parts[2]

    def transfer(
        self,
        content: bytes,
        remote_path: Union[str, PurePosixPath],
        *,
        mode: Optional[int] = None,
        owner: Optional[str] = None,
        group: Optional[str] = None,
    ) -> None:
        """Stage ``content`` next to ``remote_path`` and rename it into place."""

        raise NotImplementedError

    def _finalize_staged(
        self,
        staging: str,
        remote_path: str,
        *,
        mode: Optional[int],
        owner: Optional[str],
        group: Optional[str],
    ) -> None:
        try:
            if mode is not None:
                self.run(["chmod", f"{mode:04o}", staging])
            if owner or group:
                self.run(["chown", f"{owner or ''}:{group or ''}".rstrip(":"), staging])
            self.run(["mv", "-f", staging, remote_path])
        except Exception:
            self._discard(staging)
            raise

    def _discard(self, staging: str) -> None:
        # Runs outside the operation deadline, which may already be spent.
        try:
            self._spawn(["rm", "-f", staging], env=None, cwd=None, timeout=30)
        except (subprocess.TimeoutExpired, ConnectivityError) as exc:
            logger.warning("host=%s could not remove staged file %s: %s", self.host.name, staging, exc)

    @staticmethod
    def staging_path(remote_path: Union[str, PurePosixPath]) -> str:
        target = PurePosixPath(str(remote_path))
        return str(target.with_name(f".{target.name}.butler-{uuid.uuid4().hex[:8]}"))


class LocalExecutor(Executor):
    """Executor that acts directly on the local host."""

    def _spawn(self, command, *, env, cwd, timeout):  # type: ignore[override]
        exec_env = None
        if env:
            exec_env = os.environ.copy()
            exec_env.update(env)
        proc = subprocess.run(
            command,
            capture_output=True,
            text=True,
            check=False,
            env=exec_env,
            cwd=str(cwd) if cwd is not None else None,
            timeout=timeout,
        )
        return CommandResult(command, proc.stdout, proc.stderr, proc.returncode)

    def checksum(self, path):  # type: ignore[override]
        try:
            return hashlib.sha256(Path(str(path)).read_bytes()).hexdigest()
        except (FileNotFoundError, IsADirectoryError):
            return None

    def transfer(self, content, remote_path, *, mode=None, owner=None, group=None):  # type: ignore[override]
        if self.dry_run:
            return
        target = Path(str(remote_path))
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, staging = tempfile.mkstemp(prefix=f".{target.name}.butler-", dir=str(target.parent))
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
            if mode is not None:
                os.chmod(staging, mode)
            if owner or group:
                self.run(["chown", f"{owner or ''}:{group or ''}".rstrip(":"), staging])
            os.replace(staging, target)
        except BaseException:
            Path(staging).unlink(missing_ok=True)
            raise


class SSHExecutor(Executor):
    """Executor that reaches the host through the ``ssh``/``scp`` binaries."""

    def __init__(
        self,
        host: HostConfig,
        *,
        dry_run: bool = False,
        connect_timeout: int = 10,
        ssh_binary: str = "ssh",
        scp_binary: str = "scp",
    ):
        super().__init__(host, dry_run=dry_run)
        if not host.address:
            raise ValueError(f"host {host.name} has no address for ssh")
        self.connect_timeout = connect_timeout
        self.ssh_binary = ssh_binary
        self.scp_binary = scp_binary

    @property
    def destination(self) -> str:
        return f"{self.host.user}@{self.host.address}" if self.host.user else str(self.host.address)

    def _options(self, port_flag: str) -> list[str]:
        options = [
            "-o",
            "BatchMode=yes",
            "-o",
            f"ConnectTimeout={self.connect_timeout}",
        ]
        if self.host.port:
            options.extend([port_flag, str(self.host.port)])
        if self.host.identity_file:
            options.extend(["-i", str(self.host.identity_file)])
        return options

    def _remote_command(self, command: list[str], env: Optional[dict[str, str]], cwd) -> str:
        script = shlex.join(command)
        if env:
            assignments = " ".join(f"{key}={shlex.quote(str(value))}" for key, value in env.items())
            script = f"env {assignments} {script}"
        if cwd is not None:
            script = f"cd {shlex.quote(str(cwd))} && {script}"
        return script

    def _spawn(self, command, *, env, cwd, timeout):  # type: ignore[override]
        ssh_cmd = [
            self.ssh_binary,
            *self._options("-p"),
            self.destination,
            "--",
            self._remote_command(command, env, cwd),
        ]
        logger.debug("ssh host=%s cmd=%s", self.host.name, " ".join(command))
        proc = subprocess.run(ssh_cmd, capture_output=True, text=True, check=False, timeout=timeout)
        if proc.returncode == SSH_CONNECTION_FAILURE:
            raise ConnectivityError(self.host.name, proc.stderr.strip() or "ssh exited with 255")
        return CommandResult(command, proc.stdout, proc.stderr, proc.returncode)

    def transfer(self, content, remote_path, *, mode=None, owner=None, group=None):  # type: ignore[override]
        if self.dry_run:
            return
        target = str(remote_path)
        staging = self.staging_path(target)
        self.run(["mkdir", "-p", str(PurePosixPath(target).parent)])
        fd, local_name = tempfile.mkstemp(prefix="butler-transfer-")
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
            scp_cmd = [self.scp_binary, "-q", *self._options("-P"), local_name, f"{self.destination}:{staging}"]
            timeout = self._effective_timeout(scp_cmd, None)
            try:
                proc = subprocess.run(scp_cmd, capture_output=True, text=True, check=False, timeout=timeout)
            except subprocess.TimeoutExpired:
                self._discard(staging)
                raise ExecutionTimeout(scp_cmd, self._budget) from None
            if proc.returncode == SSH_CONNECTION_FAILURE:
                raise ConnectivityError(self.host.name, proc.stderr.strip() or "scp exited with 255")
            if proc.returncode != 0:
                self._discard(staging)
                raise CommandError(scp_cmd, proc.returncode, proc.stdout, proc.stderr)
        finally:
            Path(local_name).unlink(missing_ok=True)
        self._finalize_staged(staging, target, mode=mode, owner=owner, group=group)


def executor_for(
    host: HostConfig,
    *,
    dry_run: bool = False,
    connect_timeout: int = 10,
) -> Executor:
    if host.connection == "local":
        return LocalExecutor(host, dry_run=dry_run)
    if host.connection == "ssh":
        return SSHExecutor(host, dry_run=dry_run, connect_timeout=connect_timeout)
    raise ValueError(f"Unknown connection type '{host.connection}'")
