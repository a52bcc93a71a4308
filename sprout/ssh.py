"""SSH connection used by the first-boot configuration steps."""

from __future__ import annotations

import shlex
import socket
from dataclasses import dataclass
from pathlib import Path

import paramiko
from loguru import logger
from tenacity import (
    RetryError,
    retry,
    retry_if_exception_type,
    stop_after_delay,
    wait_exponential,
)

from sprout.constants import SSH_READY_TIMEOUT
from sprout.core.exceptions import BootstrapError

log = logger.bind(component="ssh")

_NOT_READY_ERRORS = (
    paramiko.ssh_exception.NoValidConnectionsError,
    paramiko.ssh_exception.AuthenticationException,
    paramiko.ssh_exception.SSHException,
    socket.timeout,
    ConnectionError,
    OSError,
)


@dataclass(frozen=True, slots=True)
class SSHConfig:
    """SSH connection configuration."""

    host: str
    username: str
    port: int = 22
    key_path: str | None = None
    connect_timeout: float = 10.0


@dataclass(frozen=True, slots=True)
class CommandResult:
    """Immutable result of a remote command."""

    exit_code: int
    stdout: str
    stderr: str

    @property
    def success(self) -> bool:
        return self.exit_code == 0


class SSHConnection:
    """Thin paramiko wrapper: run commands, upload files."""

    __slots__ = ("_client", "config")

    def __init__(self, config: SSHConfig, client: paramiko.SSHClient | None = None) -> None:
        self.config = config
        if client is not None:
            self._client = client
            return

        log.debug(
            "SSH: connecting to {host}:{port} ({user})",
            host=config.host,
            port=config.port,
            user=config.username,
        )
        self._client = paramiko.SSHClient()
        self._client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        kwargs: dict = {
            "hostname": config.host,
            "username": config.username,
            "port": config.port,
            "timeout": config.connect_timeout,
            "allow_agent": True,
        }
        if config.key_path:
            kwargs["key_filename"] = str(Path(config.key_path).expanduser())
        self._client.connect(**kwargs)
        log.debug("SSH: connected to {host}", host=config.host)

    def run(self, command: str, timeout: int = 600, sudo: bool = False) -> CommandResult:
        """Execute a command and wait for it to exit."""
        if sudo:
            command = f"sudo -n bash -c {shlex.quote(command)}"
        cmd_preview = command[:80] + "..." if len(command) > 80 else command
        log.debug("SSH exec: {cmd}", cmd=cmd_preview)
        _, stdout, stderr = self._client.exec_command(command, timeout=timeout)
        code = stdout.channel.recv_exit_status()
        log.debug("SSH exec: exit_code={code}", code=code)
        return CommandResult(
            exit_code=code,
            stdout=stdout.read().decode(errors="replace"),
            stderr=stderr.read().decode(errors="replace"),
        )

    def upload_file(self, local_path: Path, remote_path: str) -> None:
        sftp = self._client.open_sftp()
        try:
            sftp.put(str(local_path), remote_path)
        finally:
            sftp.close()

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> SSHConnection:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def wait_for_ssh(config: SSHConfig, timeout: float = SSH_READY_TIMEOUT) -> SSHConnection:
    """Connect, retrying until sshd accepts the key or ``timeout`` passes.

    Cloud-init may still be writing authorized_keys when the instance first
    passes its status checks, so authentication failures are retried too.
    """

    @retry(
        stop=stop_after_delay(timeout),
        wait=wait_exponential(multiplier=1, min=2, max=15),
        retry=retry_if_exception_type(_NOT_READY_ERRORS),
    )
    def _connect() -> SSHConnection:
        return SSHConnection(config)

    try:
        return _connect()
    except RetryError as e:
        cause = e.last_attempt.exception()
        raise BootstrapError("ssh", f"{config.host} not reachable after {timeout}s: {cause}") from e
