"""Local ssh-agent management for credential forwarding.

Keeps one long-lived agent per user. Its socket and pid are written to
``~/.sprout/agent.env`` so any shell can pick it up with::

    eval "$(cat ~/.sprout/agent.env)"
"""

from __future__ import annotations

import os
import re
import subprocess
from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from sprout.constants import AGENT_ENV_FILE
from sprout.core.exceptions import AgentError

log = logger.bind(component="agent")

_SOCK_RE = re.compile(r"SSH_AUTH_SOCK=([^;\s]+)")
_PID_RE = re.compile(r"SSH_AGENT_PID=(\d+)")

# ssh-add -l: 0 = identities listed, 1 = agent has no identities, 2 = no agent
_ADD_NO_IDENTITIES = 1


@dataclass(frozen=True, slots=True)
class AgentEnv:
    """Connection details of a running ssh-agent."""

    auth_sock: str
    pid: int

    def environ(self) -> dict[str, str]:
        return {**os.environ, "SSH_AUTH_SOCK": self.auth_sock, "SSH_AGENT_PID": str(self.pid)}

    def to_shell(self) -> str:
        return (
            f"SSH_AUTH_SOCK={self.auth_sock}; export SSH_AUTH_SOCK;\n"
            f"SSH_AGENT_PID={self.pid}; export SSH_AGENT_PID;\n"
        )


def parse_agent_output(text: str) -> AgentEnv:
    """Parse the Bourne-shell output of ``ssh-agent -s``."""
    sock = _SOCK_RE.search(text)
    pid = _PID_RE.search(text)
    if not sock or not pid:
        raise AgentError(f"Unrecognized ssh-agent output: {text.strip()!r}")
    return AgentEnv(auth_sock=sock.group(1), pid=int(pid.group(1)))


def _run(cmd: list[str], env: dict[str, str] | None = None) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(cmd, capture_output=True, text=True, env=env, timeout=30)
    except FileNotFoundError:
        raise AgentError(f"{cmd[0]} not found. Install OpenSSH client tools.") from None


class AgentManager:
    """Start, reuse, feed and stop the user's ssh-agent.

    Args:
        env_file: Where the agent's environment is persisted.
    """

    def __init__(self, env_file: Path = AGENT_ENV_FILE) -> None:
        self.env_file = env_file

    def load(self) -> AgentEnv | None:
        if not self.env_file.is_file():
            return None
        try:
            return parse_agent_output(self.env_file.read_text())
        except AgentError:
            log.warning("Ignoring unreadable agent env file {path}", path=str(self.env_file))
            return None

    def is_alive(self, env: AgentEnv) -> bool:
        result = _run(["ssh-add", "-l"], env=env.environ())
        return result.returncode in (0, _ADD_NO_IDENTITIES)

    def current(self) -> AgentEnv:
        """The running agent, or AgentError if there is none."""
        env = self.load()
        if env is None or not self.is_alive(env):
            raise AgentError("No running agent. Start one with 'sprout agent start'.")
        return env

    def start(self) -> AgentEnv:
        """Reuse a live agent or start a new one and persist its environment."""
        env = self.load()
        if env is not None and self.is_alive(env):
            log.info("Reusing ssh-agent pid={pid}", pid=env.pid)
            return env

        result = _run(["ssh-agent", "-s"])
        if result.returncode != 0:
            raise AgentError(f"ssh-agent failed: {result.stderr.strip()}")
        env = parse_agent_output(result.stdout)

        self.env_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(self.env_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        os.fchmod(fd, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(env.to_shell())
        log.info("Started ssh-agent pid={pid} ({sock})", pid=env.pid, sock=env.auth_sock)
        return env

    def add(self, keys: list[Path], lifetime: int | None = None) -> None:
        env = self.current()
        cmd = ["ssh-add"]
        if lifetime:
            cmd += ["-t", str(lifetime)]
        cmd += [str(k.expanduser()) for k in keys]
        result = _run(cmd, env=env.environ())
        if result.returncode != 0:
            raise AgentError(f"ssh-add failed: {result.stderr.strip()}")
        log.info("Added {n} key(s) to agent pid={pid}", n=len(keys) or "default", pid=env.pid)

    def identities(self) -> list[str]:
        env = self.current()
        result = _run(["ssh-add", "-l"], env=env.environ())
        if result.returncode == _ADD_NO_IDENTITIES:
            return []
        if result.returncode != 0:
            raise AgentError(f"ssh-add -l failed: {result.stderr.strip()}")
        return [line for line in result.stdout.splitlines() if line.strip()]

    def stop(self) -> bool:
        """Kill the agent. Returns False if none was running."""
        env = self.load()
        if env is None:
            return False
        result = _run(["ssh-agent", "-k"], env=env.environ())
        self.env_file.unlink(missing_ok=True)
        if result.returncode != 0:
            log.warning("ssh-agent -k: {err}", err=result.stderr.strip())
            return False
        log.info("Stopped ssh-agent pid={pid}", pid=env.pid)
        return True
