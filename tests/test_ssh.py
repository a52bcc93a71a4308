from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from sprout import ssh
from sprout.core.exceptions import BootstrapError
from sprout.ssh import SSHConfig, SSHConnection, wait_for_ssh

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


def _client(exit_code: int = 0, out: bytes = b"", err: bytes = b"") -> MagicMock:
    client = MagicMock()
    stdout = MagicMock()
    stdout.channel.recv_exit_status.return_value = exit_code
    stdout.read.return_value = out
    stderr = MagicMock()
    stderr.read.return_value = err
    client.exec_command.return_value = (MagicMock(), stdout, stderr)
    return client


class TestSSHConnection:
    config = SSHConfig(host="203.0.113.10", username="ubuntu")

    def test_run_collects_output(self):
        conn = SSHConnection(self.config, client=_client(0, b"hello\n"))
        result = conn.run("echo hello")

        assert result.success
        assert result.stdout == "hello\n"

    def test_failed_command(self):
        conn = SSHConnection(self.config, client=_client(3, err=b"nope"))
        result = conn.run("false")
        assert not result.success
        assert result.exit_code == 3
        assert result.stderr == "nope"

    def test_sudo_wraps_whole_command(self):
        client = _client()
        SSHConnection(self.config, client=client).run("echo a > /etc/b", sudo=True)

        command = client.exec_command.call_args.args[0]
        assert command == "sudo -n bash -c 'echo a > /etc/b'"

    def test_context_manager_closes(self):
        client = _client()
        with SSHConnection(self.config, client=client):
            pass
        client.close.assert_called_once()

    def test_upload_uses_sftp(self, tmp_path):
        client = _client()
        local = tmp_path / ".bashrc"
        SSHConnection(self.config, client=client).upload_file(local, "/tmp/x")

        sftp = client.open_sftp.return_value
        sftp.put.assert_called_once_with(str(local), "/tmp/x")
        sftp.close.assert_called_once()


class TestWaitForSSH:
    def test_unreachable_host(self, monkeypatch):
        def refuse(config):
            raise ConnectionRefusedError("refused")

        monkeypatch.setattr(ssh, "SSHConnection", refuse)
        with pytest.raises(BootstrapError, match="not reachable") as exc_info:
            wait_for_ssh(SSHConfig(host="203.0.113.10", username="ubuntu"), timeout=0)
        assert exc_info.value.step == "ssh"

    def test_connects_after_retry(self, monkeypatch):
        attempts: list[SSHConfig] = []
        conn = MagicMock()

        def flaky(config):
            attempts.append(config)
            if len(attempts) == 1:
                raise ConnectionResetError("reset")
            return conn

        monkeypatch.setattr(ssh, "SSHConnection", flaky)
        monkeypatch.setattr("time.sleep", lambda _: None)

        assert wait_for_ssh(SSHConfig(host="203.0.113.10", username="ubuntu"), timeout=5) is conn
        assert len(attempts) == 2
