"""Tests for reconciler.remote module."""

from __future__ import annotations

from pathlib import Path
from unittest.mock import MagicMock, patch

import paramiko
import pytest

from reconciler.exceptions import ConfigError, TransientExternal
from reconciler.remote import (
    ParamikoExecutor,
    RemoteCommand,
    RemoteExecutor,
    RemoteResult,
    is_reachable,
    wait_until_reachable,
)


class TestRemoteCommand:
    def test_render_quotes_arguments(self):
        assert RemoteCommand(["echo", "two words"]).render() == "echo 'two words'"

    def test_render_env_and_sudo(self):
        command = RemoteCommand(["cloudflared", "tunnel", "run"], env={"TUNNEL_TOKEN": "abc def"}, sudo=True)
        assert command.render() == "sudo -H -- sh -c 'env TUNNEL_TOKEN='\"'\"'abc def'\"'\"' cloudflared tunnel run'"

    def test_describe_withholds_values(self):
        command = RemoteCommand(["tee", "/etc/x"], env={"TOKEN": "s3cret"}, stdin="payload-s3cret")
        description = command.describe()
        assert description == "TOKEN=*** tee /etc/x"
        assert "s3cret" not in description


def _ssh_client(out=b"", err=b"", rc=0):
    client = MagicMock()
    stdin, stdout, stderr = MagicMock(), MagicMock(), MagicMock()
    stdout.read.return_value = out
    stderr.read.return_value = err
    stdout.channel.recv_exit_status.return_value = rc
    client.exec_command.return_value = (stdin, stdout, stderr)
    return client


class TestParamikoExecutor:
    def test_execute(self):
        client = _ssh_client(out=b"hello\n")
        with patch("reconciler.remote.paramiko.SSHClient", return_value=client):
            result = ParamikoExecutor("10.0.0.5", "ubuntu").execute(RemoteCommand(["echo", "hello"]))
        assert result == RemoteResult(0, "hello\n", "")
        client.connect.assert_called_once()
        assert client.connect.call_args.kwargs["hostname"] == "10.0.0.5"
        assert client.exec_command.call_args[0][0] == "echo hello"

    def test_stdin_payload_written_and_closed(self):
        client = _ssh_client()
        with patch("reconciler.remote.paramiko.SSHClient", return_value=client):
            ParamikoExecutor("10.0.0.5", "ubuntu").execute(RemoteCommand(["tee", "/tmp/x"], stdin="data"))
        stdin = client.exec_command.return_value[0]
        stdin.write.assert_called_once_with("data")
        stdin.channel.shutdown_write.assert_called_once()
        assert "data" not in client.exec_command.call_args[0][0]

    def test_connection_reused(self):
        client = _ssh_client()
        with patch("reconciler.remote.paramiko.SSHClient", return_value=client) as client_cls:
            executor = ParamikoExecutor("10.0.0.5", "ubuntu")
            executor.execute(RemoteCommand(["true"]))
            executor.execute(RemoteCommand(["true"]))
        assert client_cls.call_count == 1

    def test_connect_failure_is_transient(self):
        client = _ssh_client()
        client.connect.side_effect = paramiko.SSHException("Error reading SSH protocol banner")
        with patch("reconciler.remote.paramiko.SSHClient", return_value=client):
            with pytest.raises(TransientExternal, match="ubuntu@10.0.0.5:22"):
                ParamikoExecutor("10.0.0.5", "ubuntu").execute(RemoteCommand(["true"]))
        client.close.assert_called_once()

    def test_exec_failure_drops_connection(self):
        client = _ssh_client()
        client.exec_command.side_effect = paramiko.SSHException("channel closed")
        with patch("reconciler.remote.paramiko.SSHClient", return_value=client):
            executor = ParamikoExecutor("10.0.0.5", "ubuntu")
            with pytest.raises(TransientExternal, match="channel closed"):
                executor.execute(RemoteCommand(["true"]))
        assert executor._client is None

    def test_key_types_tried_in_order(self, tmp_path):
        key = MagicMock()
        (tmp_path / "id").write_text("key")
        with patch.object(
            paramiko.Ed25519Key, "from_private_key_file", side_effect=paramiko.SSHException("not ed25519")
        ), patch.object(paramiko.ECDSAKey, "from_private_key_file", return_value=key):
            executor = ParamikoExecutor("10.0.0.5", "ubuntu", key_path=tmp_path / "id", password="pw")
            assert executor._load_key() is key

    def test_password_only_without_key(self):
        client = _ssh_client()
        with patch("reconciler.remote.paramiko.SSHClient", return_value=client):
            ParamikoExecutor("10.0.0.5", "ubuntu", password="pw").connect()
        assert client.connect.call_args.kwargs["password"] == "pw"
        assert client.connect.call_args.kwargs["pkey"] is None


class FlakyExecutor(RemoteExecutor):
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def execute(self, command):
        self.calls += 1
        if self.calls <= self.failures:
            raise TransientExternal("Connection refused")
        return RemoteResult(0)


class TestReachability:
    def test_is_reachable(self):
        assert is_reachable(FlakyExecutor(0))
        assert not is_reachable(FlakyExecutor(1))

    def test_wait_until_reachable(self):
        executor = FlakyExecutor(2)
        assert wait_until_reachable(executor, attempts=5, interval=1.0)
        assert executor.calls == 3

    def test_gives_up(self):
        executor = FlakyExecutor(10)
        assert not wait_until_reachable(executor, attempts=3, interval=1.0)
        assert executor.calls == 3

    def test_base_executor_is_abstract(self):
        with pytest.raises(NotImplementedError):
            RemoteExecutor().execute(RemoteCommand(["true"]))
        RemoteExecutor().close()


def test_unreadable_key_yields_none(tmp_path):
    key_file = tmp_path / "id_rsa"
    key_file.write_text("garbage")
    executor = ParamikoExecutor("h", "u", key_path=key_file)
    with patch.object(paramiko.Ed25519Key, "from_private_key_file", side_effect=paramiko.SSHException), patch.object(
        paramiko.ECDSAKey, "from_private_key_file", side_effect=paramiko.SSHException
    ), patch.object(paramiko.RSAKey, "from_private_key_file", side_effect=paramiko.SSHException):
        assert executor._load_key() is None


def test_missing_key_file():
    executor = ParamikoExecutor("h", "u", key_path=Path("/nonexistent/key"))
    with pytest.raises(ConfigError, match="/nonexistent/key"):
        executor._load_key()
