"""Remote execution over SSH as an explicit command payload plus a result channel."""

from __future__ import annotations

import shlex
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

import paramiko

from reconciler.exceptions import ConfigError, TransientExternal
from reconciler.utils import log, wait_until


@dataclass(frozen=True)
class RemoteCommand:
    argv: List[str]
    env: Dict[str, str] = field(default_factory=dict)
    stdin: Optional[str] = None
    sudo: bool = False

    def render(self) -> str:
        cmd = " ".join(shlex.quote(a) for a in self.argv)
        if self.env:
            assignments = " ".join(f"{k}={shlex.quote(v)}" for k, v in sorted(self.env.items()))
            cmd = f"env {assignments} {cmd}"
        if self.sudo:
            cmd = f"sudo -H -- sh -c {shlex.quote(cmd)}"
        return cmd

    def describe(self) -> str:
        """Loggable form: argv only, environment values and stdin withheld."""
        keys = " ".join(f"{k}=***" for k in sorted(self.env))
        return " ".join(filter(None, [keys, " ".join(self.argv)]))


@dataclass(frozen=True)
class RemoteResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteExecutor:
    """Capability injected wherever the core needs to act on another machine."""

    def execute(self, command: RemoteCommand) -> RemoteResult:
        raise NotImplementedError

    def close(self) -> None:
        pass


class ParamikoExecutor(RemoteExecutor):
    def __init__(
        self,
        host: str,
        username: str,
        port: int = 22,
        key_path: Optional[Path] = None,
        password: Optional[str] = None,
        connect_timeout: float = 20.0,
        command_timeout: Optional[float] = None,
    ) -> None:
        self.host = host
        self.username = username
        self.port = port
        self.key_path = key_path
        self._password = password
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self._client: Optional[paramiko.SSHClient] = None

    def _load_key(self) -> Optional[paramiko.PKey]:
        if not self.key_path:
            return None
        if not self.key_path.is_file():
            raise ConfigError(f"SSH key not found: {self.key_path}")
        for key_cls in (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey):
            try:
                return key_cls.from_private_key_file(str(self.key_path))
            except paramiko.SSHException:
                continue
        return None

    def connect(self) -> paramiko.SSHClient:
        if self._client is not None:
            return self._client
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        pkey = self._load_key()
        try:
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                password=self._password if not pkey else None,
                pkey=pkey,
                timeout=self.connect_timeout,
                allow_agent=True,
                look_for_keys=True,
            )
        except (paramiko.SSHException, socket.error) as exc:
            client.close()
            raise TransientExternal(f"SSH connection to {self.username}@{self.host}:{self.port} failed: {exc}") from exc
        self._client = client
        return client

    def execute(self, command: RemoteCommand) -> RemoteResult:
        client = self.connect()
        log("DEBUG", f"Remote ({self.host}): {command.describe()}")
        try:
            stdin, stdout, stderr = client.exec_command(command.render(), timeout=self.command_timeout)
            if command.stdin is not None:
                stdin.write(command.stdin)
                stdin.channel.shutdown_write()
            out = stdout.read().decode()
            err = stderr.read().decode()
            rc = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, socket.error) as exc:
            self.close()
            raise TransientExternal(f"Remote command on {self.host} failed: {exc}") from exc
        return RemoteResult(rc, out, err)

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None


def is_reachable(executor: RemoteExecutor) -> bool:
    try:
        return executor.execute(RemoteCommand(["true"])).ok
    except TransientExternal as exc:
        log("DEBUG", f"Guest not reachable yet: {exc}")
        return False


def wait_until_reachable(executor: RemoteExecutor, attempts: int, interval: float) -> bool:
    return wait_until(lambda: is_reachable(executor), attempts, interval, label="guest SSH")
