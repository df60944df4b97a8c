"""SSH session used to learn the operator's identity on a remote host."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional, Tuple

import paramiko
from pydantic import BaseModel

from .errors import TransportError

logger = logging.getLogger(__name__)


class SshSessionConfig(BaseModel):
    hostname: str
    port: int = 22
    username: str
    password: Optional[str] = None
    private_key_path: Optional[Path] = None
    timeout: float = 30.0


class SshClient:
    """Minimal paramiko wrapper; connect, run a command, close."""

    def __init__(self, config: SshSessionConfig, client: Optional[paramiko.SSHClient] = None) -> None:
        self.config = config
        self._client = client

    def connect(self) -> "SshClient":
        if self._client is not None:
            return self
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        conn_kwargs = {
            "hostname": self.config.hostname,
            "port": self.config.port,
            "username": self.config.username,
            "timeout": self.config.timeout,
        }
        if self.config.password:
            conn_kwargs["password"] = self.config.password
        if self.config.private_key_path:
            conn_kwargs["key_filename"] = str(self.config.private_key_path)

        logger.info(f"Connecting to {self.config.username}@{self.config.hostname}:{self.config.port}")
        try:
            client.connect(**conn_kwargs)
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise TransportError(f"SSH connection to {self.config.hostname} failed: {exc}") from exc
        self._client = client
        return self

    def run(self, command: str) -> str:
        if self._client is None:
            self.connect()
        try:
            _, stdout, stderr = self._client.exec_command(command, timeout=self.config.timeout)
            exit_code = stdout.channel.recv_exit_status()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
        except (paramiko.SSHException, OSError) as exc:
            raise TransportError(f"SSH command '{command}' failed: {exc}") from exc
        if exit_code != 0:
            raise TransportError(f"SSH command '{command}' exited with {exit_code}: {err.strip()}")
        return out

    def get_user_uid_gid(self) -> Tuple[str, str]:
        uid = self.run("id -u").strip()
        gid = self.run("id -g").strip()
        if not uid.isdigit() or not gid.isdigit():
            raise TransportError(f"Unexpected id output from remote host: uid={uid!r} gid={gid!r}")
        return uid, gid

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def __enter__(self) -> "SshClient":
        return self.connect()

    def __exit__(self, *exc_info) -> None:
        self.close()
