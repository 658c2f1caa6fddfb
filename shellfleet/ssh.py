"""Paramiko-based remote shell transport."""

from __future__ import annotations

import socket
import threading
from dataclasses import dataclass
from pathlib import Path

import paramiko
from loguru import logger

from shellfleet.constants import COMMAND_TIMEOUT, SSH_PORT
from shellfleet.exceptions import ConnectivityError, ExecutionError
from shellfleet.types import CommandResult, Credentials


@dataclass(frozen=True, slots=True)
class SSHConfig:
    """SSH connection configuration."""

    host: str
    credentials: Credentials
    port: int = SSH_PORT
    timeout: float = 30.0


def _connect(config: SSHConfig) -> paramiko.SSHClient:
    credentials = config.credentials
    logger.debug(f"SSH: connecting to {config.host}:{config.port} ({credentials.username})")
    client = paramiko.SSHClient()
    client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    kwargs: dict = {
        "hostname": config.host,
        "port": config.port,
        "username": credentials.username,
        "timeout": config.timeout,
        "banner_timeout": config.timeout,
        "auth_timeout": config.timeout,
    }
    if credentials.key_file is not None:
        kwargs["key_filename"] = str(credentials.key_file.expanduser())
    else:
        kwargs["password"] = credentials.password
        kwargs["look_for_keys"] = False
        kwargs["allow_agent"] = False
    try:
        client.connect(**kwargs)
    except (paramiko.SSHException, OSError, socket.timeout) as e:
        client.close()
        raise ConnectivityError(config.host, str(e) or type(e).__name__) from e
    logger.debug(f"SSH: connected to {config.host}")
    return client


class ParamikoTransport:
    """Shell transport keeping one SSH connection per address and user.

    Connections are opened lazily on first use and reused until
    ``close()``.
    """

    def __init__(self, port: int = SSH_PORT, command_timeout: float = COMMAND_TIMEOUT) -> None:
        self._port = port
        self._command_timeout = command_timeout
        self._clients: dict[tuple[str, str], paramiko.SSHClient] = {}
        self._lock = threading.Lock()

    def _client(self, address: str, credentials: Credentials) -> paramiko.SSHClient:
        key = (address, credentials.username)
        with self._lock:
            client = self._clients.get(key)
            transport = client.get_transport() if client is not None else None
            if client is None or transport is None or not transport.is_active():
                client = _connect(SSHConfig(address, credentials, self._port))
                self._clients[key] = client
            return client

    def open_and_verify(self, address: str, credentials: Credentials, timeout: float) -> None:
        client = _connect(SSHConfig(address, credentials, self._port, timeout))
        client.close()

    def execute_command(self, address: str, credentials: Credentials, command: str) -> CommandResult:
        cmd_preview = command[:80] + "..." if len(command) > 80 else command
        logger.debug(f"SSH [{address}] exec: {cmd_preview}")
        client = self._client(address, credentials)
        try:
            _, stdout, stderr = client.exec_command(command, timeout=self._command_timeout)
            output = stdout.read().decode(errors="replace")
            errors = stderr.read().decode(errors="replace")
            code = stdout.channel.recv_exit_status()
        except (paramiko.SSHException, OSError) as e:
            raise ExecutionError(f"Command '{cmd_preview}' failed on {address}: {e}") from e
        logger.debug(f"SSH [{address}] exit_code={code}")
        return CommandResult(exit_status=code, output=output, stderr=errors)

    def upload_file(
        self, address: str, credentials: Credentials, local_path: Path, remote_path: str,
    ) -> None:
        client = self._client(address, credentials)
        try:
            sftp = client.open_sftp()
            try:
                sftp.put(str(local_path), remote_path)
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise ExecutionError(f"Upload {local_path} -> {address}:{remote_path} failed: {e}") from e

    def download_file(
        self,
        address: str,
        credentials: Credentials,
        remote_path: str,
        local_path: Path,
        overwrite: bool,
    ) -> None:
        if local_path.exists() and not overwrite:
            raise ExecutionError(f"Local file {local_path} already exists")
        client = self._client(address, credentials)
        try:
            local_path.parent.mkdir(parents=True, exist_ok=True)
            sftp = client.open_sftp()
            try:
                sftp.get(remote_path, str(local_path))
            finally:
                sftp.close()
        except (paramiko.SSHException, OSError) as e:
            raise ExecutionError(f"Download {address}:{remote_path} -> {local_path} failed: {e}") from e

    def close(self) -> None:
        with self._lock:
            clients = list(self._clients.values())
            self._clients.clear()
        for client in clients:
            client.close()
