"""SSH transports used by the connection pool.

A transport knows how to dial a host, run one command on an established
connection, report whether the connection is still usable and close it.
The pool never touches an SSH library directly, so tests can swap in an
in-memory transport.
"""
from __future__ import annotations

import asyncio
import io
import logging
from typing import Any, Optional, Protocol

import asyncssh
import paramiko

from .errors import SessionConnectError
from .models import Credentials

_LOGGER = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 30.0
KEEPALIVE_INTERVAL = 10
KEEPALIVE_COUNT_MAX = 3

_PARAMIKO_KEY_CLASSES = (paramiko.Ed25519Key, paramiko.ECDSAKey, paramiko.RSAKey)


class ChannelBrokenError(Exception):
    """The connection died while a command was running (EOF, broken pipe)."""


class SessionTransport(Protocol):
    """Interface over dial, run, is_alive and close."""

    async def connect(self, credentials: Credentials) -> Any:
        ...

    async def run(self, handle: Any, command: str) -> str:
        ...

    def is_alive(self, handle: Any) -> bool:
        ...

    async def close(self, handle: Any) -> None:
        ...


def load_private_key(material: str, passphrase: Optional[str] = None) -> paramiko.PKey:
    """Return a paramiko key object for PEM/OpenSSH *material*."""
    last_err: Optional[Exception] = None
    for key_cls in _PARAMIKO_KEY_CLASSES:
        try:
            return key_cls.from_private_key(io.StringIO(material), password=passphrase)
        except paramiko.PasswordRequiredException as err:
            raise SessionConnectError("Private key is encrypted but no passphrase was given") from err
        except (paramiko.SSHException, ValueError) as err:
            last_err = err
    raise SessionConnectError("Unsupported or invalid private key") from last_err


class ParamikoTransport:
    """Blocking paramiko client driven from worker threads."""

    def __init__(
        self,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        keepalive_interval: int = KEEPALIVE_INTERVAL,
    ) -> None:
        self._connect_timeout = connect_timeout
        self._keepalive_interval = keepalive_interval

    def _connect(self, credentials: Credentials) -> paramiko.SSHClient:
        pkey = load_private_key(credentials.private_key, credentials.passphrase)
        ssh = paramiko.SSHClient()
        ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            ssh.connect(
                hostname=credentials.host,
                port=credentials.port,
                username=credentials.username,
                pkey=pkey,
                timeout=self._connect_timeout,
                banner_timeout=self._connect_timeout,
                auth_timeout=self._connect_timeout,
                look_for_keys=False,
                allow_agent=False,
            )
        except (paramiko.SSHException, OSError) as err:
            ssh.close()
            raise SessionConnectError(
                f"SSH connection to {credentials.host}:{credentials.port} failed: {err}"
            ) from err
        transport = ssh.get_transport()
        if transport is not None:
            transport.set_keepalive(self._keepalive_interval)
        return ssh

    def _run(self, ssh: paramiko.SSHClient, command: str) -> str:
        try:
            _, stdout, stderr = ssh.exec_command(command)
            out = stdout.read().decode("utf-8", "ignore")
            err = stderr.read().decode("utf-8", "ignore")
        except (paramiko.SSHException, EOFError, OSError) as exc:
            raise ChannelBrokenError(str(exc) or exc.__class__.__name__) from exc
        if not self.is_alive(ssh):
            # Reads return EOF when the transport drops, so partial output
            # is indistinguishable from a finished command without this.
            raise ChannelBrokenError("connection lost while the command was running")
        if err:
            _LOGGER.debug("Remote stderr: %s", err.strip())
        return out

    async def connect(self, credentials: Credentials) -> paramiko.SSHClient:
        return await asyncio.to_thread(self._connect, credentials)

    async def run(self, handle: paramiko.SSHClient, command: str) -> str:
        return await asyncio.to_thread(self._run, handle, command)

    def is_alive(self, handle: paramiko.SSHClient) -> bool:
        transport = handle.get_transport()
        return transport is not None and transport.is_active()

    async def close(self, handle: paramiko.SSHClient) -> None:
        await asyncio.to_thread(handle.close)


class AsyncSSHTransport:
    """Native asyncio transport built on asyncssh."""

    def __init__(
        self,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        keepalive_interval: int = KEEPALIVE_INTERVAL,
    ) -> None:
        self._connect_timeout = connect_timeout
        self._keepalive_interval = keepalive_interval

    async def connect(self, credentials: Credentials) -> asyncssh.SSHClientConnection:
        try:
            key = asyncssh.import_private_key(credentials.private_key, credentials.passphrase)
        except ValueError as err:
            raise SessionConnectError(f"Unsupported or invalid private key: {err}") from err
        try:
            return await asyncssh.connect(
                credentials.host,
                port=credentials.port,
                username=credentials.username,
                client_keys=[key],
                known_hosts=None,
                agent_path=None,
                connect_timeout=self._connect_timeout,
                keepalive_interval=self._keepalive_interval,
                keepalive_count_max=KEEPALIVE_COUNT_MAX,
            )
        except (asyncssh.Error, OSError, asyncio.TimeoutError) as err:
            raise SessionConnectError(
                f"SSH connection to {credentials.host}:{credentials.port} failed: {err}"
            ) from err

    async def run(self, handle: asyncssh.SSHClientConnection, command: str) -> str:
        try:
            result = await handle.run(command, check=False)
        except (asyncssh.Error, OSError) as err:
            raise ChannelBrokenError(str(err) or err.__class__.__name__) from err
        if result.stderr:
            _LOGGER.debug("Remote stderr: %s", str(result.stderr).strip())
        return str(result.stdout or "")

    def is_alive(self, handle: asyncssh.SSHClientConnection) -> bool:
        return not handle.is_closed()

    async def close(self, handle: asyncssh.SSHClientConnection) -> None:
        handle.close()
        await handle.wait_closed()


def create_transport(backend: str, connect_timeout: float = DEFAULT_CONNECT_TIMEOUT) -> SessionTransport:
    """Return the transport registered under *backend*."""
    if backend == "paramiko":
        return ParamikoTransport(connect_timeout=connect_timeout)
    if backend == "asyncssh":
        return AsyncSSHTransport(connect_timeout=connect_timeout)
    raise ValueError(f"Unknown SSH backend: {backend}")
