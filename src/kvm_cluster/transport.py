"""
SSH transport layer for cluster operations.

This module handles the readiness scan that waits for freshly booted instances
to accept SSH, the known_hosts bookkeeping that goes with it, and the remote
command sessions used by the bootstrap.
"""

import asyncio
import os
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, List, Optional, Tuple

import paramiko

from .exceptions import (
    AuthenticationError,
    ConnectionError,
    RemoteCommandError,
    SSHError,
    TimeoutError,
)
from .logging import logger
from .security import CommandBuilder


def known_hosts_entry(host: str, port: int = 22) -> str:
    """Host name as OpenSSH and paramiko write it: ``[host]:port`` off port 22."""
    if port == 22:
        return host
    return f"[{host}]:{port}"


class KnownHostsStore:
    """known_hosts file whose writers are serialized by an asyncio lock."""

    def __init__(self, path: str = "~/.ssh/known_hosts") -> None:
        self.path = os.path.expanduser(path)
        self._lock = asyncio.Lock()

    def _replace(self, entry: str, key: paramiko.PKey) -> None:
        host_keys = paramiko.HostKeys()
        if os.path.exists(self.path):
            host_keys.load(self.path)
        # A re-created instance reuses its address with a new key
        if entry in host_keys:
            del host_keys[entry]
        host_keys.add(entry, key.get_name(), key)
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)
        host_keys.save(self.path)

    async def add(self, host: str, key: paramiko.PKey, port: int = 22) -> None:
        entry = known_hosts_entry(host, port)
        async with self._lock:
            await asyncio.get_running_loop().run_in_executor(None, self._replace, entry, key)
        logger.debug(f"Recorded host key for {entry}", host=host, port=port, key_type=key.get_name())

    def lookup(self, host: str, port: int = 22) -> Optional[paramiko.PKey]:
        if not os.path.exists(self.path):
            return None
        host_keys = paramiko.HostKeys(self.path)
        entry = host_keys.lookup(known_hosts_entry(host, port))
        if not entry:
            return None
        return next(iter(entry.values()), None)


class HostKeyCapturePolicy(paramiko.MissingHostKeyPolicy):
    """Accepts the first key offered and keeps it. One instance per scan attempt."""

    def __init__(self) -> None:
        self.key: Optional[paramiko.PKey] = None

    def missing_host_key(self, client: paramiko.SSHClient, hostname: str, key: paramiko.PKey) -> None:
        self.key = key


def dial_host_key(
    host: str, port: int, username: str, key_path: Optional[str], timeout: float
) -> paramiko.PKey:
    """Authenticate once against ``host`` and return the key it presented."""
    client = paramiko.SSHClient()
    policy = HostKeyCapturePolicy()
    client.set_missing_host_key_policy(policy)
    try:
        client.connect(
            hostname=host,
            port=port,
            username=username,
            key_filename=key_path,
            timeout=timeout,
            banner_timeout=timeout,
            auth_timeout=timeout,
            allow_agent=key_path is None,
            look_for_keys=key_path is None,
        )
        key = policy.key or client.get_transport().get_remote_server_key()
    finally:
        client.close()
    return key


class SSHReadinessChecker:
    """
    Waits until an instance accepts key authentication over SSH.

    Refused connections, banner errors and other network failures are retried
    up to ``max_attempts`` times with ``interval`` seconds in between. An
    authentication failure means cloud-init installed a different key, so it
    is raised immediately.
    """

    def __init__(
        self,
        known_hosts: KnownHostsStore,
        key_path: Optional[str] = None,
        username: str = "root",
        port: int = 22,
        max_attempts: int = 60,
        interval: float = 2.0,
        connect_timeout: float = 10.0,
        dialer: Optional[Callable[..., paramiko.PKey]] = None,
    ) -> None:
        self.known_hosts = known_hosts
        self.key_path = os.path.expanduser(key_path) if key_path else None
        self.username = username
        self.port = port
        self.max_attempts = max_attempts
        self.interval = interval
        self.connect_timeout = connect_timeout
        self.dialer = dialer or dial_host_key

    async def wait(self, host: str) -> paramiko.PKey:
        loop = asyncio.get_running_loop()
        last_error: Optional[Exception] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                key = await loop.run_in_executor(
                    None,
                    self.dialer,
                    host,
                    self.port,
                    self.username,
                    self.key_path,
                    self.connect_timeout,
                )
            except paramiko.AuthenticationException as e:
                logger.error(f"SSH authentication rejected by {host}", host=host)
                raise AuthenticationError(str(e), host)
            except (paramiko.SSHException, OSError) as e:
                last_error = e
                logger.debug(
                    f"SSH not ready on {host}: {e}",
                    host=host,
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                )
                if attempt < self.max_attempts:
                    await asyncio.sleep(self.interval)
                continue

            await self.known_hosts.add(host, key, self.port)
            logger.info(f"SSH ready on {host}", host=host, attempt=attempt)
            return key

        raise ConnectionError(
            f"SSH not reachable after {self.max_attempts} attempts: {last_error}", host
        )


class SSHConnection:
    """Represents a single SSH session against a known host."""

    def __init__(
        self,
        host: str,
        port: int = 22,
        username: str = "root",
        key_path: Optional[str] = None,
        known_hosts_file: Optional[str] = None,
        timeout: int = 30,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.key_path = os.path.expanduser(key_path) if key_path else None
        self.known_hosts_file = os.path.expanduser(known_hosts_file) if known_hosts_file else None
        self.timeout = timeout
        self.client: Optional[paramiko.SSHClient] = None

    async def connect(self) -> None:
        client = paramiko.SSHClient()
        # Host keys are recorded by the readiness scan; anything else is rejected
        client.set_missing_host_key_policy(paramiko.RejectPolicy())
        if self.known_hosts_file and os.path.exists(self.known_hosts_file):
            client.load_host_keys(self.known_hosts_file)

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                lambda: client.connect(
                    hostname=self.host,
                    port=self.port,
                    username=self.username,
                    key_filename=self.key_path,
                    timeout=self.timeout,
                    allow_agent=self.key_path is None,
                    look_for_keys=self.key_path is None,
                ),
            )
        except paramiko.AuthenticationException as e:
            client.close()
            raise AuthenticationError(str(e), self.host)
        except paramiko.SSHException as e:
            client.close()
            raise SSHError(str(e), self.host, "connection")
        except OSError as e:
            client.close()
            raise ConnectionError(str(e), self.host)

        self.client = client
        logger.debug(
            f"SSH connection established to {self.host}:{self.port} as {self.username}",
            host=self.host,
        )

    async def execute_command(
        self, command: str, timeout: Optional[int] = None
    ) -> Tuple[bytes, int]:
        """Run ``command`` on a pty and return combined output and exit status."""
        if not self.client:
            raise SSHError("Not connected", self.host, "command_execution")

        loop = asyncio.get_running_loop()
        cmd_timeout = timeout or self.timeout
        try:
            _stdin, stdout, _stderr = await loop.run_in_executor(
                None, lambda: self.client.exec_command(command, get_pty=True)
            )
            output = await asyncio.wait_for(
                loop.run_in_executor(None, stdout.read), timeout=cmd_timeout
            )
            exit_code = await loop.run_in_executor(None, stdout.channel.recv_exit_status)
        except asyncio.TimeoutError:
            logger.error(
                f"Command execution timed out on {self.host}", host=self.host, timeout=cmd_timeout
            )
            raise TimeoutError("Command execution timed out", "command_execution", cmd_timeout)
        except paramiko.SSHException as e:
            raise SSHError(str(e), self.host, "command_execution")

        return output, exit_code

    async def run_commands(self, commands: List[str], timeout: Optional[int] = None) -> bytes:
        """
        Run a command batch in one session.

        Raises:
            RemoteCommandError: If the batch exits non-zero
        """
        output, exit_code = await self.execute_command(CommandBuilder.join(commands), timeout)
        if exit_code != 0:
            tail = output.decode("utf-8", errors="replace").strip()[-500:]
            raise RemoteCommandError(tail, self.host, exit_code)
        return output

    async def close(self) -> None:
        if self.client:
            self.client.close()
            self.client = None


class SSHTransport:
    """Opens one SSH session per command batch."""

    def __init__(
        self,
        key_path: Optional[str] = None,
        username: str = "root",
        port: int = 22,
        known_hosts_file: Optional[str] = None,
        timeout: int = 1800,
    ):
        self.key_path = key_path
        self.username = username
        self.port = port
        self.known_hosts_file = known_hosts_file
        self.timeout = timeout

    @asynccontextmanager
    async def connect(self, host: str) -> AsyncIterator[SSHConnection]:
        connection = SSHConnection(
            host=host,
            port=self.port,
            username=self.username,
            key_path=self.key_path,
            known_hosts_file=self.known_hosts_file,
            timeout=self.timeout,
        )
        await connection.connect()
        try:
            yield connection
        finally:
            await connection.close()

    async def run(self, host: str, commands: List[str]) -> bytes:
        """Run ``commands`` joined with ``; `` on ``host`` and return raw output."""
        logger.debug(f"Running {len(commands)} commands on {host}", host=host)
        async with self.connect(host) as conn:
            return await conn.run_commands(commands)
