import asyncio
import enum
import logging
import os
from typing import Protocol

import asyncssh

from .config import AppConfig
from .models import HostDescriptor

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_COMMAND_TIMEOUT = 30.0
SSH_BINARY = "ssh"


class FailureKind(str, enum.Enum):
    CONNECTION_FAILED = "connection-failed"
    EXECUTION_FAILED = "execution-failed"


class ExecutorError(Exception):
    """A remote command could not be completed."""

    kind: FailureKind
    label = "Remote execution failed"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def __str__(self) -> str:
        return f"{self.label}: {self.message}"


class ConnectionFailedError(ExecutorError):
    """Session could not be established or kept, or the remote command exited non-zero."""

    kind = FailureKind.CONNECTION_FAILED
    label = "Connection failed"


class ExecutionFailedError(ExecutorError):
    """The transport could not be invoked locally."""

    kind = FailureKind.EXECUTION_FAILED
    label = "Execution failed"


class RemoteExecutor(Protocol):
    connect_timeout: float

    async def execute(self, command: str, host: HostDescriptor) -> bytes: ...


def _failure_output(stdout: bytes | str | None, stderr: bytes | str | None) -> str:
    """Merge both streams of a failed command into one diagnostic message."""
    parts = []
    for stream in (stdout, stderr):
        if not stream:
            continue
        if isinstance(stream, bytes):
            stream = stream.decode("utf-8", errors="replace")
        parts.append(stream.strip())
    output = "\n".join(p for p in parts if p)
    return output or "SSH connection failed"


def parse_proxy_jump(proxy_jump: str | None) -> list[tuple[str | None, str, int]]:
    """Split an ssh -J style relay list into (user, host, port) hops.

    Accepts comma-separated ``[user@]host[:port]`` entries, with ``[addr]:port``
    for IPv6 addresses.
    """
    hops = []
    for hop in (proxy_jump or "").split(","):
        hop = hop.strip()
        if not hop:
            continue
        user = None
        if "@" in hop:
            user, hop = hop.rsplit("@", 1)
        port = 22
        if hop.startswith("["):
            address, _, rest = hop[1:].partition("]")
            hop = address
            if rest.startswith(":") and rest[1:]:
                port = int(rest[1:])
        elif hop.count(":") == 1:
            hop, port_str = hop.split(":")
            port = int(port_str)
        hops.append((user or None, hop, port))
    return hops


class AsyncSSHExecutor:
    """Run commands through asyncssh, hopping through each ``proxy_jump`` relay when set."""

    def __init__(
        self,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        known_hosts: str | None = None,
    ):
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.known_hosts = known_hosts

    def _client_keys(self) -> list[asyncssh.SSHKey] | None:
        # Without SSH_PRIVATE_KEY asyncssh falls back to ~/.ssh keys and the agent
        private_key_str = os.environ.get("SSH_PRIVATE_KEY")
        if not private_key_str:
            return None
        return [asyncssh.import_private_key(private_key_str)]

    def _connect_kwargs(self, port: int, username: str | None, client_keys: list | None) -> dict:
        # Every hop, relay or target, gets the same timeout, host-key and key settings
        connect_kwargs = {
            "port": port,
            "known_hosts": self.known_hosts,
            "connect_timeout": self.connect_timeout,
        }
        if username:
            connect_kwargs["username"] = username
        if client_keys is not None:
            connect_kwargs["client_keys"] = client_keys
        return connect_kwargs

    async def execute(self, command: str, host: HostDescriptor) -> bytes:
        logger.info("Running command on '%s' (%s): %s", host.display_name, host.connection_string, command)

        try:
            client_keys = self._client_keys()
        except (asyncssh.KeyImportError, ValueError) as e:
            logger.exception("Failed to import private key")
            raise ExecutionFailedError(f"Failed to import private key: {e}") from e

        try:
            relays = parse_proxy_jump(host.proxy_jump)
        except ValueError as e:
            raise ExecutionFailedError(f"Invalid proxy jump '{host.proxy_jump}': {e}") from e
        relay_conns = []
        conn = None
        try:
            # --- Connect through the relay chain, one hop at a time ---
            for relay_user, relay_host, relay_port in relays:
                connect = relay_conns[-1].connect_ssh if relay_conns else asyncssh.connect
                relay_conns.append(
                    await connect(relay_host, **self._connect_kwargs(relay_port, relay_user, client_keys))
                )
                logger.debug("Connected to relay '%s' for '%s'.", relay_host, host.display_name)

            connect = relay_conns[-1].connect_ssh if relay_conns else asyncssh.connect
            conn = await connect(host.hostname, **self._connect_kwargs(host.port, host.user, client_keys))
            logger.debug("Connection established to '%s'.", host.display_name)

            result = await asyncio.wait_for(
                conn.run(command, check=False, encoding=None), timeout=self.command_timeout
            )
            logger.debug("Command finished on '%s' with exit code %s", host.display_name, result.exit_status)
        except asyncssh.Error as e:
            logger.warning("SSH error for '%s': %s", host.display_name, e)
            raise ConnectionFailedError(f"SSH Error: {e}") from e
        except TimeoutError as e:
            logger.warning("SSH command or connection timed out for '%s'", host.display_name)
            raise ConnectionFailedError("SSH command or connection timed out") from e
        except OSError as e:
            logger.warning("Could not connect to '%s': %s", host.display_name, e)
            raise ConnectionFailedError(str(e) or type(e).__name__) from e
        finally:
            # Ensure connections are closed, target first
            for open_conn in [conn, *reversed(relay_conns)]:
                if open_conn:
                    open_conn.close()
                    await open_conn.wait_closed()

        if result.exit_status != 0:
            raise ConnectionFailedError(_failure_output(result.stdout, result.stderr))
        return result.stdout or b""


class OpenSSHExecutor:
    """Run commands by spawning the local ``ssh`` client, so ~/.ssh/config applies in full."""

    def __init__(
        self,
        connect_timeout: float = DEFAULT_CONNECT_TIMEOUT,
        command_timeout: float = DEFAULT_COMMAND_TIMEOUT,
        strict_host_key_checking: bool = False,
        ssh_binary: str = SSH_BINARY,
    ):
        self.connect_timeout = connect_timeout
        self.command_timeout = command_timeout
        self.strict_host_key_checking = strict_host_key_checking
        self.ssh_binary = ssh_binary

    def build_arguments(self, command: str, host: HostDescriptor) -> list[str]:
        arguments = [
            "-o", f"ConnectTimeout={max(1, int(self.connect_timeout))}",
            "-o", "ServerAliveInterval=5",
            "-o", "ServerAliveCountMax=3",
            "-o", f"StrictHostKeyChecking={'yes' if self.strict_host_key_checking else 'no'}",
            "-o", "BatchMode=yes",
            "-p", str(host.port),
        ]  # fmt: skip
        if host.proxy_jump:
            arguments += ["-J", host.proxy_jump]
        arguments.append(f"{host.user}@{host.hostname}" if host.user else host.hostname)
        arguments.append(command)
        return arguments

    async def execute(self, command: str, host: HostDescriptor) -> bytes:
        arguments = self.build_arguments(command, host)
        logger.info("Running command on '%s' (%s): %s", host.display_name, host.connection_string, command)

        try:
            process = await asyncio.create_subprocess_exec(
                self.ssh_binary,
                *arguments,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            logger.exception("Could not start %s", self.ssh_binary)
            raise ExecutionFailedError(str(e) or type(e).__name__) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.connect_timeout + self.command_timeout
            )
        except TimeoutError as e:
            process.kill()
            await process.wait()
            logger.warning("ssh to '%s' timed out", host.display_name)
            raise ConnectionFailedError("SSH command or connection timed out") from e

        if process.returncode != 0:
            logger.warning("ssh to '%s' exited with %s", host.display_name, process.returncode)
            raise ConnectionFailedError(_failure_output(stdout, stderr))
        return stdout or b""


def build_executor(settings: AppConfig) -> RemoteExecutor:
    """Create the executor selected by ``settings.transport``."""
    if settings.transport == "openssh":
        return OpenSSHExecutor(
            connect_timeout=settings.connect_timeout_sec,
            command_timeout=settings.command_timeout_sec,
            strict_host_key_checking=settings.strict_host_key_checking,
        )
    return AsyncSSHExecutor(
        connect_timeout=settings.connect_timeout_sec,
        command_timeout=settings.command_timeout_sec,
        known_hosts=settings.known_hosts,
    )
