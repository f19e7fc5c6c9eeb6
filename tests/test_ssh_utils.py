import asyncio
from types import SimpleNamespace

import asyncssh
import pytest

from gpueye import ssh_utils
from gpueye.config import AppConfig
from gpueye.models import HostDescriptor
from gpueye.ssh_utils import (
    AsyncSSHExecutor,
    ConnectionFailedError,
    ExecutionFailedError,
    FailureKind,
    OpenSSHExecutor,
    build_executor,
)

HOST = HostDescriptor(name="trainer", hostname="gpu1.example.org", port=2222, user="ml", proxy_jump="bastion")


class FakeConnection:
    def __init__(self, result=None, delay: float = 0.0):
        self.result = result
        self.delay = delay
        self.commands = []
        self.closed = False
        self.target = None
        self.tunnelled = []

    async def run(self, command, check=False, encoding="utf-8"):
        self.commands.append((command, encoding))
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.result

    async def connect_ssh(self, hostname, **kwargs):
        self.tunnelled.append((hostname, kwargs))
        return self.target or self

    def close(self):
        self.closed = True

    async def wait_closed(self):
        pass


@pytest.fixture
def no_private_key(monkeypatch):
    monkeypatch.delenv("SSH_PRIVATE_KEY", raising=False)


def patch_connect(monkeypatch, conn=None, error=None):
    calls = []

    async def fake_connect(hostname, **kwargs):
        calls.append((hostname, kwargs))
        if error is not None:
            raise error
        return conn

    monkeypatch.setattr(ssh_utils.asyncssh, "connect", fake_connect)
    return calls


class TestErrors:
    def test_kinds_and_messages(self):
        assert ConnectionFailedError("refused").kind is FailureKind.CONNECTION_FAILED
        assert ExecutionFailedError("no ssh").kind is FailureKind.EXECUTION_FAILED
        assert FailureKind.CONNECTION_FAILED == "connection-failed"
        assert str(ConnectionFailedError("refused")) == "Connection failed: refused"
        assert str(ExecutionFailedError("no ssh")) == "Execution failed: no ssh"
        assert ExecutionFailedError("no ssh").message == "no ssh"


@pytest.mark.usefixtures("no_private_key")
class TestAsyncSSHExecutor:
    @pytest.mark.asyncio
    async def test_success_returns_stdout(self, monkeypatch):
        relay = FakeConnection()
        target = FakeConnection(SimpleNamespace(exit_status=0, stdout=b"0,GPU\n", stderr=b"warning"))
        relay.target = target
        calls = patch_connect(monkeypatch, relay)

        output = await AsyncSSHExecutor(connect_timeout=7).execute("nvidia-smi", HOST)

        assert output == b"0,GPU\n"
        assert target.commands == [("nvidia-smi", None)]
        assert target.closed and relay.closed
        hostname, kwargs = relay.tunnelled[0]
        assert hostname == "gpu1.example.org"
        assert kwargs["port"] == 2222
        assert kwargs["username"] == "ml"
        assert kwargs["connect_timeout"] == 7
        assert "client_keys" not in kwargs
        assert [hostname for hostname, _ in calls] == ["bastion"]

    @pytest.mark.asyncio
    async def test_relay_hop_gets_timeout_and_host_key_settings(self, monkeypatch):
        relay = FakeConnection()
        relay.target = FakeConnection(SimpleNamespace(exit_status=0, stdout=b"", stderr=b""))
        calls = patch_connect(monkeypatch, relay)
        host = HostDescriptor(hostname="gpu1.example.org", proxy_jump="jump@bastion.example.org:2200")

        await AsyncSSHExecutor(connect_timeout=3, known_hosts="/etc/gpueye/known_hosts").execute("true", host)

        relay_host, relay_kwargs = calls[0]
        assert relay_host == "bastion.example.org"
        assert relay_kwargs["connect_timeout"] == 3
        assert relay_kwargs["known_hosts"] == "/etc/gpueye/known_hosts"
        assert relay_kwargs["port"] == 2200
        assert relay_kwargs["username"] == "jump"
        assert "tunnel" not in relay_kwargs
        _, target_kwargs = relay.tunnelled[0]
        assert target_kwargs["connect_timeout"] == 3
        assert target_kwargs["port"] == 22

    @pytest.mark.asyncio
    async def test_relay_hop_gets_private_key(self, monkeypatch):
        key = object()
        monkeypatch.setenv("SSH_PRIVATE_KEY", "key material")
        monkeypatch.setattr(ssh_utils.asyncssh, "import_private_key", lambda data: key)
        relay = FakeConnection(SimpleNamespace(exit_status=0, stdout=b"", stderr=b""))
        calls = patch_connect(monkeypatch, relay)

        await AsyncSSHExecutor().execute("true", HOST)

        assert calls[0][1]["client_keys"] == [key]
        assert relay.tunnelled[0][1]["client_keys"] == [key]

    @pytest.mark.asyncio
    async def test_unreachable_relay_is_connection_failure(self, monkeypatch):
        patch_connect(monkeypatch, error=TimeoutError())
        with pytest.raises(ConnectionFailedError, match="timed out"):
            await AsyncSSHExecutor(connect_timeout=1).execute("nvidia-smi", HOST)

    @pytest.mark.asyncio
    async def test_relay_chain_hops_in_order(self, monkeypatch):
        first = FakeConnection()
        second = FakeConnection()
        target = FakeConnection(SimpleNamespace(exit_status=0, stdout=b"", stderr=b""))
        first.target = second
        second.target = target
        calls = patch_connect(monkeypatch, first)
        host = HostDescriptor(hostname="gpu1.example.org", proxy_jump="edge, inner:2022")

        await AsyncSSHExecutor().execute("true", host)

        assert [hostname for hostname, _ in calls] == ["edge"]
        assert first.tunnelled[0][0] == "inner"
        assert first.tunnelled[0][1]["port"] == 2022
        assert second.tunnelled[0][0] == "gpu1.example.org"
        assert first.closed and second.closed and target.closed

    @pytest.mark.asyncio
    async def test_direct_connection_has_no_tunnel(self, monkeypatch):
        conn = FakeConnection(SimpleNamespace(exit_status=0, stdout=b"", stderr=b""))
        calls = patch_connect(monkeypatch, conn)
        await AsyncSSHExecutor().execute("true", HostDescriptor(hostname="gpu2"))
        _, kwargs = calls[0]
        assert "tunnel" not in kwargs
        assert "username" not in kwargs

    @pytest.mark.asyncio
    async def test_non_zero_exit_combines_output(self, monkeypatch):
        conn = FakeConnection(SimpleNamespace(exit_status=127, stdout=b"", stderr=b"nvidia-smi: not found\n"))
        patch_connect(monkeypatch, conn)
        with pytest.raises(ConnectionFailedError) as exc_info:
            await AsyncSSHExecutor().execute("nvidia-smi", HOST)
        assert exc_info.value.message == "nvidia-smi: not found"
        assert conn.closed

    @pytest.mark.asyncio
    async def test_non_zero_exit_without_output(self, monkeypatch):
        patch_connect(monkeypatch, FakeConnection(SimpleNamespace(exit_status=1, stdout=b"", stderr=b"")))
        with pytest.raises(ConnectionFailedError, match="SSH connection failed"):
            await AsyncSSHExecutor().execute("false", HOST)

    @pytest.mark.asyncio
    async def test_ssh_error(self, monkeypatch):
        patch_connect(monkeypatch, error=asyncssh.ConnectionLost("connection lost"))
        with pytest.raises(ConnectionFailedError, match="SSH Error"):
            await AsyncSSHExecutor().execute("nvidia-smi", HOST)

    @pytest.mark.asyncio
    async def test_socket_error(self, monkeypatch):
        patch_connect(monkeypatch, error=ConnectionRefusedError(111, "Connection refused"))
        with pytest.raises(ConnectionFailedError, match="Connection refused"):
            await AsyncSSHExecutor().execute("nvidia-smi", HOST)

    @pytest.mark.asyncio
    async def test_command_timeout(self, monkeypatch):
        conn = FakeConnection(SimpleNamespace(exit_status=0, stdout=b"", stderr=b""), delay=1)
        patch_connect(monkeypatch, conn)
        with pytest.raises(ConnectionFailedError, match="timed out"):
            await AsyncSSHExecutor(command_timeout=0.01).execute("sleep 1", HOST)
        assert conn.closed

    @pytest.mark.asyncio
    async def test_bad_private_key_is_execution_failure(self, monkeypatch):
        monkeypatch.setenv("SSH_PRIVATE_KEY", "definitely not a key")
        calls = patch_connect(monkeypatch, FakeConnection())
        with pytest.raises(ExecutionFailedError, match="private key"):
            await AsyncSSHExecutor().execute("nvidia-smi", HOST)
        assert calls == []


class FakeProcess:
    def __init__(self, returncode=0, stdout=b"", stderr=b"", delay: float = 0.0):
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr
        self.delay = delay
        self.killed = False

    async def communicate(self):
        if self.delay:
            await asyncio.sleep(self.delay)
        return self._stdout, self._stderr

    def kill(self):
        self.killed = True

    async def wait(self):
        return self.returncode


def patch_subprocess(monkeypatch, process):
    calls = []

    async def fake_exec(*args, **kwargs):
        calls.append(args)
        return process

    monkeypatch.setattr(ssh_utils.asyncio, "create_subprocess_exec", fake_exec)
    return calls


class TestOpenSSHExecutor:
    def test_build_arguments(self):
        executor = OpenSSHExecutor(connect_timeout=5)
        arguments = executor.build_arguments("nvidia-smi", HOST)
        assert "ConnectTimeout=5" in arguments
        assert "StrictHostKeyChecking=no" in arguments
        assert arguments[arguments.index("-p") + 1] == "2222"
        assert arguments[arguments.index("-J") + 1] == "bastion"
        assert arguments[-2:] == ["ml@gpu1.example.org", "nvidia-smi"]

    def test_build_arguments_without_user_or_relay(self):
        arguments = OpenSSHExecutor(strict_host_key_checking=True).build_arguments("ls", HostDescriptor(hostname="gpu2"))
        assert "-J" not in arguments
        assert "StrictHostKeyChecking=yes" in arguments
        assert arguments[-2:] == ["gpu2", "ls"]

    @pytest.mark.asyncio
    async def test_success_returns_stdout_only(self, monkeypatch):
        calls = patch_subprocess(monkeypatch, FakeProcess(stdout=b"0,GPU\n", stderr=b"banner"))
        output = await OpenSSHExecutor().execute("nvidia-smi", HOST)
        assert output == b"0,GPU\n"
        assert calls[0][0] == "ssh"

    @pytest.mark.asyncio
    async def test_failure_combines_streams(self, monkeypatch):
        patch_subprocess(monkeypatch, FakeProcess(returncode=255, stdout=b"partial", stderr=b"Permission denied"))
        with pytest.raises(ConnectionFailedError) as exc_info:
            await OpenSSHExecutor().execute("nvidia-smi", HOST)
        assert exc_info.value.message == "partial\nPermission denied"

    @pytest.mark.asyncio
    async def test_timeout_kills_process(self, monkeypatch):
        process = FakeProcess(delay=1)
        patch_subprocess(monkeypatch, process)
        with pytest.raises(ConnectionFailedError, match="timed out"):
            await OpenSSHExecutor(connect_timeout=0.01, command_timeout=0.01).execute("nvidia-smi", HOST)
        assert process.killed

    @pytest.mark.asyncio
    async def test_missing_binary_is_execution_failure(self):
        executor = OpenSSHExecutor(ssh_binary="/nonexistent/bin/ssh-gpueye")
        with pytest.raises(ExecutionFailedError):
            await executor.execute("nvidia-smi", HOST)


@pytest.mark.parametrize(
    "proxy_jump, hops",
    [
        (None, []),
        ("bastion", [(None, "bastion", 22)]),
        ("jump@bastion:2200", [("jump", "bastion", 2200)]),
        ("edge, ops@inner:2022", [(None, "edge", 22), ("ops", "inner", 2022)]),
        ("[fd00::1]:2200", [(None, "fd00::1", 2200)]),
        ("fd00::1", [(None, "fd00::1", 22)]),
    ],
)
def test_parse_proxy_jump(proxy_jump, hops):
    assert ssh_utils.parse_proxy_jump(proxy_jump) == hops


@pytest.mark.usefixtures("no_private_key")
@pytest.mark.asyncio
async def test_bad_relay_port_is_execution_failure(monkeypatch):
    calls = patch_connect(monkeypatch, FakeConnection())
    host = HostDescriptor(hostname="gpu1.example.org", proxy_jump="bastion:ssh")
    with pytest.raises(ExecutionFailedError, match="Invalid proxy jump"):
        await AsyncSSHExecutor().execute("true", host)
    assert calls == []


def test_build_executor_selects_transport():
    assert isinstance(build_executor(AppConfig()), AsyncSSHExecutor)

    executor = build_executor(AppConfig(transport="openssh", connect_timeout_sec=4, strict_host_key_checking=True))
    assert isinstance(executor, OpenSSHExecutor)
    assert executor.connect_timeout == 4
    assert executor.strict_host_key_checking
