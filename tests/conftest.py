"""
pytest configuration and shared fakes
"""
import asyncio

import pytest

from gpueye.models import HostDescriptor
from gpueye.ssh_utils import ConnectionFailedError

GPU_ROW_0 = "0, NVIDIA GeForce RTX 3090, 65, 100.5, 250.0, 4096, 8192, 50, 40"
GPU_ROW_1 = "1, NVIDIA GeForce RTX 3090, 70, 200.0, 350.0, 1024, 24576, 5, 3"


class FakeExecutor:
    """In-memory executor: maps hostname to output bytes or an exception."""

    def __init__(self, responses=None, delay: float = 0.0):
        self.responses = dict(responses or {})
        self.delay = delay
        self.connect_timeout = 10.0
        self.calls: list[tuple[str, str]] = []
        self.active = 0
        self.max_active = 0

    async def execute(self, command, host):
        self.calls.append((command, host.hostname))
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            response = self.responses.get(host.hostname, ConnectionFailedError("ssh: connect to host refused"))
            if isinstance(response, Exception):
                raise response
            return response
        finally:
            self.active -= 1

    def call_count(self, hostname: str) -> int:
        return sum(1 for _, name in self.calls if name == hostname)


async def wait_until(predicate, timeout: float = 2.0, step: float = 0.01):
    """Poll ``predicate`` until it holds; fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError(f"condition not met within {timeout} seconds")
        await asyncio.sleep(step)


@pytest.fixture
def host_a():
    return HostDescriptor(id="host-a", name="alpha", hostname="alpha.example.org")


@pytest.fixture
def host_b():
    return HostDescriptor(id="host-b", name="beta", hostname="beta.example.org", user="ml", port=2222)


@pytest.fixture
def fake_executor():
    return FakeExecutor(
        {
            "alpha.example.org": f"{GPU_ROW_1}\n{GPU_ROW_0}\n".encode(),
            "beta.example.org": f"{GPU_ROW_0}\n".encode(),
        }
    )
