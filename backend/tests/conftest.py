"""Shared test fixtures and configuration for backend tests."""
import pytest

from agentlink.agents.service import AgentHub
from agentlink.bus import InMemoryMessageBus
from agentlink.config import AppConfig
from agentlink.delay import InMemoryDelayQueue
from agentlink.store import InMemoryStateStore


class FakeClock:
    """Millisecond clock that only moves when a test advances it."""

    def __init__(self, start: int = 1_700_000_000_000) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeWebSocket:
    """Records what the server sends; optionally fails every send."""

    def __init__(self, fail: bool = False) -> None:
        self.sent = []
        self.closed = None
        self.fail = fail

    async def send_json(self, message: dict) -> None:
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return InMemoryStateStore(clock=clock)


@pytest.fixture
def bus():
    return InMemoryMessageBus()


@pytest.fixture
def queue(clock):
    return InMemoryDelayQueue(clock=clock)


@pytest.fixture
def config():
    return AppConfig(backend="memory")


@pytest.fixture
def hub(config, store, bus, queue, clock):
    """Hub on in-memory backends; background tasks are not started."""
    return AgentHub(config, store, bus, queue, clock=clock)


@pytest.fixture
def make_socket():
    """Factory for fake WebSocket connections."""
    return FakeWebSocket
