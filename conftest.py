"""
Pytest configuration and fixtures for the crawling agent tests.
"""

import asyncio
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import pytest

from app.agent.config.settings import AgentSettings
from app.agent.connection.transport import OutboundMessage, Transport
from app.agent.core.exceptions import TransportError
from app.agent.core.types import TransportMode
from app.agent.pool.host import InMemoryHost
from app.agent.storage.store import MemoryStore
from app.schema.messages import AgentDescriptor, Heartbeat, JobResult, RegisterResponse

_END_OF_STREAM = object()


class FakeTransport(Transport):
    """Scripted transport that records everything the agent sends"""

    def __init__(self, mode: TransportMode = TransportMode.HTTP):
        self.mode = mode
        self.sent: List[OutboundMessage] = []
        self.registrations: List[str] = []
        self.descriptors: List[AgentDescriptor] = []
        self.deleted: List[str] = []
        self.pending_jobs: List[Dict[str, Any]] = []
        self.fetch_calls = 0
        self.opened = 0
        self.closed = 0

        self.fail_open = 0
        self.fail_sends = False
        self.fail_delete = False
        self.fail_registers = 0
        self.register_delay = 0.0

        self._frames: "asyncio.Queue[Any]" = asyncio.Queue()
        self._close_code: Optional[int] = None

    async def open(self) -> None:
        self.opened += 1
        if self.fail_open > 0:
            self.fail_open -= 1
            raise TransportError("connection refused")
        self._frames = asyncio.Queue()
        self._close_code = None

    async def register(self, agent_id: str, descriptor: AgentDescriptor) -> RegisterResponse:
        self.registrations.append(agent_id)
        self.descriptors.append(descriptor)
        rejected = self.fail_registers > 0
        if rejected:
            self.fail_registers -= 1
        if self.register_delay:
            await asyncio.sleep(self.register_delay)
        if rejected:
            raise TransportError("registration rejected")
        return RegisterResponse(agent_id=agent_id, server_id="server-1")

    async def send(self, message: OutboundMessage) -> None:
        if self.fail_sends:
            raise TransportError("send failed")
        self.sent.append(message)

    async def fetch_pending_jobs(self, agent_id: str) -> List[Dict[str, Any]]:
        self.fetch_calls += 1
        jobs, self.pending_jobs = self.pending_jobs, []
        return jobs

    async def messages(self) -> AsyncIterator[Any]:
        while True:
            frame = await self._frames.get()
            if frame is _END_OF_STREAM:
                return
            if isinstance(frame, Exception):
                raise frame
            yield frame

    @property
    def close_code(self) -> Optional[int]:
        return self._close_code

    async def delete_agent(self, agent_id: str) -> None:
        if self.fail_delete:
            raise TransportError("delete failed")
        self.deleted.append(agent_id)

    async def close(self) -> None:
        self.closed += 1
        if self._close_code is None:
            self._close_code = 1000
        self._frames.put_nowait(_END_OF_STREAM)

    # Server-side controls

    def push(self, frame: Any) -> None:
        self._frames.put_nowait(frame)

    def server_close(self, code: int) -> None:
        self._close_code = code
        self._frames.put_nowait(_END_OF_STREAM)

    def receive_error(self, message: str = "socket reset") -> None:
        self._close_code = 1006
        self._frames.put_nowait(TransportError(message))

    def results(self) -> List[JobResult]:
        return [message for message in self.sent if isinstance(message, JobResult)]

    def heartbeats(self) -> List[Heartbeat]:
        return [message for message in self.sent if isinstance(message, Heartbeat)]


def make_settings(**overrides: Any) -> AgentSettings:
    """Settings with millisecond-scale timings"""
    values: Dict[str, Any] = {
        "environment": "test",
        "store_backend": "memory",
        "pool_size": 3,
        "health_check_interval_seconds": 60.0,
        "ready_poll_interval_ms": 5,
        "settle_delay_ms": 0,
        "heartbeat_interval_seconds": 0.05,
        "poll_interval_ms": 50,
        "reconnect_base_delay_seconds": 0.01,
        "reconnect_backoff_multiplier": 1.5,
        "reconnect_max_delay_seconds": 0.05,
        "heartbeat_failure_reconnect_delay_seconds": 0.05,
        "force_reconnect_delay_seconds": 0.01,
        "max_connection_attempts": 10,
        "search_url_template": "https://search.example.com/search?query={query}",
        "json_logs": False,
    }
    values.update(overrides)
    return AgentSettings(**values)


async def _wait_until(predicate: Callable[[], bool], timeout: float = 2.0, interval: float = 0.005) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


@pytest.fixture
def settings() -> AgentSettings:
    """Provide fast test settings."""
    return make_settings()


@pytest.fixture
def settings_factory() -> Callable[..., AgentSettings]:
    """Provide a factory for test settings with overrides."""
    return make_settings


@pytest.fixture
def store() -> MemoryStore:
    """Provide an empty in-memory store."""
    return MemoryStore()


@pytest.fixture
def host() -> InMemoryHost:
    """Provide an in-memory resource host whose pages load in 20ms."""
    return InMemoryHost(load_delay=0.02)


@pytest.fixture
def transport() -> FakeTransport:
    """Provide a scripted polling transport."""
    return FakeTransport(TransportMode.HTTP)


@pytest.fixture
def ws_transport() -> FakeTransport:
    """Provide a scripted websocket transport."""
    return FakeTransport(TransportMode.WEBSOCKET)


@pytest.fixture
def wait_until() -> Callable[..., Any]:
    """Provide a helper that polls a predicate until it holds."""
    return _wait_until
