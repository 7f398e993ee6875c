"""Test fixtures — isolated relay instances and fake client channels.

Learn: Every test gets its own app (and so its own registry and
dispatcher) with the simulator switched off, so nothing publishes
unless the test does. FakeChannel stands in for a WebSocket: it records
every frame it is asked to send and can be told to fail.
"""

import json

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from feedrelay.config import Settings
from feedrelay.main import create_app
from feedrelay.realtime import BroadcastDispatcher, SubscriptionRegistry


class FakeChannel:
    """Records decoded frames; raises or reports closed on demand."""

    def __init__(self, fail: bool = False, is_open: bool = True):
        self.fail = fail
        self.is_open = is_open
        self.frames: list[dict] = []
        self.closed = False

    async def send(self, data: str) -> bool:
        if self.fail:
            raise ConnectionResetError("socket gone")
        self.frames.append(json.loads(data))
        return True

    async def close(self) -> None:
        self.closed = True
        self.is_open = False

    def of_type(self, message_type: str) -> list[dict]:
        return [f for f in self.frames if f["type"] == message_type]


@pytest.fixture()
def settings():
    return Settings(simulator_enabled=False, log_level="WARNING")


@pytest.fixture()
def app(settings):
    return create_app(settings)


@pytest.fixture()
def registry():
    return SubscriptionRegistry()


@pytest.fixture()
def dispatcher(registry):
    return BroadcastDispatcher(registry)


@pytest.fixture()
def channel_factory():
    """Build FakeChannels: channel_factory(fail=True) for a broken one."""
    return FakeChannel


@pytest_asyncio.fixture()
async def client(app):
    """HTTP client bound to an isolated app instance."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
