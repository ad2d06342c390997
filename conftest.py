from __future__ import annotations

import itertools

import orjson
import pytest
import pytest_asyncio
from websockets.protocol import State

from dmrelay.core.delivery import DeliveryCoordinator
from dmrelay.core.registry import ConnectionRegistry
from dmrelay.core.store import Database, MessageStore, UserDirectory
from dmrelay.server.runtime import Session


class FakeWebSocket:
    """Stands in for a server connection: records what was sent, can be 'closed'."""

    _ports = itertools.count(50000)

    def __init__(self) -> None:
        self.state = State.OPEN
        self.sent: list[str] = []
        self.close_args: tuple[int, str] | None = None
        self.remote_address = ("127.0.0.1", next(self._ports))

    async def send(self, text: str) -> None:
        self.sent.append(text)

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.state = State.CLOSED
        self.close_args = (code, reason)

    def frames(self) -> list[dict]:
        return [orjson.loads(t) for t in self.sent]


@pytest.fixture
def make_session():
    def _make() -> Session:
        ws = FakeWebSocket()
        return Session(websocket=ws, remote=f"{ws.remote_address[0]}:{ws.remote_address[1]}")
    return _make


@pytest_asyncio.fixture
async def db():
    database = Database(":memory:")
    await database.open()
    try:
        yield database
    finally:
        await database.close()


@pytest.fixture
def users(db):
    return UserDirectory(db)


@pytest.fixture
def messages(db):
    return MessageStore(db)


@pytest.fixture
def registry():
    return ConnectionRegistry()


@pytest.fixture
def coordinator(registry, users, messages):
    return DeliveryCoordinator(registry, users, messages)
