import asyncio
import json

import httpx
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool
from websockets.exceptions import ConnectionClosedError, ConnectionClosedOK

from flowdesk.main import app
from flowdesk.core import models  # noqa: F401
from flowdesk.core.database import Base, get_db
from flowdesk.core.config import settings
from flowdesk.core.query.gate import SubmissionGate
from flowdesk.core.query.stream import StreamDecoder
from flowdesk.api.endpoints.query import get_stream_decoder, get_submission_gate

# Force to use a test db for tests
TEST_DATABASE_URL = settings.DATABASE_URL + "_test"

# Create an engine and session (workers) factory
test_engine = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)
TestingSessionLocal = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False
)

BACKEND_URL = "http://flowdb.test"
WS_URL = "ws://flowdb.test"
AUTH_HEADERS = {"Authorization": "Bearer test-token"}


def frame(**payload) -> str:
    return json.dumps(payload)


# =========================
# Fake websocket transport
# =========================
class FakeConnection:
    """Replays text frames; then drops the connection or waits to be closed."""

    def __init__(self, frames, hang=False):
        self.frames = list(frames)
        self.hang = hang
        self.close_calls = 0
        self.recv_calls = 0
        self._closed = asyncio.Event()

    async def recv(self):
        self.recv_calls += 1
        if self.close_calls:
            raise ConnectionClosedOK(None, None)
        if self.frames:
            return self.frames.pop(0)
        if self.hang:
            await self._closed.wait()
            raise ConnectionClosedOK(None, None)
        raise ConnectionClosedError(None, None)

    async def close(self):
        self.close_calls += 1
        self._closed.set()


class FakeConnector:
    def __init__(self, frames=(), hang=False):
        self.frames = list(frames)
        self.hang = hang
        self.locators = []
        self.connections = []

    async def __call__(self, locator):
        self.locators.append(locator)
        connection = FakeConnection(self.frames, hang=self.hang)
        self.connections.append(connection)
        return connection


# Create a db every time a test runs and drop it afterwards
@pytest_asyncio.fixture(scope="function", autouse=True)
async def set_up_db():
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield  # Tests happens here
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture(scope="function")
async def db_session():
    async with TestingSessionLocal() as session:
        yield session
        await session.rollback()
        await session.close()


# Gate whose HTTP replies come from a handler(request) -> httpx.Response
@pytest_asyncio.fixture(scope="function")
async def gate_factory():
    clients = []

    def _make(handler):
        client = httpx.AsyncClient(
            base_url=BACKEND_URL, transport=httpx.MockTransport(handler)
        )
        clients.append(client)
        return SubmissionGate(client)

    yield _make

    for client in clients:
        await client.aclose()


@pytest_asyncio.fixture(scope="function")
async def decoder_factory():
    def _make(frames=(), hang=False):
        connector = FakeConnector(frames, hang=hang)
        return StreamDecoder(ws_base=WS_URL, connector=connector), connector

    return _make


# Client wired to a fake backend; set app_backend["handler"] / ["frames"] per test
@pytest_asyncio.fixture(scope="function")
async def app_backend(db_session: AsyncSession, gate_factory, decoder_factory):
    backend = {
        "handler": lambda request: httpx.Response(200, json={"status": "no_connection"}),
        "frames": [],
        "connectors": [],
    }

    async def override_get_db():
        yield db_session

    async def override_gate():
        yield gate_factory(lambda request: backend["handler"](request))

    def override_decoder():
        decoder, connector = decoder_factory(backend["frames"])
        backend["connectors"].append(connector)
        return decoder

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_submission_gate] = override_gate
    app.dependency_overrides[get_stream_decoder] = override_decoder
    yield backend
    app.dependency_overrides.clear()


# Client
@pytest_asyncio.fixture(scope="function")
async def client(app_backend):
    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac
