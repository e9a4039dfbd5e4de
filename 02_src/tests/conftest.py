"""Pytest configuration and fixtures."""

import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import httpx
import pytest
import pytest_asyncio

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))


class FakeClock:
    """Controllable replacement for ``utcnow``."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


class WebhookEndpoint:
    """Simulated tenant endpoint behind ``httpx.MockTransport``.

    Answers with the queued status codes in order, then ``default_status``.
    """

    def __init__(self, default_status: int = 200):
        self.default_status = default_status
        self.statuses: list[int | Exception] = []
        self.requests: list[httpx.Request] = []

    def respond_with(self, *statuses: int | Exception) -> None:
        self.statuses.extend(statuses)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else self.default_status
        if isinstance(status, Exception):
            raise status
        return httpx.Response(status, text="ok" if status < 400 else "error")


class RecordingSocket:
    """Stands in for a client socket; records every pushed frame."""

    def __init__(self, fail: bool = False):
        self.frames: list[dict] = []
        self.fail = fail
        self.closed = False

    async def send(self, frame: dict) -> None:
        if self.fail:
            raise ConnectionError("socket closed")
        self.frames.append(frame)

    async def close(self) -> None:
        self.closed = True

    def events(self) -> list[str]:
        return [f["event"] for f in self.frames]


@pytest.fixture
def clock():
    """Fixed, manually advanced clock."""
    return FakeClock()


@pytest_asyncio.fixture
async def storage():
    """Create in-memory storage for testing."""
    from eventhub.storage import Storage

    st = Storage(":memory:")
    await st.init()
    yield st
    await st.close()


@pytest_asyncio.fixture
async def broker():
    """In-memory broker with the default queue topology declared."""
    from eventhub.broker import InMemoryBroker, default_queues

    br = InMemoryBroker()
    for spec in default_queues():
        await br.declare_queue(spec)
    yield br
    await br.stop()


@pytest.fixture
def endpoint():
    """Simulated webhook endpoint answering 200 by default."""
    return WebhookEndpoint()


@pytest_asyncio.fixture
async def http_client(endpoint):
    """HTTP client wired to the simulated endpoint."""
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint.handler))
    yield client
    await client.aclose()


@pytest.fixture
def dispatcher(storage, http_client, clock):
    """Webhook dispatcher with a mocked HTTP transport and fake clock."""
    from eventhub.webhooks import WebhookDispatcher

    return WebhookDispatcher(storage, http_client=http_client, clock=clock)


@pytest.fixture
def make_subscription():
    """Factory for webhook subscriptions."""
    from eventhub.models import RetryPolicy, WebhookSubscription

    def _make(**overrides) -> WebhookSubscription:
        values = {
            "id": str(uuid.uuid4()),
            "tenant_id": "T1",
            "url": "https://hooks.example.com/hrm",
            "secret": "s3cret",
            "events": ["leave.*"],
            "name": "HR integration",
            "retry_policy": RetryPolicy(max_retries=3, initial_delay=5.0, backoff_multiplier=2.0),
        }
        values.update(overrides)
        return WebhookSubscription(**values)

    return _make


@pytest.fixture
def fanout_hub():
    """Shared in-process fan-out hub."""
    from eventhub.realtime import InMemoryFanoutHub

    return InMemoryFanoutHub()


@pytest.fixture
def presence():
    """Shared in-memory presence index."""
    from eventhub.realtime import InMemoryPresenceIndex

    return InMemoryPresenceIndex()


@pytest_asyncio.fixture
async def make_gateway(fanout_hub, presence, clock):
    """Factory for gateways sharing one fan-out hub and presence index."""
    from eventhub.realtime import RealtimeGateway

    gateways = []

    async def _make(instance_id: str, publisher=None):
        gateway = RealtimeGateway(
            instance_id=instance_id,
            presence=presence,
            fanout=fanout_hub.channel(),
            publisher=publisher,
            heartbeat_interval=3600,
            heartbeat_timeout=60,
            clock=clock,
        )
        await gateway.start()
        gateways.append(gateway)
        return gateway

    yield _make

    for gateway in gateways:
        await gateway.stop()


@pytest.fixture
def connect():
    """Register a client on a gateway; returns (connection, socket)."""
    from eventhub.models import ClientIdentity
    from eventhub.realtime import Connection

    async def _connect(gateway, user_id: str, tenant_id: str = "T1", role: str = "employee", fail: bool = False):
        socket = RecordingSocket(fail=fail)
        connection = Connection(send=socket.send, on_close=socket.close)
        await gateway.register(
            connection, ClientIdentity(user_id=user_id, tenant_id=tenant_id, role=role)
        )
        return connection, socket

    return _connect
