"""Shared test fixtures and configuration for backend tests.

Every test gets its own in-process redis (fakeredis) so rooms, counters and
rate-limit buckets never leak between tests. Setting ``fake_server.connected
= False`` makes every command fail the way an unreachable redis would.
"""
import fakeredis
import pytest
from fastapi.testclient import TestClient

from pairlink.config import AppSettings
from pairlink.services import build_services, set_services
from pairlink.signaling.connection import Connection, ConnectionRegistry
from pairlink.store import StateStore

SHARED_SECRET = "test-shared-secret"
START = 1_700_000_000.0


class FakeClock:
    """Manually advanced clock, injectable wherever ``time.time`` is."""

    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWebSocket:
    """Records frames sent to it instead of writing to a socket."""

    def __init__(self, fail: bool = False):
        self.sent = []
        self.closed = None
        self.fail = fail

    async def send_json(self, message):
        if self.fail or self.closed is not None:
            raise RuntimeError("socket closed")
        self.sent.append(message)

    async def close(self, code: int = 1000, reason: str = ""):
        self.closed = (code, reason)

    def of_type(self, type_):
        return [m for m in self.sent if m.get("type") == type_]


def make_settings(**overrides) -> AppSettings:
    data = {
        "turn": {"server_url": "turn.example.com"},
        "reaper": {"enabled": False},
        "secrets": {"turn": {"shared_secret": SHARED_SECRET}},
    }
    for section, values in overrides.items():
        data.setdefault(section, {}).update(values)
    return AppSettings(**data)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def fake_server():
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(fake_server):
    return fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True)


@pytest.fixture
def store(redis_client):
    return StateStore(redis_client)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def services(settings, store, clock):
    return build_services(settings, store=store, clock=clock)


@pytest.fixture
def registry(services) -> ConnectionRegistry:
    return services.registry


@pytest.fixture
def connect(registry):
    """Factory registering a local connection backed by a FakeWebSocket."""
    def _connect(user_id=None, origin="10.0.0.1"):
        conn = Connection(FakeWebSocket(), origin=origin, user_id=user_id)
        registry.register(conn)
        return conn
    return _connect


@pytest.fixture
def api_client(settings, fake_server):
    """TestClient over the real app, wired to the test's fakeredis server.

    The services are installed before the client starts so the lifespan
    reuses them instead of connecting to a real redis. The app runs on its
    own event loop, so it gets its own fakeredis client on the shared server.
    """
    from pairlink.main import app

    app_store = StateStore(fakeredis.FakeAsyncRedis(server=fake_server, decode_responses=True))
    app_services = build_services(settings, store=app_store)
    set_services(app_services)
    try:
        with TestClient(app) as client:
            client.services = app_services
            yield client
    finally:
        set_services(None)
