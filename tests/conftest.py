import threading

import pytest

from localman import create_app
from localman.db import init_db
from localman.errors import RemoteError
from localman.event_store import EventStore
from localman.forwarder import ForwardResult
from localman.orchestrator import RelayPoller
from localman.settings_store import SettingsStore
from localman.utils.broker import CapturedCall, STATUS_RELAYED


class FakeBroker:
    """In-memory broker: calls stay pending until mark_consumed succeeds."""

    def __init__(self):
        self.calls = {}
        self.list_requests = []
        self.consumed = []
        self.list_error = None
        self.create_error = None
        self.fail_consume = set()
        # filter by created_at >= since and sort, like the real broker
        self.honor_since = False
        self._created = 0

    def add_call(self, webhook_uuid, call_uuid, status="pending", created_at=None, **fields):
        item = {
            "webhook_call_uuid": call_uuid,
            "method": "POST",
            "headers": {"Content-Type": "application/json", "Host": "broker.example.com"},
            "body": '{"event": "%s"}' % call_uuid,
            "ip": "203.0.113.7",
            "user_agent": "Stripe/1.0",
            "status": status,
            "created_at": created_at,
        }
        item.update(fields)
        self.calls.setdefault(webhook_uuid, []).append(item)

    def status_of(self, webhook_uuid, call_uuid):
        for item in self.calls.get(webhook_uuid, []):
            if item["webhook_call_uuid"] == call_uuid:
                return item["status"]
        return None

    def create_relay_endpoint(self):
        if self.create_error:
            raise self.create_error
        self._created += 1
        uuid = f"wh-{self._created}"
        return {"webhook_uuid": uuid, "webhook_url": f"https://broker.example.com/{uuid}"}

    def list_pending_calls(self, webhook_uuid, since=None, limit=50):
        self.list_requests.append((webhook_uuid, since, limit))
        if self.list_error:
            raise self.list_error
        items = self.calls.get(webhook_uuid, [])
        if self.honor_since:
            items = sorted(items, key=lambda item: item["created_at"])
            if since:
                items = [item for item in items if item["created_at"] >= since]
        return [CapturedCall.from_payload(dict(item)) for item in items[:limit]]

    def mark_consumed(self, webhook_uuid, call_uuid):
        if call_uuid in self.fail_consume:
            raise RemoteError(500, "consume failed")
        self.consumed.append(call_uuid)
        for item in self.calls.get(webhook_uuid, []):
            if item["webhook_call_uuid"] == call_uuid:
                item["status"] = STATUS_RELAYED


class FakeForwarder:
    def __init__(self):
        self.forwarded = []
        self.failing = set()
        self.entered = threading.Event()
        self.release = None

    def forward(self, call, target_url):
        self.forwarded.append((call.webhook_call_uuid, target_url))
        self.entered.set()
        if self.release is not None:
            self.release.wait(5)
        if call.webhook_call_uuid in self.failing:
            return ForwardResult(False, None, "", 1.5, "Connection refused")
        return ForwardResult(True, 200, "ok", 1.5)


@pytest.fixture
def session_factory(tmp_path):
    engine, SessionLocal = init_db(f"sqlite:///{tmp_path / 'test.sqlite'}")
    yield SessionLocal
    engine.dispose()


@pytest.fixture
def settings(session_factory):
    store = SettingsStore(session_factory)
    store.ensure_project("default")
    return store


@pytest.fixture
def events(session_factory):
    return EventStore(session_factory, retention=50)


@pytest.fixture
def broker():
    return FakeBroker()


@pytest.fixture
def forwarder():
    return FakeForwarder()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def poller(settings, events, broker, forwarder, sleeps):
    return RelayPoller(
        settings, events, broker, forwarder,
        batch_limit=50, stagger_seconds=1.0, min_interval_seconds=0, workers=4,
        sleep=sleeps.append, clock=lambda: 100.0,
    )


@pytest.fixture
def relay(settings):
    return settings.add_relay(
        "default", "wh-1", "https://broker.example.com/wh-1",
        description="orders", relay_to_url="http://myapp.test/hooks",
    )


@pytest.fixture
def capture_relay(settings):
    return settings.add_relay(
        "default", "wh-capture", "https://broker.example.com/wh-capture",
        capture_only=True,
    )


@pytest.fixture
def app(tmp_path, broker, forwarder):
    app = create_app(
        {
            "TESTING": True,
            "DATABASE_URL": f"sqlite:///{tmp_path / 'app.sqlite'}",
            "RELAY_STAGGER_SECONDS": 0,
            "MIN_POLL_INTERVAL_SECONDS": 0,
        },
        broker=broker,
        forwarder=forwarder,
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()
