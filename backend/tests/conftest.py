import copy
import sys
from importlib import reload
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[2]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from backend.tracker.transport import TransportError  # noqa: E402  pylint: disable=wrong-import-position

EPOCH = 1_700_000_000.0


class ManualTimer:
    def __init__(self, when, callback):
        self.when = when
        self.callback = callback
        self.cancelled = False
        self.fired = False

    def cancel(self):
        self.cancelled = True


class ManualScheduler:
    """Scheduler and clock driven explicitly by the test."""

    def __init__(self):
        self.now = 0.0
        self._timers = []

    def time(self):
        return EPOCH + self.now

    def call_later(self, delay, callback):
        timer = ManualTimer(self.now + delay, callback)
        self._timers.append(timer)
        return timer

    @property
    def pending(self):
        return [t for t in self._timers if not t.cancelled and not t.fired]

    def advance(self, seconds):
        self.now += seconds
        while True:
            due = sorted((t for t in self.pending if t.when <= self.now), key=lambda t: t.when)
            if not due:
                return
            timer = due[0]
            timer.fired = True
            timer.callback()


class FakeTransport:
    def __init__(self):
        self.payloads = []
        self.fail = False
        self.closed = False

    @property
    def batches(self):
        return [payload["batch"] for payload in self.payloads]

    def send(self, payload):
        self.payloads.append(copy.deepcopy(payload))
        if self.fail:
            raise TransportError("connection refused")

    def send_async(self, payload, callback):
        try:
            self.send(payload)
        except TransportError as exc:
            callback(exc)
        else:
            callback(None)

    def close(self):
        self.closed = True


class DeferredTransport(FakeTransport):
    """Holds delivery callbacks until the test settles each send."""

    def __init__(self):
        super().__init__()
        self.in_flight = []

    def send_async(self, payload, callback):
        self.payloads.append(copy.deepcopy(payload))
        self.in_flight.append(callback)

    def settle(self, index, error=None):
        self.in_flight[index](error)


@pytest.fixture
def scheduler():
    return ManualScheduler()


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def deferred_transport():
    return DeferredTransport()


@pytest.fixture
def app_module(tmp_path, monkeypatch):
    db_path = tmp_path / "monitor.db"
    monkeypatch.setenv("MONITOR_DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("MONITOR_ANALYZE_RATE_LIMIT", "2")
    monkeypatch.setenv("MONITOR_ANALYZE_RATE_WINDOW", "60")
    monkeypatch.setenv("MONITOR_SNAPSHOT_WINDOW_DAYS", "7")
    monkeypatch.delenv("MONITOR_JWT_JWKS_URL", raising=False)

    from backend.monitor import database

    reload(database)

    from backend.monitor import main

    reload(main)
    main.reset_application_state()

    yield main

    main.reset_application_state()


@pytest.fixture
def db(app_module):
    from backend.monitor import database

    with database.SessionLocal() as session:
        yield session


@pytest.fixture
def make_event():
    def _make_event(
        session_id="sess-1",
        category="interaction",
        action="click_void",
        data=None,
        user_id="user-1",
        device="desktop",
        page="/catalog",
        timestamp=1_700_000_000_000,
    ):
        return {
            "timestamp": timestamp,
            "sessionId": session_id,
            "userId": user_id,
            "page": page,
            "category": category,
            "action": action,
            "data": data or {},
            "viewport": {"width": 1280, "height": 800},
            "device": device,
        }

    return _make_event


@pytest.fixture
def make_batch(make_event):
    from backend.monitor import schemas

    def _make_batch(events=None, session_id="sess-1", user_id="user-1", size=None, with_meta=True):
        if events is None:
            events = [make_event(session_id=session_id, user_id=user_id) for _ in range(size or 1)]
        body = {"batch": events}
        if with_meta:
            body["sessionMeta"] = {
                "sessionId": session_id,
                "userId": user_id,
                "userAgent": "pytest",
                "screenResolution": "1920x1080",
                "language": "en-US",
                "referrer": "",
            }
        return schemas.BatchIn.model_validate(body)

    return _make_batch
