import itertools

from backend.tracker.identity import (
    SESSION_KEY,
    USER_KEY,
    FileStorage,
    IdentityStore,
    MemoryStorage,
    generate_id,
)


class BrokenStorage:
    def get(self, key):
        raise OSError("storage disabled")

    def set(self, key, value):
        raise OSError("storage disabled")


class Clock:
    def __init__(self, start=1_700_000_000.0):
        self.now = start

    def __call__(self):
        return self.now


def _ids():
    counter = itertools.count(1)
    return lambda: f"id-{next(counter)}"


def test_generate_id_shape():
    value = generate_id()
    parts = value.split("-")

    assert len(parts) == 3
    assert all(len(part) == 4 for part in parts)


def test_session_is_reused_within_timeout_and_counts_page_views():
    clock = Clock()
    visit = MemoryStorage()
    store = IdentityStore(visit=visit, clock=clock, id_factory=_ids())

    first = store.get_or_create_session()
    clock.now += 10 * 60
    second = store.get_or_create_session()

    assert second.id == first.id
    assert second.page_views == 2
    assert second.started_at == first.started_at
    assert second.last_activity == int(clock.now * 1000)


def test_session_rotates_after_idle_timeout():
    clock = Clock()
    store = IdentityStore(clock=clock, session_timeout=30.0, id_factory=_ids())

    first = store.get_or_create_session()
    clock.now += 31 * 60
    second = store.get_or_create_session()

    assert second.id != first.id
    assert second.page_views == 1


def test_user_survives_sessions_in_persistent_storage():
    clock = Clock()
    persistent = MemoryStorage()
    ids = _ids()

    user = IdentityStore(persistent=persistent, clock=clock, id_factory=ids).get_or_create_user()
    clock.now += 3600
    again = IdentityStore(persistent=persistent, clock=clock, id_factory=ids).get_or_create_user()

    assert again.id == user.id
    assert again.first_seen == user.first_seen
    assert again.total_sessions == 2
    assert again.last_seen == int(clock.now * 1000)


def test_save_user_persists_event_totals():
    persistent = MemoryStorage()
    store = IdentityStore(persistent=persistent, clock=Clock())
    user = store.get_or_create_user()
    user.total_events = 12
    store.save_user(user)

    reloaded = IdentityStore(persistent=persistent, clock=Clock()).get_or_create_user()
    assert reloaded.total_events == 12


def test_unavailable_storage_falls_back_to_memory():
    store = IdentityStore(persistent=BrokenStorage(), visit=BrokenStorage(), clock=Clock(), id_factory=_ids())

    session = store.get_or_create_session()
    user = store.get_or_create_user()

    assert session.id == "id-1"
    assert user.id == "id-2"
    assert store.get_or_create_session().id == session.id


def test_unreadable_stored_state_is_replaced():
    visit = MemoryStorage()
    visit.set(SESSION_KEY, "{not json")
    persistent = MemoryStorage()
    persistent.set(USER_KEY, '{"id": "u"}')

    store = IdentityStore(persistent=persistent, visit=visit, clock=Clock(), id_factory=_ids())

    assert store.get_or_create_session().page_views == 1
    assert store.get_or_create_user().id != "u"


def test_file_storage_round_trip(tmp_path):
    path = tmp_path / "state" / "tracker.json"
    FileStorage(path).set(USER_KEY, "value")

    assert FileStorage(path).get(USER_KEY) == "value"
    assert FileStorage(path).get(SESSION_KEY) is None


def test_corrupt_file_storage_degrades_to_memory(tmp_path):
    path = tmp_path / "tracker.json"
    path.write_text("[]", encoding="utf-8")
    store = IdentityStore(persistent=FileStorage(path), clock=Clock(), id_factory=_ids())

    user = store.get_or_create_user()

    assert user.id == "id-1"
    assert path.read_text(encoding="utf-8") == "[]"
