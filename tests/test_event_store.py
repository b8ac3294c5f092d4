import threading

import pytest

from localman.errors import NotFound, StorageError
from localman.event_store import EventStore, Scope


def test_list_returns_newest_first(events):
    scope = Scope.relay("r1")
    for i in range(3):
        events.append(scope, {"n": i, "read": False})

    records = list(events.list(scope))

    assert [r["n"] for r in records] == [2, 1, 0]
    assert all("id" in r for r in records)


def test_list_respects_limit(events):
    scope = Scope.relay("r1")
    for i in range(5):
        events.append(scope, {"n": i})

    assert [r["n"] for r in events.list(scope, limit=2)] == [4, 3]


def test_list_on_empty_scope_is_empty(events):
    assert list(events.list(Scope.relay("nothing-here"))) == []


def test_list_is_restartable(events):
    scope = Scope.project("default")
    view = events.list(scope)
    events.append(scope, {"n": 1})
    assert len(list(view)) == 1

    events.append(scope, {"n": 2})
    assert [r["n"] for r in view] == [2, 1]


def test_scopes_are_isolated(events):
    events.append(Scope.relay("a"), {"n": 1})
    events.append(Scope.relay("b"), {"n": 2})
    events.append(Scope.project("a"), {"n": 3})

    assert [r["n"] for r in events.list(Scope.relay("a"))] == [1]
    assert [r["n"] for r in events.list(Scope.project("a"))] == [3]


def test_retention_keeps_fifty_newest(events):
    scope = Scope.relay("r1")
    for i in range(60):
        events.append(scope, {"n": i})

    records = list(events.list(scope))

    assert len(records) == 50
    assert [r["n"] for r in records] == list(range(59, 9, -1))


def test_evict_returns_deleted_count(session_factory):
    store = EventStore(session_factory, retention=100)
    scope = Scope.relay("r1")
    for i in range(8):
        store.append(scope, {"n": i})

    assert store.evict(scope, keep=5) == 3
    assert store.evict(scope, keep=5) == 0
    assert [r["n"] for r in store.list(scope)] == [7, 6, 5, 4, 3]


def test_append_rejects_unserializable_entry(events):
    scope = Scope.relay("r1")
    with pytest.raises(StorageError):
        events.append(scope, {"bad": object()})
    assert list(events.list(scope)) == []


def test_update_field_changes_record(events):
    scope = Scope.relay("r1")
    record_id = events.append(scope, {"read": False, "status": "success"})

    updated = events.update_field(scope, record_id, lambda r: r.update(read=True))

    assert updated == {"id": record_id, "read": True, "status": "success"}
    assert events.get(scope, record_id)["read"] is True


def test_update_field_missing_record(events):
    with pytest.raises(NotFound):
        events.update_field(Scope.relay("r1"), "does-not-exist", lambda r: r)


def test_update_field_wrong_scope(events):
    record_id = events.append(Scope.relay("r1"), {"read": False})
    with pytest.raises(NotFound):
        events.update_field(Scope.relay("r2"), record_id, lambda r: r)


def test_update_field_failure_keeps_previous_content(events):
    scope = Scope.relay("r1")
    record_id = events.append(scope, {"read": False, "body": "original"})

    def mutator(record):
        record["body"] = object()

    with pytest.raises(StorageError):
        events.update_field(scope, record_id, mutator)

    assert events.get(scope, record_id) == {"id": record_id, "read": False, "body": "original"}


def test_clear_removes_scope_only(events):
    events.append(Scope.relay("a"), {"n": 1})
    events.append(Scope.relay("a"), {"n": 2})
    events.append(Scope.relay("b"), {"n": 3})

    assert events.clear(Scope.relay("a")) == 2
    assert list(events.list(Scope.relay("a"))) == []
    assert len(list(events.list(Scope.relay("b")))) == 1


def test_concurrent_mark_read_and_append_never_corrupt(events):
    scope = Scope.relay("r1")
    record_id = events.append(scope, {"read": False, "body": "A" * 500, "n": -1})
    errors = []

    def toggle():
        try:
            for i in range(20):
                events.update_field(scope, record_id, lambda r, i=i: r.update(read=i % 2 == 0))
        except Exception as e:  # pragma: no cover - surfaced by the assert below
            errors.append(e)

    def append(offset):
        try:
            for i in range(10):
                events.append(scope, {"read": False, "body": "B", "n": offset + i})
        except Exception as e:  # pragma: no cover
            errors.append(e)

    threads = [threading.Thread(target=toggle)]
    threads += [threading.Thread(target=append, args=(k * 10,)) for k in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    record = events.get(scope, record_id)
    assert record["body"] == "A" * 500
    assert record["n"] == -1
    assert record["read"] is False
    assert len(list(events.list(scope))) == 41
