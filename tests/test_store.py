import pytest

from hostel_store import ASCENDING, DESCENDING, NOTIFICATIONS, ROOMS, USERS, BaseStore, InMemoryStore
from hostel_system import Conflict, NotFound, ValidationError


def test_in_memory_store_satisfies_protocol(store):
    assert isinstance(store, BaseStore)


def test_create_get_and_copy_isolation(store):
    rid = store.create(ROOMS, {"number": "101", "floor": "1", "status": "available"})
    doc = store.get(ROOMS, rid)
    assert doc["id"] == rid
    assert doc["number"] == "101"

    doc["status"] = "occupied"
    assert store.get(ROOMS, rid)["status"] == "available"
    assert store.get(ROOMS, "missing") is None


def test_query_predicates_and_ordering(store):
    for number, floor, status in [("201", "2", "available"), ("101", "1", "occupied"), ("102", "1", "available")]:
        store.create(ROOMS, {"number": number, "floor": floor, "status": status})

    available = store.query(ROOMS, [("status", "==", "available")], order_by=[("number", ASCENDING)])
    assert [d["number"] for d in available] == ["102", "201"]

    both = store.query(ROOMS, [("status", "in", ["available", "occupied"])], order_by=[("floor", ASCENDING), ("number", DESCENDING)])
    assert [d["number"] for d in both] == ["102", "101", "201"]

    with pytest.raises(ValidationError):
        store.query(ROOMS, [("capacity", ">", 1)])


def test_conditional_update_is_compare_and_set(store):
    rid = store.create(ROOMS, {"number": "101", "occupancy": 0})

    assert store.update(ROOMS, rid, {"occupancy": 1}, expect=[("occupancy", "==", 0)]) is True
    # a second writer holding the stale value loses
    assert store.update(ROOMS, rid, {"occupancy": 1}, expect=[("occupancy", "==", 0)]) is False
    assert store.get(ROOMS, rid)["occupancy"] == 1

    with pytest.raises(NotFound):
        store.update(ROOMS, "missing", {"occupancy": 1})


def test_missing_field_matches_none(store):
    sid = store.create(USERS, {"name": "A", "email": "a@example.com"})
    assert store.update(USERS, sid, {"roomId": "r1"}, expect=[("roomId", "==", None)]) is True
    assert store.update(USERS, sid, {"roomId": "r2"}, expect=[("roomId", "==", None)]) is False


def test_unique_fields_enforced(store):
    store.create(USERS, {"name": "A", "email": "a@example.com"})
    with pytest.raises(Conflict) as exc:
        store.create(USERS, {"name": "B", "email": "a@example.com"})
    assert exc.value.reason == "duplicate_email"

    r1 = store.create(ROOMS, {"number": "101"})
    store.create(ROOMS, {"number": "102"})
    with pytest.raises(Conflict):
        store.update(ROOMS, r1, {"number": "102"})


def test_conditional_delete(store):
    rid = store.create(ROOMS, {"number": "101", "occupancy": 1})
    assert store.delete(ROOMS, rid, expect=[("occupancy", "==", 0)]) is False
    store.update(ROOMS, rid, {"occupancy": 0})
    assert store.delete(ROOMS, rid, expect=[("occupancy", "==", 0)]) is True
    with pytest.raises(NotFound):
        store.delete(ROOMS, rid)


def test_watch_yields_snapshots_after_writes():
    store = InMemoryStore()
    feed = store.watch(NOTIFICATIONS, [("target", "in", ["s1", "all"])])

    assert next(feed) == []
    store.create(NOTIFICATIONS, {"target": "s1", "title": "t"})
    assert [d["target"] for d in next(feed)] == ["s1"]
    store.create(NOTIFICATIONS, {"target": "s2", "title": "other"})
    assert [d["target"] for d in next(feed)] == ["s1"]

    feed.close()
    store.create(NOTIFICATIONS, {"target": "all", "title": "after close"})
    assert store._watchers == []


def test_unknown_collection_rejected(store):
    with pytest.raises(ValidationError):
        store.create("widgets", {"a": 1})


def test_watch_keeps_only_latest_snapshot_for_slow_reader():
    store = InMemoryStore()
    feed = store.watch(ROOMS)
    assert next(feed) == []

    for n in range(50):
        store.create(ROOMS, {"number": str(100 + n)})

    (_, _, pending) = store._watchers[0]
    assert pending.qsize() == 1
    assert len(next(feed)) == 50
    feed.close()
