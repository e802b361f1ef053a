"""Unit tests for the in-memory hierarchical store."""

from __future__ import annotations

import json
import threading
import time
from typing import List

import pytest

from datastore.base import InvalidPathError, StoreEvent, TransactionConflict
from datastore.mock_rtdb import MockRealtimeDatabase


def test_set_and_get_returns_deep_copy() -> None:
    store = MockRealtimeDatabase(name="test")
    store.set("devices/d1/state", {"lastSeen": 100, "online": True})

    fetched = store.get("devices/d1/state")
    fetched["lastSeen"] = 999

    assert store.get("devices/d1/state/lastSeen") == 100
    assert store.get("devices/d1") == {"state": {"lastSeen": 100, "online": True}}


def test_get_missing_path_returns_none() -> None:
    store = MockRealtimeDatabase(name="test")

    assert store.get("devices/unknown/state") is None


def test_deleting_last_child_prunes_empty_parents() -> None:
    store = MockRealtimeDatabase(name="test")
    store.set("devices/d1/pushTokens/abc", True)

    store.delete("devices/d1/pushTokens/abc")

    assert store.get("devices") is None


def test_none_children_are_not_stored() -> None:
    store = MockRealtimeDatabase(name="test")
    store.set("devices/d1/state", {"lastSeen": 5, "offlineSince": None})

    assert store.get("devices/d1/state") == {"lastSeen": 5}


def test_reserved_characters_in_keys_are_rejected() -> None:
    store = MockRealtimeDatabase(name="test")

    with pytest.raises(InvalidPathError):
        store.set("devices/bad.id/state", 1)


def test_guarded_update_applies_all_writes_atomically() -> None:
    store = MockRealtimeDatabase(name="test")
    store.set("devices/d1/state/offlineSince", 0)

    store.update(
        {"devices/d1/state/offlineSince": 50, "devices/d1/notifications/n1": {"ts": 50}},
        expected={"devices/d1/state/offlineSince": 0},
    )

    assert store.get("devices/d1/state/offlineSince") == 50
    assert store.get("devices/d1/notifications/n1") == {"ts": 50}


def test_guarded_update_conflict_writes_nothing() -> None:
    store = MockRealtimeDatabase(name="test")
    store.set("devices/d1/state/offlineSince", 10)

    with pytest.raises(TransactionConflict) as excinfo:
        store.update(
            {"devices/d1/state/offlineSince": 50, "devices/d1/notifications/n1": {"ts": 50}},
            expected={"devices/d1/state/offlineSince": 0},
        )

    assert excinfo.value.path == "devices/d1/state/offlineSince"
    assert store.get("devices/d1/state/offlineSince") == 10
    assert store.get("devices/d1/notifications") is None


def test_guard_on_absent_path_expects_none() -> None:
    store = MockRealtimeDatabase(name="test")

    store.update({"devices/d1/latch": {"outOfRange": True}}, expected={"devices/d1/latch": None})

    with pytest.raises(TransactionConflict):
        store.update({"devices/d1/latch": {"outOfRange": False}}, expected={"devices/d1/latch": None})


def test_generated_keys_are_unique_and_chronological() -> None:
    ticks = iter([1000, 1000, 1000, 2000])
    store = MockRealtimeDatabase(name="test", clock=lambda: next(ticks))

    keys = [store.generate_key() for _ in range(4)]

    assert len(set(keys)) == 4
    assert all(len(key) == 20 for key in keys)
    assert keys == sorted(keys)


def test_push_appends_under_generated_key() -> None:
    store = MockRealtimeDatabase(name="test")

    key = store.push("devices/d1/notifications", {"title": "hi"})

    assert store.get(f"devices/d1/notifications/{key}") == {"title": "hi"}


def test_query_orders_by_child_and_applies_bounds() -> None:
    store = MockRealtimeDatabase(name="test")
    store.set(
        "devices/d1/doseRuns",
        {
            "a": {"ts": 30},
            "b": {"ts": 10},
            "c": {"ts": 20},
            "d": {"ts": 40},
        },
    )

    assert [key for key, _ in store.query("devices/d1/doseRuns", order_by="ts")] == [
        "b",
        "c",
        "a",
        "d",
    ]
    assert [
        key for key, _ in store.query("devices/d1/doseRuns", order_by="ts", end_at=30, limit=2)
    ] == ["b", "c"]
    assert [
        key for key, _ in store.query("devices/d1/doseRuns", order_by="ts", start_at=25)
    ] == ["a", "d"]


def test_query_sorts_missing_fields_first() -> None:
    store = MockRealtimeDatabase(name="test")
    store.set("devices/d1/notifications", {"x": {"ts": 5}, "y": {"title": "no ts"}})

    assert [key for key, _ in store.query("devices/d1/notifications", order_by="ts")] == ["y", "x"]


def test_persists_to_disk_and_reloads(tmp_path) -> None:
    path = tmp_path / "rtdb.json"
    store = MockRealtimeDatabase(name="test", persistence_path=path)
    store.set("devices/d1/state/lastSeen", 123)

    payload = json.loads(path.read_text())
    assert payload == {"devices": {"d1": {"state": {"lastSeen": 123}}}}

    reloaded = MockRealtimeDatabase(name="test", persistence_path=path)
    assert reloaded.get("devices/d1/state/lastSeen") == 123


def test_unreadable_snapshot_starts_empty(tmp_path) -> None:
    path = tmp_path / "rtdb.json"
    path.write_text("{not json")

    store = MockRealtimeDatabase(name="test", persistence_path=path)

    assert store.get("devices") is None


def test_subscribe_reports_created_and_updated_paths() -> None:
    store = MockRealtimeDatabase(name="test")
    events: List[StoreEvent] = []
    store.subscribe("devices/{deviceId}/notifications/{notifId}", events.append)

    store.set("devices/d1/notifications/n1", {"title": "a"})
    store.set("devices/d1/notifications/n1/pushedAt", 5)

    assert [event.path for event in events] == [
        "devices/d1/notifications/n1",
        "devices/d1/notifications/n1",
    ]
    assert events[0].created is True
    assert events[0].params == {"deviceId": "d1", "notifId": "n1"}
    assert events[1].created is False
    assert events[1].after == {"title": "a", "pushedAt": 5}


def test_subscribe_expands_writes_above_pattern_depth() -> None:
    store = MockRealtimeDatabase(name="test")
    store.set("devices/d1/sensors/pH", 8.0)
    events: List[StoreEvent] = []
    store.subscribe("devices/{deviceId}/sensors/{sensorKey}", events.append)

    store.set("devices/d1/sensors", {"tempF": 78.0})

    by_key = {event.params["sensorKey"]: event for event in events}
    assert set(by_key) == {"pH", "tempF"}
    assert by_key["pH"].deleted is True
    assert by_key["tempF"].created is True


def test_unchanged_writes_emit_nothing_and_unsubscribe_stops_events() -> None:
    store = MockRealtimeDatabase(name="test")
    events: List[StoreEvent] = []
    unsubscribe = store.subscribe("devices/{deviceId}/sensors/{sensorKey}", events.append)

    store.set("devices/d1/sensors/pH", 8.0)
    store.set("devices/d1/sensors/pH", 8.0)
    unsubscribe()
    store.set("devices/d1/sensors/pH", 9.0)

    assert len(events) == 1


def test_events_are_delivered_in_commit_order_across_writers() -> None:
    store = MockRealtimeDatabase(name="test")
    delivered = []
    first_event_started = threading.Event()

    def listener(event) -> None:
        if event.after == 7.0:
            first_event_started.set()
            time.sleep(0.2)
        delivered.append(event.after)

    store.subscribe("devices/{deviceId}/sensors/{sensorKey}", listener)
    writer = threading.Thread(target=store.set, args=("devices/d1/sensors/pH", 7.0))
    writer.start()
    assert first_event_started.wait(timeout=5)

    store.set("devices/d1/sensors/pH", 9.0)
    writer.join(timeout=5)

    assert delivered == [7.0, 9.0]


def test_listener_writes_are_delivered_after_the_triggering_event() -> None:
    store = MockRealtimeDatabase(name="test")
    delivered = []

    def listener(event) -> None:
        delivered.append(event.path)
        if event.params["sensorKey"] == "pH":
            store.set("devices/d1/sensors/orp", 300)

    store.subscribe("devices/{deviceId}/sensors/{sensorKey}", listener)
    store.set("devices/d1/sensors/pH", 7.0)

    assert delivered == ["devices/d1/sensors/pH", "devices/d1/sensors/orp"]
