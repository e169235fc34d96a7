import pytest

from yamen_bridge.cloud import CloudSync, scan_payload
from yamen_bridge.errors import SyncError
from yamen_bridge.store import StoreError

from .conftest import run


class FakeStore:
    def __init__(self, insert_failures=0, update_failures=0):
        self.insert_failures = insert_failures
        self.update_failures = update_failures
        self.inserts = []
        self.updates = []
        self.selects = []
        self.tables = {}

    def insert(self, table, row):
        self.inserts.append((table, row))
        if self.insert_failures:
            self.insert_failures -= 1
            raise StoreError("POST scan_events: 503 Service Unavailable")
        row = dict(row)
        row.setdefault("id", len(self.inserts) * 10)
        self.tables.setdefault(table, []).append(row)
        return row

    def update(self, table, values, filters):
        self.updates.append((table, values, filters))
        if self.update_failures:
            self.update_failures -= 1
            raise StoreError("PATCH: connection reset")
        return []

    def select(self, table, filters=None, columns="*", limit=None):
        self.selects.append((table, filters))
        return list(self.tables.get(table, []))[:limit]


def make_cloud(store):
    return CloudSync(store, scan_delay=0, update_delay=0)


def test_scan_payload_shape():
    assert scan_payload(3, "04A1B2C3", True) == {
        "terminal_id": 3,
        "uid": "04A1B2C3",
        "processed": False,
        "status": "PRESENT",
        "metadata": {"secured": True, "signature_valid": True},
    }


def test_record_scan_succeeds_on_third_attempt():
    store = FakeStore(insert_failures=2)
    cloud = make_cloud(store)
    event_id = run(cloud.record_scan(scan_payload(1, "04A1B2C3", False)))
    assert event_id == 30
    assert len(store.inserts) == 3
    assert len(store.tables["scan_events"]) == 1


def test_record_scan_exhausts_retries():
    store = FakeStore(insert_failures=3)
    cloud = make_cloud(store)
    with pytest.raises(SyncError):
        run(cloud.record_scan(scan_payload(1, "04A1B2C3", False)))
    assert len(store.inserts) == 3


def test_close_scan_marks_removed():
    store = FakeStore()
    run(make_cloud(store).close_scan(55))
    assert store.updates == [
        ("scan_events", {"status": "REMOVED", "processed": True}, {"id": "eq.55"})
    ]


def test_update_scan_has_smaller_budget():
    store = FakeStore(update_failures=2)
    with pytest.raises(SyncError):
        run(make_cloud(store).update_scan(55, {"status": "REMOVED"}))
    assert len(store.updates) == 2


def test_update_scan_retries_once():
    store = FakeStore(update_failures=1)
    run(make_cloud(store).update_scan(55, {"status": "REMOVED"}))
    assert len(store.updates) == 2


def test_mark_card_secured_self_healing_filter():
    store = FakeStore()
    run(make_cloud(store).mark_card_secured("04A1B2C3", only_if_unknown=True))
    table, values, filters = store.updates[0]
    assert table == "cards"
    assert values == {"metadata": {"secured": True, "signature_valid": True}}
    assert filters == {"uid": "eq.04A1B2C3", "metadata->secured": "is.null"}


def test_mark_card_secured_with_signature():
    store = FakeStore()
    run(make_cloud(store).mark_card_secured("04A1B2C3", "59414D45" + "00" * 12))
    _, values, filters = store.updates[0]
    assert values["signature"] == "59414D45" + "00" * 12
    assert filters == {"uid": "eq.04A1B2C3"}


def test_action_status_updates():
    store = FakeStore()
    cloud = make_cloud(store)
    run(cloud.complete_action(9))
    run(cloud.fail_action(10, "Card not present"))
    (_, done, f1), (_, failed, f2) = store.updates
    assert done["status"] == "COMPLETED" and "completed_at" in done
    assert f1 == {"id": "eq.9"}
    assert failed == {"status": "FAILED", "message": "Card not present"}
    assert f2 == {"id": "eq.10"}


def test_heartbeat_failure_raises_sync_error():
    store = FakeStore(update_failures=1)
    with pytest.raises(SyncError):
        run(make_cloud(store).send_heartbeat(1, {"is_shutdown": False}))


def test_heartbeat_updates_terminal_row():
    store = FakeStore()
    run(make_cloud(store).send_heartbeat(4, {"is_shutdown": True}))
    table, values, filters = store.updates[0]
    assert table == "terminals"
    assert values["metadata"] == {"is_shutdown": True}
    assert "last_sync" in values
    assert filters == {"id": "eq.4"}


def test_ensure_terminal_existing():
    store = FakeStore()
    store.tables["terminals"] = [{"id": 4}]
    assert run(make_cloud(store).ensure_terminal(4, "Scanner-04"))
    assert store.inserts == []


def test_ensure_terminal_creates_branch_and_terminal():
    store = FakeStore()
    assert run(make_cloud(store).ensure_terminal(4, "Scanner-04"))
    assert [table for table, _ in store.inserts] == ["branches", "terminals"]
    terminal = store.inserts[1][1]
    assert terminal["id"] == 4
    assert terminal["name"] == "Scanner-04"
    assert terminal["branch_id"] == 10
    assert terminal["connection_url"] == "local://nfc-bridge"
    assert terminal["terminal_secret"]


def test_ensure_terminal_failure_is_not_fatal():
    store = FakeStore(insert_failures=1)
    store.tables["branches"] = [{"id": 2}]
    assert run(make_cloud(store).ensure_terminal(4, "Scanner-04")) is False
