"""
Tests for the sync state database (SQLite backend)
"""

import pytest

from database import SyncDB


@pytest.fixture
def db(tmp_path):
    return SyncDB(str(tmp_path / "sync.db"))


def test_state_roundtrip(db):
    assert db.get_state("cursor") is None
    db.set_state("cursor", "500")
    db.set_state("cursor", "id:10432")
    assert db.get_state("cursor") == "id:10432"


def test_lease_is_exclusive_until_released(db):
    assert db.acquire_lease("kintone-users", "host-a", 60) is True
    assert db.acquire_lease("kintone-users", "host-b", 60) is False
    # The holder can renew its own lease
    assert db.acquire_lease("kintone-users", "host-a", 60) is True

    db.release_lease("kintone-users", "host-a")
    assert db.get_lease("kintone-users") is None
    assert db.acquire_lease("kintone-users", "host-b", 60) is True


def test_expired_lease_can_be_taken_over(db):
    assert db.acquire_lease("kintone-users", "crashed-host", -1) is True
    lease = db.get_lease("kintone-users")
    assert lease["expired"] is True

    assert db.acquire_lease("kintone-users", "host-b", 60) is True
    assert db.get_lease("kintone-users")["holder"] == "host-b"


def test_release_by_other_holder_keeps_lease(db):
    db.acquire_lease("kintone-users", "host-a", 60)
    db.release_lease("kintone-users", "host-b")
    assert db.get_lease("kintone-users")["holder"] == "host-a"


def test_activity_lifecycle(db):
    first = db.start_activity("kintone_users_sync", "0")
    db.complete_activity(first, {"processed": 10, "created": 4, "skipped": 6}, "10", "created 4, skipped 6")
    second = db.start_activity("kintone_users_sync", "10")
    db.fail_activity(second, "kintone API error 503")

    activities = db.list_activities()

    assert [a["id"] for a in activities] == [second, first]
    assert activities[0]["status"] == "failed"
    assert activities[0]["summary"] == "kintone API error 503"
    assert activities[1]["status"] == "completed"
    assert activities[1]["processed"] == 10
    assert activities[1]["created"] == 4
    assert activities[1]["updated"] == 0
    assert activities[1]["next_cursor"] == "10"


def test_log_sync_operation(db):
    db.log_sync_operation("scheduled_sync", None, "success", "created 1")
    rows = db.fetchall("SELECT operation, status, message FROM sync_logs")
    assert rows == [("scheduled_sync", "success", "created 1")]
