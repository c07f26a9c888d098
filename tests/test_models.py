"""
Tests for cursors and result serialization
"""

import pytest

from errors import ValidationError
from models import Account, Cursor, RunResult


@pytest.mark.parametrize("value,expected", [
    (None, Cursor()),
    ("", Cursor()),
    (0, Cursor()),
    (500, Cursor(offset=500)),
    ("500", Cursor(offset=500)),
    ("id:10432", Cursor(after_id="10432")),
    (Cursor(after_id="7"), Cursor(after_id="7")),
])
def test_cursor_parse(value, expected):
    assert Cursor.parse(value) == expected


@pytest.mark.parametrize("value", [-1, "abc", "id:", "id:x1", True, 1.5])
def test_cursor_parse_rejects_garbage(value):
    with pytest.raises(ValidationError):
        Cursor.parse(value)


def test_cursor_switches_to_id_past_ceiling_and_never_back():
    cursor = Cursor(offset=9900).advance(100, "12000", 10000)
    assert cursor == Cursor(offset=10000)

    cursor = cursor.advance(1, "12001", 10000)
    assert cursor == Cursor(after_id="12001")
    assert cursor.to_token() == "id:12001"

    cursor = cursor.advance(5, "12006", 10000)
    assert cursor == Cursor(after_id="12006")
    assert cursor.advance(0, None, 10000) is cursor


def test_run_result_merge_and_dict():
    total = RunResult(next_cursor=Cursor(offset=0))
    total.merge(RunResult(processed=3, created=2, skipped=1,
                          errors=[{"type": "validation", "recordId": "2"}]))
    total.merge(RunResult(processed=2, updated=1, failed=1))
    total.next_cursor = Cursor(after_id="99")
    total.duration_seconds = 1.234

    data = total.to_dict()

    assert data["processed"] == 5
    assert data["created"] == 2
    assert data["updated"] == 1
    assert data["failed"] == 1
    assert data["nextOffset"] == "id:99"
    assert data["duration"] == "1.23s"
    assert len(data["errors"]) == 1
    assert "batches" not in data
    assert total.summary() == "created 2, updated 1, skipped 1, failed 1"


def test_account_from_api():
    account = Account.from_api({
        "id": "abc",
        "email": "a@x.com",
        "user_metadata": {"kintone_record_id": 12, "is_initial_password": True},
        "created_at": "2024-01-01T00:00:00Z",
    })

    assert account.external_id == "12"
    assert account.is_initial_password
    assert account.to_dict()["externalId"] == "12"
    assert Account.from_api({"id": "x", "email": "b@x.com"}).external_id is None
