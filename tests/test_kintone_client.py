"""
Tests for the kintone REST client and record extraction
"""

from unittest.mock import MagicMock

import pytest
import requests

from conftest import GROUP, raw_record
from errors import UpstreamError, ValidationError
from kintone_client import (
    KintoneClient,
    extract_email,
    extract_group_names,
    extract_record_id,
    to_external_record,
)
from models import Cursor


def response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload if payload is not None else {"records": []}
    resp.text = str(payload)
    return resp


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr("kintone_client.time.sleep", lambda seconds: None)
    c = KintoneClient("example", "42", "secret-token", max_retries=3)
    c.session.request = MagicMock(return_value=response())
    return c


def test_client_setup():
    c = KintoneClient("example", 42, "secret-token")
    assert c.base_url == "https://example.cybozu.com"
    assert c.session.headers["X-Cybozu-API-Token"] == "secret-token"
    with pytest.raises(ValidationError):
        KintoneClient("example", "not-a-number", "secret-token")


def test_build_query_numeric_and_id_modes(client):
    assert client.build_query(500, Cursor(offset=1000)) == "order by $id asc limit 500 offset 1000"
    assert client.build_query(10, Cursor(), 'status = "active"') == \
        'status = "active" order by $id asc limit 10 offset 0'
    assert client.build_query(500, Cursor(after_id="10432"), 'status = "active"') == \
        '$id > 10432 and (status = "active") order by $id asc limit 500'


def test_offset_beyond_ceiling_is_rejected(client):
    with pytest.raises(ValidationError):
        client.build_query(500, Cursor(offset=10001))


def test_get_records_sends_query_and_clamps_limit(client):
    client.session.request.return_value = response(payload={"records": [raw_record(1, "a@x.com")]})

    records = client.get_records(Cursor(offset=0), limit=2500)

    assert len(records) == 1
    method, url = client.session.request.call_args[0]
    params = client.session.request.call_args[1]["params"]
    assert method == "GET"
    assert url == "https://example.cybozu.com/k/v1/records.json"
    assert params == {"app": "42", "query": "order by $id asc limit 500 offset 0"}


def test_rate_limit_is_retried(client):
    client.session.request.side_effect = [
        response(429, {"message": "too many requests"}),
        response(payload={"records": [raw_record(1, "a@x.com")]}),
    ]

    assert len(client.get_raw("limit 1")) == 1
    assert client.session.request.call_count == 2


def test_client_error_is_not_retried(client):
    client.session.request.return_value = response(400, {"code": "GAIA_IQ11", "message": "bad query"})

    with pytest.raises(UpstreamError) as excinfo:
        client.get_raw("nonsense")

    assert excinfo.value.status_code == 400
    assert "GAIA_IQ11" in str(excinfo.value)
    assert client.session.request.call_count == 1


def test_network_errors_exhaust_retries(client):
    client.session.request.side_effect = requests.exceptions.ConnectionError("refused")

    with pytest.raises(UpstreamError):
        client.get_raw()
    assert client.session.request.call_count == 3


def test_iter_all_records_switches_to_id_cursor(client):
    client.max_offset = 2
    client.session.request.side_effect = [
        response(payload={"records": [raw_record(1, "a@x.com"), raw_record(2, "b@x.com")]}),
        response(payload={"records": [raw_record(3, "c@x.com"), raw_record(4, "d@x.com")]}),
        response(payload={"records": [raw_record(5, "e@x.com")]}),
    ]

    ids = [extract_record_id(r) for r in client.iter_all_records(page_size=2)]

    assert ids == ["1", "2", "3", "4", "5"]
    queries = [call[1]["params"]["query"] for call in client.session.request.call_args_list]
    assert queries == [
        "order by $id asc limit 2 offset 0",
        "order by $id asc limit 2 offset 2",
        "$id > 4 order by $id asc limit 2",
    ]


def test_find_record_by_email_escapes_value(client):
    client.find_record_by_email('a"b@x.com', "mail")
    query = client.session.request.call_args[1]["params"]["query"]
    assert query == 'mail = "a\\"b@x.com" order by $id asc limit 1 offset 0'


def test_probe_reports_each_query(client):
    client.session.request.side_effect = [
        response(payload={"records": [raw_record(1, "a@x.com")]}),
        response(400, {"message": "bad"}),
        response(payload={"records": []}),
    ]

    results = client.probe()

    assert [r["success"] for r in results] == [True, False, True]
    assert results[0]["count"] == 1
    assert "params" in client.session.request.call_args_list[0][1]
    assert "query" not in client.session.request.call_args_list[0][1]["params"]


def test_record_extraction():
    raw = raw_record(12, " a@x.com ", groups=("other", GROUP))

    assert extract_record_id(raw) == "12"
    assert extract_email(raw) == "a@x.com"
    assert extract_group_names(raw) == ["other", GROUP]
    record = to_external_record(raw)
    assert record.external_id == "12"
    assert record.group_memberships == ["other", GROUP]


def test_extraction_tolerates_missing_fields():
    assert extract_record_id({}) is None
    assert extract_record_id({"$id": None}) is None
    assert extract_email({"email": {"value": ""}}) is None
    assert extract_group_names({"permissionGroup": {"value": "not-a-table"}}) == []


@pytest.mark.parametrize("condition", [
    'status = "active" order by $id desc',
    "limit 10",
    'status = "active" LIMIT 5 OFFSET 10',
])
def test_condition_with_paging_clauses_is_rejected(client, condition):
    with pytest.raises(ValidationError):
        client.build_query(500, Cursor(), condition)
    with pytest.raises(ValidationError):
        client.get_records(Cursor(after_id="10"), condition=condition)
    assert client.session.request.call_count == 0


def test_paging_words_inside_strings_are_allowed(client):
    query = client.build_query(10, Cursor(), 'note = "no limit \\"order by\\" here"')
    assert query == 'note = "no limit \\"order by\\" here" order by $id asc limit 10 offset 0'
