"""
Tests for the Supabase admin client
"""

from unittest.mock import MagicMock

import pytest

from errors import ConflictError, UpstreamError
from supabase_client import (
    PASSWORD_CHARS,
    SupabaseAdminClient,
    generate_temp_password,
    is_already_exists_message,
)


def response(status_code=200, payload=None):
    resp = MagicMock()
    resp.status_code = status_code
    resp.json.return_value = payload if payload is not None else {}
    resp.text = str(payload)
    return resp


def user(id, email, **metadata):
    return {"id": id, "email": email, "user_metadata": metadata, "created_at": "2024-01-01T00:00:00Z"}


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr("supabase_client.time.sleep", lambda seconds: None)
    c = SupabaseAdminClient("https://project.supabase.co/ ", "service-key", max_retries=3)
    c.session.request = MagicMock(return_value=response())
    return c


def test_headers_and_base_url(client):
    assert client.base_url == "https://project.supabase.co"
    assert client.session.headers["apikey"] == "service-key"
    assert client.session.headers["Authorization"] == "Bearer service-key"


def test_temp_password():
    password = generate_temp_password()
    assert len(password) == 32
    assert set(password) <= set(PASSWORD_CHARS)
    assert generate_temp_password() != password


def test_create_user_sends_confirmed_user_with_metadata(client):
    client.session.request.return_value = response(200, user("u1", "a@x.com", kintone_record_id="12",
                                                            is_initial_password=True))

    account = client.create_user("a@x.com", external_id=12)

    method, url = client.session.request.call_args[0]
    body = client.session.request.call_args[1]["json"]
    assert (method, url) == ("POST", "https://project.supabase.co/auth/v1/admin/users")
    assert body["email"] == "a@x.com"
    assert body["email_confirm"] is True
    assert len(body["password"]) == 32
    assert body["user_metadata"] == {"is_initial_password": True, "kintone_record_id": "12"}
    assert account.id == "u1"
    assert account.external_id == "12"


def test_already_registered_raises_conflict(client):
    client.session.request.return_value = response(422, {
        "code": 422, "error_code": "email_exists",
        "msg": "A user with this email address has already been registered",
    })

    with pytest.raises(ConflictError):
        client.create_user("a@x.com")
    assert client.session.request.call_count == 1


def test_batch_create_separates_skips_and_failures(client):
    client.session.request.side_effect = [
        response(200, {"user": user("u1", "a@x.com")}),
        response(422, {"msg": "User already registered"}),
        response(400, {"msg": "Password should be at least 6 characters"}),
    ]

    result = client.create_users_batch([
        {"email": "A@x.com", "externalId": "1"},
        {"email": "b@x.com", "externalId": "2"},
        {"email": "c@x.com", "externalId": "3"},
    ])

    assert [a.id for a in result.created] == ["u1"]
    assert result.skipped == [{"email": "b@x.com", "externalId": "2", "reason": "already exists"}]
    assert result.failed[0]["email"] == "c@x.com"
    assert "Password" in result.failed[0]["error"]


def test_server_errors_are_retried_then_raised(client):
    client.session.request.return_value = response(503, {"message": "unavailable"})

    with pytest.raises(UpstreamError) as excinfo:
        client.list_users()

    assert excinfo.value.status_code == 503
    assert client.session.request.call_count == 3


def test_list_all_users_pages_until_short_page(client):
    client.session.request.side_effect = [
        response(200, {"users": [user("u1", "a@x.com"), user("u2", "b@x.com")]}),
        response(200, {"users": [user("u3", "c@x.com")]}),
    ]

    accounts = client.list_all_users(per_page=2)

    assert [a.id for a in accounts] == ["u1", "u2", "u3"]
    pages = [call[1]["params"]["page"] for call in client.session.request.call_args_list]
    assert pages == [1, 2]


def test_update_and_delete_paths(client):
    client.session.request.return_value = response(200, user("u1", "new@x.com"))

    client.update_user_email("u1", "new@x.com")
    assert client.session.request.call_args[0] == ("PUT", "https://project.supabase.co/auth/v1/admin/users/u1")
    assert client.session.request.call_args[1]["json"] == {"email": "new@x.com", "email_confirm": True}

    client.update_user_metadata("u1", {"kintone_record_id": "9"})
    assert client.session.request.call_args[1]["json"] == {"user_metadata": {"kintone_record_id": "9"}}

    client.delete_user("u1")
    assert client.session.request.call_args[0] == ("DELETE", "https://project.supabase.co/auth/v1/admin/users/u1")


def test_already_exists_detection():
    assert is_already_exists_message("Supabase API error 422: User already registered")
    assert is_already_exists_message("email_exists")
    assert not is_already_exists_message("Password should be at least 6 characters")
