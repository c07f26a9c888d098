"""
Shared fixtures: in-memory kintone and Supabase stand-ins that behave like the
real clients at the method level.
"""

import copy
import dataclasses

import pytest

from errors import ConflictError, UpstreamError
from models import EXTERNAL_ID_KEY, INITIAL_PASSWORD_KEY, Account, BatchCreateResult, Cursor
from reconciler import DEFAULT_ALLOWED_GROUPS
from sync_engine import DEFAULT_CONFIG, Config

GROUP = DEFAULT_ALLOWED_GROUPS[0]


def raw_record(record_id, email, groups=(GROUP,)):
    """A record shaped like kintone's records.json output"""
    return {
        "$id": {"type": "__ID__", "value": str(record_id)},
        "email": {"type": "SINGLE_LINE_TEXT", "value": email},
        "permissionGroup": {
            "type": "SUBTABLE",
            "value": [
                {"id": str(i), "value": {"groupName": {"type": "SINGLE_LINE_TEXT", "value": g}}}
                for i, g in enumerate(groups, start=1)
            ],
        },
    }


class FakeKintone:
    """Serves a fixed list of raw records ordered by $id"""

    max_limit = 500
    max_offset = 10000

    def __init__(self, records=None):
        self.records = sorted(records or [], key=lambda r: int(r["$id"]["value"]))
        self.calls = []
        self.fail = False

    def get_records(self, cursor=None, limit=500, condition=""):
        cursor = cursor or Cursor()
        self.calls.append({"cursor": cursor, "limit": limit, "condition": condition})
        if self.fail:
            raise UpstreamError("kintone API error 503", status_code=503, service="kintone")
        if cursor.is_id_based:
            rows = [r for r in self.records if int(r["$id"]["value"]) > int(cursor.after_id)]
        else:
            rows = self.records[cursor.offset:]
        return copy.deepcopy(rows[:min(limit, self.max_limit)])

    def iter_all_records(self, condition="", page_size=500):
        if self.fail:
            raise UpstreamError("kintone API error 503", status_code=503, service="kintone")
        for record in self.records:
            yield copy.deepcopy(record)

    def find_record_by_email(self, email, email_field_code="email"):
        for record in self.records:
            if (record.get(email_field_code) or {}).get("value") == email:
                return copy.deepcopy(record)
        return None

    def probe(self):
        if self.fail:
            return [{"method": m, "success": False, "error": "kintone API error 503"}
                    for m in ("no query", "limit 1", "order by $id asc limit 1")]
        return [{"method": "no query", "success": True, "count": len(self.records)},
                {"method": "limit 1", "success": True, "count": min(1, len(self.records))},
                {"method": "order by $id asc limit 1", "success": True,
                 "count": min(1, len(self.records))}]


class EndlessKintone(FakeKintone):
    """Always returns a full page, so the source always reports more data"""

    def get_records(self, cursor=None, limit=500, condition=""):
        cursor = cursor or Cursor()
        self.calls.append({"cursor": cursor, "limit": limit, "condition": condition})
        start = int(cursor.after_id) if cursor.is_id_based else cursor.offset
        return [raw_record(start + i, f"user{start + i}@example.com")
                for i in range(1, min(limit, self.max_limit) + 1)]


class FakeSupabase:
    """In-memory account store mirroring SupabaseAdminClient's methods"""

    def __init__(self):
        self.users = {}
        self.next_id = 1
        self.created = []
        self.updated = []
        self.deleted = []
        self.race_emails = set()
        self.fail_emails = set()
        self.list_error = None

    def add(self, email, external_id=None, **metadata):
        user_id = f"user-{self.next_id}"
        self.next_id += 1
        if external_id is not None:
            metadata[EXTERNAL_ID_KEY] = external_id
        account = Account(id=user_id, email=email, metadata=metadata, created_at="2024-01-01T00:00:00Z")
        self.users[user_id] = account
        return account

    def _copy(self, account):
        return dataclasses.replace(account, metadata=dict(account.metadata))

    def _email_owner(self, email):
        for account in self.users.values():
            if account.email.lower() == email.lower():
                return account
        return None

    def list_users(self, page=1, per_page=1000):
        if self.list_error:
            raise self.list_error
        accounts = list(self.users.values())
        start = (page - 1) * per_page
        return [self._copy(a) for a in accounts[start:start + per_page]]

    def list_all_users(self, per_page=1000, max_pages=None):
        accounts = []
        page = 1
        while True:
            batch = self.list_users(page=page, per_page=per_page)
            accounts.extend(batch)
            if len(batch) < per_page or (max_pages is not None and page >= max_pages):
                return accounts
            page += 1

    def create_user(self, email, external_id=None, password=None):
        if email in self.race_emails or self._email_owner(email):
            raise ConflictError("Supabase API error 422: A user with this email address has already been registered",
                                status_code=422, service="supabase")
        if email in self.fail_emails:
            raise UpstreamError("Supabase API error 500: boom", status_code=500, service="supabase")
        metadata = {INITIAL_PASSWORD_KEY: True}
        account = self.add(email, str(external_id) if external_id else None, **metadata)
        self.created.append(account)
        return self._copy(account)

    def create_users_batch(self, items):
        results = BatchCreateResult()
        for item in items:
            email = item["email"]
            try:
                results.created.append(self.create_user(email, item.get("externalId")))
            except ConflictError:
                results.skipped.append({"email": email, "externalId": item.get("externalId"),
                                        "reason": "already exists"})
            except UpstreamError as e:
                results.failed.append({"email": email, "externalId": item.get("externalId"),
                                       "error": str(e)})
        return results

    def update_user_email(self, user_id, new_email):
        owner = self._email_owner(new_email)
        if owner and owner.id != user_id:
            raise UpstreamError("Supabase API error 422: email already registered by another user",
                                status_code=422, service="supabase")
        self.users[user_id].email = new_email
        self.updated.append((user_id, {"email": new_email}))
        return self._copy(self.users[user_id])

    def update_user_metadata(self, user_id, metadata):
        self.users[user_id].metadata = dict(metadata)
        self.updated.append((user_id, {"user_metadata": dict(metadata)}))
        return self._copy(self.users[user_id])

    def delete_user(self, user_id):
        if user_id not in self.users:
            raise UpstreamError("Supabase API error 404: User not found", status_code=404, service="supabase")
        del self.users[user_id]
        self.deleted.append(user_id)


def make_config(**sync_overrides):
    raw = copy.deepcopy(DEFAULT_CONFIG)
    raw["kintone"].update({"subdomain": "example", "app_id": "42", "api_token": "token"})
    raw["supabase"].update({"url": "https://project.supabase.co", "service_role_key": "service-key"})
    raw["sync"].update(sync_overrides)
    return Config(raw=raw)


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def kintone():
    return FakeKintone()


@pytest.fixture
def supabase():
    return FakeSupabase()
