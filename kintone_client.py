"""
kintone Integration Module
Reads member records from a kintone app via the REST API (records.json) and
turns raw records into ExternalRecord objects for the user sync.
"""

import logging
import re
import time
from typing import Any, Dict, List, Optional

import requests

from errors import UpstreamError, ValidationError
from models import Cursor, ExternalRecord

logger = logging.getLogger(__name__)

# kintone hard limits for GET /k/v1/records.json
MAX_LIMIT = 500
MAX_OFFSET = 10000

DEFAULT_EMAIL_FIELD = "email"
DEFAULT_GROUP_TABLE_FIELD = "permissionGroup"
DEFAULT_GROUP_NAME_FIELD = "groupName"

STRING_LITERAL_RE = re.compile(r'"(?:[^"\\]|\\.)*"')
PAGING_CLAUSE_RE = re.compile(r"\b(order\s+by|limit|offset)\b", re.IGNORECASE)


def check_condition(condition: str) -> str:
    """Reject filter expressions carrying their own ordering or paging clauses"""
    condition = (condition or "").strip()
    match = PAGING_CLAUSE_RE.search(STRING_LITERAL_RE.sub('""', condition))
    if match:
        raise ValidationError(f"query must be a filter expression only; remove '{match.group(1)}', "
                              f"ordering and paging are added by the sync")
    return condition


class KintoneClient:
    """kintone REST client with retry on rate limits and server errors"""

    max_limit = MAX_LIMIT
    max_offset = MAX_OFFSET

    def __init__(self, subdomain: str, app_id: Any, api_token: str,
                 base_url: Optional[str] = None, timeout: int = 30,
                 max_retries: int = 5, backoff_factor: float = 1.5):
        try:
            self.app_id = int(app_id)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid kintone app id: {app_id!r}")

        self.subdomain = subdomain
        self.base_url = (base_url or f"https://{subdomain}.cybozu.com").rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.session = requests.Session()
        # GET requests only need the token header, no Content-Type
        self.session.headers.update({
            "X-Cybozu-API-Token": api_token,
            "Accept": "application/json",
        })
        logger.info(f"kintone client initialized for {self.base_url} (app {self.app_id})")

    def _request_with_retry(self, method: str, path: str, **kwargs) -> requests.Response:
        """Make request with exponential backoff on 429/5xx and network errors"""
        url = f"{self.base_url}{path}"

        for attempt in range(self.max_retries):
            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.exceptions.RequestException as e:
                logger.error(f"kintone request failed (attempt {attempt + 1}): {e}")
                if attempt == self.max_retries - 1:
                    raise UpstreamError(f"kintone request failed: {e}", service="kintone")
                time.sleep(min(self.backoff_factor ** attempt, 15))
                continue

            if response.status_code == 429 or response.status_code >= 500:
                if attempt < self.max_retries - 1:
                    wait_time = min(self.backoff_factor ** attempt, 30)
                    logger.warning(f"kintone returned {response.status_code}. "
                                   f"Waiting {wait_time:.1f} seconds (attempt {attempt + 1}/{self.max_retries})...")
                    time.sleep(wait_time)
                    continue

            if response.status_code >= 400:
                raise UpstreamError(self._error_message(response),
                                    status_code=response.status_code, service="kintone")
            return response

        raise UpstreamError("kintone: max retries exceeded", service="kintone")

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        message = f"kintone API error {response.status_code}"
        try:
            body = response.json()
        except ValueError:
            return f"{message}: {response.text[:200]}"
        if body.get("message"):
            message += f": {body['message']}"
        if body.get("code"):
            message += f" [code: {body['code']}]"
        return message

    # ==================== QUERIES ====================

    def build_query(self, limit: int, cursor: Cursor, condition: str = "") -> str:
        """
        Build a kintone query string. `condition` is a plain filter expression;
        ordering and paging are always appended here so that id cursors stay valid.
        """
        condition = check_condition(condition)
        if cursor.is_id_based:
            where = f"$id > {cursor.after_id}"
            if condition:
                where += f" and ({condition})"
            return f"{where} order by $id asc limit {limit}"

        if cursor.offset > self.max_offset:
            raise ValidationError(
                f"offset={cursor.offset} exceeds kintone maximum of {self.max_offset}; "
                f"continue with an id cursor instead"
            )
        prefix = f"{condition} " if condition else ""
        return f"{prefix}order by $id asc limit {limit} offset {cursor.offset}"

    def get_records(self, cursor: Optional[Cursor] = None, limit: int = MAX_LIMIT,
                    condition: str = "") -> List[Dict[str, Any]]:
        """Fetch one page of raw records starting at `cursor`"""
        cursor = cursor or Cursor()
        limit = max(1, min(int(limit), self.max_limit))
        query = self.build_query(limit, cursor, condition)
        return self.get_raw(query)

    def get_raw(self, query: Optional[str] = None) -> List[Dict[str, Any]]:
        """Run a query string exactly as given"""
        params = {"app": str(self.app_id)}
        if query:
            params["query"] = query
        logger.info(f"kintone GET records.json app={self.app_id} query={query or '(none)'}")
        response = self._request_with_retry("GET", "/k/v1/records.json", params=params)
        return response.json().get("records", [])

    def iter_all_records(self, condition: str = "", page_size: int = MAX_LIMIT):
        """Yield every record matching `condition`, switching to id paging past the offset ceiling"""
        cursor = Cursor()
        while True:
            records = self.get_records(cursor, limit=page_size, condition=condition)
            for record in records:
                yield record
            if len(records) < min(page_size, self.max_limit):
                break
            cursor = cursor.advance(len(records), extract_record_id(records[-1]), self.max_offset)

    def find_record_by_email(self, email: str,
                             email_field_code: str = DEFAULT_EMAIL_FIELD) -> Optional[Dict[str, Any]]:
        """Server-side lookup of the record holding `email`"""
        escaped = email.replace("\\", "\\\\").replace('"', '\\"')
        records = self.get_records(Cursor(), limit=1, condition=f'{email_field_code} = "{escaped}"')
        return records[0] if records else None

    def probe(self) -> List[Dict[str, Any]]:
        """Connectivity smoke test with three query shapes"""
        results = []
        for label, query in [
            ("no query", None),
            ("limit 1", "limit 1"),
            ("order by $id asc limit 1", "order by $id asc limit 1"),
        ]:
            try:
                records = self.get_raw(query)
                results.append({"method": label, "success": True, "count": len(records)})
            except UpstreamError as e:
                results.append({"method": label, "success": False, "error": str(e)})
        return results


# ==================== RECORD EXTRACTION ====================

def extract_record_id(record: Dict[str, Any]) -> Optional[str]:
    value = ((record or {}).get("$id") or {}).get("value")
    if value is None or str(value).strip() == "":
        return None
    return str(value).strip()


def extract_email(record: Dict[str, Any], email_field_code: str = DEFAULT_EMAIL_FIELD) -> Optional[str]:
    value = ((record or {}).get(email_field_code) or {}).get("value")
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def extract_group_names(record: Dict[str, Any],
                        table_field: str = DEFAULT_GROUP_TABLE_FIELD,
                        name_field: str = DEFAULT_GROUP_NAME_FIELD) -> List[str]:
    """Collect group names from every row of the group membership table field"""
    table = (record or {}).get(table_field)
    if not isinstance(table, dict) or not isinstance(table.get("value"), list):
        return []

    names = []
    for row in table["value"]:
        cell = ((row or {}).get("value") or {}).get(name_field) or {}
        name = cell.get("value")
        if isinstance(name, str) and name.strip():
            names.append(name.strip())
    return names


def to_external_record(record: Dict[str, Any],
                       email_field_code: str = DEFAULT_EMAIL_FIELD,
                       group_table_field: str = DEFAULT_GROUP_TABLE_FIELD,
                       group_name_field: str = DEFAULT_GROUP_NAME_FIELD) -> ExternalRecord:
    return ExternalRecord(
        external_id=extract_record_id(record),
        email=extract_email(record, email_field_code),
        group_memberships=extract_group_names(record, group_table_field, group_name_field),
        attributes=record,
    )
