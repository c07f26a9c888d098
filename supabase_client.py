"""
Supabase Integration Module
Manages auth users through the GoTrue admin API (service role key).
Uses requests only to avoid the supabase SDK dependency.
"""

import logging
import secrets
import time
from typing import Any, Dict, Iterable, List, Optional

import requests

from errors import ConflictError, UpstreamError
from models import (
    EXTERNAL_ID_KEY,
    INITIAL_PASSWORD_KEY,
    Account,
    BatchCreateResult,
)

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 1000
PASSWORD_CHARS = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789!@#$%^&*"

# Fragments GoTrue has used for "user already exists" over its versions
_ALREADY_EXISTS_MARKERS = (
    "already been registered",
    "already registered",
    "already exists",
    "email_exists",
    "user_already_exists",
    "duplicate",
)


def generate_temp_password(length: int = 32) -> str:
    """Random temporary password for accounts created by the sync"""
    return "".join(secrets.choice(PASSWORD_CHARS) for _ in range(length))


def is_already_exists_message(message: str) -> bool:
    text = (message or "").lower()
    return any(marker in text for marker in _ALREADY_EXISTS_MARKERS)


class SupabaseAdminClient:
    """Supabase auth admin client"""

    def __init__(self, url: str, service_role_key: str, timeout: int = 30,
                 max_retries: int = 5, backoff_factor: float = 1.5):
        self.base_url = url.strip().rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_factor = backoff_factor
        self.session = requests.Session()
        self.session.headers.update({
            "apikey": service_role_key,
            "Authorization": f"Bearer {service_role_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        logger.info(f"Supabase admin client initialized for {self.base_url}")

    def _request_with_retry(self, method: str, path: str, **kwargs) -> requests.Response:
        """Make request with exponential backoff on 429/5xx and network errors"""
        url = f"{self.base_url}/auth/v1{path}"

        for attempt in range(self.max_retries):
            try:
                response = self.session.request(method, url, timeout=self.timeout, **kwargs)
            except requests.exceptions.RequestException as e:
                logger.error(f"Supabase request failed (attempt {attempt + 1}): {e}")
                if attempt == self.max_retries - 1:
                    raise UpstreamError(f"Supabase request failed: {e}", service="supabase")
                time.sleep(min(self.backoff_factor ** attempt, 15))
                continue

            if response.status_code == 429 or response.status_code >= 500:
                if attempt < self.max_retries - 1:
                    wait_time = min(self.backoff_factor ** attempt, 30)
                    logger.warning(f"Supabase returned {response.status_code}. "
                                   f"Waiting {wait_time:.1f} seconds (attempt {attempt + 1}/{self.max_retries})...")
                    time.sleep(wait_time)
                    continue

            if response.status_code >= 400:
                message = self._error_message(response)
                # Don't retry on 4xx client errors
                if response.status_code in (400, 409, 422) and is_already_exists_message(message):
                    raise ConflictError(message, status_code=response.status_code, service="supabase")
                raise UpstreamError(message, status_code=response.status_code, service="supabase")
            return response

        raise UpstreamError("Supabase: max retries exceeded", service="supabase")

    @staticmethod
    def _error_message(response: requests.Response) -> str:
        try:
            body = response.json()
        except ValueError:
            return f"Supabase API error {response.status_code}: {response.text[:200]}"
        detail = body.get("msg") or body.get("message") or body.get("error_description") or body.get("error")
        code = body.get("error_code")
        message = f"Supabase API error {response.status_code}: {detail}"
        if code:
            message += f" [{code}]"
        return message

    # ==================== USERS ====================

    def list_users(self, page: int = 1, per_page: int = DEFAULT_PAGE_SIZE) -> List[Account]:
        """One page of users (pages start at 1)"""
        response = self._request_with_retry("GET", "/admin/users",
                                            params={"page": page, "per_page": per_page})
        data = response.json()
        users = data.get("users", []) if isinstance(data, dict) else data
        return [Account.from_api(u) for u in users or []]

    def list_all_users(self, per_page: int = DEFAULT_PAGE_SIZE, max_pages: Optional[int] = None) -> List[Account]:
        """Page through every user until a short page (or `max_pages`)"""
        accounts = []
        page = 1
        while True:
            batch = self.list_users(page=page, per_page=per_page)
            accounts.extend(batch)
            if len(batch) < per_page:
                break
            if max_pages is not None and page >= max_pages:
                logger.warning(f"Stopped listing users after {max_pages} pages ({len(accounts)} users)")
                break
            page += 1
        return accounts

    def create_user(self, email: str, external_id: Optional[str] = None,
                    password: Optional[str] = None) -> Account:
        """Create a confirmed user with a temporary password"""
        metadata = {INITIAL_PASSWORD_KEY: True}
        if external_id:
            metadata[EXTERNAL_ID_KEY] = str(external_id)

        body = {
            "email": email,
            "password": password or generate_temp_password(),
            "email_confirm": True,
            "user_metadata": metadata,
        }
        response = self._request_with_retry("POST", "/admin/users", json=body)
        data = response.json()
        account = Account.from_api(data.get("user", data))
        logger.info(f"Created Supabase user {account.id} email={email} recordId={external_id or '-'}")
        return account

    def create_users_batch(self, items: Iterable[Dict[str, Any]]) -> BatchCreateResult:
        """
        Create users one by one. Items are {"email": ..., "externalId": ...}.
        "Already exists" answers become skips; other errors are collected, never raised.
        """
        results = BatchCreateResult()
        for item in items:
            email = (item.get("email") or "").strip().lower()
            external_id = item.get("externalId")
            try:
                results.created.append(self.create_user(email, external_id=external_id))
            except ConflictError as e:
                logger.info(f"User already exists, skipping: {email} ({e})")
                results.skipped.append({"email": email, "externalId": external_id,
                                        "reason": "already exists"})
            except UpstreamError as e:
                logger.error(f"Failed to create user {email}: {e}")
                results.failed.append({"email": email, "externalId": external_id, "error": str(e)})
        return results

    def update_user_email(self, user_id: str, new_email: str) -> Account:
        response = self._request_with_retry("PUT", f"/admin/users/{user_id}",
                                            json={"email": new_email, "email_confirm": True})
        logger.info(f"Updated email of user {user_id} to {new_email}")
        return Account.from_api(response.json())

    def update_user_metadata(self, user_id: str, metadata: Dict[str, Any]) -> Account:
        response = self._request_with_retry("PUT", f"/admin/users/{user_id}",
                                            json={"user_metadata": metadata})
        logger.info(f"Updated metadata of user {user_id}")
        return Account.from_api(response.json())

    def delete_user(self, user_id: str) -> None:
        self._request_with_retry("DELETE", f"/admin/users/{user_id}")
        logger.info(f"Deleted user {user_id}")

    def test_connection(self) -> bool:
        try:
            self.list_users(page=1, per_page=1)
            return True
        except UpstreamError as e:
            logger.warning(f"Supabase connection test failed: {e}")
            return False
