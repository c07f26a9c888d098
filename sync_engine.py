"""
kintone -> Supabase User Sync Engine
Batch orchestration of the user reconciliation: pages through kintone member
records, matches them against Supabase auth users by record id and email,
and applies creates/updates with a resumable cursor and a wall-clock budget.
"""

import copy
import math
import os
import socket
import sys
import time
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple
import logging

import yaml

from database import SyncDB, IS_VERCEL
from errors import ConfigurationError, SyncInProgressError, UpstreamError, ValidationError
from kintone_client import (
    DEFAULT_EMAIL_FIELD,
    DEFAULT_GROUP_NAME_FIELD,
    DEFAULT_GROUP_TABLE_FIELD,
    MAX_LIMIT,
    MAX_OFFSET,
    check_condition,
    extract_record_id,
    to_external_record,
)
from models import EXTERNAL_ID_KEY, Action, Cursor, ExternalRecord, RunResult
from reconciler import (
    DEFAULT_ALLOWED_GROUPS,
    build_index,
    classify,
    find_orphans,
    matches_groups,
)

# Global sync lock to prevent concurrent runs inside one process
_sync_lock = threading.Lock()
_sync_in_progress = False

LEASE_NAME = "kintone-users"
CURSOR_STATE_KEY = "kintone_users_cursor"
LAST_RUN_STATE_KEY = "kintone_users_last_run"
MIN_FETCH_SIZE = 500
FETCH_MULTIPLIER = 5


def is_sync_in_progress() -> bool:
    """Check if a sync is currently running"""
    return _sync_in_progress


# --- Logging ---
def setup_logging():
    """Configure logging (console-only on Vercel due to read-only filesystem)"""
    log_format = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]

    # Only add file logging if not on Vercel (read-only filesystem)
    if not IS_VERCEL:
        try:
            if not os.path.exists('logs'):
                os.makedirs('logs')
            handlers.append(logging.FileHandler('logs/kintone_user_sync.log', encoding='utf-8'))
        except OSError:
            pass  # Skip file logging if directory creation fails

    logging.basicConfig(
        level=logging.INFO,
        format=log_format,
        handlers=handlers
    )
    return logging.getLogger(__name__)

logger = setup_logging()


# --- Configuration Management ---
DEFAULT_CONFIG: Dict[str, Any] = {
    "kintone": {
        "subdomain": None,
        "app_id": None,
        "api_token": None,
        "email_field_code": DEFAULT_EMAIL_FIELD,
        "group_table_field": DEFAULT_GROUP_TABLE_FIELD,
        "group_name_field": DEFAULT_GROUP_NAME_FIELD,
        "allowed_groups": list(DEFAULT_ALLOWED_GROUPS),
    },
    "supabase": {
        "url": None,
        "service_role_key": None,
    },
    "sync": {
        "batch_size": 100,
        "max_batches": 10,
        "time_budget_seconds": 50,
        "account_page_size": 1000,
        "account_max_pages": 10,
        "create_chunk_size": 50,
        "lease_ttl_seconds": 120,
        "scheduler_enabled": False,
        "scheduler_interval_minutes": 30,
    },
    "database": {
        "path": "sync.db",
    },
}

# (section, key, environment variables in priority order)
ENV_OVERRIDES = [
    ("kintone", "subdomain", ["KINTONE_SUBDOMAIN"]),
    ("kintone", "app_id", ["KINTONE_APP_ID"]),
    ("kintone", "api_token", ["KINTONE_API_TOKEN"]),
    ("supabase", "url", ["SUPABASE_URL", "NEXT_PUBLIC_SUPABASE_URL"]),
    ("supabase", "service_role_key", ["SUPABASE_SERVICE_ROLE_KEY"]),
    ("sync", "time_budget_seconds", ["SYNC_TIME_BUDGET_SECONDS"]),
]


@dataclass
class Config:
    """Sync configuration with validation"""
    raw: Dict[str, Any]

    @property
    def kintone(self) -> Dict[str, Any]:
        return self.raw.get("kintone", {})

    @property
    def supabase(self) -> Dict[str, Any]:
        return self.raw.get("supabase", {})

    @property
    def sync(self) -> Dict[str, Any]:
        return self.raw.get("sync", {})

    @property
    def database(self) -> Dict[str, Any]:
        return self.raw.get("database", {})

    @property
    def time_budget_seconds(self) -> float:
        return float(self.sync.get("time_budget_seconds", 50))

    def missing_kintone(self) -> List[str]:
        names = [("subdomain", "KINTONE_SUBDOMAIN"), ("app_id", "KINTONE_APP_ID"),
                 ("api_token", "KINTONE_API_TOKEN")]
        return [env for key, env in names if not self.kintone.get(key)]

    def missing_supabase(self) -> List[str]:
        names = [("url", "SUPABASE_URL"), ("service_role_key", "SUPABASE_SERVICE_ROLE_KEY")]
        return [env for key, env in names if not self.supabase.get(key)]

    def require_kintone(self) -> None:
        missing = self.missing_kintone()
        if missing:
            raise ConfigurationError(f"kintone is not configured. Missing: {', '.join(missing)}",
                                     missing=missing)

    def require_supabase(self) -> None:
        missing = self.missing_supabase()
        if missing:
            raise ConfigurationError(f"Supabase is not configured. Missing: {', '.join(missing)}",
                                     missing=missing)

    def validate(self) -> List[str]:
        """Validate configuration"""
        errors = [f"Missing environment variable {name}"
                  for name in self.missing_kintone() + self.missing_supabase()]

        app_id = self.kintone.get("app_id")
        if app_id and not str(app_id).strip().isdigit():
            errors.append(f"kintone.app_id must be numeric, got {app_id!r}")

        for key in ["batch_size", "max_batches", "time_budget_seconds", "account_page_size",
                    "account_max_pages", "create_chunk_size", "lease_ttl_seconds"]:
            value = self.sync.get(key)
            try:
                if float(value) <= 0:
                    errors.append(f"sync.{key} must be positive")
            except (TypeError, ValueError):
                errors.append(f"sync.{key} must be a number, got {value!r}")

        if not isinstance(self.kintone.get("allowed_groups"), list):
            errors.append("kintone.allowed_groups must be a list")

        return errors


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> Config:
    """
    Load configuration from config.yaml (optional) overlaid with environment
    variables. Environment variables take precedence.
    """
    environ = os.environ if environ is None else environ
    raw = copy.deepcopy(DEFAULT_CONFIG)

    path = path or environ.get("SYNC_CONFIG_PATH") or os.path.join(os.path.dirname(__file__), "config.yaml")
    if os.path.exists(path):
        with open(path, "r", encoding="utf-8") as f:
            file_config = yaml.safe_load(f) or {}
        if not isinstance(file_config, dict):
            raise ValueError("Config YAML must be a mapping at the top level.")
        _merge(raw, file_config)
        logger.info(f"Configuration loaded from {path}")

    for section, key, names in ENV_OVERRIDES:
        for name in names:
            value = environ.get(name)
            if value:
                raw[section][key] = value.strip()
                break

    config = Config(raw=raw)
    for problem in config.validate():
        logger.warning(f"Config: {problem}")
    return config


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def probe_record_source(records) -> Dict[str, Any]:
    """Connectivity probes against kintone; passes if any probe passes"""
    results = records.probe()
    success = any(r.get("success") for r in results)
    return {
        "success": success,
        "results": results,
        "message": "kintone reachable" if success else "All kintone probes failed",
    }


# --- Batch Orchestrator ---
@dataclass
class _Pending:
    """Filtered records fetched but not yet processed, plus where the next fetch starts"""
    records: List[Tuple[ExternalRecord, Cursor]] = field(default_factory=list)
    fetch_cursor: Cursor = field(default_factory=Cursor)
    source_has_more: bool = False


class UserSyncEngine:
    """Reconciles kintone member records into Supabase auth users"""

    def __init__(self, cfg: Config, records, accounts, db: Optional[SyncDB] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.cfg = cfg
        self.records = records
        self.accounts = accounts
        self.db = db
        self.clock = clock

        kintone_cfg = cfg.kintone
        self.email_field_code = kintone_cfg.get("email_field_code") or DEFAULT_EMAIL_FIELD
        self.group_table_field = kintone_cfg.get("group_table_field") or DEFAULT_GROUP_TABLE_FIELD
        self.group_name_field = kintone_cfg.get("group_name_field") or DEFAULT_GROUP_NAME_FIELD
        self.allowed_groups = tuple(kintone_cfg.get("allowed_groups") or DEFAULT_ALLOWED_GROUPS)

        sync_opts = cfg.sync
        self.batch_size = int(sync_opts.get("batch_size", 100))
        self.max_batches = int(sync_opts.get("max_batches", 10))
        self.account_page_size = int(sync_opts.get("account_page_size", 1000))
        self.account_max_pages = int(sync_opts.get("account_max_pages", 10))
        self.create_chunk_size = int(sync_opts.get("create_chunk_size", 50))
        self.lease_ttl_seconds = int(sync_opts.get("lease_ttl_seconds", 120))
        self._held_lease: Optional[Tuple[str, str]] = None

    @property
    def lease_ttl(self) -> int:
        """Lease lifetime: the configured time budget plus one lease_ttl_seconds of margin"""
        return int(math.ceil(self.cfg.time_budget_seconds)) + self.lease_ttl_seconds

    @property
    def max_offset(self) -> int:
        return getattr(self.records, "max_offset", MAX_OFFSET)

    def fetch_size(self, page_size: int) -> int:
        """Over-provision the fetch because the group filter shrinks pages unpredictably"""
        max_limit = getattr(self.records, "max_limit", MAX_LIMIT)
        return min(max(page_size * FETCH_MULTIPLIER, MIN_FETCH_SIZE), max_limit)

    def build_index(self):
        return build_index(self.accounts, page_size=self.account_page_size,
                           max_pages=self.account_max_pages)

    def _to_record(self, raw: Dict[str, Any], email_field_code: str) -> ExternalRecord:
        return to_external_record(raw, email_field_code, self.group_table_field, self.group_name_field)

    def _fetch(self, pending: _Pending, page_size: int, query: Optional[str],
               email_field_code: str) -> Tuple[int, int]:
        """Fetch one raw page into `pending`; returns (raw count, filtered-out count)"""
        fetch_limit = self.fetch_size(page_size)
        start = pending.fetch_cursor
        raw = self.records.get_records(start, limit=fetch_limit, condition=query or "")

        kept = 0
        for i, raw_record in enumerate(raw):
            record = self._to_record(raw_record, email_field_code)
            if not query and not matches_groups(record, self.allowed_groups):
                continue
            resume = start.advance(i + 1, extract_record_id(raw_record), self.max_offset)
            pending.records.append((record, resume))
            kept += 1

        last_id = extract_record_id(raw[-1]) if raw else None
        pending.fetch_cursor = start.advance(len(raw), last_id, self.max_offset)
        pending.source_has_more = len(raw) == fetch_limit
        logger.info(f"Fetched {len(raw)} kintone records at cursor {start} (limit {fetch_limit}), "
                    f"{kept} kept after filter")
        return len(raw), len(raw) - kept

    def run_batch(self, cursor=None, page_size: Optional[int] = None, query: Optional[str] = None,
                  email_field_code: Optional[str] = None) -> RunResult:
        """Process one page of records starting at `cursor`"""
        page_size = self.batch_size if page_size is None else page_size
        query = check_condition(query) or None
        result, _ = self._run_batch(Cursor.parse(cursor), page_size, query,
                                    email_field_code or self.email_field_code)
        return result

    def _run_batch(self, cursor: Cursor, page_size: int, query: Optional[str],
                   email_field_code: str, pending: Optional[_Pending] = None) -> Tuple[RunResult, _Pending]:
        if page_size <= 0:
            raise ValidationError(f"batchSize must be positive, got {page_size}")

        pending = pending or _Pending(fetch_cursor=cursor)
        result = RunResult(next_cursor=cursor)

        try:
            if len(pending.records) < page_size:
                self._fetch(pending, page_size, query, email_field_code)
            else:
                logger.info(f"Using {len(pending.records)} carried-over records, no fetch needed")
            index = self.build_index()
        except UpstreamError as e:
            logger.error(f"Batch at cursor {cursor} aborted: {e}")
            result.success = False
            result.error = str(e)
            result.has_more = True
            result.message = f"Batch failed: {e}"
            return result, pending

        batch = pending.records[:page_size]
        pending.records = pending.records[page_size:]

        self._apply([record for record, _ in batch], index, result)

        if pending.records:
            result.next_cursor = batch[-1][1]
        else:
            result.next_cursor = pending.fetch_cursor
        result.has_more = bool(pending.records) or pending.source_has_more
        result.message = f"Processed {result.processed} records: {result.summary()}"
        logger.info(f"Batch done: {result.message} (next cursor {result.next_cursor}, "
                    f"hasMore={result.has_more})")
        return result, pending

    def _apply(self, records: List[ExternalRecord], index, result: RunResult) -> None:
        """Classify each record against the index and execute the decisions"""
        to_create = []
        seen_emails = set()

        for record in records:
            result.processed += 1
            decision = classify(record, index)

            if decision.conflicting_account is not None:
                conflict = {
                    "recordId": decision.external_id,
                    "email": decision.email,
                    "matchedByRecordId": decision.account_id,
                    "matchedByEmail": decision.conflicting_account.id,
                }
                result.conflicts.append(conflict)
                logger.warning(f"Record {decision.external_id} matches user {decision.account_id} by id "
                               f"but {decision.conflicting_account.id} by email {decision.email}; "
                               f"using the record id match")

            if decision.action == Action.SKIP_INVALID:
                result.skipped += 1
                result.invalid += 1
                result.errors.append({"type": "validation", "recordId": decision.external_id,
                                      "email": record.email, "error": decision.reason})
                logger.info(f"Skipping record {decision.external_id}: {decision.reason}")

            elif decision.action == Action.SKIP_UNCHANGED:
                result.skipped += 1

            elif decision.action == Action.CREATE:
                if decision.email in seen_emails:
                    result.skipped += 1
                    logger.info(f"Skipping duplicate email in batch: {decision.email}")
                    continue
                seen_emails.add(decision.email)
                to_create.append({"email": decision.email, "externalId": decision.external_id})

            elif decision.action == Action.UPDATE_EMAIL:
                try:
                    self.accounts.update_user_email(decision.account_id, decision.email)
                    result.updated += 1
                    logger.info(f"Updated email for record {decision.external_id}: "
                                f"{decision.account.email} -> {decision.email}")
                except UpstreamError as e:
                    result.failed += 1
                    result.errors.append({"type": "update", "recordId": decision.external_id,
                                          "email": decision.email, "error": str(e)})
                    logger.error(f"Email update failed for user {decision.account_id}: {e}")

            elif decision.action == Action.ATTACH_EXTERNAL_ID:
                metadata = dict(decision.account.metadata)
                metadata[EXTERNAL_ID_KEY] = decision.external_id
                try:
                    self.accounts.update_user_metadata(decision.account_id, metadata)
                    result.updated += 1
                    logger.info(f"Linked user {decision.account_id} ({decision.email}) "
                                f"to record {decision.external_id}")
                except UpstreamError as e:
                    result.failed += 1
                    result.errors.append({"type": "update", "recordId": decision.external_id,
                                          "email": decision.email, "error": str(e)})
                    logger.error(f"Metadata update failed for user {decision.account_id}: {e}")

        for start in range(0, len(to_create), self.create_chunk_size):
            chunk = to_create[start:start + self.create_chunk_size]
            batch_result = self.accounts.create_users_batch(chunk)
            result.created += len(batch_result.created)
            result.skipped += len(batch_result.skipped)
            result.failed += len(batch_result.failed)
            for failure in batch_result.failed:
                result.errors.append({"type": "create", "recordId": failure.get("externalId"),
                                      "email": failure.get("email"), "error": failure.get("error")})

    def run_all(self, cursor=None, page_size: Optional[int] = None, query: Optional[str] = None,
                email_field_code: Optional[str] = None, max_batches: Optional[int] = None,
                time_budget: Optional[float] = None) -> RunResult:
        """
        Loop batches until the source is exhausted, a batch fails, `max_batches`
        is reached or the wall-clock budget runs out. Early stops return
        stoppedEarly with a cursor to resume from; natural completion resets the
        cursor to the start so the next run re-scans for new records.
        """
        cursor = Cursor.parse(cursor)
        page_size = self.batch_size if page_size is None else page_size
        query = check_condition(query) or None
        max_batches = self.max_batches if max_batches is None else max_batches
        time_budget = self.cfg.time_budget_seconds if time_budget is None else float(time_budget)
        email_field_code = email_field_code or self.email_field_code
        if max_batches <= 0:
            raise ValidationError(f"maxBatches must be positive, got {max_batches}")

        started = self.clock()
        total = RunResult(next_cursor=cursor)
        pending = None

        for number in range(1, max_batches + 1):
            batch_result, pending = self._run_batch(total.next_cursor, page_size, query,
                                                    email_field_code, pending)
            total.merge(batch_result)
            total.next_cursor = batch_result.next_cursor
            total.has_more = batch_result.has_more
            total.batches.append({
                "batch": number,
                "processed": batch_result.processed,
                "created": batch_result.created,
                "updated": batch_result.updated,
                "skipped": batch_result.skipped,
                "failed": batch_result.failed,
                "nextOffset": batch_result.next_cursor.to_token(),
            })

            if not batch_result.success:
                total.success = False
                total.error = batch_result.error
                break
            if not batch_result.has_more:
                break

            elapsed = self.clock() - started
            if elapsed >= time_budget:
                logger.warning(f"Time budget of {time_budget:.0f}s used after {number} batches, "
                               f"stopping at cursor {total.next_cursor}")
                total.stopped_early = True
                break

            if number < max_batches and not self.renew_lease():
                total.success = False
                total.stopped_early = True
                total.error = f"Lost the sync lease after {number} batches"
                logger.error(f"{total.error}, stopping at cursor {total.next_cursor}")
                break
        else:
            if total.has_more:
                logger.info(f"Reached maxBatches={max_batches}, stopping at cursor {total.next_cursor}")
                total.stopped_early = True

        if total.success and not total.has_more:
            total.next_cursor = Cursor()

        total.duration_seconds = self.clock() - started
        if not total.success:
            total.message = f"Sync failed after {len(total.batches)} batches: {total.error}"
        elif total.stopped_early:
            total.message = (f"Processed {len(total.batches)} batches ({total.summary()}); "
                             f"resume from {total.next_cursor}")
        else:
            total.message = f"Sync complete in {len(total.batches)} batches: {total.summary()}"
        logger.info(total.message)
        return total

    def sync_one(self, email: str, email_field_code: Optional[str] = None,
                 apply_filter: bool = True) -> RunResult:
        """Sync the single kintone record holding `email` (webhook path)"""
        email_field_code = email_field_code or self.email_field_code
        if not email or not email.strip():
            raise ValidationError("email is required")

        result = RunResult()
        raw = self.records.find_record_by_email(email.strip(), email_field_code)
        if not raw:
            result.success = False
            result.error = f"No kintone record found for {email}"
            result.message = result.error
            logger.info(result.error)
            return result

        record = self._to_record(raw, email_field_code)
        if apply_filter and not matches_groups(record, self.allowed_groups):
            result.processed = 1
            result.skipped = 1
            result.message = f"Record {record.external_id} is not in an allowed group"
            logger.info(result.message)
            return result

        self._apply([record], self.build_index(), result)
        result.success = result.failed == 0
        result.message = f"Single user sync for {email}: {result.summary()}"
        logger.info(result.message)
        return result

    def delete_orphans(self, query: Optional[str] = None,
                       email_field_code: Optional[str] = None) -> Dict[str, Any]:
        """
        Delete every account no kintone record references by id or email.
        Refuses to run when kintone returns no records at all.
        """
        email_field_code = email_field_code or self.email_field_code
        records = []
        for raw in self.records.iter_all_records(condition=query or ""):
            record = self._to_record(raw, email_field_code)
            if query or matches_groups(record, self.allowed_groups):
                records.append(record)

        outcome = {"deletedUsers": [], "deletedCount": 0, "deleteErrors": []}
        if not records:
            message = "No kintone records matched; refusing to delete users"
            logger.warning(message)
            outcome["deleteErrors"].append({"error": message})
            return outcome

        index = self.build_index()
        orphans = find_orphans(records, index.accounts)
        logger.info(f"Found {len(orphans)} orphaned users among {len(index)} "
                    f"(kintone records: {len(records)})")

        for account in orphans:
            try:
                self.accounts.delete_user(account.id)
                outcome["deletedUsers"].append({"id": account.id, "email": account.email,
                                                "externalId": account.external_id})
            except UpstreamError as e:
                logger.error(f"Failed to delete orphaned user {account.email}: {e}")
                outcome["deleteErrors"].append({"id": account.id, "email": account.email,
                                                "error": str(e)})
        outcome["deletedCount"] = len(outcome["deletedUsers"])
        return outcome

    def probe(self) -> Dict[str, Any]:
        return probe_record_source(self.records)

    # ============================================
    # LEASE & PERSISTED CURSOR
    # ============================================

    @contextmanager
    def lease(self, name: str = LEASE_NAME):
        """Hold the in-process lock and, when a database is configured, the named lease"""
        global _sync_in_progress

        if not _sync_lock.acquire(blocking=False):
            logger.warning(f"Sync '{name}' already in progress in this process, skipping...")
            raise SyncInProgressError(name, holder="local")

        try:
            holder = f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"
            if self.db is not None and not self.db.acquire_lease(name, holder, self.lease_ttl):
                current = self.db.get_lease(name)
                raise SyncInProgressError(name, holder=current["holder"] if current else None)

            _sync_in_progress = True
            self._held_lease = (name, holder)
            try:
                yield holder
            finally:
                self._held_lease = None
                if self.db is not None:
                    self.db.release_lease(name, holder)
        finally:
            _sync_in_progress = False
            _sync_lock.release()

    def renew_lease(self) -> bool:
        """Extend the lease held by the current run; False if another holder took it over"""
        if self.db is None or self._held_lease is None:
            return True
        name, holder = self._held_lease
        return self.db.acquire_lease(name, holder, self.lease_ttl)

    def load_cursor(self) -> Cursor:
        if self.db is None:
            return Cursor()
        value = self.db.get_state(CURSOR_STATE_KEY)
        try:
            return Cursor.parse(value)
        except ValidationError:
            logger.warning(f"Ignoring unreadable stored cursor {value!r}, starting over")
            return Cursor()

    def save_cursor(self, cursor: Cursor) -> None:
        if self.db is not None:
            self.db.set_state(CURSOR_STATE_KEY, str(cursor))

    def run_scheduled(self, page_size: Optional[int] = None, max_batches: Optional[int] = None,
                      time_budget: Optional[float] = None) -> RunResult:
        """Resume a full run from the persisted cursor under the sync lease"""
        if self.db is None:
            raise ConfigurationError("Scheduled sync needs the sync state database")

        with self.lease():
            cursor = self.load_cursor()
            activity_id = self.db.start_activity("kintone_users_sync", str(cursor))
            logger.info(f"Starting scheduled sync from cursor {cursor} (activity {activity_id})")

            try:
                result = self.run_all(cursor, page_size=page_size, max_batches=max_batches,
                                      time_budget=time_budget)
            except Exception as e:
                logger.error(f"Scheduled sync failed: {e}")
                self.db.fail_activity(activity_id, str(e))
                self.db.log_sync_operation("scheduled_sync", None, "failed", str(e))
                raise

            self.save_cursor(result.next_cursor)
            self.db.set_state(LAST_RUN_STATE_KEY, utc_now().isoformat())
            counts = {
                "processed": result.processed, "created": result.created,
                "updated": result.updated, "skipped": result.skipped,
                "failed": result.failed, "deleted": result.deleted,
            }
            if result.success:
                self.db.complete_activity(activity_id, counts, str(result.next_cursor), result.message)
                self.db.log_sync_operation("scheduled_sync", None, "success", result.message)
            else:
                self.db.fail_activity(activity_id, result.error or result.message)
                self.db.log_sync_operation("scheduled_sync", None, "failed", result.error or "")
            return result
