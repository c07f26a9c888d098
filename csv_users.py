"""
CSV import, deletion and export of Supabase users.

Import rows go through the same classification as the kintone sync, so a file
exported with format=full can be re-imported without changing anything.
Deletion needs both the email and the kintone record id of a row to point at
the same user.
"""

import csv
import io
import logging
from dataclasses import dataclass
from datetime import date
from typing import Any, Dict, Iterable, List, Optional

from errors import UpstreamError, ValidationError
from models import EXTERNAL_ID_KEY, Account, Action, ExternalRecord
from reconciler import (
    AccountIndex,
    classify,
    classify_for_deletion,
    is_valid_email,
    normalize_email,
)

logger = logging.getLogger(__name__)

EMAIL_COLUMN = "email"
EXTERNAL_ID_COLUMNS = ("kintone_record_id", "kintone_recordid", "record_id", "external_id", "externalid")
NULL_VALUES = ("null", "undefined", "none")
EXPORT_FORMATS = ("simple", "full")
DEFAULT_CHUNK_SIZE = 50


@dataclass
class CsvRow:
    line: int
    email: Optional[str]
    external_id: Optional[str]


def decode_upload(content: bytes) -> str:
    """Uploaded files are UTF-8, optionally with a BOM (Excel)"""
    try:
        return content.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise ValidationError("CSV file must be UTF-8 encoded")


def _clean_id(value: Optional[str]) -> Optional[str]:
    value = (value or "").strip()
    if not value or value.lower() in NULL_VALUES:
        return None
    return value


def parse_user_csv(text: str, require_external_id: bool = False) -> List[CsvRow]:
    """
    Parse `email[,kintone_record_id]` CSV text. The header row is required and
    matched case-insensitively; blank lines are ignored.
    """
    reader = csv.reader(io.StringIO(text))
    header = None
    rows = []
    email_index = id_index = None

    for columns in reader:
        if not any(c.strip() for c in columns):
            continue
        if header is None:
            header = [c.strip().lower() for c in columns]
            if EMAIL_COLUMN not in header:
                raise ValidationError('CSV file has no "email" column')
            email_index = header.index(EMAIL_COLUMN)
            id_index = next((header.index(name) for name in EXTERNAL_ID_COLUMNS if name in header), None)
            if require_external_id and id_index is None:
                raise ValidationError('CSV file has no "kintone_record_id" column; '
                                      'deletion needs both email and kintone record id')
            continue

        email = columns[email_index].strip() if email_index < len(columns) else ""
        external_id = columns[id_index] if id_index is not None and id_index < len(columns) else None
        rows.append(CsvRow(line=reader.line_num, email=email or None, external_id=_clean_id(external_id)))

    if not rows:
        raise ValidationError("CSV file is empty or only has a header row")

    logger.info(f"CSV parsed: header={header}, {len(rows)} rows")
    return rows


def _new_report() -> Dict[str, Any]:
    return {
        "success": True,
        "total": 0,
        "created": 0,
        "updated": 0,
        "deleted": 0,
        "skipped": 0,
        "failed": 0,
        "errors": [],
        "details": [],
    }


def _detail(report: Dict[str, Any], row: CsvRow, status: str, reason: str = "", user_id: str = None):
    report["details"].append({"line": row.line, "email": row.email, "externalId": row.external_id,
                              "status": status, "reason": reason, "userId": user_id})


def _fail(report: Dict[str, Any], row: CsvRow, error: str):
    report["failed"] += 1
    report["errors"].append({"line": row.line, "email": row.email, "error": error})
    _detail(report, row, "failed", error)


def import_rows(rows: List[CsvRow], store, index: AccountIndex,
                chunk_size: int = DEFAULT_CHUNK_SIZE) -> Dict[str, Any]:
    """Create or update users for each row; creates are sent in chunks"""
    report = _new_report()
    report["total"] = len(rows)
    seen = set()
    to_create = []

    for row in rows:
        key = normalize_email(row.email)
        if key and key in seen:
            report["skipped"] += 1
            _detail(report, row, "skipped", "duplicate row")
            continue
        seen.add(key)

        decision = classify(ExternalRecord(external_id=row.external_id, email=row.email), index)

        if decision.action == Action.SKIP_INVALID:
            _fail(report, row, decision.reason)

        elif decision.action == Action.SKIP_UNCHANGED:
            report["skipped"] += 1
            _detail(report, row, "skipped", decision.reason, decision.account_id)

        elif decision.action == Action.CREATE:
            to_create.append((row, {"email": decision.email, "externalId": decision.external_id}))

        else:
            try:
                if decision.action == Action.UPDATE_EMAIL:
                    store.update_user_email(decision.account_id, decision.email)
                else:
                    metadata = dict(decision.account.metadata)
                    metadata[EXTERNAL_ID_KEY] = decision.external_id
                    store.update_user_metadata(decision.account_id, metadata)
                report["updated"] += 1
                _detail(report, row, "updated", decision.reason, decision.account_id)
            except UpstreamError as e:
                logger.error(f"CSV line {row.line}: update failed for {row.email}: {e}")
                _fail(report, row, str(e))

    for start in range(0, len(to_create), chunk_size):
        chunk = to_create[start:start + chunk_size]
        logger.info(f"Creating users {start + 1}-{start + len(chunk)} of {len(to_create)}")
        result = store.create_users_batch([item for _, item in chunk])
        rows_by_email = {item["email"]: row for row, item in chunk}

        for account in result.created:
            report["created"] += 1
            row = rows_by_email.get(normalize_email(account.email))
            if row:
                _detail(report, row, "created", "new user", account.id)
        for skipped in result.skipped:
            report["skipped"] += 1
            row = rows_by_email.get(skipped["email"])
            if row:
                _detail(report, row, "skipped", skipped.get("reason", ""))
        for failed in result.failed:
            row = rows_by_email.get(failed["email"])
            if row:
                _fail(report, row, failed.get("error", ""))
            else:
                report["failed"] += 1
                report["errors"].append({"email": failed["email"], "error": failed.get("error", "")})

    logger.info(f"CSV import done: created={report['created']}, updated={report['updated']}, "
                f"skipped={report['skipped']}, failed={report['failed']}")
    return report


def delete_rows(rows: List[CsvRow], store, index: AccountIndex) -> Dict[str, Any]:
    """Delete the user of each row whose email and record id both match it"""
    report = _new_report()
    report["total"] = len(rows)
    seen = set()

    for row in rows:
        if not row.email:
            _fail(report, row, "missing email")
            continue
        if not is_valid_email(row.email):
            _fail(report, row, "invalid email format")
            continue
        if not row.external_id:
            _fail(report, row, "kintone_record_id is required for deletion")
            continue

        key = (normalize_email(row.email), row.external_id)
        if key in seen:
            report["skipped"] += 1
            _detail(report, row, "skipped", "duplicate row")
            continue
        seen.add(key)

        decision = classify_for_deletion(row.email, row.external_id, index)
        if decision.action != Action.DELETE_CANDIDATE:
            logger.info(f"CSV line {row.line}: not deleting {row.email}/{row.external_id}: {decision.reason}")
            report["skipped"] += 1
            _detail(report, row, "skipped", decision.reason)
            continue

        try:
            store.delete_user(decision.account_id)
            report["deleted"] += 1
            _detail(report, row, "deleted", decision.reason, decision.account_id)
        except UpstreamError as e:
            logger.error(f"CSV line {row.line}: delete failed for {row.email}: {e}")
            _fail(report, row, str(e))

    logger.info(f"CSV delete done: deleted={report['deleted']}, skipped={report['skipped']}, "
                f"failed={report['failed']}")
    return report


def render_export(accounts: Iterable[Account], fmt: str = "simple") -> str:
    """CSV of all users; `full` adds the kintone record id column"""
    if fmt not in EXPORT_FORMATS:
        raise ValidationError(f"format must be one of {', '.join(EXPORT_FORMATS)}")

    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    if fmt == "full":
        writer.writerow([EMAIL_COLUMN, EXTERNAL_ID_KEY])
        for account in accounts:
            writer.writerow([account.email or "", account.external_id or ""])
    else:
        writer.writerow([EMAIL_COLUMN])
        for account in accounts:
            writer.writerow([account.email or ""])
    return buffer.getvalue()


def export_filename(today: Optional[date] = None) -> str:
    return f"users-{(today or date.today()).isoformat()}.csv"
