"""
User reconciliation rules.

Matches kintone records against Supabase accounts by two keys: the kintone
record id (durable, stored in user_metadata) and the email (mutable). The
record id always wins when both keys hit.
"""

import logging
import re
from typing import Dict, Iterable, List, Optional, Sequence

from models import Account, Action, Classification, ExternalRecord

logger = logging.getLogger(__name__)

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

DEFAULT_ALLOWED_GROUPS = (
    "試験対策集中講座（養成）",
    "合格パック単体（養成）",
)


def normalize_email(email: Optional[str]) -> str:
    if not email or not isinstance(email, str):
        return ""
    return email.strip().lower()


def is_valid_email(email: Optional[str]) -> bool:
    if not email or not isinstance(email, str):
        return False
    return bool(EMAIL_RE.match(email.strip()))


def matches_groups(record: ExternalRecord, allowed_groups: Sequence[str] = DEFAULT_ALLOWED_GROUPS) -> bool:
    """True if any row of the record's group table names an allowed group"""
    allowed = set(allowed_groups)
    return any(name in allowed for name in record.group_memberships)


class AccountIndex:
    """Lookup of accounts by normalized email and by kintone record id"""

    def __init__(self):
        self.by_email: Dict[str, Account] = {}
        self.by_external_id: Dict[str, Account] = {}
        self.accounts: List[Account] = []

    @classmethod
    def from_accounts(cls, accounts: Iterable[Account]) -> "AccountIndex":
        index = cls()
        for account in accounts:
            index.add(account)
        return index

    def add(self, account: Account) -> None:
        # Last one wins on duplicate keys; Supabase keeps emails unique anyway
        self.accounts.append(account)
        email = normalize_email(account.email)
        if email:
            self.by_email[email] = account
        if account.external_id:
            self.by_external_id[account.external_id] = account

    def find_by_email(self, email: Optional[str]) -> Optional[Account]:
        return self.by_email.get(normalize_email(email))

    def find_by_external_id(self, external_id: Optional[str]) -> Optional[Account]:
        if external_id is None:
            return None
        return self.by_external_id.get(str(external_id).strip())

    def __len__(self) -> int:
        return len(self.accounts)


def build_index(store, page_size: int = 1000, max_pages: int = 10) -> AccountIndex:
    """
    Page through the account store and index every account.

    Stops at the first short page, or after `max_pages` pages so a store that
    keeps returning full pages cannot loop forever. Store errors propagate.
    """
    index = AccountIndex()
    page = 1
    while True:
        accounts = store.list_users(page=page, per_page=page_size)
        for account in accounts:
            index.add(account)
        if len(accounts) < page_size:
            break
        if page >= max_pages:
            logger.warning(f"Account index stopped at page ceiling {max_pages} "
                           f"({len(index)} accounts indexed)")
            break
        page += 1

    logger.info(f"Account index built: {len(index)} accounts, "
                f"{len(index.by_external_id)} with kintone record id")
    return index


def classify(record: ExternalRecord, index: AccountIndex) -> Classification:
    """Decide what to do with one kintone record"""
    email = normalize_email(record.email)
    external_id = str(record.external_id).strip() if record.external_id else None

    if not email:
        return Classification(Action.SKIP_INVALID, email=None, external_id=external_id,
                              reason="missing email")
    if not is_valid_email(email):
        return Classification(Action.SKIP_INVALID, email=email, external_id=external_id,
                              reason="invalid email format")

    by_id = index.find_by_external_id(external_id) if external_id else None
    if by_id:
        by_email = index.find_by_email(email)
        conflicting = by_email if by_email and by_email.id != by_id.id else None
        if normalize_email(by_id.email) != email:
            return Classification(Action.UPDATE_EMAIL, email=email, external_id=external_id,
                                  account=by_id, conflicting_account=conflicting,
                                  reason=f"email changed from {by_id.email}")
        return Classification(Action.SKIP_UNCHANGED, email=email, external_id=external_id,
                              account=by_id, conflicting_account=conflicting,
                              reason="matched by record id")

    by_email = index.find_by_email(email)
    if by_email:
        if external_id and not by_email.external_id:
            return Classification(Action.ATTACH_EXTERNAL_ID, email=email, external_id=external_id,
                                  account=by_email, reason="matched by email without record id")
        reason = "matched by email"
        if external_id and by_email.external_id and by_email.external_id != external_id:
            reason = f"email belongs to account linked to record {by_email.external_id}"
        return Classification(Action.SKIP_UNCHANGED, email=email, external_id=external_id,
                              account=by_email, reason=reason)

    return Classification(Action.CREATE, email=email, external_id=external_id, reason="new user")


def classify_for_deletion(email: Optional[str], external_id: Optional[str],
                          index: AccountIndex) -> Classification:
    """A row is deletable only when both keys resolve to the same account"""
    normalized = normalize_email(email)
    external_id = str(external_id).strip() if external_id else None

    if not normalized:
        return Classification(Action.SKIP_INVALID, external_id=external_id, reason="missing email")
    if not is_valid_email(normalized):
        return Classification(Action.SKIP_INVALID, email=normalized, external_id=external_id,
                              reason="invalid email format")
    if not external_id:
        return Classification(Action.SKIP_INVALID, email=normalized,
                              reason="kintone_record_id is required for deletion")

    by_id = index.find_by_external_id(external_id)
    by_email = index.find_by_email(normalized)
    if by_id and by_email and by_id.id == by_email.id:
        return Classification(Action.DELETE_CANDIDATE, email=normalized, external_id=external_id,
                              account=by_id, reason="email and record id match")
    if by_id and by_email:
        reason = "email and record id belong to different users"
    else:
        reason = "no matching user"
    return Classification(Action.SKIP_INVALID, email=normalized, external_id=external_id,
                          reason=reason)


def find_orphans(records: Iterable[ExternalRecord], accounts: Iterable[Account]) -> List[Account]:
    """
    Accounts referenced by no kintone record. An account is kept when either its
    record id or its email is still present, so email drift never deletes anyone.
    Accounts without an email (phone sign-ups, admin-created users) are never orphans.
    """
    record_ids = set()
    emails = set()
    for record in records:
        if record.external_id:
            record_ids.add(str(record.external_id).strip())
        if is_valid_email(record.email):
            emails.add(normalize_email(record.email))

    orphans = []
    for account in accounts:
        if not normalize_email(account.email):
            continue
        if account.external_id and account.external_id in record_ids:
            continue
        if normalize_email(account.email) in emails:
            continue
        orphans.append(account)
    return orphans
