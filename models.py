"""
Data models shared by the kintone client, the Supabase client and the sync engine.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from errors import ValidationError

# Supabase user_metadata keys written by the sync
EXTERNAL_ID_KEY = "kintone_record_id"
INITIAL_PASSWORD_KEY = "is_initial_password"


@dataclass
class ExternalRecord:
    """A kintone record reduced to what the sync needs"""
    external_id: Optional[str]
    email: Optional[str]
    group_memberships: List[str] = field(default_factory=list)
    attributes: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Account:
    """A Supabase auth user"""
    id: str
    email: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    email_confirmed_at: Optional[str] = None

    @property
    def external_id(self) -> Optional[str]:
        # Older rows stored the record id as a number
        value = self.metadata.get(EXTERNAL_ID_KEY)
        if value is None or str(value).strip() == "":
            return None
        return str(value).strip()

    @property
    def is_initial_password(self) -> bool:
        return bool(self.metadata.get(INITIAL_PASSWORD_KEY, False))

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "Account":
        return cls(
            id=str(data.get("id", "")),
            email=data.get("email") or "",
            metadata=dict(data.get("user_metadata") or {}),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            email_confirmed_at=data.get("email_confirmed_at"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "externalId": self.external_id,
            "isInitialPassword": self.is_initial_password,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "emailConfirmedAt": self.email_confirmed_at,
        }


class Action(str, Enum):
    CREATE = "create"
    UPDATE_EMAIL = "update_email"
    ATTACH_EXTERNAL_ID = "attach_external_id"
    SKIP_UNCHANGED = "skip_unchanged"
    SKIP_INVALID = "skip_invalid"
    DELETE_CANDIDATE = "delete_candidate"


@dataclass
class Classification:
    """Outcome of matching one external record (or CSV row) against the account index"""
    action: Action
    email: Optional[str] = None
    external_id: Optional[str] = None
    account: Optional[Account] = None
    reason: str = ""
    # Set when the email matched a different account than the external id did
    conflicting_account: Optional[Account] = None

    @property
    def account_id(self) -> Optional[str]:
        return self.account.id if self.account else None


@dataclass(frozen=True)
class Cursor:
    """
    Position in the kintone record stream: either a numeric offset or the last
    consumed record id ("id:<n>"). A cursor never goes back from id to offset.
    """
    offset: int = 0
    after_id: Optional[str] = None

    @property
    def is_id_based(self) -> bool:
        return self.after_id is not None

    @classmethod
    def parse(cls, value: Union["Cursor", int, str, None]) -> "Cursor":
        if isinstance(value, Cursor):
            return value
        if value is None or value == "":
            return cls()
        if isinstance(value, bool):
            raise ValidationError(f"Invalid cursor: {value!r}")
        if isinstance(value, int):
            if value < 0:
                raise ValidationError(f"Cursor offset must not be negative: {value}")
            return cls(offset=value)

        text = str(value).strip()
        if text.startswith("id:"):
            record_id = text[3:].strip()
            if not record_id.isdigit():
                raise ValidationError(f"Invalid cursor: {value!r}")
            return cls(after_id=record_id)
        if text.isdigit():
            return cls(offset=int(text))
        raise ValidationError(f"Invalid cursor: {value!r}")

    def advance(self, consumed: int, last_id: Optional[str], max_offset: int) -> "Cursor":
        """Cursor after `consumed` more records, the last of which has id `last_id`"""
        if consumed <= 0:
            return self
        if self.is_id_based:
            return Cursor(after_id=last_id) if last_id else self
        new_offset = self.offset + consumed
        if new_offset > max_offset and last_id:
            return Cursor(after_id=last_id)
        return Cursor(offset=new_offset)

    def to_token(self) -> Union[int, str]:
        return f"id:{self.after_id}" if self.is_id_based else self.offset

    def __str__(self) -> str:
        return str(self.to_token())


@dataclass
class BatchCreateResult:
    created: List[Account] = field(default_factory=list)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class RunResult:
    """Aggregated counters for one batch or a folded multi-batch run"""
    success: bool = True
    processed: int = 0
    created: int = 0
    updated: int = 0
    skipped: int = 0
    failed: int = 0
    deleted: int = 0
    invalid: int = 0
    has_more: bool = False
    next_cursor: Cursor = field(default_factory=Cursor)
    stopped_early: bool = False
    errors: List[Dict[str, Any]] = field(default_factory=list)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)
    batches: List[Dict[str, Any]] = field(default_factory=list)
    message: str = ""
    error: Optional[str] = None
    duration_seconds: Optional[float] = None

    def merge(self, other: "RunResult") -> None:
        """Fold another result's counters and error lists into this one"""
        self.processed += other.processed
        self.created += other.created
        self.updated += other.updated
        self.skipped += other.skipped
        self.failed += other.failed
        self.deleted += other.deleted
        self.invalid += other.invalid
        self.errors.extend(other.errors)
        self.conflicts.extend(other.conflicts)

    def summary(self) -> str:
        parts = []
        if self.created:
            parts.append(f"created {self.created}")
        if self.updated:
            parts.append(f"updated {self.updated}")
        if self.skipped:
            parts.append(f"skipped {self.skipped}")
        if self.failed:
            parts.append(f"failed {self.failed}")
        if self.deleted:
            parts.append(f"deleted {self.deleted}")
        return ", ".join(parts) or "no changes"

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "success": self.success,
            "processed": self.processed,
            "created": self.created,
            "updated": self.updated,
            "skipped": self.skipped,
            "failed": self.failed,
            "deleted": self.deleted,
            "invalid": self.invalid,
            "hasMore": self.has_more,
            "nextOffset": self.next_cursor.to_token(),
            "stoppedEarly": self.stopped_early,
            "errors": self.errors,
            "conflicts": self.conflicts,
            "message": self.message,
        }
        if self.batches:
            data["batches"] = self.batches
        if self.error:
            data["error"] = self.error
        if self.duration_seconds is not None:
            data["duration"] = f"{self.duration_seconds:.2f}s"
        return data
