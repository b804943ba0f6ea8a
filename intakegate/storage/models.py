from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional

SESSION_ID_PREFIX = "sess_"
_SESSION_KEY_PATTERN = re.compile(r"^[0-9a-f]{32}$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (older snapshots, some drivers) to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def new_session_key() -> str:
    return uuid.uuid4().hex


def external_session_id(key: str) -> str:
    return f"{SESSION_ID_PREFIX}{key}"


def parse_session_id(external_id: str) -> str:
    """Return the storage key for an externally rendered session id.

    Raises ValueError for anything that is not ``sess_`` followed by the
    32-character storage key.
    """
    if not isinstance(external_id, str) or not external_id.startswith(SESSION_ID_PREFIX):
        raise ValueError("session id must use the sess_ prefix")
    key = external_id[len(SESSION_ID_PREFIX):]
    if not _SESSION_KEY_PATTERN.match(key):
        raise ValueError("malformed session id")
    return key


class Role(str, Enum):
    """Roles carried by a bearer; not stored as separate entities."""

    ANONYMOUS = "anonymous"
    OWNER = "owner"
    COORDINATOR = "coordinator"
    ADMIN = "admin"
    SYSTEM = "system"


class SessionStatus(str, Enum):
    STARTED = "started"
    IN_PROGRESS = "in_progress"
    PENDING_VERIFICATION = "pending_verification"
    COMPLETE = "complete"
    SUBMITTED = "submitted"
    ABANDONED = "abandoned"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES: FrozenSet[SessionStatus] = frozenset(
    {SessionStatus.SUBMITTED, SessionStatus.ABANDONED, SessionStatus.EXPIRED}
)


class AuditAction(str, Enum):
    SESSION_CREATED = "session_created"
    PROGRESS_UPDATED = "progress_updated"
    STATUS_CHANGED = "status_changed"
    SESSION_ABANDONED = "session_abandoned"
    SESSION_EXPIRED = "session_expired"
    SESSION_DELETED = "session_deleted"
    TOKEN_ISSUED = "token_issued"
    TOKEN_REFRESHED = "token_refreshed"
    TOKEN_REJECTED = "token_rejected"
    TOKEN_REVOKED = "token_revoked"
    AUTHORIZATION_DENIED = "authorization_denied"
    RATE_LIMITED = "rate_limited"
    RECOVERY_REQUESTED = "recovery_requested"
    SESSION_RECOVERED = "session_recovered"
    RECORD_UPDATED = "record_updated"
    MESSAGE_APPENDED = "message_appended"


class RecordKind(str, Enum):
    CONTACT = "contact"
    DEPENDENT = "dependent"
    COVERAGE = "coverage"
    ASSESSMENT = "assessment"


# Fields encrypted individually at rest and never written to logs or audit details
PHI_FIELDS: Dict[RecordKind, FrozenSet[str]] = {
    RecordKind.CONTACT: frozenset({"email", "phone", "first_name", "last_name"}),
    RecordKind.DEPENDENT: frozenset(
        {"first_name", "last_name", "date_of_birth", "primary_concerns", "medical_history"}
    ),
    RecordKind.COVERAGE: frozenset(
        {"subscriber_name", "policy_number", "group_number", "member_id", "subscriber_dob"}
    ),
    RecordKind.ASSESSMENT: frozenset({"responses", "summary"}),
}

ALL_PHI_FIELDS: FrozenSet[str] = frozenset().union(*PHI_FIELDS.values()) | {"content"}


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


@dataclass
class Session:
    id: str
    status: SessionStatus
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    progress: Dict[str, Any] = field(default_factory=dict)
    referral_source: Optional[str] = None
    terminal_at: Optional[datetime] = None
    version: int = 1

    @property
    def public_id(self) -> str:
        return external_session_id(self.id)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def is_past_expiration(self, now: Optional[datetime] = None) -> bool:
        return as_utc(self.expires_at) <= (now or utcnow())

    @classmethod
    def new(
        cls,
        *,
        ttl_hours: int = 24,
        referral_source: str | None = None,
        now: datetime | None = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=new_session_key(),
            status=SessionStatus.STARTED,
            created_at=now,
            updated_at=now,
            expires_at=now + timedelta(hours=ttl_hours),
            progress={},
            referral_source=referral_source,
        )


@dataclass
class RefreshToken:
    id: str
    session_id: str
    token_hash: str
    lineage_id: str
    device_fingerprint: str
    created_at: datetime
    expires_at: datetime
    parent_id: Optional[str] = None
    issued_from_ip: Optional[str] = None
    issued_user_agent: Optional[str] = None
    revoked_at: Optional[datetime] = None
    revoked_reason: Optional[str] = None

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return self.revoked_at is None and as_utc(self.expires_at) > (now or utcnow())


@dataclass
class AuditLogEntry:
    id: str
    action: AuditAction
    created_at: datetime
    session_id: Optional[str] = None
    resource: str = "session"
    resource_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    actor_ip: Optional[str] = None
    actor_user_agent: Optional[str] = None


@dataclass
class SessionRecord:
    """Satellite record owned by a session; ``fields`` holds ciphertext at rest."""

    id: str
    session_id: str
    kind: RecordKind
    fields: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    lookup_digest: Optional[str] = None


@dataclass
class ConversationMessage:
    id: str
    session_id: str
    seq: int
    role: MessageRole
    content: str
    created_at: datetime


@dataclass
class RequestActor:
    """Who triggered an operation, as far as the audit trail is concerned."""

    ip: Optional[str] = None
    user_agent: Optional[str] = None


class RotationOutcome(str, Enum):
    ROTATED = "rotated"
    REVOKED = "revoked"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


@dataclass
class RotationResult:
    outcome: RotationOutcome
    previous: Optional[RefreshToken] = None
    issued: Optional[RefreshToken] = None


@dataclass(frozen=True)
class Principal:
    """The authenticated bearer of a request, or an internal job."""

    role: Role
    subject: Optional[str] = None
    token_id: Optional[str] = None
    background: bool = False

    @classmethod
    def anonymous(cls) -> "Principal":
        return cls(role=Role.ANONYMOUS)

    @classmethod
    def system(cls) -> "Principal":
        return cls(role=Role.SYSTEM, subject="system", background=True)
