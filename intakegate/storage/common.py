"""Storage contract and helpers shared between memory and postgres implementations.

Both backends hand plaintext to callers and keep PHI-classified attributes
sealed at rest with the injected ``FieldCipher``. The associated data used
for every sealed value binds it to the owning row, so the scope helpers here
must stay identical across backends or snapshots and rows stop decrypting.
"""

from __future__ import annotations

import json
import uuid
from datetime import datetime
from typing import AbstractSet, Any, Dict, List, Optional, Protocol

from intakegate.storage.models import (
    AuditAction,
    AuditLogEntry,
    ConversationMessage,
    MessageRole,
    PHI_FIELDS,
    RecordKind,
    RefreshToken,
    RotationResult,
    Session,
    SessionRecord,
)

MESSAGE_CONTENT_FIELD = "content"


class SessionStore(Protocol):
    """Durable store for sessions, satellite records, refresh tokens and audit entries."""

    # sessions
    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def update_session_if_version(
        self, session_id: str, expected_version: int, changes: Dict[str, Any]
    ) -> Optional[Session]: ...

    # ``exclude`` holds ids a batch job already attempted this run
    def list_expired_sessions(
        self, now: datetime, limit: int, *, exclude: AbstractSet[str] = frozenset()
    ) -> List[Session]: ...

    def list_purgeable_sessions(
        self, cutoff: datetime, limit: int, *, exclude: AbstractSet[str] = frozenset()
    ) -> List[Session]: ...

    def delete_session(self, session_id: str) -> bool: ...

    def find_session_by_contact_digest(self, digest: str) -> Optional[Session]: ...

    # satellite records
    def upsert_record(
        self,
        session_id: str,
        kind: RecordKind,
        fields: Dict[str, Any],
        *,
        lookup_digest: Optional[str] = None,
    ) -> SessionRecord: ...

    def get_record(self, session_id: str, kind: RecordKind) -> Optional[SessionRecord]: ...

    def append_message(
        self, session_id: str, role: MessageRole, content: str
    ) -> ConversationMessage: ...

    def list_messages(
        self, session_id: str, *, limit: Optional[int] = None
    ) -> List[ConversationMessage]: ...

    # refresh tokens
    def create_refresh_token(
        self, token: RefreshToken, *, supersede_existing: bool = False
    ) -> RefreshToken: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self, old_hash: str, new_token: RefreshToken, now: datetime
    ) -> RotationResult: ...

    def revoke_session_refresh_tokens(
        self, session_id: str, reason: str, now: datetime
    ) -> int: ...

    def delete_expired_refresh_tokens(self, cutoff: datetime) -> int: ...

    # audit
    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry: ...

    def list_audit_entries(
        self,
        *,
        session_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]: ...

    def delete_audit_entries_before(self, cutoff: datetime) -> int: ...

    def verify_connection(self) -> None: ...


SESSION_MUTABLE_FIELDS = frozenset(
    {"status", "progress", "updated_at", "expires_at", "terminal_at"}
)


def check_session_changes(changes: Dict[str, Any]) -> None:
    unknown = set(changes) - SESSION_MUTABLE_FIELDS
    if unknown:
        raise ValueError(f"unsupported session fields: {sorted(unknown)}")


def record_scope(record_id: str) -> str:
    return f"record:{record_id}"


def message_scope(message_id: str) -> str:
    return f"message:{message_id}"


def sensitive_fields(kind: RecordKind) -> frozenset:
    return PHI_FIELDS[kind]


def parse_json_field(raw: Any) -> Dict[str, Any]:
    """Parse a JSON column that drivers may hand back as text or as a dict."""
    if isinstance(raw, str):
        return json.loads(raw) if raw else {}
    if isinstance(raw, dict):
        return raw
    return {}


def generate_uuid() -> str:
    return str(uuid.uuid4())
