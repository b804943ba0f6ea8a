from __future__ import annotations

import copy
import json
import threading
import uuid
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import AbstractSet, Any, Dict, List, Optional

from intakegate.logging import get_logger
from intakegate.service.crypto import FieldCipher
from intakegate.storage.common import (
    MESSAGE_CONTENT_FIELD,
    check_session_changes,
    message_scope,
    record_scope,
    sensitive_fields,
)
from intakegate.storage.errors import ConstraintViolation
from intakegate.storage.models import (
    AuditAction,
    AuditLogEntry,
    ConversationMessage,
    MessageRole,
    RecordKind,
    RefreshToken,
    RotationOutcome,
    RotationResult,
    Session,
    SessionRecord,
    SessionStatus,
    as_utc,
    utcnow,
)


class MemoryStore:
    """In-process store for tests and local development.

    All state lives in dicts guarded by one re-entrant lock and is snapshotted
    to ``<fs_root>/state/memory_store.json`` after every mutation. Record
    fields and message content are sealed with the field cipher before they
    reach the dicts, so the snapshot never holds PHI in the clear.
    """

    def __init__(self, fs_root: str = "/tmp/intakegate", *, cipher: FieldCipher) -> None:
        self.logger = get_logger(__name__)
        self.cipher = cipher
        self.sessions: Dict[str, Session] = {}
        self.records: Dict[str, Dict[RecordKind, SessionRecord]] = {}
        self.messages: Dict[str, List[ConversationMessage]] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._token_ids_by_hash: Dict[str, str] = {}
        self.audit_entries: List[AuditLogEntry] = []
        # RLock so helpers can be called from inside locked sections
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return as_utc(datetime.fromisoformat(raw)) if raw else None

    def verify_connection(self) -> None:
        self._state_path()

    # -- sessions -----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.id in self.sessions:
                raise ConstraintViolation("session already exists", {"session_id": session.id})
            self.sessions[session.id] = copy.deepcopy(session)
            self._persist_state()
            return copy.deepcopy(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            session = self.sessions.get(session_id)
            return copy.deepcopy(session) if session else None

    def update_session_if_version(
        self, session_id: str, expected_version: int, changes: Dict[str, Any]
    ) -> Optional[Session]:
        check_session_changes(changes)
        with self._data_lock:
            current = self.sessions.get(session_id)
            if current is None or current.version != expected_version:
                return None
            updated = replace(current, **copy.deepcopy(changes), version=current.version + 1)
            self.sessions[session_id] = updated
            self._persist_state()
            return copy.deepcopy(updated)

    def list_expired_sessions(
        self, now: datetime, limit: int, *, exclude: AbstractSet[str] = frozenset()
    ) -> List[Session]:
        with self._data_lock:
            due = [
                s
                for s in self.sessions.values()
                if not s.is_terminal and as_utc(s.expires_at) <= now and s.id not in exclude
            ]
            due.sort(key=lambda s: as_utc(s.expires_at))
            return [copy.deepcopy(s) for s in due[:limit]]

    def list_purgeable_sessions(
        self, cutoff: datetime, limit: int, *, exclude: AbstractSet[str] = frozenset()
    ) -> List[Session]:
        with self._data_lock:
            due = [
                s
                for s in self.sessions.values()
                if s.is_terminal
                and as_utc(s.terminal_at or s.updated_at) <= cutoff
                and s.id not in exclude
            ]
            due.sort(key=lambda s: as_utc(s.terminal_at or s.updated_at))
            return [copy.deepcopy(s) for s in due[:limit]]

    def delete_session(self, session_id: str) -> bool:
        with self._data_lock:
            if self.sessions.pop(session_id, None) is None:
                return False
            self.records.pop(session_id, None)
            self.messages.pop(session_id, None)
            for token_id in [
                t.id for t in self.refresh_tokens.values() if t.session_id == session_id
            ]:
                token = self.refresh_tokens.pop(token_id)
                self._token_ids_by_hash.pop(token.token_hash, None)
            self._persist_state()
            return True

    def find_session_by_contact_digest(self, digest: str) -> Optional[Session]:
        with self._data_lock:
            matches = [
                self.sessions[session_id]
                for session_id, kinds in self.records.items()
                if session_id in self.sessions
                and (contact := kinds.get(RecordKind.CONTACT)) is not None
                and contact.lookup_digest == digest
            ]
            if not matches:
                return None
            # Prefer live sessions, then the most recently touched one
            matches.sort(key=lambda s: (not s.is_terminal, as_utc(s.updated_at)), reverse=True)
            return copy.deepcopy(matches[0])

    # -- satellite records --------------------------------------------------

    def upsert_record(
        self,
        session_id: str,
        kind: RecordKind,
        fields: Dict[str, Any],
        *,
        lookup_digest: Optional[str] = None,
    ) -> SessionRecord:
        with self._data_lock:
            if session_id not in self.sessions:
                raise ConstraintViolation("session not found", {"session_id": session_id})
            now = utcnow()
            existing = self.records.get(session_id, {}).get(kind)
            record_id = existing.id if existing else str(uuid.uuid4())
            sealed = self.cipher.encrypt_fields(
                fields, sensitive_fields(kind), scope=record_scope(record_id)
            )
            record = SessionRecord(
                id=record_id,
                session_id=session_id,
                kind=kind,
                fields=sealed,
                created_at=existing.created_at if existing else now,
                updated_at=now,
                lookup_digest=lookup_digest,
            )
            self.records.setdefault(session_id, {})[kind] = record
            self._persist_state()
            return self._open_record(record)

    def get_record(self, session_id: str, kind: RecordKind) -> Optional[SessionRecord]:
        with self._data_lock:
            record = self.records.get(session_id, {}).get(kind)
            return self._open_record(record) if record else None

    def _open_record(self, record: SessionRecord) -> SessionRecord:
        opened = self.cipher.decrypt_fields(
            record.fields, sensitive_fields(record.kind), scope=record_scope(record.id)
        )
        return replace(record, fields=opened)

    def append_message(
        self, session_id: str, role: MessageRole, content: str
    ) -> ConversationMessage:
        with self._data_lock:
            if session_id not in self.sessions:
                raise ConstraintViolation("session not found", {"session_id": session_id})
            thread = self.messages.setdefault(session_id, [])
            message_id = str(uuid.uuid4())
            message = ConversationMessage(
                id=message_id,
                session_id=session_id,
                seq=len(thread),
                role=role,
                content=self.cipher.encrypt(
                    content, f"{message_scope(message_id)}:{MESSAGE_CONTENT_FIELD}"
                ),
                created_at=utcnow(),
            )
            thread.append(message)
            self._persist_state()
            return replace(message, content=content)

    def list_messages(
        self, session_id: str, *, limit: Optional[int] = None
    ) -> List[ConversationMessage]:
        with self._data_lock:
            thread = list(self.messages.get(session_id, []))
        if limit is not None:
            thread = thread[-limit:]
        return [
            replace(
                m,
                content=self.cipher.decrypt(
                    m.content, f"{message_scope(m.id)}:{MESSAGE_CONTENT_FIELD}"
                ),
            )
            for m in thread
        ]

    # -- refresh tokens -----------------------------------------------------

    def _revoke_live_tokens(self, session_id: str, reason: str, now: datetime) -> int:
        count = 0
        for token in self.refresh_tokens.values():
            if token.session_id == session_id and token.revoked_at is None:
                token.revoked_at = now
                token.revoked_reason = reason
                count += 1
        return count

    def create_refresh_token(
        self, token: RefreshToken, *, supersede_existing: bool = False
    ) -> RefreshToken:
        with self._data_lock:
            if token.session_id not in self.sessions:
                raise ConstraintViolation("session not found", {"session_id": token.session_id})
            if token.token_hash in self._token_ids_by_hash:
                raise ConstraintViolation("refresh token hash collision")
            if supersede_existing:
                self._revoke_live_tokens(token.session_id, "superseded", token.created_at)
            self.refresh_tokens[token.id] = copy.deepcopy(token)
            self._token_ids_by_hash[token.token_hash] = token.id
            self._persist_state()
            return copy.deepcopy(token)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._token_ids_by_hash.get(token_hash)
            token = self.refresh_tokens.get(token_id) if token_id else None
            return copy.deepcopy(token) if token else None

    def rotate_refresh_token(
        self, old_hash: str, new_token: RefreshToken, now: datetime
    ) -> RotationResult:
        with self._data_lock:
            token_id = self._token_ids_by_hash.get(old_hash)
            previous = self.refresh_tokens.get(token_id) if token_id else None
            if previous is None:
                return RotationResult(RotationOutcome.UNKNOWN)
            if previous.revoked_at is not None:
                return RotationResult(RotationOutcome.REVOKED, previous=copy.deepcopy(previous))
            if as_utc(previous.expires_at) <= now:
                return RotationResult(RotationOutcome.EXPIRED, previous=copy.deepcopy(previous))
            previous.revoked_at = now
            previous.revoked_reason = "rotated"
            issued = replace(
                new_token,
                session_id=previous.session_id,
                lineage_id=previous.lineage_id,
                parent_id=previous.id,
            )
            self.refresh_tokens[issued.id] = issued
            self._token_ids_by_hash[issued.token_hash] = issued.id
            self._persist_state()
            return RotationResult(
                RotationOutcome.ROTATED,
                previous=copy.deepcopy(previous),
                issued=copy.deepcopy(issued),
            )

    def revoke_session_refresh_tokens(self, session_id: str, reason: str, now: datetime) -> int:
        with self._data_lock:
            count = self._revoke_live_tokens(session_id, reason, now)
            if count:
                self._persist_state()
            return count

    def delete_expired_refresh_tokens(self, cutoff: datetime) -> int:
        with self._data_lock:
            stale = [t for t in self.refresh_tokens.values() if as_utc(t.expires_at) < cutoff]
            for token in stale:
                self.refresh_tokens.pop(token.id, None)
                self._token_ids_by_hash.pop(token.token_hash, None)
            if stale:
                self._persist_state()
            return len(stale)

    # -- audit --------------------------------------------------------------

    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._data_lock:
            self.audit_entries.append(copy.deepcopy(entry))
            self._persist_state()
            return entry

    def list_audit_entries(
        self,
        *,
        session_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        with self._data_lock:
            matches = [
                e
                for e in self.audit_entries
                if (session_id is None or e.session_id == session_id)
                and (action is None or e.action == action)
            ]
            return [copy.deepcopy(e) for e in reversed(matches[-limit:])]

    def delete_audit_entries_before(self, cutoff: datetime) -> int:
        with self._data_lock:
            kept = [e for e in self.audit_entries if as_utc(e.created_at) >= cutoff]
            removed = len(self.audit_entries) - len(kept)
            if removed:
                self.audit_entries = kept
                self._persist_state()
            return removed

    # -- snapshot persistence -----------------------------------------------

    def _persist_state(self) -> None:
        state = {
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
            "records": [
                self._serialize_record(r)
                for kinds in self.records.values()
                for r in kinds.values()
            ],
            "messages": [
                self._serialize_message(m) for thread in self.messages.values() for m in thread
            ],
            "refresh_tokens": [
                self._serialize_refresh_token(t) for t in self.refresh_tokens.values()
            ],
            "audit_entries": [self._serialize_audit_entry(e) for e in self.audit_entries],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.records = {}
        for raw in data.get("records", []):
            record = self._deserialize_record(raw)
            self.records.setdefault(record.session_id, {})[record.kind] = record
        self.messages = {}
        for raw in data.get("messages", []):
            message = self._deserialize_message(raw)
            self.messages.setdefault(message.session_id, []).append(message)
        for thread in self.messages.values():
            thread.sort(key=lambda m: m.seq)
        self.refresh_tokens = {
            t["id"]: self._deserialize_refresh_token(t) for t in data.get("refresh_tokens", [])
        }
        self._token_ids_by_hash = {t.token_hash: t.id for t in self.refresh_tokens.values()}
        self.audit_entries = [
            self._deserialize_audit_entry(e) for e in data.get("audit_entries", [])
        ]
        self.logger.info(
            "memory_store_loaded",
            sessions=len(self.sessions),
            refresh_tokens=len(self.refresh_tokens),
            audit_entries=len(self.audit_entries),
        )
        return True

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "status": session.status.value,
            "created_at": self._serialize_datetime(session.created_at),
            "updated_at": self._serialize_datetime(session.updated_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "progress": session.progress,
            "referral_source": session.referral_source,
            "terminal_at": self._serialize_datetime(session.terminal_at),
            "version": session.version,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            status=SessionStatus(data["status"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            progress=data.get("progress") or {},
            referral_source=data.get("referral_source"),
            terminal_at=self._deserialize_datetime(data.get("terminal_at")),
            version=data.get("version", 1),
        )

    def _serialize_record(self, record: SessionRecord) -> dict:
        return {
            "id": record.id,
            "session_id": record.session_id,
            "kind": record.kind.value,
            "fields": record.fields,
            "created_at": self._serialize_datetime(record.created_at),
            "updated_at": self._serialize_datetime(record.updated_at),
            "lookup_digest": record.lookup_digest,
        }

    def _deserialize_record(self, data: dict) -> SessionRecord:
        return SessionRecord(
            id=data["id"],
            session_id=data["session_id"],
            kind=RecordKind(data["kind"]),
            fields=data.get("fields") or {},
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(data["updated_at"]),
            lookup_digest=data.get("lookup_digest"),
        )

    def _serialize_message(self, message: ConversationMessage) -> dict:
        return {
            "id": message.id,
            "session_id": message.session_id,
            "seq": message.seq,
            "role": message.role.value,
            "content": message.content,
            "created_at": self._serialize_datetime(message.created_at),
        }

    def _deserialize_message(self, data: dict) -> ConversationMessage:
        return ConversationMessage(
            id=data["id"],
            session_id=data["session_id"],
            seq=data["seq"],
            role=MessageRole(data["role"]),
            content=data["content"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_refresh_token(self, token: RefreshToken) -> dict:
        return {
            "id": token.id,
            "session_id": token.session_id,
            "token_hash": token.token_hash,
            "lineage_id": token.lineage_id,
            "device_fingerprint": token.device_fingerprint,
            "created_at": self._serialize_datetime(token.created_at),
            "expires_at": self._serialize_datetime(token.expires_at),
            "parent_id": token.parent_id,
            "issued_from_ip": token.issued_from_ip,
            "issued_user_agent": token.issued_user_agent,
            "revoked_at": self._serialize_datetime(token.revoked_at),
            "revoked_reason": token.revoked_reason,
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshToken:
        return RefreshToken(
            id=data["id"],
            session_id=data["session_id"],
            token_hash=data["token_hash"],
            lineage_id=data["lineage_id"],
            device_fingerprint=data.get("device_fingerprint", ""),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            parent_id=data.get("parent_id"),
            issued_from_ip=data.get("issued_from_ip"),
            issued_user_agent=data.get("issued_user_agent"),
            revoked_at=self._deserialize_datetime(data.get("revoked_at")),
            revoked_reason=data.get("revoked_reason"),
        )

    def _serialize_audit_entry(self, entry: AuditLogEntry) -> dict:
        return {
            "id": entry.id,
            "action": entry.action.value,
            "created_at": self._serialize_datetime(entry.created_at),
            "session_id": entry.session_id,
            "resource": entry.resource,
            "resource_id": entry.resource_id,
            "details": entry.details,
            "actor_ip": entry.actor_ip,
            "actor_user_agent": entry.actor_user_agent,
        }

    def _deserialize_audit_entry(self, data: dict) -> AuditLogEntry:
        return AuditLogEntry(
            id=data["id"],
            action=AuditAction(data["action"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            session_id=data.get("session_id"),
            resource=data.get("resource", "session"),
            resource_id=data.get("resource_id"),
            details=data.get("details") or {},
            actor_ip=data.get("actor_ip"),
            actor_user_agent=data.get("actor_user_agent"),
        )
