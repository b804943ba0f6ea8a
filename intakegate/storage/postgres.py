from __future__ import annotations

import json
import math
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import AbstractSet, Any, Dict, Iterator, List, Optional

from psycopg import Connection, OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from intakegate.logging import get_logger
from intakegate.service.crypto import FieldCipher
from intakegate.storage.common import (
    MESSAGE_CONTENT_FIELD,
    check_session_changes,
    message_scope,
    parse_json_field,
    record_scope,
    sensitive_fields,
)
from intakegate.storage.errors import ConstraintViolation, StoreTimeout
from intakegate.storage.models import (
    TERMINAL_STATUSES,
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

_TERMINAL_VALUES = tuple(sorted(s.value for s in TERMINAL_STATUSES))

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS intake_session (
        id TEXT PRIMARY KEY,
        status TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        progress JSONB NOT NULL DEFAULT '{}'::jsonb,
        referral_source TEXT,
        terminal_at TIMESTAMPTZ,
        version INTEGER NOT NULL DEFAULT 1
    )
    """,
    "CREATE INDEX IF NOT EXISTS intake_session_expiry_idx ON intake_session (status, expires_at)",
    "CREATE INDEX IF NOT EXISTS intake_session_terminal_idx ON intake_session (terminal_at)",
    """
    CREATE TABLE IF NOT EXISTS session_record (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES intake_session(id) ON DELETE CASCADE,
        kind TEXT NOT NULL,
        fields JSONB NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        updated_at TIMESTAMPTZ NOT NULL,
        lookup_digest TEXT,
        UNIQUE (session_id, kind)
    )
    """,
    "CREATE INDEX IF NOT EXISTS session_record_digest_idx ON session_record (lookup_digest)",
    """
    CREATE TABLE IF NOT EXISTS session_message (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES intake_session(id) ON DELETE CASCADE,
        seq INTEGER NOT NULL,
        role TEXT NOT NULL,
        content TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        UNIQUE (session_id, seq)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id TEXT PRIMARY KEY,
        session_id TEXT NOT NULL REFERENCES intake_session(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        lineage_id TEXT NOT NULL,
        device_fingerprint TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        parent_id TEXT,
        issued_from_ip TEXT,
        issued_user_agent TEXT,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_session_idx ON refresh_token (session_id)",
    # No foreign key: audit rows outlive the sessions they describe
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        action TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        session_id TEXT,
        resource TEXT NOT NULL,
        resource_id TEXT,
        details JSONB NOT NULL DEFAULT '{}'::jsonb,
        actor_ip TEXT,
        actor_user_agent TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS audit_log_session_idx ON audit_log (session_id, created_at)",
    "CREATE INDEX IF NOT EXISTS audit_log_created_idx ON audit_log (created_at)",
)


class PostgresStore:
    """Postgres-backed session store.

    Every connection carries a ``statement_timeout`` and the pool enforces a
    checkout timeout, so no call waits longer than ``timeout_seconds``; both
    surface as :class:`StoreTimeout`.
    """

    def __init__(
        self,
        dsn: str,
        *,
        cipher: FieldCipher,
        timeout_seconds: float = 5.0,
        min_size: int = 1,
        max_size: int = 10,
    ) -> None:
        self.dsn = dsn
        self.cipher = cipher
        self.timeout_seconds = timeout_seconds
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": max(1, math.ceil(timeout_seconds)),
                "options": f"-c statement_timeout={int(timeout_seconds * 1000)}",
            },
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Connection]:
        try:
            with self.pool.connection(timeout=self.timeout_seconds) as conn:
                yield conn
        except (PoolTimeout, errors.QueryCanceled, OperationalError) as exc:
            self.logger.warning("store_timeout", error_type=type(exc).__name__)
            raise StoreTimeout("database did not answer in time") from exc

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # -- row mapping --------------------------------------------------------

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            status=SessionStatus(row["status"]),
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
            expires_at=as_utc(row["expires_at"]),
            progress=parse_json_field(row.get("progress")),
            referral_source=row.get("referral_source"),
            terminal_at=as_utc(row["terminal_at"]) if row.get("terminal_at") else None,
            version=row["version"],
        )

    @staticmethod
    def _refresh_token_from_row(row: Dict[str, Any]) -> RefreshToken:
        return RefreshToken(
            id=row["id"],
            session_id=row["session_id"],
            token_hash=row["token_hash"],
            lineage_id=row["lineage_id"],
            device_fingerprint=row["device_fingerprint"],
            created_at=as_utc(row["created_at"]),
            expires_at=as_utc(row["expires_at"]),
            parent_id=row.get("parent_id"),
            issued_from_ip=row.get("issued_from_ip"),
            issued_user_agent=row.get("issued_user_agent"),
            revoked_at=as_utc(row["revoked_at"]) if row.get("revoked_at") else None,
            revoked_reason=row.get("revoked_reason"),
        )

    @staticmethod
    def _audit_entry_from_row(row: Dict[str, Any]) -> AuditLogEntry:
        return AuditLogEntry(
            id=row["id"],
            action=AuditAction(row["action"]),
            created_at=as_utc(row["created_at"]),
            session_id=row.get("session_id"),
            resource=row["resource"],
            resource_id=row.get("resource_id"),
            details=parse_json_field(row.get("details")),
            actor_ip=row.get("actor_ip"),
            actor_user_agent=row.get("actor_user_agent"),
        )

    def _record_from_row(self, row: Dict[str, Any]) -> SessionRecord:
        kind = RecordKind(row["kind"])
        return SessionRecord(
            id=row["id"],
            session_id=row["session_id"],
            kind=kind,
            fields=self.cipher.decrypt_fields(
                parse_json_field(row["fields"]),
                sensitive_fields(kind),
                scope=record_scope(row["id"]),
            ),
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
            lookup_digest=row.get("lookup_digest"),
        )

    def _message_from_row(self, row: Dict[str, Any]) -> ConversationMessage:
        return ConversationMessage(
            id=row["id"],
            session_id=row["session_id"],
            seq=row["seq"],
            role=MessageRole(row["role"]),
            content=self.cipher.decrypt(
                row["content"], f"{message_scope(row['id'])}:{MESSAGE_CONTENT_FIELD}"
            ),
            created_at=as_utc(row["created_at"]),
        )

    @staticmethod
    def _insert_refresh_token(conn: Connection, token: RefreshToken) -> None:
        conn.execute(
            """
            INSERT INTO refresh_token (
                id, session_id, token_hash, lineage_id, device_fingerprint, created_at,
                expires_at, parent_id, issued_from_ip, issued_user_agent, revoked_at, revoked_reason
            )
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                token.id,
                token.session_id,
                token.token_hash,
                token.lineage_id,
                token.device_fingerprint,
                token.created_at,
                token.expires_at,
                token.parent_id,
                token.issued_from_ip,
                token.issued_user_agent,
                token.revoked_at,
                token.revoked_reason,
            ),
        )

    # -- sessions -----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO intake_session (
                        id, status, created_at, updated_at, expires_at, progress,
                        referral_source, terminal_at, version
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.status.value,
                        session.created_at,
                        session.updated_at,
                        session.expires_at,
                        json.dumps(session.progress),
                        session.referral_source,
                        session.terminal_at,
                        session.version,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation("session already exists", {"session_id": session.id})
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM intake_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session_if_version(
        self, session_id: str, expected_version: int, changes: Dict[str, Any]
    ) -> Optional[Session]:
        check_session_changes(changes)
        assignments: List[str] = []
        params: List[Any] = []
        for column, value in changes.items():
            if column == "status":
                value = SessionStatus(value).value
            elif column == "progress":
                value = json.dumps(value)
            assignments.append(f"{column} = %s")
            params.append(value)
        assignments.append("version = version + 1")
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE intake_session SET {', '.join(assignments)} "
                "WHERE id = %s AND version = %s RETURNING *",
                (*params, session_id, expected_version),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def list_expired_sessions(
        self, now: datetime, limit: int, *, exclude: AbstractSet[str] = frozenset()
    ) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM intake_session
                WHERE status <> ALL(%s) AND expires_at <= %s AND id <> ALL(%s)
                ORDER BY expires_at
                LIMIT %s
                """,
                (list(_TERMINAL_VALUES), now, list(exclude), limit),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def list_purgeable_sessions(
        self, cutoff: datetime, limit: int, *, exclude: AbstractSet[str] = frozenset()
    ) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM intake_session
                WHERE status = ANY(%s) AND COALESCE(terminal_at, updated_at) <= %s
                  AND id <> ALL(%s)
                ORDER BY COALESCE(terminal_at, updated_at)
                LIMIT %s
                """,
                (list(_TERMINAL_VALUES), cutoff, list(exclude), limit),
            ).fetchall()
        return [self._session_from_row(r) for r in rows]

    def delete_session(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM intake_session WHERE id = %s", (session_id,))
            return cur.rowcount > 0

    def find_session_by_contact_digest(self, digest: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT s.* FROM intake_session s
                JOIN session_record r ON r.session_id = s.id
                WHERE r.kind = %s AND r.lookup_digest = %s
                ORDER BY (s.status = ANY(%s)) ASC, s.updated_at DESC
                LIMIT 1
                """,
                (RecordKind.CONTACT.value, digest, list(_TERMINAL_VALUES)),
            ).fetchone()
        return self._session_from_row(row) if row else None

    # -- satellite records --------------------------------------------------

    def upsert_record(
        self,
        session_id: str,
        kind: RecordKind,
        fields: Dict[str, Any],
        *,
        lookup_digest: Optional[str] = None,
    ) -> SessionRecord:
        now = utcnow()
        try:
            with self._connect() as conn, conn.transaction():
                existing = conn.execute(
                    "SELECT id FROM session_record WHERE session_id = %s AND kind = %s FOR UPDATE",
                    (session_id, kind.value),
                ).fetchone()
                record_id = existing["id"] if existing else str(uuid.uuid4())
                sealed = self.cipher.encrypt_fields(
                    fields, sensitive_fields(kind), scope=record_scope(record_id)
                )
                # id is rewritten on conflict so the row always matches the scope it was sealed under
                row = conn.execute(
                    """
                    INSERT INTO session_record (id, session_id, kind, fields, created_at, updated_at, lookup_digest)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (session_id, kind) DO UPDATE
                    SET id = EXCLUDED.id, fields = EXCLUDED.fields,
                        updated_at = EXCLUDED.updated_at, lookup_digest = EXCLUDED.lookup_digest
                    RETURNING *
                    """,
                    (
                        record_id,
                        session_id,
                        kind.value,
                        json.dumps(sealed),
                        now,
                        now,
                        lookup_digest,
                    ),
                ).fetchone()
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session not found", {"session_id": session_id})
        return self._record_from_row(row)

    def get_record(self, session_id: str, kind: RecordKind) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM session_record WHERE session_id = %s AND kind = %s",
                (session_id, kind.value),
            ).fetchone()
        return self._record_from_row(row) if row else None

    def append_message(
        self, session_id: str, role: MessageRole, content: str
    ) -> ConversationMessage:
        message_id = str(uuid.uuid4())
        now = utcnow()
        sealed = self.cipher.encrypt(content, f"{message_scope(message_id)}:{MESSAGE_CONTENT_FIELD}")
        with self._connect() as conn, conn.transaction():
            # Row lock on the parent serializes seq allocation per session
            parent = conn.execute(
                "SELECT 1 FROM intake_session WHERE id = %s FOR UPDATE", (session_id,)
            ).fetchone()
            if not parent:
                raise ConstraintViolation("session not found", {"session_id": session_id})
            seq_row = conn.execute(
                "SELECT COALESCE(MAX(seq) + 1, 0) AS next_seq FROM session_message WHERE session_id = %s",
                (session_id,),
            ).fetchone()
            seq = seq_row["next_seq"]
            conn.execute(
                """
                INSERT INTO session_message (id, session_id, seq, role, content, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                """,
                (message_id, session_id, seq, role.value, sealed, now),
            )
        return ConversationMessage(
            id=message_id, session_id=session_id, seq=seq, role=role, content=content, created_at=now
        )

    def list_messages(
        self, session_id: str, *, limit: Optional[int] = None
    ) -> List[ConversationMessage]:
        with self._connect() as conn:
            if limit is None:
                rows = conn.execute(
                    "SELECT * FROM session_message WHERE session_id = %s ORDER BY seq",
                    (session_id,),
                ).fetchall()
            else:
                rows = conn.execute(
                    """
                    SELECT * FROM (
                        SELECT * FROM session_message WHERE session_id = %s ORDER BY seq DESC LIMIT %s
                    ) recent ORDER BY seq
                    """,
                    (session_id, limit),
                ).fetchall()
        return [self._message_from_row(r) for r in rows]

    # -- refresh tokens -----------------------------------------------------

    def create_refresh_token(
        self, token: RefreshToken, *, supersede_existing: bool = False
    ) -> RefreshToken:
        try:
            with self._connect() as conn, conn.transaction():
                if supersede_existing:
                    conn.execute(
                        """
                        UPDATE refresh_token SET revoked_at = %s, revoked_reason = 'superseded'
                        WHERE session_id = %s AND revoked_at IS NULL
                        """,
                        (token.created_at, token.session_id),
                    )
                self._insert_refresh_token(conn, token)
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session not found", {"session_id": token.session_id})
        except errors.UniqueViolation:
            raise ConstraintViolation("refresh token hash collision")
        return token

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_token_from_row(row) if row else None

    def rotate_refresh_token(
        self, old_hash: str, new_token: RefreshToken, now: datetime
    ) -> RotationResult:
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                "SELECT * FROM refresh_token WHERE token_hash = %s FOR UPDATE", (old_hash,)
            ).fetchone()
            if not row:
                return RotationResult(RotationOutcome.UNKNOWN)
            previous = self._refresh_token_from_row(row)
            if previous.revoked_at is not None:
                return RotationResult(RotationOutcome.REVOKED, previous=previous)
            if previous.expires_at <= now:
                return RotationResult(RotationOutcome.EXPIRED, previous=previous)
            conn.execute(
                "UPDATE refresh_token SET revoked_at = %s, revoked_reason = 'rotated' WHERE id = %s",
                (now, previous.id),
            )
            previous.revoked_at = now
            previous.revoked_reason = "rotated"
            new_token.session_id = previous.session_id
            new_token.lineage_id = previous.lineage_id
            new_token.parent_id = previous.id
            self._insert_refresh_token(conn, new_token)
        return RotationResult(RotationOutcome.ROTATED, previous=previous, issued=new_token)

    def revoke_session_refresh_tokens(self, session_id: str, reason: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE refresh_token SET revoked_at = %s, revoked_reason = %s
                WHERE session_id = %s AND revoked_at IS NULL
                """,
                (now, reason, session_id),
            )
            return cur.rowcount

    def delete_expired_refresh_tokens(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM refresh_token WHERE expires_at < %s", (cutoff,))
            return cur.rowcount

    # -- audit --------------------------------------------------------------

    def append_audit_entry(self, entry: AuditLogEntry) -> AuditLogEntry:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_log (
                    id, action, created_at, session_id, resource, resource_id,
                    details, actor_ip, actor_user_agent
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    entry.id,
                    entry.action.value,
                    entry.created_at,
                    entry.session_id,
                    entry.resource,
                    entry.resource_id,
                    json.dumps(entry.details),
                    entry.actor_ip,
                    entry.actor_user_agent,
                ),
            )
        return entry

    def list_audit_entries(
        self,
        *,
        session_id: Optional[str] = None,
        action: Optional[AuditAction] = None,
        limit: int = 100,
    ) -> List[AuditLogEntry]:
        clauses: List[str] = []
        params: List[Any] = []
        if session_id is not None:
            clauses.append("session_id = %s")
            params.append(session_id)
        if action is not None:
            clauses.append("action = %s")
            params.append(action.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM audit_log {where} ORDER BY created_at DESC, id DESC LIMIT %s",
                (*params, limit),
            ).fetchall()
        return [self._audit_entry_from_row(r) for r in rows]

    def delete_audit_entries_before(self, cutoff: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM audit_log WHERE created_at < %s", (cutoff,))
            return cur.rowcount
