"""Append-only audit sink.

Audit writes never block or roll back the operation that triggered them. A
failed write is logged at error level, appended to a dead-letter JSONL file on
the shared volume and counted in ``failed_writes`` so operators can alert on
it and replay the entries once the store is healthy again.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from intakegate.logging import get_logger
from intakegate.storage.common import SessionStore
from intakegate.storage.models import (
    ALL_PHI_FIELDS,
    AuditAction,
    AuditLogEntry,
    RequestActor,
    as_utc,
    utcnow,
)

logger = get_logger(__name__)

REDACTED = "[REDACTED]"

_SECRET_DETAIL_KEYS = frozenset(
    {
        "token",
        "access_token",
        "refresh_token",
        "recovery_token",
        "token_hash",
        "password",
        "secret",
        "authorization",
        "magic_link",
        "patch",
        "payload",
    }
)


def scrub_details(details: Mapping[str, Any]) -> Dict[str, Any]:
    """Drop values of PHI or secret keys, recursing into nested maps and lists."""
    scrubbed: Dict[str, Any] = {}
    for key, value in details.items():
        if key in ALL_PHI_FIELDS or key.lower() in _SECRET_DETAIL_KEYS:
            scrubbed[key] = REDACTED
        elif isinstance(value, Mapping):
            scrubbed[key] = scrub_details(value)
        elif isinstance(value, (list, tuple)):
            scrubbed[key] = [
                scrub_details(item) if isinstance(item, Mapping) else item for item in value
            ]
        else:
            scrubbed[key] = value
    return scrubbed


def _entry_to_json(entry: AuditLogEntry) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "action": entry.action.value,
        "created_at": entry.created_at.isoformat(),
        "session_id": entry.session_id,
        "resource": entry.resource,
        "resource_id": entry.resource_id,
        "details": entry.details,
        "actor_ip": entry.actor_ip,
        "actor_user_agent": entry.actor_user_agent,
    }


def _entry_from_json(data: Dict[str, Any]) -> AuditLogEntry:
    return AuditLogEntry(
        id=data["id"],
        action=AuditAction(data["action"]),
        created_at=as_utc(datetime.fromisoformat(data["created_at"])),
        session_id=data.get("session_id"),
        resource=data.get("resource", "session"),
        resource_id=data.get("resource_id"),
        details=data.get("details") or {},
        actor_ip=data.get("actor_ip"),
        actor_user_agent=data.get("actor_user_agent"),
    )


class AuditService:
    def __init__(self, store: SessionStore, *, fs_root: str) -> None:
        self.store = store
        self.dead_letter_path = Path(fs_root) / "audit" / "dead_letter.jsonl"
        self.failed_writes = 0
        self._dead_letter_lock = threading.Lock()

    def record(
        self,
        action: AuditAction,
        *,
        session_id: Optional[str] = None,
        details: Optional[Mapping[str, Any]] = None,
        resource: str = "session",
        resource_id: Optional[str] = None,
        actor: Optional[RequestActor] = None,
    ) -> AuditLogEntry:
        entry = AuditLogEntry(
            id=str(uuid.uuid4()),
            action=action,
            created_at=utcnow(),
            session_id=session_id,
            resource=resource,
            resource_id=resource_id if resource_id is not None else session_id,
            details=scrub_details(details or {}),
            actor_ip=actor.ip if actor else None,
            actor_user_agent=actor.user_agent if actor else None,
        )
        try:
            self.store.append_audit_entry(entry)
        except Exception as exc:
            self.failed_writes += 1
            logger.error(
                "audit_write_failed",
                audit_id=entry.id,
                action=action.value,
                session_id=session_id,
                error_type=type(exc).__name__,
                failed_writes=self.failed_writes,
            )
            self._dead_letter(entry)
        return entry

    def _dead_letter(self, entry: AuditLogEntry) -> None:
        line = json.dumps(_entry_to_json(entry), separators=(",", ":"))
        with self._dead_letter_lock:
            try:
                self.dead_letter_path.parent.mkdir(parents=True, exist_ok=True)
                with self.dead_letter_path.open("a", encoding="utf-8") as handle:
                    handle.write(line + "\n")
            except OSError as exc:
                # Last resort: the entry itself goes to the log stream
                logger.critical(
                    "audit_dead_letter_failed",
                    audit_entry=_entry_to_json(entry),
                    error_type=type(exc).__name__,
                )

    def pending_dead_letters(self) -> int:
        with self._dead_letter_lock:
            try:
                with self.dead_letter_path.open("r", encoding="utf-8") as handle:
                    return sum(1 for line in handle if line.strip())
            except FileNotFoundError:
                return 0

    def replay_dead_letters(self) -> int:
        """Re-attempt dead-lettered entries; entries that still fail stay in the file."""
        with self._dead_letter_lock:
            try:
                lines = self.dead_letter_path.read_text(encoding="utf-8").splitlines()
            except FileNotFoundError:
                return 0
            remaining: List[str] = []
            replayed = 0
            for line in lines:
                if not line.strip():
                    continue
                try:
                    entry = _entry_from_json(json.loads(line))
                except (ValueError, KeyError) as exc:
                    logger.error("audit_dead_letter_unreadable", error_type=type(exc).__name__)
                    remaining.append(line)
                    continue
                try:
                    self.store.append_audit_entry(entry)
                    replayed += 1
                except Exception as exc:
                    logger.warning(
                        "audit_replay_failed", audit_id=entry.id, error_type=type(exc).__name__
                    )
                    remaining.append(line)
            self._rewrite_dead_letters(remaining)
        if replayed:
            logger.info("audit_dead_letters_replayed", replayed=replayed, remaining=len(remaining))
        return replayed

    def _rewrite_dead_letters(self, lines: List[str]) -> None:
        if not lines:
            self.dead_letter_path.unlink(missing_ok=True)
            return
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.dead_letter_path.parent), prefix=".dead_letter_", suffix=".tmp"
        )
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write("\n".join(lines) + "\n")
        os.replace(tmp_path, self.dead_letter_path)
