"""Session status transitions.

The adjacency table is closed over ``SessionStatus`` and is checked for
completeness at import time, so adding a status without deciding its edges
fails loudly instead of falling through to a default.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, FrozenSet, Optional

from intakegate.logging import get_logger
from intakegate.service.audit import AuditService
from intakegate.service.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    SessionTerminalError,
)
from intakegate.storage.common import SessionStore
from intakegate.storage.models import (
    TERMINAL_STATUSES,
    AuditAction,
    RequestActor,
    Session,
    SessionStatus,
    as_utc,
    utcnow,
)

logger = get_logger(__name__)

MAX_CAS_ATTEMPTS = 5

_S = SessionStatus
VALID_TRANSITIONS: Dict[SessionStatus, FrozenSet[SessionStatus]] = {
    _S.STARTED: frozenset({_S.IN_PROGRESS, _S.ABANDONED, _S.EXPIRED}),
    _S.IN_PROGRESS: frozenset({_S.PENDING_VERIFICATION, _S.ABANDONED, _S.EXPIRED}),
    _S.PENDING_VERIFICATION: frozenset({_S.COMPLETE, _S.ABANDONED, _S.EXPIRED}),
    _S.COMPLETE: frozenset({_S.SUBMITTED, _S.ABANDONED, _S.EXPIRED}),
    _S.SUBMITTED: frozenset(),
    _S.ABANDONED: frozenset(),
    _S.EXPIRED: frozenset(),
}


def _check_table() -> None:
    missing = set(SessionStatus) - set(VALID_TRANSITIONS)
    if missing:
        raise RuntimeError(f"transition table missing statuses: {sorted(s.value for s in missing)}")
    for status in TERMINAL_STATUSES:
        if VALID_TRANSITIONS[status]:
            raise RuntimeError(f"terminal status {status.value} must not have outgoing edges")
    for status, targets in VALID_TRANSITIONS.items():
        if not status.is_terminal and not {_S.ABANDONED, _S.EXPIRED} <= targets:
            raise RuntimeError(f"{status.value} must be able to reach abandoned and expired")


_check_table()


def can_transition(current: SessionStatus, target: SessionStatus) -> bool:
    return target in VALID_TRANSITIONS[current]


def extended_expiry(session: Session, now: datetime, activity_window: timedelta) -> datetime:
    """Push ``expires_at`` out to ``now + activity_window``; never pull it in."""
    return max(as_utc(session.expires_at), now + activity_window)


def ensure_writable(session: Session, now: Optional[datetime] = None) -> None:
    """Reject owner writes to a terminal session or one past ``expires_at``.

    An overdue session the sweep has not reached yet is treated as expired;
    only abandonment and the sweep itself may still move it.
    """
    if session.is_terminal:
        raise SessionTerminalError(
            "session is no longer active", detail={"status": session.status.value}
        )
    if session.is_past_expiration(now):
        raise SessionTerminalError(
            "session has expired",
            detail={"status": session.status.value, "expired": True},
        )


def plan_transition(
    session: Session,
    target: SessionStatus,
    *,
    now: datetime,
    activity_window: timedelta,
) -> Dict[str, Any]:
    """Validate an edge and return the column changes that apply it."""
    if session.is_terminal:
        raise SessionTerminalError(
            "session is no longer active",
            detail={"status": session.status.value},
        )
    if not can_transition(session.status, target):
        raise InvalidTransitionError(
            "transition not permitted",
            detail={"previous_status": session.status.value, "target_status": target.value},
        )
    changes: Dict[str, Any] = {"status": target, "updated_at": now}
    if target.is_terminal:
        changes["terminal_at"] = now
    else:
        changes["expires_at"] = extended_expiry(session, now, activity_window)
    return changes


def _audit_action_for(target: SessionStatus) -> AuditAction:
    if target == SessionStatus.ABANDONED:
        return AuditAction.SESSION_ABANDONED
    if target == SessionStatus.EXPIRED:
        return AuditAction.SESSION_EXPIRED
    return AuditAction.STATUS_CHANGED


def record_transition(
    audit: AuditService,
    session_id: str,
    previous: SessionStatus,
    target: SessionStatus,
    *,
    actor: Optional[RequestActor] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    audit.record(
        _audit_action_for(target),
        session_id=session_id,
        details={
            "previous_status": previous.value,
            "next_status": target.value,
            **(details or {}),
        },
        actor=actor,
    )


def apply_transition(
    store: SessionStore,
    audit: AuditService,
    session: Session,
    target: SessionStatus,
    *,
    activity_window: timedelta,
    actor: Optional[RequestActor] = None,
    now: Optional[datetime] = None,
    details: Optional[Dict[str, Any]] = None,
) -> Session:
    """Move ``session`` to ``target`` with a compare-and-set on its version.

    Exactly one audit entry is written per call. Abandoning an already
    abandoned session succeeds without a state change and is still audited.
    On a version conflict the session is reloaded and the edge re-validated,
    so a concurrent transition either wins cleanly or makes this one fail
    with a typed error.
    """
    current = session
    for _ in range(MAX_CAS_ATTEMPTS):
        if target == SessionStatus.ABANDONED and current.status == SessionStatus.ABANDONED:
            record_transition(
                audit,
                current.id,
                current.status,
                target,
                actor=actor,
                details={**(details or {}), "repeated": True},
            )
            return current
        stamp = now or utcnow()
        changes = plan_transition(current, target, now=stamp, activity_window=activity_window)
        updated = store.update_session_if_version(current.id, current.version, changes)
        if updated is not None:
            record_transition(audit, current.id, current.status, target, actor=actor, details=details)
            logger.info(
                "session_status_changed",
                session_id=current.id,
                previous_status=current.status.value,
                next_status=target.value,
            )
            return updated
        reloaded = store.get_session(current.id)
        if reloaded is None:
            raise NotFoundError("session not found")
        current = reloaded
    logger.warning("session_transition_conflict", session_id=session.id, target=target.value)
    raise ConflictError("session was modified concurrently")
