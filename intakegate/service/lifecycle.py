"""Background lifecycle jobs: expiration sweep and retention purge.

Both jobs are idempotent and safe to run concurrently with each other and
with request traffic: every status change goes through the same version
compare-and-set as interactive transitions, and a session that moved on
since it was listed is simply skipped. A failure on one session is logged
and counted without stopping the batch.
"""

from __future__ import annotations

import asyncio
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import List, Optional

from intakegate.config import Settings
from intakegate.logging import get_logger
from intakegate.service.audit import AuditService
from intakegate.service.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
)
from intakegate.service.state_machine import apply_transition
from intakegate.service.tokens import TokenService
from intakegate.storage.common import SessionStore
from intakegate.storage.models import AuditAction, SessionStatus, utcnow

logger = get_logger(__name__)

_MAX_BACKOFF_SECONDS = 300


@dataclass
class SweepReport:
    expired: int = 0
    skipped: int = 0
    failed: int = 0
    failed_ids: List[str] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class PurgeReport:
    deleted_sessions: int = 0
    failed: int = 0
    deleted_refresh_tokens: int = 0
    deleted_audit_entries: int = 0
    cancelled: bool = False


def _cancelled(cancel_event: Optional[threading.Event]) -> bool:
    return cancel_event is not None and cancel_event.is_set()


def run_expiration_sweep(
    store: SessionStore,
    audit: AuditService,
    tokens: TokenService,
    *,
    now: Optional[datetime] = None,
    batch_size: int = 100,
    activity_window: timedelta = timedelta(minutes=60),
    cancel_event: Optional[threading.Event] = None,
) -> SweepReport:
    """Move every non-terminal session past ``expires_at`` to ``expired``."""
    now = now or utcnow()
    report = SweepReport()
    seen: set = set()
    while not _cancelled(cancel_event):
        batch = store.list_expired_sessions(now, batch_size, exclude=seen)
        if not batch:
            break
        for session in batch:
            if _cancelled(cancel_event):
                break
            seen.add(session.id)
            try:
                apply_transition(
                    store,
                    audit,
                    session,
                    SessionStatus.EXPIRED,
                    activity_window=activity_window,
                    now=now,
                    details={"trigger": "expiration_sweep"},
                )
            except (InvalidTransitionError, NotFoundError):
                # Finished or removed by someone else since it was listed
                report.skipped += 1
                continue
            except ConflictError:
                report.failed += 1
                report.failed_ids.append(session.id)
                continue
            except Exception as exc:
                report.failed += 1
                report.failed_ids.append(session.id)
                logger.error(
                    "expiration_sweep_session_failed",
                    session_id=session.id,
                    error_type=type(exc).__name__,
                )
                continue
            report.expired += 1
            try:
                tokens.revoke_all(session.id, "session_terminal", now=now)
            except Exception as exc:
                logger.error(
                    "expiration_sweep_revoke_failed",
                    session_id=session.id,
                    error_type=type(exc).__name__,
                )
        if len(batch) < batch_size:
            break
    report.cancelled = _cancelled(cancel_event)
    logger.info(
        "expiration_sweep_completed",
        expired=report.expired,
        skipped=report.skipped,
        failed=report.failed,
        cancelled=report.cancelled,
    )
    return report


def run_retention_purge(
    store: SessionStore,
    audit: AuditService,
    *,
    now: Optional[datetime] = None,
    retention_days: int = 90,
    refresh_token_purge_days: int = 90,
    audit_retention_days: int = 2190,
    batch_size: int = 100,
    cancel_event: Optional[threading.Event] = None,
) -> PurgeReport:
    """Delete terminal sessions older than the retention window.

    The deletion audit entry is written before the row goes away so the trail
    survives the purge even if the delete itself fails.
    """
    now = now or utcnow()
    cutoff = now - timedelta(days=retention_days)
    report = PurgeReport()
    attempted: set = set()
    while not _cancelled(cancel_event):
        batch = store.list_purgeable_sessions(cutoff, batch_size, exclude=attempted)
        if not batch:
            break
        for session in batch:
            if _cancelled(cancel_event):
                break
            attempted.add(session.id)
            audit.record(
                AuditAction.SESSION_DELETED,
                session_id=session.id,
                details={
                    "status": session.status.value,
                    "retention_days": retention_days,
                },
            )
            try:
                if store.delete_session(session.id):
                    report.deleted_sessions += 1
            except Exception as exc:
                report.failed += 1
                logger.error(
                    "retention_purge_session_failed",
                    session_id=session.id,
                    error_type=type(exc).__name__,
                )
        if len(batch) < batch_size:
            break

    if not _cancelled(cancel_event):
        report.deleted_refresh_tokens = store.delete_expired_refresh_tokens(
            now - timedelta(days=refresh_token_purge_days)
        )
        report.deleted_audit_entries = store.delete_audit_entries_before(
            now - timedelta(days=audit_retention_days)
        )
    report.cancelled = _cancelled(cancel_event)
    logger.info(
        "retention_purge_completed",
        deleted_sessions=report.deleted_sessions,
        failed=report.failed,
        deleted_refresh_tokens=report.deleted_refresh_tokens,
        deleted_audit_entries=report.deleted_audit_entries,
        cancelled=report.cancelled,
    )
    return report


class LifecycleScheduler:
    """Runs the sweep and the purge on their own intervals off the request path.

    Each job executes in a worker thread; ``stop()`` signals the thread to
    finish its current record and waits for it.
    """

    def __init__(
        self,
        store: SessionStore,
        audit: AuditService,
        tokens: TokenService,
        settings: Settings,
        *,
        tick_seconds: float = 5.0,
    ) -> None:
        self.store = store
        self.audit = audit
        self.tokens = tokens
        self.settings = settings
        self.tick_seconds = tick_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._cancel = threading.Event()
        self._last_sweep: float = 0.0
        self._last_purge: float = 0.0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the background loop."""
        if self._running:
            logger.warning("lifecycle_scheduler_already_running")
            return
        self._running = True
        self._cancel.clear()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            "lifecycle_scheduler_started",
            sweep_interval=self.settings.expiration_sweep_interval_seconds,
            purge_interval=self.settings.retention_purge_interval_seconds,
        )

    async def stop(self) -> None:
        """Stop the background loop."""
        self._running = False
        self._cancel.set()
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("lifecycle_scheduler_stopped")

    def sweep_once(self) -> SweepReport:
        return run_expiration_sweep(
            self.store,
            self.audit,
            self.tokens,
            batch_size=self.settings.sweep_batch_size,
            activity_window=timedelta(minutes=self.settings.activity_window_minutes),
            cancel_event=self._cancel,
        )

    def purge_once(self) -> PurgeReport:
        return run_retention_purge(
            self.store,
            self.audit,
            retention_days=self.settings.retention_days,
            refresh_token_purge_days=self.settings.refresh_token_purge_days,
            audit_retention_days=self.settings.audit_retention_days,
            batch_size=self.settings.sweep_batch_size,
            cancel_event=self._cancel,
        )

    async def _tick(self) -> None:
        now = time.monotonic()
        if not self._last_sweep or now - self._last_sweep >= self.settings.expiration_sweep_interval_seconds:
            self._last_sweep = now
            await asyncio.to_thread(self.sweep_once)
        if not self._last_purge or now - self._last_purge >= self.settings.retention_purge_interval_seconds:
            self._last_purge = now
            await asyncio.to_thread(self.purge_once)

    async def _run_loop(self) -> None:
        consecutive_errors = 0
        while self._running:
            try:
                await self._tick()
                consecutive_errors = 0
            except Exception as exc:
                consecutive_errors += 1
                logger.error(
                    "lifecycle_scheduler_loop_error",
                    error=str(exc),
                    error_type=type(exc).__name__,
                    consecutive_errors=consecutive_errors,
                )
                # Exponential backoff on repeated errors
                if consecutive_errors > 3:
                    backoff = min(
                        _MAX_BACKOFF_SECONDS,
                        self.tick_seconds * (2 ** (consecutive_errors - 3)),
                    )
                    logger.warning(
                        "lifecycle_scheduler_backoff",
                        backoff_seconds=backoff,
                        consecutive_errors=consecutive_errors,
                    )
                    await asyncio.sleep(backoff)
                    continue
            await asyncio.sleep(self.tick_seconds)
