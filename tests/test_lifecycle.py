"""Tests for the expiration sweep, the retention purge and their scheduler."""

import asyncio
import threading
from datetime import timedelta

from intakegate.service.lifecycle import (
    LifecycleScheduler,
    run_expiration_sweep,
    run_retention_purge,
)
from intakegate.service.tokens import hash_refresh_token
from intakegate.storage.models import AuditAction, Session, SessionStatus, utcnow


def _session_expiring_at(store, expires_at) -> Session:
    session = Session.new(ttl_hours=1, now=expires_at - timedelta(hours=1))
    return store.create_session(session)


def _terminal_session(store, status, terminal_at) -> Session:
    session = store.create_session(Session.new(now=terminal_at - timedelta(hours=1)))
    return store.update_session_if_version(
        session.id,
        session.version,
        {"status": status, "terminal_at": terminal_at, "updated_at": terminal_at},
    )


class TestExpirationSweep:
    """Sessions past expires_at move to expired; nothing else is touched."""

    def test_boundary_one_second_either_side(self, runtime):
        now = utcnow()
        overdue = _session_expiring_at(runtime.store, now - timedelta(seconds=1))
        not_yet = _session_expiring_at(runtime.store, now + timedelta(seconds=1))

        report = run_expiration_sweep(runtime.store, runtime.audit, runtime.tokens, now=now)

        assert report.expired == 1
        assert report.failed == 0
        expired = runtime.store.get_session(overdue.id)
        assert expired.status == SessionStatus.EXPIRED
        assert expired.terminal_at == now
        assert runtime.store.get_session(not_yet.id).status == SessionStatus.STARTED

    def test_expiry_is_audited_with_trigger(self, runtime):
        now = utcnow()
        overdue = _session_expiring_at(runtime.store, now - timedelta(minutes=5))

        run_expiration_sweep(runtime.store, runtime.audit, runtime.tokens, now=now)

        entries = runtime.store.list_audit_entries(
            session_id=overdue.id, action=AuditAction.SESSION_EXPIRED
        )
        assert len(entries) == 1
        assert entries[0].details["trigger"] == "expiration_sweep"
        assert entries[0].details["previous_status"] == "started"

    def test_expired_sessions_lose_refresh_tokens(self, runtime):
        now = utcnow()
        overdue = _session_expiring_at(runtime.store, now - timedelta(seconds=1))
        pair = runtime.tokens.issue_pair(overdue)

        run_expiration_sweep(runtime.store, runtime.audit, runtime.tokens, now=now)

        stored = runtime.store.get_refresh_token_by_hash(hash_refresh_token(pair.refresh_token))
        assert stored.revoked_reason == "session_terminal"

    def test_sweep_is_idempotent(self, runtime):
        now = utcnow()
        _session_expiring_at(runtime.store, now - timedelta(seconds=1))

        first = run_expiration_sweep(runtime.store, runtime.audit, runtime.tokens, now=now)
        second = run_expiration_sweep(runtime.store, runtime.audit, runtime.tokens, now=now)

        assert first.expired == 1
        assert second.expired == 0
        assert len(runtime.store.list_audit_entries(action=AuditAction.SESSION_EXPIRED)) == 1

    def test_terminal_sessions_are_not_swept(self, runtime):
        now = utcnow()
        submitted = _terminal_session(
            runtime.store, SessionStatus.SUBMITTED, now - timedelta(days=2)
        )

        report = run_expiration_sweep(runtime.store, runtime.audit, runtime.tokens, now=now)

        assert report.expired == 0
        assert runtime.store.get_session(submitted.id).status == SessionStatus.SUBMITTED

    def test_one_failure_does_not_stop_the_batch(self, runtime, monkeypatch):
        now = utcnow()
        broken = _session_expiring_at(runtime.store, now - timedelta(minutes=2))
        healthy = _session_expiring_at(runtime.store, now - timedelta(minutes=1))
        original = runtime.store.update_session_if_version

        def flaky(session_id, expected_version, changes):
            if session_id == broken.id:
                raise RuntimeError("row lock timeout")
            return original(session_id, expected_version, changes)

        monkeypatch.setattr(runtime.store, "update_session_if_version", flaky)

        report = run_expiration_sweep(runtime.store, runtime.audit, runtime.tokens, now=now)

        assert report.expired == 1
        assert report.failed == 1
        assert report.failed_ids == [broken.id]
        assert runtime.store.get_session(healthy.id).status == SessionStatus.EXPIRED
        assert runtime.store.get_session(broken.id).status == SessionStatus.STARTED

    def test_a_page_of_failures_does_not_hide_later_sessions(self, runtime, monkeypatch):
        now = utcnow()
        stuck = {
            _session_expiring_at(runtime.store, now - timedelta(minutes=3)).id,
            _session_expiring_at(runtime.store, now - timedelta(minutes=2)).id,
        }
        later = _session_expiring_at(runtime.store, now - timedelta(minutes=1))
        original = runtime.store.update_session_if_version

        def flaky(session_id, expected_version, changes):
            if session_id in stuck:
                raise RuntimeError("row lock timeout")
            return original(session_id, expected_version, changes)

        monkeypatch.setattr(runtime.store, "update_session_if_version", flaky)

        report = run_expiration_sweep(
            runtime.store, runtime.audit, runtime.tokens, now=now, batch_size=2
        )

        assert report.failed == 2
        assert set(report.failed_ids) == stuck
        assert report.expired == 1
        assert runtime.store.get_session(later.id).status == SessionStatus.EXPIRED

    def test_small_batches_cover_everything(self, runtime):
        now = utcnow()
        for i in range(7):
            _session_expiring_at(runtime.store, now - timedelta(minutes=i + 1))

        report = run_expiration_sweep(
            runtime.store, runtime.audit, runtime.tokens, now=now, batch_size=3
        )

        assert report.expired == 7

    def test_cancel_event_stops_early(self, runtime):
        now = utcnow()
        _session_expiring_at(runtime.store, now - timedelta(seconds=1))
        cancel = threading.Event()
        cancel.set()

        report = run_expiration_sweep(
            runtime.store, runtime.audit, runtime.tokens, now=now, cancel_event=cancel
        )

        assert report.cancelled is True
        assert report.expired == 0


class TestRetentionPurge:
    """Terminal sessions older than the retention window are deleted."""

    def test_only_old_terminal_sessions_are_deleted(self, runtime):
        now = utcnow()
        old = _terminal_session(runtime.store, SessionStatus.ABANDONED, now - timedelta(days=91))
        recent = _terminal_session(runtime.store, SessionStatus.EXPIRED, now - timedelta(days=89))
        live = runtime.store.create_session(Session.new(now=now - timedelta(days=200)))

        report = run_retention_purge(runtime.store, runtime.audit, now=now, retention_days=90)

        assert report.deleted_sessions == 1
        assert runtime.store.get_session(old.id) is None
        assert runtime.store.get_session(recent.id) is not None
        assert runtime.store.get_session(live.id) is not None

    def test_deletion_is_audited_before_the_row_goes(self, runtime, monkeypatch):
        now = utcnow()
        old = _terminal_session(runtime.store, SessionStatus.SUBMITTED, now - timedelta(days=120))

        def refuse(session_id):
            raise RuntimeError("foreign key violation")

        monkeypatch.setattr(runtime.store, "delete_session", refuse)

        report = run_retention_purge(runtime.store, runtime.audit, now=now)

        assert report.failed == 1
        assert report.deleted_sessions == 0
        entries = runtime.store.list_audit_entries(
            session_id=old.id, action=AuditAction.SESSION_DELETED
        )
        assert entries[0].details == {"status": "submitted", "retention_days": 90}

    def test_a_page_of_failed_deletes_does_not_hide_later_sessions(self, runtime, monkeypatch):
        now = utcnow()
        stuck = {
            _terminal_session(runtime.store, SessionStatus.ABANDONED, now - timedelta(days=120)).id,
            _terminal_session(runtime.store, SessionStatus.EXPIRED, now - timedelta(days=110)).id,
        }
        later = _terminal_session(runtime.store, SessionStatus.SUBMITTED, now - timedelta(days=100))
        original = runtime.store.delete_session

        def flaky(session_id):
            if session_id in stuck:
                raise RuntimeError("foreign key violation")
            return original(session_id)

        monkeypatch.setattr(runtime.store, "delete_session", flaky)

        report = run_retention_purge(runtime.store, runtime.audit, now=now, batch_size=2)

        assert report.failed == 2
        assert report.deleted_sessions == 1
        assert runtime.store.get_session(later.id) is None
        assert all(runtime.store.get_session(sid) is not None for sid in stuck)

    def test_audit_trail_outlives_the_session(self, runtime):
        now = utcnow()
        old = _terminal_session(runtime.store, SessionStatus.ABANDONED, now - timedelta(days=100))

        run_retention_purge(runtime.store, runtime.audit, now=now)

        assert runtime.store.get_session(old.id) is None
        actions = {e.action for e in runtime.store.list_audit_entries(session_id=old.id)}
        assert AuditAction.SESSION_DELETED in actions

    def test_purge_is_idempotent(self, runtime):
        now = utcnow()
        _terminal_session(runtime.store, SessionStatus.ABANDONED, now - timedelta(days=100))

        first = run_retention_purge(runtime.store, runtime.audit, now=now)
        second = run_retention_purge(runtime.store, runtime.audit, now=now)

        assert first.deleted_sessions == 1
        assert second.deleted_sessions == 0

    def test_old_audit_entries_are_pruned(self, runtime):
        now = utcnow()
        entry = runtime.audit.record(AuditAction.SESSION_CREATED, session_id="gone")

        report = run_retention_purge(
            runtime.store,
            runtime.audit,
            now=now + timedelta(days=31),
            audit_retention_days=30,
        )

        assert report.deleted_audit_entries >= 1
        assert entry.id not in {e.id for e in runtime.store.audit_entries}


class TestLifecycleScheduler:
    """The scheduler runs both jobs off the request path."""

    async def test_start_sweeps_and_stop_halts(self, runtime):
        now = utcnow()
        overdue = _session_expiring_at(runtime.store, now - timedelta(seconds=1))
        scheduler = LifecycleScheduler(
            runtime.store, runtime.audit, runtime.tokens, runtime.settings, tick_seconds=0.01
        )

        await scheduler.start()
        assert scheduler.running
        for _ in range(100):
            if runtime.store.get_session(overdue.id).status == SessionStatus.EXPIRED:
                break
            await asyncio.sleep(0.02)
        await scheduler.stop()

        assert not scheduler.running
        assert runtime.store.get_session(overdue.id).status == SessionStatus.EXPIRED

    async def test_double_start_is_harmless(self, runtime):
        scheduler = LifecycleScheduler(
            runtime.store, runtime.audit, runtime.tokens, runtime.settings, tick_seconds=0.01
        )
        await scheduler.start()
        await scheduler.start()
        await scheduler.stop()
        assert not scheduler.running

    def test_sweep_once_uses_settings(self, runtime):
        _session_expiring_at(runtime.store, utcnow() - timedelta(seconds=1))
        scheduler = LifecycleScheduler(runtime.store, runtime.audit, runtime.tokens, runtime.settings)

        assert scheduler.sweep_once().expired == 1
        assert scheduler.purge_once().deleted_sessions == 0
