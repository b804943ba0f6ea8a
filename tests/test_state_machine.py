"""Tests for session status transitions and their audit trail."""

import os
from datetime import timedelta

import pytest

from intakegate.service.audit import AuditService
from intakegate.service.crypto import FieldCipher
from intakegate.service.errors import (
    InvalidTransitionError,
    SessionTerminalError,
)
from intakegate.service.state_machine import (
    VALID_TRANSITIONS,
    apply_transition,
    can_transition,
    extended_expiry,
)
from intakegate.storage.memory import MemoryStore
from intakegate.storage.models import (
    AuditAction,
    RequestActor,
    Session,
    SessionStatus,
    utcnow,
)

WINDOW = timedelta(minutes=60)

S = SessionStatus


@pytest.fixture
def store(tmp_path):
    return MemoryStore(str(tmp_path / "store"), cipher=FieldCipher(os.urandom(32)))


@pytest.fixture
def audit(store, tmp_path):
    return AuditService(store, fs_root=str(tmp_path / "store"))


class TestTransitionTable:
    """The adjacency table is the single source of allowed edges."""

    EXPECTED = {
        (S.STARTED, S.IN_PROGRESS),
        (S.IN_PROGRESS, S.PENDING_VERIFICATION),
        (S.PENDING_VERIFICATION, S.COMPLETE),
        (S.COMPLETE, S.SUBMITTED),
    } | {
        (source, target)
        for source in (S.STARTED, S.IN_PROGRESS, S.PENDING_VERIFICATION, S.COMPLETE)
        for target in (S.ABANDONED, S.EXPIRED)
    }

    def test_every_pair_matches_expected_edges(self):
        for source in SessionStatus:
            for target in SessionStatus:
                assert can_transition(source, target) == ((source, target) in self.EXPECTED), (
                    source,
                    target,
                )

    def test_terminal_statuses_have_no_outgoing_edges(self):
        for status in (S.SUBMITTED, S.ABANDONED, S.EXPIRED):
            assert status.is_terminal
            assert VALID_TRANSITIONS[status] == frozenset()

    def test_table_covers_every_status(self):
        assert set(VALID_TRANSITIONS) == set(SessionStatus)


class TestApplyTransition:
    """Transitions go through a version compare-and-set and are audited once."""

    def test_happy_path_to_submitted(self, store, audit):
        session = store.create_session(Session.new())
        for target in (S.IN_PROGRESS, S.PENDING_VERIFICATION, S.COMPLETE, S.SUBMITTED):
            session = apply_transition(store, audit, session, target, activity_window=WINDOW)
            assert session.status == target

        assert session.terminal_at is not None
        assert session.version == 5
        entries = store.list_audit_entries(session_id=session.id)
        assert len(entries) == 4
        # newest first
        assert entries[0].details["previous_status"] == "complete"
        assert entries[0].details["next_status"] == "submitted"

    def test_each_call_writes_exactly_one_audit_entry(self, store, audit):
        session = store.create_session(Session.new())
        actor = RequestActor(ip="203.0.113.9", user_agent="pytest")

        apply_transition(store, audit, session, S.IN_PROGRESS, activity_window=WINDOW, actor=actor)

        entries = store.list_audit_entries(session_id=session.id)
        assert len(entries) == 1
        assert entries[0].action == AuditAction.STATUS_CHANGED
        assert entries[0].actor_ip == "203.0.113.9"

    def test_skipping_a_step_is_invalid_and_not_audited(self, store, audit):
        session = store.create_session(Session.new())

        with pytest.raises(InvalidTransitionError) as exc_info:
            apply_transition(store, audit, session, S.COMPLETE, activity_window=WINDOW)

        assert not isinstance(exc_info.value, SessionTerminalError)
        assert exc_info.value.detail["target_status"] == "complete"
        assert store.get_session(session.id).status == S.STARTED
        assert store.list_audit_entries(session_id=session.id) == []

    def test_terminal_session_rejects_every_target(self, store, audit):
        session = store.create_session(Session.new())
        session = apply_transition(store, audit, session, S.EXPIRED, activity_window=WINDOW)

        for target in (S.IN_PROGRESS, S.SUBMITTED, S.EXPIRED):
            with pytest.raises(SessionTerminalError) as exc_info:
                apply_transition(store, audit, session, target, activity_window=WINDOW)
            assert exc_info.value.error_code == "session_terminal"
            assert isinstance(exc_info.value, InvalidTransitionError)

    def test_abandon_is_idempotent_and_still_audited(self, store, audit):
        session = store.create_session(Session.new())
        first = apply_transition(store, audit, session, S.ABANDONED, activity_window=WINDOW)
        second = apply_transition(store, audit, first, S.ABANDONED, activity_window=WINDOW)

        assert second.status == S.ABANDONED
        assert second.version == first.version
        assert second.terminal_at == first.terminal_at
        entries = store.list_audit_entries(
            session_id=session.id, action=AuditAction.SESSION_ABANDONED
        )
        assert len(entries) == 2
        assert entries[0].details.get("repeated") is True

    def test_stale_copy_is_reloaded_and_revalidated(self, store, audit):
        session = store.create_session(Session.new())
        store.update_session_if_version(session.id, session.version, {"updated_at": utcnow()})

        updated = apply_transition(store, audit, session, S.IN_PROGRESS, activity_window=WINDOW)

        assert updated.status == S.IN_PROGRESS
        assert updated.version == 3

    def test_concurrent_terminal_transition_wins(self, store, audit):
        session = store.create_session(Session.new())
        apply_transition(store, audit, session, S.ABANDONED, activity_window=WINDOW)

        # The caller still holds the pre-abandon copy
        with pytest.raises(SessionTerminalError):
            apply_transition(store, audit, session, S.IN_PROGRESS, activity_window=WINDOW)


class TestExpiryExtension:
    """Qualifying activity only ever pushes expires_at out."""

    def test_short_remaining_lifetime_is_extended(self, store, audit):
        now = utcnow()
        session = Session.new(ttl_hours=1, now=now - timedelta(minutes=55))
        store.create_session(session)

        updated = apply_transition(
            store, audit, session, S.IN_PROGRESS, activity_window=WINDOW, now=now
        )

        assert updated.expires_at == now + WINDOW

    def test_longer_remaining_lifetime_is_kept(self, store, audit):
        now = utcnow()
        session = store.create_session(Session.new(ttl_hours=24, now=now))

        updated = apply_transition(
            store, audit, session, S.IN_PROGRESS, activity_window=WINDOW, now=now
        )

        assert updated.expires_at == session.expires_at

    def test_terminal_transition_leaves_expiry_alone(self, store, audit):
        now = utcnow()
        session = store.create_session(Session.new(ttl_hours=1, now=now))

        updated = apply_transition(store, audit, session, S.ABANDONED, activity_window=WINDOW, now=now)

        assert updated.expires_at == session.expires_at
        assert updated.terminal_at == now

    def test_extended_expiry_never_shortens(self):
        now = utcnow()
        session = Session.new(ttl_hours=48, now=now)
        assert extended_expiry(session, now, WINDOW) == session.expires_at
