import os
from datetime import timedelta

import pytest

from intakegate.service.crypto import DecryptionError, FieldCipher
from intakegate.storage.errors import ConstraintViolation
from intakegate.storage.memory import MemoryStore
from intakegate.storage.models import (
    AuditAction,
    AuditLogEntry,
    MessageRole,
    RecordKind,
    RefreshToken,
    RotationOutcome,
    Session,
    SessionStatus,
    utcnow,
)


@pytest.fixture
def key():
    return os.urandom(32)


@pytest.fixture
def store(tmp_path, key):
    return MemoryStore(fs_root=str(tmp_path), cipher=FieldCipher(key))


def _token(session_id: str, token_hash: str, *, expires_in=timedelta(days=7)) -> RefreshToken:
    now = utcnow()
    return RefreshToken(
        id=f"tok-{token_hash}",
        session_id=session_id,
        token_hash=token_hash,
        lineage_id="lineage-1",
        device_fingerprint="fp",
        created_at=now,
        expires_at=now + expires_in,
    )


def _audit(session_id: str) -> AuditLogEntry:
    return AuditLogEntry(
        id=f"audit-{session_id}",
        action=AuditAction.SESSION_CREATED,
        created_at=utcnow(),
        session_id=session_id,
    )


def test_memory_store_snapshot_survives_reload(tmp_path, key, store):
    session = store.create_session(Session.new(referral_source="clinic"))
    store.upsert_record(
        session.id,
        RecordKind.CONTACT,
        {"email": "jane@example.com", "preferred_contact": "email"},
        lookup_digest="digest-1",
    )
    store.append_message(session.id, MessageRole.USER, "my son has trouble sleeping")
    store.create_refresh_token(_token(session.id, "hash-1"))
    store.append_audit_entry(_audit(session.id))

    reloaded = MemoryStore(fs_root=str(tmp_path), cipher=FieldCipher(key))

    restored = reloaded.get_session(session.id)
    assert restored.referral_source == "clinic"
    assert restored.status == SessionStatus.STARTED
    assert restored.created_at == session.created_at
    contact = reloaded.get_record(session.id, RecordKind.CONTACT)
    assert contact.fields == {"email": "jane@example.com", "preferred_contact": "email"}
    assert [m.content for m in reloaded.list_messages(session.id)] == [
        "my son has trouble sleeping"
    ]
    assert reloaded.get_refresh_token_by_hash("hash-1").session_id == session.id
    assert reloaded.list_audit_entries(session_id=session.id)[0].id == f"audit-{session.id}"
    assert reloaded.find_session_by_contact_digest("digest-1").id == session.id


def test_snapshot_never_holds_phi_in_clear(tmp_path, store):
    session = store.create_session(Session.new())
    store.upsert_record(
        session.id,
        RecordKind.DEPENDENT,
        {"first_name": "Samantha", "date_of_birth": "2015-04-02", "grade": "4"},
    )
    store.append_message(session.id, MessageRole.USER, "worried about anxiety")

    snapshot = (tmp_path / "state" / "memory_store.json").read_text()

    assert "Samantha" not in snapshot
    assert "2015-04-02" not in snapshot
    assert "worried about anxiety" not in snapshot
    # Non-PHI attributes stay readable
    assert '"grade": "4"' in snapshot


def test_snapshot_under_another_key_does_not_decrypt(tmp_path, store):
    session = store.create_session(Session.new())
    store.upsert_record(session.id, RecordKind.CONTACT, {"phone": "555-0100"})

    other = MemoryStore(fs_root=str(tmp_path), cipher=FieldCipher(os.urandom(32)))

    with pytest.raises(DecryptionError):
        other.get_record(session.id, RecordKind.CONTACT)


def test_delete_session_cascades_but_keeps_audit(store):
    session = store.create_session(Session.new())
    store.upsert_record(session.id, RecordKind.COVERAGE, {"member_id": "M-1"})
    store.append_message(session.id, MessageRole.ASSISTANT, "hello")
    store.create_refresh_token(_token(session.id, "hash-2"))
    store.append_audit_entry(_audit(session.id))

    assert store.delete_session(session.id) is True

    assert store.get_session(session.id) is None
    assert store.get_record(session.id, RecordKind.COVERAGE) is None
    assert store.list_messages(session.id) == []
    assert store.get_refresh_token_by_hash("hash-2") is None
    assert len(store.list_audit_entries(session_id=session.id)) == 1
    assert store.delete_session(session.id) is False


def test_compare_and_set_rejects_stale_version(store):
    session = store.create_session(Session.new())

    first = store.update_session_if_version(session.id, 1, {"progress": {"a": 1}})
    stale = store.update_session_if_version(session.id, 1, {"progress": {"b": 2}})

    assert first.version == 2
    assert stale is None
    assert store.get_session(session.id).progress == {"a": 1}


def test_compare_and_set_refuses_unknown_columns(store):
    session = store.create_session(Session.new())
    with pytest.raises(ValueError):
        store.update_session_if_version(session.id, 1, {"id": "other"})


def test_records_require_existing_session(store):
    with pytest.raises(ConstraintViolation):
        store.upsert_record("0" * 32, RecordKind.CONTACT, {"email": "a@b.c"})


def test_upsert_keeps_record_identity(store):
    session = store.create_session(Session.new())
    first = store.upsert_record(session.id, RecordKind.CONTACT, {"phone": "1"})
    second = store.upsert_record(session.id, RecordKind.CONTACT, {"phone": "2"})

    assert second.id == first.id
    assert second.created_at == first.created_at
    assert store.get_record(session.id, RecordKind.CONTACT).fields == {"phone": "2"}


def test_messages_are_sequenced_and_paged(store):
    session = store.create_session(Session.new())
    for i in range(5):
        store.append_message(session.id, MessageRole.USER, f"message {i}")

    tail = store.list_messages(session.id, limit=2)

    assert [m.seq for m in tail] == [3, 4]
    assert [m.content for m in tail] == ["message 3", "message 4"]


class TestRefreshTokenRotation:
    """Rotation outcomes are decided atomically inside the store."""

    def test_rotation_outcomes(self, store):
        session = store.create_session(Session.new())
        store.create_refresh_token(_token(session.id, "old"))
        now = utcnow()

        unknown = store.rotate_refresh_token("missing", _token("", "n0"), now)
        rotated = store.rotate_refresh_token("old", _token("", "new"), now)
        replayed = store.rotate_refresh_token("old", _token("", "n2"), now)

        assert unknown.outcome == RotationOutcome.UNKNOWN
        assert rotated.outcome == RotationOutcome.ROTATED
        assert rotated.issued.session_id == session.id
        assert rotated.issued.parent_id == rotated.previous.id
        assert rotated.previous.revoked_reason == "rotated"
        assert replayed.outcome == RotationOutcome.REVOKED
        assert store.get_refresh_token_by_hash("n2") is None

    def test_expired_token_is_not_rotated(self, store):
        session = store.create_session(Session.new())
        store.create_refresh_token(_token(session.id, "stale", expires_in=timedelta(seconds=-1)))

        result = store.rotate_refresh_token("stale", _token("", "fresh"), utcnow())

        assert result.outcome == RotationOutcome.EXPIRED
        assert store.get_refresh_token_by_hash("fresh") is None

    def test_supersede_revokes_live_tokens(self, store):
        session = store.create_session(Session.new())
        store.create_refresh_token(_token(session.id, "first"))
        store.create_refresh_token(_token(session.id, "second"), supersede_existing=True)

        assert store.get_refresh_token_by_hash("first").revoked_reason == "superseded"
        assert store.get_refresh_token_by_hash("second").revoked_at is None

    def test_expired_tokens_are_purged(self, store):
        session = store.create_session(Session.new())
        store.create_refresh_token(_token(session.id, "ancient", expires_in=timedelta(days=-100)))
        store.create_refresh_token(_token(session.id, "current"))

        removed = store.delete_expired_refresh_tokens(utcnow() - timedelta(days=90))

        assert removed == 1
        assert store.get_refresh_token_by_hash("ancient") is None
        assert store.get_refresh_token_by_hash("current") is not None
