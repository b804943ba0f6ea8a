"""Tests for progress merging, validation and the versioned progress cache."""

import asyncio
from datetime import timedelta

import pytest

from intakegate.service.errors import (
    NotFoundError,
    SessionTerminalError,
    ValidationError,
)
from intakegate.service.progress import (
    MAX_JSON_DEPTH,
    ProgressService,
    deep_merge,
    touched_fields,
    validate_patch,
)
from intakegate.storage.errors import CacheTimeout
from intakegate.storage.models import AuditAction, Session, SessionStatus, utcnow


class FakeCache:
    """Dict-backed stand-in exposing the progress cache methods."""

    def __init__(self):
        self.progress = {}
        self.locks = {}
        self.fail_reads = False
        self.fail_writes = False

    async def get_progress(self, session_id):
        if self.fail_reads:
            raise CacheTimeout("slow")
        return self.progress.get(session_id)

    async def set_progress(self, session_id, version, progress, ttl_seconds):
        if self.fail_writes:
            raise CacheTimeout("slow")
        self.progress[session_id] = (version, progress)

    async def delete_progress(self, session_id):
        self.progress.pop(session_id, None)

    async def acquire_session_lock(self, session_id, ttl_ms):
        if session_id in self.locks:
            return None
        self.locks[session_id] = "token"
        return "token"

    async def release_session_lock(self, session_id, token):
        return self.locks.pop(session_id, None) == token


class TestDeepMerge:
    """Maps merge recursively; everything else replaces."""

    def test_nested_maps_merge(self):
        base = {"contact": {"phone": "x", "prefs": {"sms": True}}, "step": 1}
        patch = {"contact": {"prefs": {"email": False}}}

        merged = deep_merge(base, patch)

        assert merged == {
            "contact": {"phone": "x", "prefs": {"sms": True, "email": False}},
            "step": 1,
        }

    def test_arrays_are_replaced_not_concatenated(self):
        merged = deep_merge({"completedSteps": ["a", "b"]}, {"completedSteps": ["c"]})
        assert merged == {"completedSteps": ["c"]}

    def test_scalar_replaces_map_and_null_is_kept(self):
        merged = deep_merge({"a": {"b": 1}, "c": 2}, {"a": 5, "c": None})
        assert merged == {"a": 5, "c": None}

    def test_inputs_are_not_mutated(self):
        base = {"a": {"b": 1}}
        patch = {"a": {"c": [1, 2]}}

        merged = deep_merge(base, patch)
        merged["a"]["c"].append(3)

        assert base == {"a": {"b": 1}}
        assert patch == {"a": {"c": [1, 2]}}


class TestValidatePatch:
    """Shape checks on incoming progress patches."""

    @pytest.mark.parametrize("patch", [None, [], "step", {}])
    def test_non_object_or_empty_rejected(self, patch):
        with pytest.raises(ValidationError):
            validate_patch(patch)

    @pytest.mark.parametrize("step", ["", "   ", 3, None])
    def test_current_step_must_be_non_empty_string(self, step):
        with pytest.raises(ValidationError) as exc_info:
            validate_patch({"currentStep": step})
        assert exc_info.value.detail["field"] == "currentStep"

    def test_completed_steps_must_be_list(self):
        with pytest.raises(ValidationError):
            validate_patch({"completedSteps": "contact"})

    def test_excessive_nesting_rejected(self):
        patch = leaf = {}
        for _ in range(MAX_JSON_DEPTH + 2):
            leaf["n"] = {}
            leaf = leaf["n"]
        with pytest.raises(ValidationError):
            validate_patch(patch)

    def test_non_json_values_rejected(self):
        with pytest.raises(ValidationError):
            validate_patch({"when": utcnow()})

    def test_valid_patch_passes_through(self):
        patch = {"currentStep": "contact", "completedSteps": ["welcome"], "extra": {"k": 1.5}}
        assert validate_patch(patch) is patch

    def test_touched_fields_lists_leaf_paths(self):
        patch = {"contact": {"email": "a@b.c", "phone": "1"}, "completedSteps": [1], "empty": {}}
        assert touched_fields(patch) == [
            "completedSteps",
            "contact.email",
            "contact.phone",
            "empty",
        ]


class TestProgressService:
    """Progress updates through the store compare-and-set."""

    async def test_first_update_moves_started_to_in_progress(self, runtime):
        session = runtime.store.create_session(Session.new())

        updated = await runtime.progress.update_progress(session.id, {"currentStep": "contact"})

        assert updated.status == SessionStatus.IN_PROGRESS
        assert updated.progress == {"currentStep": "contact"}
        assert updated.version == session.version + 1
        changed = runtime.store.list_audit_entries(
            session_id=session.id, action=AuditAction.STATUS_CHANGED
        )
        assert len(changed) == 1
        assert changed[0].details["trigger"] == "first_progress_update"

    async def test_later_updates_keep_status(self, runtime):
        session = runtime.store.create_session(Session.new())
        await runtime.progress.update_progress(session.id, {"a": 1})

        updated = await runtime.progress.update_progress(session.id, {"b": 2})

        assert updated.status == SessionStatus.IN_PROGRESS
        assert updated.progress == {"a": 1, "b": 2}
        changed = runtime.store.list_audit_entries(
            session_id=session.id, action=AuditAction.STATUS_CHANGED
        )
        assert len(changed) == 1

    async def test_audit_holds_field_names_only(self, runtime):
        session = runtime.store.create_session(Session.new())

        await runtime.progress.update_progress(
            session.id, {"contact": {"email": "jane@example.com"}, "currentStep": "contact"}
        )

        entry = runtime.store.list_audit_entries(
            session_id=session.id, action=AuditAction.PROGRESS_UPDATED
        )[0]
        assert entry.details["fields"] == ["contact.email", "currentStep"]
        assert "jane@example.com" not in repr(entry.details)

    async def test_expiry_is_never_shortened(self, runtime):
        session = runtime.store.create_session(Session.new(ttl_hours=48))

        updated = await runtime.progress.update_progress(session.id, {"a": 1})

        assert updated.expires_at == session.expires_at

    async def test_concurrent_updates_to_different_fields_both_land(self, runtime, monkeypatch):
        session = runtime.store.create_session(Session.new())
        original = runtime.store.update_session_if_version
        raced = []

        def racing_update(session_id, expected_version, changes):
            if not raced:
                # Another writer commits between our read and our write
                raced.append(True)
                current = runtime.store.get_session(session_id)
                original(
                    session_id,
                    current.version,
                    {"progress": deep_merge(current.progress, {"other": "theirs"})},
                )
            return original(session_id, expected_version, changes)

        monkeypatch.setattr(runtime.store, "update_session_if_version", racing_update)

        updated = await runtime.progress.update_progress(session.id, {"mine": "ours"})

        assert updated.progress == {"other": "theirs", "mine": "ours"}
        assert raced == [True]

    async def test_parallel_updates_all_land(self, runtime):
        session = runtime.store.create_session(Session.new())

        await asyncio.gather(
            *(runtime.progress.update_progress(session.id, {f"field_{i}": i}) for i in range(5))
        )

        stored = runtime.store.get_session(session.id)
        assert stored.progress == {f"field_{i}": i for i in range(5)}

    async def test_terminal_session_rejected(self, runtime):
        session = runtime.store.create_session(Session.new())
        runtime.store.update_session_if_version(
            session.id, session.version, {"status": SessionStatus.ABANDONED, "terminal_at": utcnow()}
        )

        with pytest.raises(SessionTerminalError):
            await runtime.progress.update_progress(session.id, {"a": 1})

    async def test_overdue_session_rejected_and_expiry_kept(self, runtime):
        session = runtime.store.create_session(Session.new())
        overdue_at = utcnow() - timedelta(minutes=5)
        runtime.store.update_session_if_version(
            session.id, session.version, {"expires_at": overdue_at}
        )

        with pytest.raises(SessionTerminalError) as excinfo:
            await runtime.progress.update_progress(session.id, {"a": 1})

        assert excinfo.value.detail["expired"] is True
        stored = runtime.store.get_session(session.id)
        assert stored.expires_at == overdue_at
        assert stored.progress == {}
        assert stored.status == SessionStatus.STARTED

    async def test_missing_session(self, runtime):
        with pytest.raises(NotFoundError):
            await runtime.progress.update_progress("0" * 32, {"a": 1})


class TestProgressCache:
    """Cached progress is only trusted at the committed version."""

    async def test_update_writes_through_with_version(self, runtime):
        cache = FakeCache()
        service = ProgressService(runtime.store, runtime.audit, cache, runtime.settings)
        session = runtime.store.create_session(Session.new())

        updated = await service.update_progress(session.id, {"a": 1})

        assert cache.progress[session.id] == (updated.version, {"a": 1})
        assert cache.locks == {}

    async def test_stale_cache_entry_is_ignored(self, runtime):
        cache = FakeCache()
        service = ProgressService(runtime.store, runtime.audit, cache, runtime.settings)
        session = runtime.store.create_session(Session.new())
        session = runtime.store.update_session_if_version(
            session.id, session.version, {"progress": {"fresh": True}}
        )
        cache.progress[session.id] = (session.version - 1, {"stale": True})

        read = await service.read_through(runtime.store.get_session(session.id))

        assert read.progress == {"fresh": True}
        assert cache.progress[session.id] == (session.version, {"fresh": True})

    async def test_update_merges_onto_committed_row_not_stale_cache(self, runtime):
        cache = FakeCache()
        service = ProgressService(runtime.store, runtime.audit, cache, runtime.settings)
        session = runtime.store.create_session(Session.new())
        session = runtime.store.update_session_if_version(
            session.id, session.version, {"progress": {"fresh": True}}
        )
        cache.progress[session.id] = (session.version - 1, {"stale": True})

        updated = await service.update_progress(session.id, {"a": 1})

        assert updated.progress == {"fresh": True, "a": 1}
        assert cache.progress[session.id] == (updated.version, {"fresh": True, "a": 1})

    async def test_cache_timeouts_do_not_fail_updates(self, runtime):
        cache = FakeCache()
        cache.fail_reads = True
        cache.fail_writes = True
        service = ProgressService(runtime.store, runtime.audit, cache, runtime.settings)
        session = runtime.store.create_session(Session.new())

        updated = await service.update_progress(session.id, {"a": 1})

        assert updated.progress == {"a": 1}

    async def test_held_lock_falls_back_to_compare_and_set(self, runtime):
        runtime.settings.progress_lock_ttl_seconds = 1
        cache = FakeCache()
        service = ProgressService(runtime.store, runtime.audit, cache, runtime.settings)
        session = runtime.store.create_session(Session.new())
        cache.locks[session.id] = "someone-else"

        updated = await service.update_progress(session.id, {"a": 1})

        assert updated.progress == {"a": 1}
        assert cache.locks[session.id] == "someone-else"

    async def test_invalidate_drops_entry(self, runtime):
        cache = FakeCache()
        service = ProgressService(runtime.store, runtime.audit, cache, runtime.settings)
        cache.progress["abc"] = (1, {})

        await service.invalidate("abc")

        assert "abc" not in cache.progress
