"""Tests for magic-link session recovery and the email collaborator."""

import time
from urllib.parse import parse_qs, urlparse

import pytest

from intakegate.service import recovery
from intakegate.service.email import EmailService
from intakegate.service.errors import (
    RateLimitedError,
    SessionTerminalError,
    TokenRevokedError,
    UnauthenticatedError,
    ValidationError,
)
from intakegate.service.recovery import normalize_email
from intakegate.storage.models import AuditAction, RecordKind


@pytest.fixture
def outbox(runtime, monkeypatch):
    sent = []

    def capture(to, template, variables):
        sent.append({"to": to, "template": template, "variables": dict(variables)})
        return True

    monkeypatch.setattr(runtime.email, "send", capture)
    return sent


async def _session_with_contact(runtime, email="jane@example.com"):
    session, pair = await runtime.sessions.create_session()
    owner = runtime.tokens.verify_access_token(pair.access_token)
    await runtime.sessions.put_record(
        session.public_id, owner, "contact", {"email": email, "first_name": "Jane"}
    )
    return session, pair, owner


def _token_from(message) -> str:
    link = message["variables"]["magic_link"]
    return parse_qs(urlparse(link).query)["token"][0]


class TestRecoveryRequest:
    """Requests look identical whether or not an address matches."""

    async def test_matching_email_sends_link(self, runtime, outbox):
        session, _, _ = await _session_with_contact(runtime)

        result = await runtime.recovery.request_recovery("  Jane@Example.COM ")
        await runtime.recovery.drain()

        assert result is None
        assert len(outbox) == 1
        assert outbox[0]["to"] == "jane@example.com"
        assert outbox[0]["template"] == "session_recovery"
        assert outbox[0]["variables"]["magic_link"].startswith(
            f"{runtime.settings.frontend_url}/recover?token="
        )
        entry = runtime.store.list_audit_entries(action=AuditAction.RECOVERY_REQUESTED)[0]
        assert entry.session_id == session.id
        assert entry.details == {"matched": True}

    async def test_unknown_email_is_silent(self, runtime, outbox):
        await _session_with_contact(runtime)

        result = await runtime.recovery.request_recovery("nobody@example.com")
        await runtime.recovery.drain()

        assert result is None
        assert outbox == []
        entry = runtime.store.list_audit_entries(action=AuditAction.RECOVERY_REQUESTED)[0]
        assert entry.session_id is None
        assert entry.details == {"matched": False}

    async def test_terminal_session_gets_no_link(self, runtime, outbox):
        session, _, owner = await _session_with_contact(runtime)
        await runtime.sessions.abandon_session(session.public_id, owner)

        await runtime.recovery.request_recovery("jane@example.com")
        await runtime.recovery.drain()

        assert outbox == []

    async def test_requests_are_limited_per_address(self, runtime, outbox):
        await _session_with_contact(runtime)
        limit = runtime.settings.recovery_requests_per_hour

        for _ in range(limit):
            await runtime.recovery.request_recovery("jane@example.com")
        with pytest.raises(RateLimitedError) as exc_info:
            await runtime.recovery.request_recovery("jane@example.com")
        await runtime.recovery.drain()

        assert exc_info.value.retry_after >= 1
        assert len(outbox) == limit

    async def test_unknown_addresses_are_limited_too(self, runtime, outbox):
        for _ in range(runtime.settings.recovery_requests_per_hour):
            await runtime.recovery.request_recovery("ghost@example.com")
        with pytest.raises(RateLimitedError):
            await runtime.recovery.request_recovery("GHOST@example.com")

    @pytest.mark.parametrize("email", ["", "no-at-sign", "a@localhost", None])
    def test_invalid_addresses_rejected(self, email):
        with pytest.raises(ValidationError):
            normalize_email(email)


class TestRecoveryRedemption:
    """Tokens are single use and start a fresh refresh lineage."""

    async def test_redeem_issues_new_pair(self, runtime, outbox):
        session, old_pair, _ = await _session_with_contact(runtime)
        await runtime.recovery.request_recovery("jane@example.com")
        await runtime.recovery.drain()

        recovered, pair = await runtime.recovery.recover_session(_token_from(outbox[0]))

        assert recovered.id == session.id
        assert runtime.tokens.verify_access_token(pair.access_token).subject == session.public_id
        # The lineage held before recovery is superseded
        with pytest.raises(TokenRevokedError):
            runtime.tokens.refresh(old_pair.refresh_token)
        assert runtime.store.list_audit_entries(
            session_id=session.id, action=AuditAction.SESSION_RECOVERED
        )

    async def test_token_is_single_use(self, runtime, outbox):
        await _session_with_contact(runtime)
        await runtime.recovery.request_recovery("jane@example.com")
        await runtime.recovery.drain()
        token = _token_from(outbox[0])

        await runtime.recovery.recover_session(token)
        with pytest.raises(UnauthenticatedError):
            await runtime.recovery.recover_session(token)

    async def test_unknown_token_rejected(self, runtime):
        with pytest.raises(UnauthenticatedError):
            await runtime.recovery.recover_session("f" * 64)

    async def test_session_finished_after_request(self, runtime, outbox):
        session, _, owner = await _session_with_contact(runtime)
        await runtime.recovery.request_recovery("jane@example.com")
        await runtime.recovery.drain()
        await runtime.sessions.abandon_session(session.public_id, owner)

        with pytest.raises(SessionTerminalError):
            await runtime.recovery.recover_session(_token_from(outbox[0]))

    async def test_contact_email_is_not_in_audit_or_link(self, runtime, outbox):
        await _session_with_contact(runtime)
        await runtime.recovery.request_recovery("jane@example.com")
        await runtime.recovery.drain()

        assert "jane" not in outbox[0]["variables"]["magic_link"]
        for entry in runtime.store.audit_entries:
            assert "jane@example.com" not in repr(entry.details)

    async def test_record_lookup_uses_blind_index(self, runtime):
        session, _, _ = await _session_with_contact(runtime, email="Jane@Example.com")
        record = runtime.store.get_record(session.id, RecordKind.CONTACT)

        assert record.lookup_digest == runtime.cipher.digest("jane@example.com")


class TestInProcessFallbacks:
    """Without Redis, recovery tokens and counters live in bounded local maps."""

    async def test_expired_tokens_are_pruned_on_insert(self, runtime, monkeypatch):
        monkeypatch.setattr(recovery, "_MAX_LOCAL_ENTRIES", 2)
        service = runtime.recovery
        stale = time.monotonic() - 1
        service._local_tokens.update({"old-1": ("s1", stale), "old-2": ("s2", stale)})

        await service._store_token("fresh", "s3")

        assert set(service._local_tokens) == {"fresh"}
        assert await service._pop_token("fresh") == "s3"

    async def test_elapsed_counters_are_pruned_on_insert(self, runtime, monkeypatch):
        monkeypatch.setattr(recovery, "_MAX_LOCAL_ENTRIES", 2)
        service = runtime.recovery
        stale = time.monotonic() - 1
        service._local_counters.update({"d1": (3, stale), "d2": (1, stale)})

        count, _ = await service._count_request("d3")

        assert count == 1
        assert set(service._local_counters) == {"d3"}

    async def test_live_entries_survive_pruning(self, runtime, monkeypatch):
        monkeypatch.setattr(recovery, "_MAX_LOCAL_ENTRIES", 1)
        service = runtime.recovery

        await service._store_token("first", "s1")
        await service._store_token("second", "s2")

        assert set(service._local_tokens) == {"first", "second"}


class TestEmailService:
    """Template rendering and the unconfigured dev mode."""

    def test_render_substitutes_variables(self):
        service = EmailService()
        subject, html, text = service.render(
            "session_recovery",
            {"magic_link": "https://intake.example/recover?token=abc", "expires_minutes": 15},
        )
        assert subject
        assert "https://intake.example/recover?token=abc" in html
        assert "15" in text

    def test_unknown_template(self):
        with pytest.raises(ValueError):
            EmailService().render("welcome", {})

    def test_unconfigured_service_logs_instead_of_sending(self):
        service = EmailService()
        assert not service.is_configured
        assert service.send(
            "jane@example.com",
            "session_recovery",
            {"magic_link": "https://x/recover?token=t", "expires_minutes": 15},
        )

    def test_redacts_addresses(self):
        assert EmailService._redact_email("jane@example.com") == "ja***@example.com"
        assert EmailService._redact_email("garbage") == "redacted"
