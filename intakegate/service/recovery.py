"""Magic-link session recovery.

A recovery request never reveals whether an email matches a session: the
caller gets the same answer either way and the link, when there is one,
travels only through the email collaborator. Tokens are single use; Redis
GETDEL (or a lock-guarded pop in process) guarantees one redemption.
"""

from __future__ import annotations

import asyncio
import hashlib
import secrets
import threading
import time
from typing import Dict, Optional, Set, Tuple

from intakegate.config import Settings
from intakegate.logging import get_logger
from intakegate.service.audit import AuditService
from intakegate.service.crypto import FieldCipher
from intakegate.service.email import EmailService
from intakegate.service.errors import (
    RateLimitedError,
    SessionTerminalError,
    UnauthenticatedError,
    ValidationError,
)
from intakegate.service.tokens import TokenPair, TokenService
from intakegate.storage.common import SessionStore
from intakegate.storage.models import AuditAction, RequestActor, Session, utcnow

logger = get_logger(__name__)

RECOVERY_TEMPLATE = "session_recovery"
_REQUEST_WINDOW_SECONDS = 3600
_MAX_EMAIL_LENGTH = 320
_MAX_LOCAL_ENTRIES = 10000


def hash_recovery_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def normalize_email(email: str) -> str:
    if not isinstance(email, str):
        raise ValidationError("email is required", detail={"field": "email"})
    normalized = email.strip().lower()
    local, sep, domain = normalized.partition("@")
    if not sep or not local or "." not in domain or len(normalized) > _MAX_EMAIL_LENGTH:
        raise ValidationError("email is invalid", detail={"field": "email"})
    return normalized


class RecoveryService:
    def __init__(
        self,
        store: SessionStore,
        cache,
        tokens: TokenService,
        audit: AuditService,
        email: EmailService,
        cipher: FieldCipher,
        settings: Settings,
    ) -> None:
        self.store = store
        self.cache = cache
        self.tokens = tokens
        self.audit = audit
        self.email = email
        self.cipher = cipher
        self.token_ttl_seconds = settings.recovery_token_ttl_minutes * 60
        self.requests_per_hour = settings.recovery_requests_per_hour
        self.frontend_url = settings.frontend_url.rstrip("/")
        # in-process fallbacks when Redis is not configured
        self._local_tokens: Dict[str, Tuple[str, float]] = {}
        self._local_counters: Dict[str, Tuple[int, float]] = {}
        self._local_lock = threading.Lock()
        self._pending_sends: Set[asyncio.Task] = set()

    async def _count_request(self, digest: str) -> Tuple[int, int]:
        if self.cache:
            return await self.cache.incr_recovery_requests(digest, _REQUEST_WINDOW_SECONDS)
        now = time.monotonic()
        with self._local_lock:
            count, window_end = self._local_counters.get(digest, (0, 0.0))
            if window_end <= now:
                count, window_end = 0, now + _REQUEST_WINDOW_SECONDS
            count += 1
            self._local_counters[digest] = (count, window_end)
            if len(self._local_counters) > _MAX_LOCAL_ENTRIES:
                self._local_counters = {
                    k: v for k, v in self._local_counters.items() if v[1] > now
                }
            return count, max(1, int(window_end - now))

    async def _store_token(self, token_hash: str, session_id: str) -> None:
        if self.cache:
            await self.cache.store_recovery_token(token_hash, session_id, self.token_ttl_seconds)
            return
        now = time.monotonic()
        with self._local_lock:
            self._local_tokens[token_hash] = (session_id, now + self.token_ttl_seconds)
            if len(self._local_tokens) > _MAX_LOCAL_ENTRIES:
                self._local_tokens = {
                    k: v for k, v in self._local_tokens.items() if v[1] > now
                }

    async def _pop_token(self, token_hash: str) -> Optional[str]:
        if self.cache:
            return await self.cache.pop_recovery_token(token_hash)
        with self._local_lock:
            entry = self._local_tokens.pop(token_hash, None)
        if entry is None:
            return None
        session_id, expires = entry
        return session_id if expires > time.monotonic() else None

    def _dispatch(self, to: str, magic_link: str) -> None:
        variables = {
            "magic_link": magic_link,
            "expires_minutes": self.token_ttl_seconds // 60,
        }
        task = asyncio.create_task(
            asyncio.to_thread(self.email.send, to, RECOVERY_TEMPLATE, variables)
        )
        self._pending_sends.add(task)
        task.add_done_callback(self._on_send_done)

    def _on_send_done(self, task: asyncio.Task) -> None:
        self._pending_sends.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("recovery_email_failed", error_type=type(exc).__name__)
        elif task.result() is False:
            logger.warning("recovery_email_not_delivered")

    async def drain(self) -> None:
        """Wait for queued recovery emails; used at shutdown and in tests."""
        if self._pending_sends:
            await asyncio.gather(*list(self._pending_sends), return_exceptions=True)

    async def request_recovery(self, email: str, *, actor: Optional[RequestActor] = None) -> None:
        normalized = normalize_email(email)
        digest = self.cipher.digest(normalized)
        count, ttl = await self._count_request(digest)
        if count > self.requests_per_hour:
            logger.warning("recovery_rate_limited", retry_after=ttl)
            raise RateLimitedError(
                "too many recovery requests",
                retry_after=ttl,
                detail={"limit": self.requests_per_hour},
            )

        session = self.store.find_session_by_contact_digest(digest)
        live = session is not None and not session.is_terminal and not session.is_past_expiration()
        self.audit.record(
            AuditAction.RECOVERY_REQUESTED,
            session_id=session.id if live else None,
            resource="recovery",
            details={"matched": live},
            actor=actor,
        )
        if not live:
            return

        token = secrets.token_hex(32)
        await self._store_token(hash_recovery_token(token), session.id)
        self._dispatch(normalized, f"{self.frontend_url}/recover?token={token}")
        logger.info("recovery_token_issued", session_id=session.id)

    async def recover_session(
        self, recovery_token: str, *, actor: Optional[RequestActor] = None
    ) -> Tuple[Session, TokenPair]:
        if not recovery_token or not isinstance(recovery_token, str) or len(recovery_token) > 256:
            raise UnauthenticatedError("invalid or expired recovery token")
        session_id = await self._pop_token(hash_recovery_token(recovery_token))
        if session_id is None:
            raise UnauthenticatedError("invalid or expired recovery token")
        session = self.store.get_session(session_id)
        if session is None:
            raise UnauthenticatedError("invalid or expired recovery token")
        if session.is_terminal:
            raise SessionTerminalError(
                "session is no longer active", detail={"status": session.status.value}
            )
        if session.is_past_expiration(utcnow()):
            raise UnauthenticatedError("invalid or expired recovery token")

        pair = self.tokens.issue_pair(session, actor=actor, reason="recovery")
        self.audit.record(AuditAction.SESSION_RECOVERED, session_id=session.id, actor=actor)
        logger.info("session_recovered", session_id=session.id)
        return session, pair
