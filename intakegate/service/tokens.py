from __future__ import annotations

import base64
import hashlib
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Tuple

from cryptography.exceptions import InvalidSignature

from intakegate.config import Settings
from intakegate.logging import get_logger
from intakegate.service.audit import AuditService
from intakegate.service.errors import (
    SessionTerminalError,
    TokenRevokedError,
    UnauthenticatedError,
)
from intakegate.service.secrets import KeyProvider
from intakegate.storage.common import SessionStore
from intakegate.storage.models import (
    AuditAction,
    Principal,
    RefreshToken,
    RequestActor,
    Role,
    RotationOutcome,
    Session,
    parse_session_id,
    utcnow,
)

logger = get_logger(__name__)

_ALGORITHM = "EdDSA"
_REFRESH_TOKEN_BYTES = 48
_MAX_TOKEN_LENGTH = 4096


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    token_type: str = "bearer"


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def device_fingerprint(actor: Optional[RequestActor]) -> str:
    user_agent = (actor.user_agent if actor else None) or "unknown"
    return hashlib.sha256(user_agent.encode()).hexdigest()[:32]


class TokenService:
    """Issue and validate access tokens, and rotate refresh tokens.

    Access tokens are compact JWS values signed with Ed25519 and verified
    without touching the store. Refresh tokens are opaque random strings;
    only their SHA-256 hash is persisted. Each session keeps a single live
    refresh lineage: a fresh issuance supersedes older tokens, and every
    refresh revokes the presented token in the same store transaction that
    inserts its successor.
    """

    def __init__(
        self,
        store: SessionStore,
        keys: KeyProvider,
        audit: AuditService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.keys = keys
        self.audit = audit
        self.settings = settings
        self.access_ttl = timedelta(minutes=settings.access_token_ttl_minutes)
        self.refresh_ttl = timedelta(days=settings.refresh_token_ttl_days)
        self.leeway = timedelta(seconds=settings.clock_skew_leeway_seconds)

    # -- access tokens ------------------------------------------------------

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _encode_jwt(self, payload: Dict[str, Any]) -> str:
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        signature = self.keys.get_signing_key().sign(signing_input.encode())
        return f"{signing_input}.{self._encode_segment(signature)}"

    def _decode_jwt(self, token: str) -> Optional[Dict[str, Any]]:
        if not token or len(token) > _MAX_TOKEN_LENGTH:
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None
        try:
            header = json.loads(self._decode_segment(header_b64))
            signature = self._decode_segment(sig_b64)
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        # Pin the algorithm so a forged header cannot downgrade verification
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning("jwt_invalid_algorithm")
            return None
        try:
            self.keys.get_verification_key().verify(signature, f"{header_b64}.{payload_b64}".encode())
        except InvalidSignature:
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_payload_decode_failed")
            return None
        return payload if isinstance(payload, dict) else None

    def issue_access_token(
        self, *, subject: str, role: Role, now: Optional[datetime] = None
    ) -> Tuple[str, datetime]:
        issued_at = now or utcnow()
        expires_at = issued_at + self.access_ttl
        payload = {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": subject,
            "role": role.value,
            "token_type": "access",
            "jti": str(uuid.uuid4()),
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    def verify_access_token(self, token: str, *, now: Optional[datetime] = None) -> Principal:
        """Signature and expiry check only; no store lookup."""
        payload = self._decode_jwt(token)
        if payload is None:
            raise UnauthenticatedError("invalid access token")
        if payload.get("iss") != self.settings.jwt_issuer:
            raise UnauthenticatedError("invalid access token")
        aud = payload.get("aud")
        valid_aud = aud == self.settings.jwt_audience or (
            isinstance(aud, list) and self.settings.jwt_audience in aud
        )
        if not valid_aud:
            raise UnauthenticatedError("invalid access token")
        if payload.get("token_type") != "access":
            raise UnauthenticatedError("invalid access token")
        try:
            exp_ts = float(payload["exp"])
            role = Role(payload["role"])
            subject = str(payload["sub"])
        except (KeyError, TypeError, ValueError):
            raise UnauthenticatedError("invalid access token")
        current = now or utcnow()
        if exp_ts <= (current - self.leeway).timestamp():
            raise UnauthenticatedError("access token expired")
        # Background-only roles are never accepted from the outside
        if role in (Role.SYSTEM, Role.ANONYMOUS):
            raise UnauthenticatedError("invalid access token")
        return Principal(role=role, subject=subject, token_id=payload.get("jti"))

    # -- refresh tokens -----------------------------------------------------

    def _new_refresh_token(
        self,
        session_id: str,
        *,
        now: datetime,
        actor: Optional[RequestActor],
    ) -> Tuple[str, RefreshToken]:
        plaintext = secrets.token_urlsafe(_REFRESH_TOKEN_BYTES)
        token = RefreshToken(
            id=str(uuid.uuid4()),
            session_id=session_id,
            token_hash=hash_refresh_token(plaintext),
            lineage_id=str(uuid.uuid4()),
            device_fingerprint=device_fingerprint(actor),
            created_at=now,
            expires_at=now + self.refresh_ttl,
            issued_from_ip=actor.ip if actor else None,
            issued_user_agent=actor.user_agent if actor else None,
        )
        return plaintext, token

    def issue_pair(
        self,
        session: Session,
        *,
        actor: Optional[RequestActor] = None,
        reason: str = "session_created",
    ) -> TokenPair:
        """Start a new refresh lineage for ``session`` and mint an owner access token."""
        now = utcnow()
        plaintext, record = self._new_refresh_token(session.id, now=now, actor=actor)
        self.store.create_refresh_token(record, supersede_existing=True)
        access_token, access_expires_at = self.issue_access_token(
            subject=session.public_id, role=Role.OWNER, now=now
        )
        self.audit.record(
            AuditAction.TOKEN_ISSUED,
            session_id=session.id,
            resource="refresh_token",
            resource_id=record.id,
            details={"reason": reason, "lineage_id": record.lineage_id, "role": Role.OWNER.value},
            actor=actor,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=plaintext,
            access_expires_at=access_expires_at,
            refresh_expires_at=record.expires_at,
        )

    def _reject(
        self,
        reason: str,
        *,
        actor: Optional[RequestActor],
        token: Optional[RefreshToken] = None,
    ) -> None:
        self.audit.record(
            AuditAction.TOKEN_REJECTED,
            session_id=token.session_id if token else None,
            resource="refresh_token",
            resource_id=token.id if token else None,
            details={"reason": reason, "lineage_id": token.lineage_id if token else None},
            actor=actor,
        )

    def refresh(
        self, refresh_token: str, *, actor: Optional[RequestActor] = None
    ) -> Tuple[Session, TokenPair]:
        if not refresh_token or len(refresh_token) > _MAX_TOKEN_LENGTH:
            self._reject("malformed", actor=actor)
            raise UnauthenticatedError("invalid refresh token")
        now = utcnow()
        plaintext, candidate = self._new_refresh_token("", now=now, actor=actor)
        result = self.store.rotate_refresh_token(hash_refresh_token(refresh_token), candidate, now)

        if result.outcome == RotationOutcome.UNKNOWN:
            self._reject("unknown", actor=actor)
            raise UnauthenticatedError("invalid refresh token")
        previous = result.previous
        if result.outcome == RotationOutcome.EXPIRED:
            self._reject("expired", actor=actor, token=previous)
            raise UnauthenticatedError("refresh token expired")
        if result.outcome == RotationOutcome.REVOKED:
            self._handle_reuse(previous, actor=actor, now=now)
            raise TokenRevokedError("refresh token has been revoked")

        issued = result.issued
        session = self.store.get_session(issued.session_id)
        if session is None or session.is_terminal or session.is_past_expiration(now):
            self.store.revoke_session_refresh_tokens(issued.session_id, "session_terminal", now)
            self._reject("session_inactive", actor=actor, token=issued)
            if session is not None and session.is_terminal:
                raise SessionTerminalError(
                    "session is no longer active", detail={"status": session.status.value}
                )
            raise UnauthenticatedError("session is no longer active")

        access_token, access_expires_at = self.issue_access_token(
            subject=session.public_id, role=Role.OWNER, now=now
        )
        self.audit.record(
            AuditAction.TOKEN_REFRESHED,
            session_id=session.id,
            resource="refresh_token",
            resource_id=issued.id,
            details={"lineage_id": issued.lineage_id, "parent_id": issued.parent_id},
            actor=actor,
        )
        return session, TokenPair(
            access_token=access_token,
            refresh_token=plaintext,
            access_expires_at=access_expires_at,
            refresh_expires_at=issued.expires_at,
        )

    def _handle_reuse(
        self, token: RefreshToken, *, actor: Optional[RequestActor], now: datetime
    ) -> None:
        self._reject(f"revoked:{token.revoked_reason or 'unknown'}", actor=actor, token=token)
        if token.revoked_reason != "rotated":
            return
        # A rotated token coming back means two parties hold the lineage
        logger.warning(
            "refresh_token_reuse_detected",
            session_id=token.session_id,
            lineage_id=token.lineage_id,
            client_ip=actor.ip if actor else None,
        )
        if self.settings.revoke_lineage_on_reuse:
            self.revoke_all(token.session_id, "reuse_detected", actor=actor, now=now)

    def revoke_all(
        self,
        session_id: str,
        reason: str,
        *,
        actor: Optional[RequestActor] = None,
        now: Optional[datetime] = None,
    ) -> int:
        count = self.store.revoke_session_refresh_tokens(session_id, reason, now or utcnow())
        if count:
            self.audit.record(
                AuditAction.TOKEN_REVOKED,
                session_id=session_id,
                resource="refresh_token",
                details={"reason": reason, "count": count},
                actor=actor,
            )
        return count

    @staticmethod
    def session_key_for(principal: Principal) -> Optional[str]:
        """Storage key of the session an owner token was minted for."""
        if principal.role != Role.OWNER or not principal.subject:
            return None
        try:
            return parse_session_id(principal.subject)
        except ValueError:
            return None
