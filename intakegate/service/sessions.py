from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List, Optional, Tuple

from intakegate.config import Settings
from intakegate.logging import get_logger
from intakegate.service.audit import AuditService
from intakegate.service.crypto import FieldCipher
from intakegate.service.errors import (
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from intakegate.service.policy import Action, PolicyEngine
from intakegate.service.progress import ProgressService, validate_patch
from intakegate.service.state_machine import apply_transition, ensure_writable
from intakegate.service.tokens import TokenPair, TokenService
from intakegate.storage.common import SessionStore
from intakegate.storage.models import (
    AuditAction,
    ConversationMessage,
    MessageRole,
    Principal,
    RecordKind,
    RequestActor,
    Session,
    SessionRecord,
    SessionStatus,
    parse_session_id,
)

logger = get_logger(__name__)

MAX_REFERRAL_SOURCE_LENGTH = 128
MAX_MESSAGE_LENGTH = 20000
MAX_RECORD_FIELDS = 64
DEFAULT_MESSAGE_PAGE = 200

# Terminal statuses are reached through abandon_session and the sweep only
_ADVANCE_TARGETS = frozenset(
    {
        SessionStatus.IN_PROGRESS,
        SessionStatus.PENDING_VERIFICATION,
        SessionStatus.COMPLETE,
        SessionStatus.SUBMITTED,
    }
)


def _parse_enum(enum_cls, value: Any, field_name: str):
    try:
        return enum_cls(value)
    except ValueError:
        raise ValidationError(
            f"unknown {field_name}",
            detail={"field": field_name, "allowed": [item.value for item in enum_cls]},
        ) from None


class SessionService:
    """Entry points for session operations.

    Every call resolves the external id, asks the policy engine, then loads
    the session, so a caller without access learns nothing about whether the
    id exists.
    """

    def __init__(
        self,
        store: SessionStore,
        audit: AuditService,
        policy: PolicyEngine,
        tokens: TokenService,
        progress: ProgressService,
        cipher: FieldCipher,
        settings: Settings,
    ) -> None:
        self.store = store
        self.audit = audit
        self.policy = policy
        self.tokens = tokens
        self.progress = progress
        self.cipher = cipher
        self.settings = settings
        self.activity_window = timedelta(minutes=settings.activity_window_minutes)

    @staticmethod
    def _session_key(external_id: str) -> str:
        try:
            return parse_session_id(external_id)
        except ValueError:
            raise ValidationError("invalid session id", detail={"field": "session_id"}) from None

    def _authorize(
        self,
        external_id: str,
        principal: Principal,
        action: Action,
        actor: Optional[RequestActor],
    ) -> str:
        key = self._session_key(external_id)
        self.policy.enforce(principal, external_id, action, actor=actor)
        return key

    def _load(self, key: str) -> Session:
        session = self.store.get_session(key)
        if session is None:
            raise NotFoundError("session not found")
        return session

    def _load_writable(self, key: str) -> Session:
        session = self._load(key)
        ensure_writable(session)
        return session

    async def _close_out(
        self, session: Session, reason: str, actor: Optional[RequestActor]
    ) -> None:
        self.tokens.revoke_all(session.id, reason, actor=actor)
        await self.progress.invalidate(session.id)

    # -- sessions -----------------------------------------------------------

    async def create_session(
        self,
        *,
        referral_source: Optional[str] = None,
        principal: Optional[Principal] = None,
        actor: Optional[RequestActor] = None,
    ) -> Tuple[Session, TokenPair]:
        principal = principal or Principal.anonymous()
        self.policy.enforce(principal, None, Action.CREATE, actor=actor)
        if referral_source is not None:
            referral_source = referral_source.strip() or None
            if referral_source and len(referral_source) > MAX_REFERRAL_SOURCE_LENGTH:
                raise ValidationError(
                    "referral source too long", detail={"field": "referral_source"}
                )
        session = self.store.create_session(
            Session.new(ttl_hours=self.settings.session_ttl_hours, referral_source=referral_source)
        )
        self.audit.record(
            AuditAction.SESSION_CREATED,
            session_id=session.id,
            details={"referral_source": session.referral_source},
            actor=actor,
        )
        pair = self.tokens.issue_pair(session, actor=actor)
        logger.info("session_created", session_id=session.id)
        return session, pair

    async def get_session(
        self,
        external_id: str,
        principal: Principal,
        *,
        actor: Optional[RequestActor] = None,
    ) -> Session:
        key = self._authorize(external_id, principal, Action.READ, actor)
        session = self._load(key)
        return await self.progress.read_through(session)

    async def update_progress(
        self,
        external_id: str,
        principal: Principal,
        patch: Any,
        *,
        actor: Optional[RequestActor] = None,
    ) -> Session:
        key = self._authorize(external_id, principal, Action.UPDATE, actor)
        validate_patch(patch)
        return await self.progress.update_progress(key, patch, actor=actor)

    async def abandon_session(
        self,
        external_id: str,
        principal: Principal,
        *,
        actor: Optional[RequestActor] = None,
    ) -> Session:
        key = self._authorize(external_id, principal, Action.ABANDON, actor)
        session = self._load(key)
        updated = apply_transition(
            self.store,
            self.audit,
            session,
            SessionStatus.ABANDONED,
            activity_window=self.activity_window,
            actor=actor,
        )
        await self._close_out(updated, "session_terminal", actor)
        return updated

    async def advance_session(
        self,
        external_id: str,
        principal: Principal,
        target: Any,
        *,
        actor: Optional[RequestActor] = None,
    ) -> Session:
        key = self._authorize(external_id, principal, Action.UPDATE, actor)
        status = _parse_enum(SessionStatus, target, "status")
        if status not in _ADVANCE_TARGETS:
            raise InvalidTransitionError(
                "status is not reachable through this operation",
                detail={"target_status": status.value},
            )
        session = self._load_writable(key)
        updated = apply_transition(
            self.store,
            self.audit,
            session,
            status,
            activity_window=self.activity_window,
            actor=actor,
        )
        if updated.is_terminal:
            await self._close_out(updated, "session_terminal", actor)
        else:
            await self.progress.invalidate(updated.id)
        return updated

    # -- satellite records --------------------------------------------------

    async def put_record(
        self,
        external_id: str,
        principal: Principal,
        kind: Any,
        fields: Any,
        *,
        actor: Optional[RequestActor] = None,
    ) -> SessionRecord:
        key = self._authorize(external_id, principal, Action.UPDATE, actor)
        record_kind = _parse_enum(RecordKind, kind, "kind")
        if not isinstance(fields, dict) or not fields:
            raise ValidationError("record fields must be a non-empty object")
        if len(fields) > MAX_RECORD_FIELDS or not all(isinstance(k, str) and k for k in fields):
            raise ValidationError("record fields are malformed")
        self._load_writable(key)

        lookup_digest = None
        if record_kind == RecordKind.CONTACT and fields.get("email"):
            email = fields["email"]
            if not isinstance(email, str) or "@" not in email:
                raise ValidationError("email is invalid", detail={"field": "email"})
            lookup_digest = self.cipher.digest(email.strip().lower())
        record = self.store.upsert_record(key, record_kind, fields, lookup_digest=lookup_digest)
        self.audit.record(
            AuditAction.RECORD_UPDATED,
            session_id=key,
            resource=f"record:{record_kind.value}",
            resource_id=record.id,
            details={"kind": record_kind.value, "fields": sorted(fields)},
            actor=actor,
        )
        return record

    async def get_record(
        self,
        external_id: str,
        principal: Principal,
        kind: Any,
        *,
        actor: Optional[RequestActor] = None,
    ) -> SessionRecord:
        key = self._authorize(external_id, principal, Action.READ, actor)
        record_kind = _parse_enum(RecordKind, kind, "kind")
        self._load(key)
        record = self.store.get_record(key, record_kind)
        if record is None:
            raise NotFoundError("record not found")
        return record

    async def append_message(
        self,
        external_id: str,
        principal: Principal,
        role: Any,
        content: Any,
        *,
        actor: Optional[RequestActor] = None,
    ) -> ConversationMessage:
        key = self._authorize(external_id, principal, Action.UPDATE, actor)
        message_role = _parse_enum(MessageRole, role, "role")
        if not isinstance(content, str) or not content.strip():
            raise ValidationError("message content is required", detail={"field": "content"})
        if len(content) > MAX_MESSAGE_LENGTH:
            raise ValidationError(
                "message content too long", detail={"max_length": MAX_MESSAGE_LENGTH}
            )
        self._load_writable(key)
        message = self.store.append_message(key, message_role, content)
        self.audit.record(
            AuditAction.MESSAGE_APPENDED,
            session_id=key,
            resource="message",
            resource_id=message.id,
            details={"role": message_role.value, "seq": message.seq},
            actor=actor,
        )
        return message

    async def list_messages(
        self,
        external_id: str,
        principal: Principal,
        *,
        limit: Optional[int] = None,
        actor: Optional[RequestActor] = None,
    ) -> List[ConversationMessage]:
        key = self._authorize(external_id, principal, Action.READ, actor)
        self._load(key)
        page = DEFAULT_MESSAGE_PAGE if limit is None else max(1, min(limit, DEFAULT_MESSAGE_PAGE))
        return self.store.list_messages(key, limit=page)


def session_view(session: Session) -> Dict[str, Any]:
    """External rendering of a session; never includes the storage key."""
    return {
        "id": session.public_id,
        "status": session.status.value,
        "progress": session.progress,
        "created_at": session.created_at.isoformat(),
        "updated_at": session.updated_at.isoformat(),
        "expires_at": session.expires_at.isoformat(),
        "referral_source": session.referral_source,
        "version": session.version,
    }
