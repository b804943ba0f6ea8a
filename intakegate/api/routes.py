from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Body, Depends, Header, Path, Query, Request, Response

from intakegate.api.schemas import (
    CreateSessionRequest,
    Envelope,
    MessageListResponse,
    MessageRequest,
    MessageResponse,
    ProgressUpdateRequest,
    RecordRequest,
    RecordResponse,
    RecoveryRedeemRequest,
    RecoveryRequest,
    SessionResponse,
    SessionWithTokensResponse,
    SigningKeyResponse,
    TokenPairResponse,
    TokenRefreshRequest,
    TransitionRequest,
)
from intakegate.logging import get_logger
from intakegate.service.errors import UnauthenticatedError
from intakegate.service.runtime import get_runtime
from intakegate.service.sessions import session_view
from intakegate.service.tokens import TokenPair
from intakegate.storage.models import (
    ConversationMessage,
    Principal,
    RequestActor,
    Session,
    SessionRecord,
)

logger = get_logger(__name__)

_BEARER_PREFIX = "bearer "


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        """Apply rate limit headers per IETF draft-polli-ratelimit-headers."""
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def get_actor(
    request: Request,
    user_agent: Optional[str] = Header(None, alias="User-Agent"),
) -> RequestActor:
    return RequestActor(
        ip=request.client.host if request.client else None,
        user_agent=user_agent[:512] if user_agent else None,
    )


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    """Resolve the bearer; no header means anonymous, a bad header is rejected."""
    if not authorization:
        return Principal.anonymous()
    if not authorization.lower().startswith(_BEARER_PREFIX):
        raise UnauthenticatedError("unsupported authorization scheme")
    token = authorization[len(_BEARER_PREFIX):].strip()
    return get_runtime().tokens.verify_access_token(token)


async def enforce_rate_limit(
    response: Response,
    authorization: Optional[str] = Header(None),
    actor: RequestActor = Depends(get_actor),
) -> None:
    runtime = get_runtime()
    try:
        principal = await get_principal(authorization)
    except UnauthenticatedError:
        # Count bad credentials against the caller address; the route rejects them
        principal = Principal.anonymous()
    identity = principal.subject or actor.ip or "unknown"
    decision = await runtime.rate_limiter.enforce(principal.role, identity, actor=actor)
    if decision is not None:
        RateLimitInfo(decision.limit, decision.remaining, decision.reset_seconds).apply_headers(
            response
        )


router = APIRouter(prefix="/v1", dependencies=[Depends(enforce_rate_limit)])


def _session_response(session: Session) -> SessionResponse:
    return SessionResponse(**session_view(session))


def _token_response(pair: TokenPair) -> TokenPairResponse:
    return TokenPairResponse(
        access_token=pair.access_token,
        refresh_token=pair.refresh_token,
        token_type=pair.token_type,
        access_expires_at=pair.access_expires_at,
        refresh_expires_at=pair.refresh_expires_at,
    )


def _record_response(record: SessionRecord) -> RecordResponse:
    return RecordResponse(
        id=record.id,
        kind=record.kind.value,
        fields=record.fields,
        created_at=record.created_at,
        updated_at=record.updated_at,
    )


def _message_response(message: ConversationMessage) -> MessageResponse:
    return MessageResponse(
        id=message.id,
        seq=message.seq,
        role=message.role.value,
        content=message.content,
        created_at=message.created_at,
    )


# -- sessions ----------------------------------------------------------------


@router.post("/sessions", status_code=201, response_model=Envelope)
async def create_session(
    body: Optional[CreateSessionRequest] = Body(None),
    principal: Principal = Depends(get_principal),
    actor: RequestActor = Depends(get_actor),
):
    runtime = get_runtime()
    session, pair = await runtime.sessions.create_session(
        referral_source=body.referral_source if body else None,
        principal=principal,
        actor=actor,
    )
    return Envelope(
        status="ok",
        data=SessionWithTokensResponse(
            session=_session_response(session), tokens=_token_response(pair)
        ),
    )


@router.get("/sessions/{session_id}", response_model=Envelope)
async def get_session(
    session_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_principal),
    actor: RequestActor = Depends(get_actor),
):
    runtime = get_runtime()
    session = await runtime.sessions.get_session(session_id, principal, actor=actor)
    return Envelope(status="ok", data=_session_response(session))


@router.patch("/sessions/{session_id}/progress", response_model=Envelope)
async def update_progress(
    body: ProgressUpdateRequest,
    session_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_principal),
    actor: RequestActor = Depends(get_actor),
):
    runtime = get_runtime()
    session = await runtime.sessions.update_progress(
        session_id, principal, body.patch, actor=actor
    )
    return Envelope(status="ok", data=_session_response(session))


@router.post("/sessions/{session_id}/abandon", response_model=Envelope)
async def abandon_session(
    session_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_principal),
    actor: RequestActor = Depends(get_actor),
):
    runtime = get_runtime()
    session = await runtime.sessions.abandon_session(session_id, principal, actor=actor)
    return Envelope(status="ok", data=_session_response(session))


@router.post("/sessions/{session_id}/transitions", response_model=Envelope)
async def advance_session(
    body: TransitionRequest,
    session_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_principal),
    actor: RequestActor = Depends(get_actor),
):
    runtime = get_runtime()
    session = await runtime.sessions.advance_session(
        session_id, principal, body.status, actor=actor
    )
    return Envelope(status="ok", data=_session_response(session))


# -- satellite records -------------------------------------------------------


@router.put("/sessions/{session_id}/records/{kind}", response_model=Envelope)
async def put_record(
    body: RecordRequest,
    session_id: str = Path(..., max_length=64),
    kind: str = Path(..., max_length=32),
    principal: Principal = Depends(get_principal),
    actor: RequestActor = Depends(get_actor),
):
    runtime = get_runtime()
    record = await runtime.sessions.put_record(
        session_id, principal, kind, body.fields, actor=actor
    )
    return Envelope(status="ok", data=_record_response(record))


@router.get("/sessions/{session_id}/records/{kind}", response_model=Envelope)
async def get_record(
    session_id: str = Path(..., max_length=64),
    kind: str = Path(..., max_length=32),
    principal: Principal = Depends(get_principal),
    actor: RequestActor = Depends(get_actor),
):
    runtime = get_runtime()
    record = await runtime.sessions.get_record(session_id, principal, kind, actor=actor)
    return Envelope(status="ok", data=_record_response(record))


@router.post("/sessions/{session_id}/messages", status_code=201, response_model=Envelope)
async def append_message(
    body: MessageRequest,
    session_id: str = Path(..., max_length=64),
    principal: Principal = Depends(get_principal),
    actor: RequestActor = Depends(get_actor),
):
    runtime = get_runtime()
    message = await runtime.sessions.append_message(
        session_id, principal, body.role, body.content, actor=actor
    )
    return Envelope(status="ok", data=_message_response(message))


@router.get("/sessions/{session_id}/messages", response_model=Envelope)
async def list_messages(
    session_id: str = Path(..., max_length=64),
    limit: Optional[int] = Query(None, ge=1, le=200),
    principal: Principal = Depends(get_principal),
    actor: RequestActor = Depends(get_actor),
):
    runtime = get_runtime()
    messages = await runtime.sessions.list_messages(
        session_id, principal, limit=limit, actor=actor
    )
    return Envelope(
        status="ok",
        data=MessageListResponse(items=[_message_response(m) for m in messages]),
    )


# -- auth --------------------------------------------------------------------


@router.post("/auth/refresh", response_model=Envelope)
async def refresh_tokens(
    body: TokenRefreshRequest,
    actor: RequestActor = Depends(get_actor),
):
    runtime = get_runtime()
    session, pair = runtime.tokens.refresh(body.refresh_token, actor=actor)
    return Envelope(
        status="ok",
        data=SessionWithTokensResponse(
            session=_session_response(session), tokens=_token_response(pair)
        ),
    )


@router.post("/auth/recovery", status_code=202, response_model=Envelope)
async def request_recovery(
    body: RecoveryRequest,
    actor: RequestActor = Depends(get_actor),
):
    runtime = get_runtime()
    await runtime.recovery.request_recovery(body.email, actor=actor)
    # Same answer whether or not the address matched a session
    return Envelope(status="ok", data={"status": "accepted"})


@router.post("/auth/recovery/redeem", response_model=Envelope)
async def redeem_recovery(
    body: RecoveryRedeemRequest,
    actor: RequestActor = Depends(get_actor),
):
    runtime = get_runtime()
    session, pair = await runtime.recovery.recover_session(body.token, actor=actor)
    return Envelope(
        status="ok",
        data=SessionWithTokensResponse(
            session=_session_response(session), tokens=_token_response(pair)
        ),
    )


@router.get("/auth/signing-key", response_model=Envelope)
async def signing_key():
    runtime = get_runtime()
    return Envelope(
        status="ok", data=SigningKeyResponse(public_key_pem=runtime.keys.public_key_pem())
    )
