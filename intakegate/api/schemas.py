from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

from intakegate.logging import get_correlation_id

# Maximum nested JSON depth to prevent deserialization bombs
MAX_JSON_DEPTH = 20
# Maximum array items to prevent memory exhaustion
MAX_ARRAY_ITEMS = 1000


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject documents nested deeper than ``max_depth`` or with oversized arrays.

    Raises:
        ValueError: If depth or array length exceeds the maximum
    """
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_VALID_ERROR_CODES = frozenset({
    "validation_error",
    "unauthenticated",
    "token_revoked",
    "forbidden",
    "not_found",
    "invalid_transition",
    "session_terminal",
    "conflict",
    "rate_limited",
    "internal_error",
    "timeout",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


# -- requests ----------------------------------------------------------------


class CreateSessionRequest(BaseModel):
    referral_source: Optional[str] = Field(default=None, max_length=128)

    @field_validator("referral_source")
    @classmethod
    def _normalize_referral(cls, value: Optional[str]) -> Optional[str]:
        return _normalize_unicode(value) if value else value


class ProgressUpdateRequest(BaseModel):
    patch: Dict[str, Any]

    @field_validator("patch")
    @classmethod
    def _validate_patch_shape(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class TransitionRequest(BaseModel):
    status: str = Field(..., min_length=1, max_length=64)


class RecordRequest(BaseModel):
    fields: Dict[str, Any]

    @field_validator("fields")
    @classmethod
    def _validate_fields_shape(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class MessageRequest(BaseModel):
    role: str = Field(default="user", max_length=32)
    content: str = Field(..., min_length=1, max_length=20000)


class TokenRefreshRequest(BaseModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class RecoveryRequest(BaseModel):
    email: str

    @field_validator("email")
    @classmethod
    def _validate_recovery_email(cls, value: str) -> str:
        return _validate_email(value)


class RecoveryRedeemRequest(BaseModel):
    token: str = Field(..., min_length=1, max_length=256)


# -- responses ---------------------------------------------------------------


class SessionResponse(BaseModel):
    id: str
    status: str
    progress: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    expires_at: datetime
    referral_source: Optional[str] = None
    version: int


class TokenPairResponse(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    access_expires_at: datetime
    refresh_expires_at: datetime


class SessionWithTokensResponse(BaseModel):
    session: SessionResponse
    tokens: TokenPairResponse


class RecordResponse(BaseModel):
    id: str
    kind: str
    fields: Dict[str, Any]
    created_at: datetime
    updated_at: datetime


class MessageResponse(BaseModel):
    id: str
    seq: int
    role: str
    content: str
    created_at: datetime


class MessageListResponse(BaseModel):
    items: List[MessageResponse]


class SigningKeyResponse(BaseModel):
    algorithm: str = "EdDSA"
    public_key_pem: str
