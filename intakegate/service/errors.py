from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries a stable ``error_code`` and an HTTP ``status_code``.
    Messages are user-safe: they never include exception text from lower
    layers, decrypted values or token material. ``retriable`` marks errors a
    caller may retry unchanged.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    retriable: bool = False

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Malformed patch or input (400)."""
    status_code = 400
    error_code = "validation_error"


class UnauthenticatedError(ServiceError):
    """Missing, invalid or expired credential (401)."""
    status_code = 401
    error_code = "unauthenticated"


class TokenRevokedError(UnauthenticatedError):
    """A refresh token that was already revoked was presented again (401)."""
    error_code = "token_revoked"


class ForbiddenError(ServiceError):
    """Authenticated, but the policy denies the action (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class InvalidTransitionError(ServiceError):
    """The requested status change is not an edge of the state machine (409)."""
    status_code = 409
    error_code = "invalid_transition"


class SessionTerminalError(InvalidTransitionError):
    """Mutation attempted on a submitted, abandoned or expired session (409).

    Every edge out of a terminal status is invalid, so this narrows
    ``InvalidTransitionError`` rather than standing beside it.
    """
    error_code = "session_terminal"


class ConflictError(ServiceError):
    """Concurrent modification could not be reconciled (409)."""
    status_code = 409
    error_code = "conflict"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(
        self,
        message: str = "rate limit exceeded",
        *,
        retry_after: int,
        detail: Optional[dict] = None,
    ) -> None:
        self.retry_after = max(1, int(retry_after))
        super().__init__(
            message, detail={**(detail or {}), "retry_after": self.retry_after}
        )


class InternalError(ServiceError):
    """Unexpected failure; full diagnostics stay in server logs (500)."""
    status_code = 500
    error_code = "internal_error"


class UpstreamTimeoutError(ServiceError):
    """A store, cache or secret lookup did not answer in time (503, retriable)."""
    status_code = 503
    error_code = "timeout"
    retriable = True


__all__ = [
    "ServiceError",
    "ValidationError",
    "UnauthenticatedError",
    "TokenRevokedError",
    "ForbiddenError",
    "NotFoundError",
    "InvalidTransitionError",
    "SessionTerminalError",
    "ConflictError",
    "RateLimitedError",
    "InternalError",
    "UpstreamTimeoutError",
]
