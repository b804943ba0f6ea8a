from __future__ import annotations

from fastapi import FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from intakegate.api.schemas import Envelope, ErrorBody
from intakegate.logging import get_logger, sanitize_error_message
from intakegate.service.crypto import DecryptionError
from intakegate.service.errors import RateLimitedError, ServiceError
from intakegate.storage.errors import CacheTimeout, ConstraintViolation, StoreTimeout

logger = get_logger(__name__)

# Stable error codes mapped from HTTP status codes
_STATUS_TO_CODE = {
    400: "validation_error",
    401: "unauthenticated",
    403: "forbidden",
    404: "not_found",
    409: "conflict",
    429: "rate_limited",
    500: "internal_error",
    503: "timeout",
}

TIMEOUT_RETRY_AFTER_SECONDS = 1


def _error_code_for_status(status_code: int) -> str:
    return _STATUS_TO_CODE.get(status_code, "internal_error")


def _error_response(
    status_code: int,
    message: str,
    details: dict | list | None = None,
    code: str | None = None,
    headers: dict | None = None,
) -> JSONResponse:
    """Build the error envelope response."""
    error_code = code or _error_code_for_status(status_code)
    error_body = ErrorBody(code=error_code, message=message, details=details or None)
    envelope = Envelope(status="error", error=error_body)
    return JSONResponse(
        status_code=status_code, content=envelope.model_dump(mode="json"), headers=headers
    )


def register_exception_handlers(app: FastAPI) -> None:
    """Install consistent exception handlers for domain and storage errors."""

    @app.exception_handler(ConstraintViolation)
    async def handle_constraint_violation(request: Request, exc: ConstraintViolation):
        logger.warning(
            "constraint_violation",
            path=request.url.path,
            method=request.method,
            message=exc.message,
        )
        return _error_response(409, "conflicting change", code="conflict")

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError):
        log_fn = logger.error if exc.status_code >= 500 else logger.warning
        log_fn(
            "service_error",
            path=request.url.path,
            method=request.method,
            status_code=exc.status_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        headers = None
        if isinstance(exc, RateLimitedError):
            headers = {"Retry-After": str(exc.retry_after)}
        elif exc.retriable:
            headers = {"Retry-After": str(TIMEOUT_RETRY_AFTER_SECONDS)}
        return _error_response(
            exc.status_code, exc.message, exc.detail, code=exc.error_code, headers=headers
        )

    @app.exception_handler(StoreTimeout)
    @app.exception_handler(CacheTimeout)
    async def handle_dependency_timeout(request: Request, exc: Exception):
        logger.error(
            "dependency_timeout",
            path=request.url.path,
            method=request.method,
            dependency="store" if isinstance(exc, StoreTimeout) else "cache",
        )
        return _error_response(
            503,
            "temporarily unavailable, retry shortly",
            code="timeout",
            headers={"Retry-After": str(TIMEOUT_RETRY_AFTER_SECONDS)},
        )

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError):
        # Field locations only; the offending values may be PHI
        locations = [
            {"loc": [str(part) for part in error.get("loc", ())], "type": error.get("type")}
            for error in exc.errors()
        ]
        logger.warning(
            "request_validation_failed",
            path=request.url.path,
            method=request.method,
            locations=locations,
        )
        return _error_response(400, "invalid request", {"errors": locations}, code="validation_error")

    @app.exception_handler(HTTPException)
    async def handle_http_exception(request: Request, exc: HTTPException):
        message = exc.detail if isinstance(exc.detail, str) else "http error"
        if exc.status_code >= 500:
            logger.error(
                "http_error",
                path=request.url.path,
                method=request.method,
                status_code=exc.status_code,
            )
        return _error_response(exc.status_code, sanitize_error_message(message))

    @app.exception_handler(DecryptionError)
    async def handle_decryption_error(request: Request, exc: DecryptionError):
        logger.error(
            "field_decryption_failed",
            path=request.url.path,
            method=request.method,
        )
        return _error_response(500, "internal server error", code="internal_error")

    @app.exception_handler(Exception)
    async def handle_uncaught(request: Request, exc: Exception):
        logger.exception(
            "unhandled_exception",
            exc_info=exc,
            path=request.url.path,
            method=request.method,
            error_type=type(exc).__name__,
        )
        return _error_response(500, "internal server error", code="internal_error")
