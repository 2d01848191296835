"""Domain errors and their HTTP rendering.

Every error carries a stable ``code`` and an HTTP status. Routers let these
propagate; ``register_error_handlers`` turns them into JSON responses shaped
like FastAPI's own ``{"detail": ...}`` bodies.
"""

from typing import Any

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

logger = structlog.get_logger(__name__)


class TokenGateError(Exception):
    """Base class for errors surfaced to callers."""

    code = "INTERNAL_ERROR"
    status_code = 500
    default_message = "Unexpected error"

    def __init__(self, message: str | None = None, **details: Any) -> None:
        self.message = message or self.default_message
        self.details = details
        super().__init__(self.message)

    def to_detail(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, **self.details}


class AuthenticationRequired(TokenGateError):
    code = "AUTHENTICATION_REQUIRED"
    status_code = 401
    default_message = "Authentication or a session identifier is required"


class InvalidRequest(TokenGateError):
    code = "INVALID_REQUEST"
    status_code = 400
    default_message = "Invalid request"


class InsufficientTokens(TokenGateError):
    code = "INSUFFICIENT_TOKENS"
    status_code = 402
    default_message = "Not enough tokens available"


class RateLimitExceeded(TokenGateError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429
    default_message = "Too many requests"

    def __init__(self, message: str | None = None, *, retry_after: int, **details: Any) -> None:
        self.retry_after = retry_after
        super().__init__(message, retry_after=retry_after, **details)


class MonthlyLimitReached(TokenGateError):
    code = "MONTHLY_LIMIT_REACHED"
    status_code = 429
    default_message = "Monthly conversation limit reached"


class UnsupportedLanguage(TokenGateError):
    code = "UNSUPPORTED_LANGUAGE"
    status_code = 400
    default_message = "Language is not supported"


class UpstreamFailure(TokenGateError):
    """Backing store unavailable or timed out. Transient; nothing was debited."""

    code = "UPSTREAM_FAILURE"
    status_code = 503
    default_message = "Backing store unavailable"


async def _handle_token_gate_error(_request: Request, exc: TokenGateError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.warning("request_failed_upstream", code=exc.code, message=exc.message)
    headers = None
    if isinstance(exc, RateLimitExceeded):
        headers = {"Retry-After": str(exc.retry_after)}
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.to_detail()},
        headers=headers,
    )


def register_error_handlers(app: FastAPI) -> None:
    """Install the JSON handler for every ``TokenGateError`` subclass."""
    app.add_exception_handler(TokenGateError, _handle_token_gate_error)
