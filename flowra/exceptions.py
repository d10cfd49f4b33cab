"""Custom exceptions and FastAPI exception handlers."""

from __future__ import annotations

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse


class AppError(Exception):
    """Base application error rendered as ``{code, message}`` JSON."""

    def __init__(self, code: str, message: str, status_code: int = 400, details: dict | None = None):
        self.code = code
        self.message = message
        self.status_code = status_code
        self.details = details
        super().__init__(message)


class ValidationError(AppError):
    def __init__(self, message: str, code: str = "VALIDATION_ERROR", details: dict | None = None):
        super().__init__(code, message, 400, details)


class UnauthorizedError(AppError):
    def __init__(self, message: str = "Authentication required", code: str = "UNAUTHORIZED"):
        super().__init__(code, message, 401)


class ForbiddenError(AppError):
    def __init__(self, message: str = "Insufficient permissions"):
        super().__init__("FORBIDDEN", message, 403)


class RateLimitedError(AppError):
    def __init__(self, message: str, retry_after: int = 60):
        self.retry_after = retry_after
        super().__init__(
            "RATE_LIMIT_EXCEEDED",
            message,
            429,
            {"retry_after": retry_after},
        )


# -- Internal error kinds (never rendered directly) ---------------------------


class StoreError(Exception):
    """Transport failure talking to a rate-limit store."""


class AuthenticationError(Exception):
    """Base for failures that send a request down the unauthenticated branch."""


class MissingCredentialError(AuthenticationError):
    pass


class InvalidTokenError(AuthenticationError):
    pass


class TokenExpiredError(InvalidTokenError):
    pass


class UserResolutionError(AuthenticationError):
    pass


class OAuthError(Exception):
    """Base for login/callback failures rendered as an error page."""


class StateMismatchError(OAuthError):
    pass


class CodeExchangeError(OAuthError):
    pass


def error_response(exc: AppError) -> JSONResponse:
    """Render an AppError. Also used by middleware, which runs outside the handlers."""
    body: dict = {"code": exc.code, "message": exc.message}
    if exc.details:
        body["details"] = exc.details
    headers = {}
    if isinstance(exc, RateLimitedError):
        headers["Retry-After"] = str(exc.retry_after)
    return JSONResponse(status_code=exc.status_code, content=body, headers=headers)


def register_exception_handlers(app: FastAPI) -> None:
    """Attach all exception handlers to the FastAPI app."""

    @app.exception_handler(AppError)
    async def _app_error_handler(_request: Request, exc: AppError) -> JSONResponse:
        return error_response(exc)
