"""JSON bodies for API errors and unauthenticated fragment requests."""

from __future__ import annotations

from pydantic import BaseModel


class RateLimitDetails(BaseModel):
    retry_after: int


class ErrorResponse(BaseModel):
    """Body of every AppError: ``{code, message[, details]}``."""

    code: str
    message: str
    details: RateLimitDetails | dict | None = None


class UnauthenticatedResponse(BaseModel):
    """401 body sent to HTMX clients alongside ``Hx-Redirect``."""

    error: str = "Authentication required"
