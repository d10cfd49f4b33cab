"""FastAPI dependency injection via Depends()."""

from __future__ import annotations

import uuid
from typing import TYPE_CHECKING, Callable

from fastapi import Request

from flowra.exceptions import ForbiddenError, UnauthorizedError
from flowra.middleware.context import get_user_id, has_any_role, has_role, is_system_admin

if TYPE_CHECKING:
    from flowra.adapters.rate_limit_store import RateLimitStore
    from flowra.config import Settings
    from flowra.services.oauth import OAuthCoordinator


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def get_rate_limit_store(request: Request) -> RateLimitStore | None:
    return request.app.state.rate_limit_store


def get_oauth(request: Request) -> OAuthCoordinator:
    return request.app.state.oauth


def require_user(request: Request) -> uuid.UUID:
    """JSON 401 for API routes reached without an authenticated identity."""
    user_id = get_user_id(request)
    if user_id is None:
        raise UnauthorizedError()
    return user_id


def require_role(role: str) -> Callable[[Request], None]:
    def _check(request: Request) -> None:
        require_user(request)
        if not has_role(request, role):
            raise ForbiddenError()

    return _check


def require_any_role(*roles: str) -> Callable[[Request], None]:
    def _check(request: Request) -> None:
        require_user(request)
        if not has_any_role(request, *roles):
            raise ForbiddenError()

    return _check


def require_system_admin() -> Callable[[Request], None]:
    def _check(request: Request) -> None:
        require_user(request)
        if not is_system_admin(request):
            raise ForbiddenError()

    return _check
