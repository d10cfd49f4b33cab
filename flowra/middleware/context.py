"""Accessors for identity and workspace values stored on ``request.state``."""

from __future__ import annotations

import uuid
from typing import Any

from starlette.requests import Request

from flowra.models.auth import TokenClaims


def set_identity(request: Request, user_id: uuid.UUID, claims: TokenClaims) -> None:
    state = request.state
    state.user_id = user_id
    state.external_user_id = claims.external_user_id
    state.username = claims.username
    state.email = claims.email
    state.roles = list(claims.roles)
    state.groups = list(claims.groups)
    state.is_system_admin = claims.is_system_admin
    state.claims = claims

    # Display map consumed by page templates
    state.user = {
        "id": str(user_id),
        "email": claims.email,
        "username": claims.username,
        "display_name": claims.username or claims.email,
    }


def get_user_id(request: Request) -> uuid.UUID | None:
    return getattr(request.state, "user_id", None)


def get_external_user_id(request: Request) -> str:
    return getattr(request.state, "external_user_id", "")


def get_username(request: Request) -> str:
    return getattr(request.state, "username", "")


def get_email(request: Request) -> str:
    return getattr(request.state, "email", "")


def get_roles(request: Request) -> list[str]:
    return getattr(request.state, "roles", [])


def get_groups(request: Request) -> list[str]:
    return getattr(request.state, "groups", [])


def get_claims(request: Request) -> TokenClaims | None:
    return getattr(request.state, "claims", None)


def get_current_user(request: Request) -> dict[str, Any] | None:
    return getattr(request.state, "user", None)


def is_authenticated(request: Request) -> bool:
    return get_user_id(request) is not None


def is_system_admin(request: Request) -> bool:
    return bool(getattr(request.state, "is_system_admin", False))


def has_role(request: Request, role: str) -> bool:
    return role in get_roles(request)


def has_any_role(request: Request, *roles: str) -> bool:
    return any(has_role(request, r) for r in roles)


def get_workspace_id(request: Request) -> uuid.UUID | None:
    return getattr(request.state, "workspace_id", None)
