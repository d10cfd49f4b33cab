"""Login, OAuth callback, logout and current-user endpoints."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request
from fastapi.responses import Response

from flowra.dependencies import get_oauth, require_user
from flowra.middleware.context import get_claims, get_current_user
from flowra.models.auth import UserView
from flowra.services.oauth import OAuthCoordinator

router = APIRouter(tags=["auth"])


@router.get("/login", include_in_schema=False)
async def login(request: Request, oauth: OAuthCoordinator = Depends(get_oauth)) -> Response:
    return await oauth.login(request)


@router.get("/auth/callback", include_in_schema=False)
async def auth_callback(request: Request, oauth: OAuthCoordinator = Depends(get_oauth)) -> Response:
    return await oauth.callback(request)


@router.post("/logout", include_in_schema=False)
async def logout(request: Request, oauth: OAuthCoordinator = Depends(get_oauth)) -> Response:
    return await oauth.logout(request)


@router.get("/api/v1/auth/me", response_model=UserView)
async def me(request: Request, user_id: uuid.UUID = Depends(require_user)) -> UserView:
    claims = get_claims(request)
    display = get_current_user(request) or {}
    return UserView(
        id=user_id,
        externalUserId=claims.external_user_id if claims else "",
        username=claims.username if claims else "",
        email=claims.email if claims else "",
        displayName=display.get("display_name", ""),
        roles=claims.roles if claims else [],
        groups=claims.groups if claims else [],
        isSystemAdmin=claims.is_system_admin if claims else False,
    )
