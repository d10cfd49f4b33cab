"""Workspace rate limit inspection."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from flowra.dependencies import require_user
from flowra.exceptions import AppError, StoreError
from flowra.middleware.workspace import parse_workspace_id

router = APIRouter(prefix="/api/v1/workspaces", tags=["workspaces"])


class WorkspaceRateLimitResponse(BaseModel):
    workspaceId: uuid.UUID
    limit: int
    windowSeconds: float
    used: int


@router.get("/{workspace_id}/rate-limit", response_model=WorkspaceRateLimitResponse)
async def workspace_rate_limit(
    workspace_id: str,
    request: Request,
    _user: uuid.UUID = Depends(require_user),
) -> WorkspaceRateLimitResponse:
    ws_id = parse_workspace_id(workspace_id)
    limiter = request.app.state.workspace_limiter

    used = 0
    if limiter.store is not None:
        try:
            used = await limiter.store.get_count(f"ws:{ws_id}")
        except StoreError:
            raise AppError("STORE_UNAVAILABLE", "Rate limit store unavailable", 503)

    return WorkspaceRateLimitResponse(
        workspaceId=ws_id,
        limit=limiter.get_limit(ws_id),
        windowSeconds=limiter.window,
        used=used,
    )
