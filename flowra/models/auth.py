"""Identity and OAuth token models."""

from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class TokenClaims(BaseModel):
    """Validated identity carried from a token validator into request state."""

    user_id: uuid.UUID | None = None
    external_user_id: str = ""
    username: str = ""
    email: str = ""
    roles: list[str] = Field(default_factory=list)
    groups: list[str] = Field(default_factory=list)
    is_system_admin: bool = False
    expires_at: datetime | None = None
    raw: dict[str, Any] = Field(default_factory=dict)


class TokenResponse(BaseModel):
    access_token: str
    refresh_token: str = ""
    expires_in: int = 0
    refresh_expires_in: int = 0
    token_type: str = ""
    id_token: str = ""
    scope: str = ""


class UserView(BaseModel):
    id: uuid.UUID
    externalUserId: str
    username: str
    email: str
    displayName: str
    roles: list[str]
    groups: list[str]
    isSystemAdmin: bool
