"""Liveness and readiness bodies."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

StoreKind = Literal["memory", "redis", "disabled"]


class HealthResponse(BaseModel):
    status: Literal["ok", "degraded"]
    version: str
    uptime: int
    rateLimitStore: StoreKind
    mockAuth: bool


class ReadyResponse(BaseModel):
    ready: bool
    store: StoreKind = "disabled"
    reason: str | None = None
