"""Liveness and readiness probes; both bypass auth and rate limiting."""

from __future__ import annotations

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from flowra.exceptions import StoreError
from flowra.models.health import HealthResponse, ReadyResponse, StoreKind

router = APIRouter(tags=["health"])

_PROBE_KEY = "__ready__"


def _store_kind(request: Request) -> StoreKind:
    if request.app.state.rate_limit_store is None:
        return "disabled"
    return request.app.state.settings.rate_limit_store


@router.get("/health", response_model=HealthResponse)
async def health(request: Request) -> HealthResponse:
    from flowra.main import get_uptime

    settings = request.app.state.settings
    store_kind = _store_kind(request)

    # Rate limiting switched on but no store wired: limiters are pass-through
    degraded = settings.rate_limit_enabled and store_kind == "disabled"

    return HealthResponse(
        status="degraded" if degraded else "ok",
        version=request.app.state.version,
        uptime=get_uptime(),
        rateLimitStore=store_kind,
        mockAuth=settings.allow_mock_auth,
    )


@router.get("/ready", response_model=ReadyResponse)
async def ready(request: Request) -> JSONResponse:
    store = request.app.state.rate_limit_store
    body = ReadyResponse(ready=True, store=_store_kind(request))

    if store is not None:
        try:
            await store.get_count(_PROBE_KEY)
        except StoreError:
            body.ready = False
            body.reason = "rate limit store unreachable"

    return JSONResponse(status_code=200 if body.ready else 503, content=body.model_dump())
