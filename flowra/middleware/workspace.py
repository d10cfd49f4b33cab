"""Workspace id extraction and per-workspace rate limiting."""

from __future__ import annotations

import logging
import re
import threading
import uuid

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from flowra.adapters.rate_limit_store import RateLimitStore
from flowra.clock import SYSTEM_CLOCK, Clock
from flowra.exceptions import RateLimitedError, StoreError, ValidationError, error_response
from flowra.middleware.context import get_workspace_id
from flowra.services.quota import apply_headers, consume

logger = logging.getLogger(__name__)

WORKSPACE_PATH_RE = re.compile(r"^(?:/api/v1)?/workspaces/(?P<workspace_id>[^/]+)")
WORKSPACE_LIMIT_MESSAGE = "Workspace rate limit exceeded"


def parse_workspace_id(raw: str) -> uuid.UUID:
    try:
        return uuid.UUID(raw)
    except (ValueError, AttributeError, TypeError):
        raise ValidationError(f"Invalid workspace id: {raw}", code="INVALID_WORKSPACE_ID")


class WorkspaceContextMiddleware(BaseHTTPMiddleware):
    """Put the workspace id from the request path on ``request.state``.

    An id already on the state (set by an earlier component) is left alone.
    """

    def __init__(self, app, path_pattern: re.Pattern[str] = WORKSPACE_PATH_RE):
        super().__init__(app)
        self._pattern = path_pattern

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if get_workspace_id(request) is None:
            match = self._pattern.match(request.url.path)
            if match:
                try:
                    request.state.workspace_id = parse_workspace_id(match.group("workspace_id"))
                except ValidationError as exc:
                    return error_response(exc)
        return await call_next(request)


class WorkspaceRateLimiter:
    """Base workspace quota with per-workspace overrides. No burst headroom."""

    def __init__(
        self,
        store: RateLimitStore | None,
        limit: int,
        window: float,
        clock: Clock = SYSTEM_CLOCK,
    ):
        if limit < 0:
            raise ValueError("limit must be >= 0")
        if window <= 0:
            raise ValueError("window must be > 0")
        self.store = store
        self.window = window
        self.clock = clock
        self._default_limit = limit
        self._limits: dict[uuid.UUID, int] = {}
        self._lock = threading.Lock()

    def set_workspace_limit(self, workspace_id: uuid.UUID, limit: int) -> None:
        if limit < 0:
            raise ValueError("limit must be >= 0")
        with self._lock:
            self._limits[workspace_id] = limit

    def get_limit(self, workspace_id: uuid.UUID) -> int:
        with self._lock:
            return self._limits.get(workspace_id, self._default_limit)


class WorkspaceRateLimitMiddleware(BaseHTTPMiddleware):
    """Apply a WorkspaceRateLimiter to requests that carry a workspace id."""

    def __init__(self, app, limiter: WorkspaceRateLimiter):
        super().__init__(app)
        self._limiter = limiter

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        limiter = self._limiter
        workspace_id = get_workspace_id(request)
        if workspace_id is None or limiter.store is None:
            return await call_next(request)

        key = f"ws:{workspace_id}"
        try:
            decision = await consume(
                limiter.store, key, limiter.get_limit(workspace_id), limiter.window, limiter.clock
            )
        except StoreError as exc:
            logger.error("Failed to increment workspace rate limit for %s: %s", workspace_id, exc)
            return await call_next(request)

        if decision.exceeded:
            logger.warning(
                "Workspace rate limit exceeded: workspace=%s count=%d limit=%d",
                workspace_id,
                decision.count,
                decision.cap,
            )
            response = error_response(RateLimitedError(WORKSPACE_LIMIT_MESSAGE, decision.retry_after))
        else:
            response = await call_next(request)

        apply_headers(response, decision)
        return response
