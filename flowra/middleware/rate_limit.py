"""Fixed-window rate limiter middleware with pluggable keying and storage."""

from __future__ import annotations

import dataclasses
import inspect
import logging
import math
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Union

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response

from flowra.adapters.rate_limit_store import RateLimitStore
from flowra.clock import SYSTEM_CLOCK, Clock
from flowra.exceptions import RateLimitedError, StoreError, error_response
from flowra.middleware.context import get_user_id, get_workspace_id
from flowra.services.quota import EndpointRateLimits, QuotaDecision, apply_headers, consume

logger = logging.getLogger(__name__)

DEFAULT_LIMIT = 100
DEFAULT_WINDOW_S = 60.0
DEFAULT_BURST = 10
DEFAULT_MESSAGE = "Too many requests. Please try again later."
DEFAULT_SKIP_PATHS = frozenset({"/health", "/ready"})

KeyFunc = Callable[[Request], str]
ExceedHandler = Callable[[Request, float], Union[Response, Awaitable[Response]]]


# -- Keying strategies ---------------------------------------------------------


def client_ip(request: Request) -> str:
    """X-Real-IP, then the first X-Forwarded-For hop, then the peer address."""
    real_ip = request.headers.get("X-Real-IP", "").strip()
    if real_ip:
        return real_ip
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    if request.client:
        return request.client.host
    return ""


def global_key(_request: Request) -> str:
    return "global"


def user_key(request: Request) -> str:
    user_id = get_user_id(request)
    if user_id is None:
        return ""
    return f"user:{user_id}"


def ip_key(request: Request) -> str:
    return f"ip:{client_ip(request)}"


def endpoint_key(request: Request) -> str:
    return f"{request.method}:{request.url.path}:{client_ip(request)}"


def workspace_key(request: Request) -> str:
    workspace_id = get_workspace_id(request)
    if workspace_id is None:
        return ""
    return f"workspace:{workspace_id}"


# -- Configuration -------------------------------------------------------------


@dataclass(frozen=True)
class RateLimitConfig:
    """Immutable settings for one limiter instance.

    ``store=None`` turns the limiter into a pass-through. The effective cap is
    ``limit + burst``, where ``limit`` may be overridden per endpoint.
    """

    store: RateLimitStore | None = None
    limit: int = DEFAULT_LIMIT
    window: float = DEFAULT_WINDOW_S
    burst: int = DEFAULT_BURST
    skip_paths: frozenset[str] = DEFAULT_SKIP_PATHS
    key_fn: KeyFunc = ip_key
    exceed_fn: ExceedHandler | None = None
    message: str = DEFAULT_MESSAGE
    endpoint_limits: EndpointRateLimits | None = None
    clock: Clock = field(default=SYSTEM_CLOCK, compare=False)

    def __post_init__(self):
        if self.limit < 0:
            raise ValueError("limit must be >= 0")
        if self.burst < 0:
            raise ValueError("burst must be >= 0")
        if self.window <= 0:
            raise ValueError("window must be > 0")
        object.__setattr__(self, "skip_paths", frozenset(self.skip_paths))

    def with_key(self, key_fn: KeyFunc) -> RateLimitConfig:
        return dataclasses.replace(self, key_fn=key_fn)

    def cap_for(self, request: Request) -> int:
        limit = self.limit
        if self.endpoint_limits is not None:
            limit = self.endpoint_limits.get(request.method, request.url.path, limit)
        return limit + self.burst


def default_exceed_handler(message: str) -> ExceedHandler:
    def _handler(_request: Request, retry_after: float) -> Response:
        return error_response(RateLimitedError(message, retry_after=max(1, math.ceil(retry_after))))

    return _handler


# -- Middleware ----------------------------------------------------------------


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Fixed-window limiter; stack several instances for several scopes.

    Store failures fail open: the request proceeds without rate-limit headers.
    """

    def __init__(self, app, config: RateLimitConfig):
        super().__init__(app)
        self._config = config
        self._exceed = config.exceed_fn or default_exceed_handler(config.message)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        config = self._config
        if config.store is None:
            return await call_next(request)

        path = request.url.path
        if path in config.skip_paths:
            return await call_next(request)

        key = config.key_fn(request)
        if not key:
            return await call_next(request)

        try:
            decision = await consume(config.store, key, config.cap_for(request), config.window, config.clock)
        except StoreError as exc:
            logger.error("Failed to increment rate limit counter for key %s: %s", key, exc)
            return await call_next(request)

        if decision.exceeded:
            logger.warning(
                "Rate limit exceeded: key=%s count=%d limit=%d path=%s ip=%s",
                key,
                decision.count,
                decision.cap,
                path,
                client_ip(request),
            )
            response = await self._on_exceeded(request, decision)
        else:
            response = await call_next(request)

        apply_headers(response, decision)
        return response

    async def _on_exceeded(self, request: Request, decision: QuotaDecision) -> Response:
        result = self._exceed(request, decision.ttl)
        if inspect.isawaitable(result):
            result = await result
        return result
