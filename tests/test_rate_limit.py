"""Tests for RateLimitMiddleware."""

from __future__ import annotations

import uuid

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from httpx import ASGITransport, AsyncClient
from starlette.middleware.base import BaseHTTPMiddleware

from flowra.adapters.rate_limit_store import MemoryRateLimitStore
from flowra.exceptions import StoreError
from flowra.middleware.rate_limit import (
    RateLimitConfig,
    RateLimitMiddleware,
    client_ip,
    endpoint_key,
    global_key,
    ip_key,
    user_key,
)
from flowra.services.quota import EndpointRateLimits

USER_A = uuid.UUID("00000000-0000-0000-0000-00000000000a")
USER_B = uuid.UUID("00000000-0000-0000-0000-00000000000b")


class FailingStore:
    """Store whose transport is always down."""

    def __init__(self):
        self.calls = 0

    async def increment(self, key: str, window: float) -> int:
        self.calls += 1
        raise StoreError("connection refused")

    async def get_count(self, key: str) -> int:
        raise StoreError("connection refused")

    async def get_ttl(self, key: str) -> float:
        raise StoreError("connection refused")


def _make_app(config: RateLimitConfig) -> FastAPI:
    """Create a test app with a fake identity injector and rate limiter."""
    app = FastAPI()

    # Identity comes from X-Test-User so user keying has something to work with
    class FakeAuthMiddleware(BaseHTTPMiddleware):
        async def dispatch(self, request: Request, call_next):
            user = request.headers.get("X-Test-User")
            if user:
                request.state.user_id = uuid.UUID(user)
            return await call_next(request)

    # FakeAuth added last = outermost, so it runs before the limiter
    app.add_middleware(RateLimitMiddleware, config=config)
    app.add_middleware(FakeAuthMiddleware)

    @app.get("/test")
    async def test_endpoint():
        return {"ok": True}

    @app.post("/api/v1/messages/{channel}")
    async def post_message(channel: str):
        return {"channel": channel}

    @app.get("/health")
    async def health():
        return {"status": "ok"}

    return app


def _client(config: RateLimitConfig) -> AsyncClient:
    return AsyncClient(transport=ASGITransport(app=_make_app(config)), base_url="http://test")


# -- Burst then throttle -------------------------------------------------------


async def test_burst_then_throttle(clock):
    """limit=3, burst=2: five requests pass with remaining 4..0, the sixth is 429."""
    config = RateLimitConfig(store=MemoryRateLimitStore(clock=clock), limit=3, burst=2, window=60, clock=clock)
    async with _client(config) as client:
        remaining = []
        for _ in range(5):
            resp = await client.get("/test")
            assert resp.status_code == 200
            assert resp.headers["X-RateLimit-Limit"] == "5"
            remaining.append(int(resp.headers["X-RateLimit-Remaining"]))
        assert remaining == [4, 3, 2, 1, 0]

        resp = await client.get("/test")
        assert resp.status_code == 429
        assert 1 <= int(resp.headers["Retry-After"]) <= 60
        assert resp.headers["X-RateLimit-Remaining"] == "0"


async def test_throttled_body(clock):
    """429 body carries the configured message and retry hint."""
    config = RateLimitConfig(
        store=MemoryRateLimitStore(clock=clock), limit=1, burst=0, message="Slow down", clock=clock
    )
    async with _client(config) as client:
        await client.get("/test")
        resp = await client.get("/test")

    assert resp.status_code == 429
    body = resp.json()
    assert body["code"] == "RATE_LIMIT_EXCEEDED"
    assert body["message"] == "Slow down"
    assert body["details"]["retry_after"] == 60


async def test_reset_header_is_absolute(clock):
    """X-RateLimit-Reset is wall-clock seconds at window end."""
    config = RateLimitConfig(store=MemoryRateLimitStore(clock=clock), limit=2, burst=0, window=30, clock=clock)
    async with _client(config) as client:
        resp = await client.get("/test")

    assert int(resp.headers["X-RateLimit-Reset"]) == int(clock.time() + 30)


# -- Keying --------------------------------------------------------------------


async def test_per_user_isolation(clock):
    """User A is throttled at their third request while user B is unaffected."""
    config = RateLimitConfig(
        store=MemoryRateLimitStore(clock=clock), limit=2, burst=0, key_fn=user_key, clock=clock
    )
    async with _client(config) as client:
        a = {"X-Test-User": str(USER_A)}
        assert (await client.get("/test", headers=a)).status_code == 200
        assert (await client.get("/test", headers=a)).status_code == 200
        assert (await client.get("/test", headers=a)).status_code == 429

        resp = await client.get("/test", headers={"X-Test-User": str(USER_B)})
        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Remaining"] == "1"


async def test_user_key_skips_anonymous(clock):
    """Requests without identity are not limited by a user-keyed limiter."""
    config = RateLimitConfig(
        store=MemoryRateLimitStore(clock=clock), limit=1, burst=0, key_fn=user_key, clock=clock
    )
    async with _client(config) as client:
        for _ in range(3):
            resp = await client.get("/test")
            assert resp.status_code == 200
            assert "X-RateLimit-Limit" not in resp.headers


async def test_distinct_ips_do_not_share_quota(clock):
    """Two client IPs have independent counters."""
    store = MemoryRateLimitStore(clock=clock)
    config = RateLimitConfig(store=store, limit=1, burst=0, clock=clock)
    async with _client(config) as client:
        assert (await client.get("/test", headers={"X-Real-IP": "10.0.0.1"})).status_code == 200
        assert (await client.get("/test", headers={"X-Real-IP": "10.0.0.1"})).status_code == 429
        assert (await client.get("/test", headers={"X-Real-IP": "10.0.0.2"})).status_code == 200

    assert await store.get_count("ip:10.0.0.2") == 1


async def test_global_key_shares_quota(clock):
    config = RateLimitConfig(
        store=MemoryRateLimitStore(clock=clock), limit=1, burst=0, key_fn=global_key, clock=clock
    )
    async with _client(config) as client:
        assert (await client.get("/test", headers={"X-Real-IP": "10.0.0.1"})).status_code == 200
        assert (await client.get("/test", headers={"X-Real-IP": "10.0.0.2"})).status_code == 429


async def test_key_functions():
    """Key derivation from headers and request state."""
    scope = {
        "type": "http",
        "method": "POST",
        "path": "/api/v1/messages",
        "headers": [(b"x-forwarded-for", b"203.0.113.7, 10.0.0.1")],
        "client": ("127.0.0.1", 5000),
        "query_string": b"",
        "state": {},
    }
    request = Request(scope)
    assert client_ip(request) == "203.0.113.7"
    assert ip_key(request) == "ip:203.0.113.7"
    assert endpoint_key(request) == "POST:/api/v1/messages:203.0.113.7"
    assert user_key(request) == ""

    request.state.user_id = USER_A
    assert user_key(request) == f"user:{USER_A}"

    scope["headers"] = []
    assert client_ip(Request(scope)) == "127.0.0.1"


# -- Skip paths and pass-through -----------------------------------------------


async def test_skip_path_never_limited(clock):
    """limit=1 with /health skipped: ten probes pass with no headers."""
    config = RateLimitConfig(
        store=MemoryRateLimitStore(clock=clock), limit=1, burst=0, skip_paths={"/health"}, clock=clock
    )
    async with _client(config) as client:
        for _ in range(10):
            resp = await client.get("/health")
            assert resp.status_code == 200
            assert "X-RateLimit-Limit" not in resp.headers
            assert "X-RateLimit-Remaining" not in resp.headers


async def test_no_store_is_pass_through():
    """Without a store the middleware sets no headers and never rejects."""
    config = RateLimitConfig(store=None, limit=1, burst=0)
    async with _client(config) as client:
        for _ in range(5):
            resp = await client.get("/test")
            assert resp.status_code == 200
            assert "X-RateLimit-Limit" not in resp.headers


async def test_store_failure_fails_open():
    """A broken store lets requests through without rate-limit headers."""
    store = FailingStore()
    config = RateLimitConfig(store=store, limit=1, burst=0)
    async with _client(config) as client:
        for _ in range(3):
            resp = await client.get("/test")
            assert resp.status_code == 200
            assert "X-RateLimit-Limit" not in resp.headers

    assert store.calls == 3


# -- Window expiry -------------------------------------------------------------


async def test_window_expiry(clock):
    """After the window elapses the counter starts again at one."""
    config = RateLimitConfig(
        store=MemoryRateLimitStore(clock=clock), limit=1, burst=0, window=0.05, clock=clock
    )
    async with _client(config) as client:
        assert (await client.get("/test")).status_code == 200
        resp = await client.get("/test")
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "1"

        clock.advance(0.1)
        resp = await client.get("/test")
        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Remaining"] == "0"


async def test_window_not_extended_by_requests(clock):
    """Requests inside a window do not push its end forward."""
    config = RateLimitConfig(store=MemoryRateLimitStore(clock=clock), limit=5, burst=0, window=10, clock=clock)
    async with _client(config) as client:
        first = await client.get("/test")
        clock.advance(6)
        second = await client.get("/test")

    assert first.headers["X-RateLimit-Reset"] == second.headers["X-RateLimit-Reset"]


# -- Custom exceed handler -----------------------------------------------------


async def test_custom_exceed_handler(clock):
    """A configured handler replaces the default 429 response."""
    seen = []

    def on_exceeded(request: Request, retry_after: float):
        seen.append(retry_after)
        return JSONResponse(status_code=503, content={"busy": True})

    config = RateLimitConfig(
        store=MemoryRateLimitStore(clock=clock), limit=1, burst=0, exceed_fn=on_exceeded, clock=clock
    )
    async with _client(config) as client:
        await client.get("/test")
        resp = await client.get("/test")

    assert resp.status_code == 503
    assert resp.json() == {"busy": True}
    assert resp.headers["X-RateLimit-Remaining"] == "0"
    assert seen == [60]


async def test_async_exceed_handler(clock):
    async def on_exceeded(request: Request, retry_after: float):
        return JSONResponse(status_code=429, content={"wait": retry_after})

    config = RateLimitConfig(
        store=MemoryRateLimitStore(clock=clock), limit=0, burst=0, window=5, exceed_fn=on_exceeded, clock=clock
    )
    async with _client(config) as client:
        resp = await client.get("/test")

    assert resp.status_code == 429
    assert resp.json() == {"wait": 5}


# -- Endpoint limits -----------------------------------------------------------


async def test_endpoint_limit_overrides_default(clock):
    """A wildcard endpoint override lowers the cap for matching routes only."""
    limits = EndpointRateLimits().set("POST:/api/v1/messages/*", 1)
    config = RateLimitConfig(
        store=MemoryRateLimitStore(clock=clock),
        limit=10,
        burst=0,
        key_fn=endpoint_key,
        endpoint_limits=limits,
        clock=clock,
    )
    async with _client(config) as client:
        resp = await client.post("/api/v1/messages/general")
        assert resp.headers["X-RateLimit-Limit"] == "1"
        assert (await client.post("/api/v1/messages/general")).status_code == 429

        resp = await client.get("/test")
        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Limit"] == "10"


# -- Config validation ---------------------------------------------------------


@pytest.mark.parametrize(
    "kwargs",
    [{"limit": -1}, {"burst": -1}, {"window": 0}],
)
def test_config_rejects_invalid_values(kwargs):
    with pytest.raises(ValueError):
        RateLimitConfig(**kwargs)


def test_config_with_key_keeps_other_fields():
    config = RateLimitConfig(limit=7, burst=3, skip_paths={"/x"})
    keyed = config.with_key(user_key)
    assert keyed.key_fn is user_key
    assert keyed.limit == 7
    assert keyed.burst == 3
    assert keyed.skip_paths == frozenset({"/x"})
    assert config.key_fn is ip_key
