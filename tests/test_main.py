"""Tests for the assembled application middleware chain."""

from __future__ import annotations

from httpx import ASGITransport, AsyncClient

from flowra.adapters.rate_limit_store import MemoryRateLimitStore
from flowra.config import Settings
from tests.conftest import session_headers


async def test_ip_limit_applies_before_auth(app_client):
    """Anonymous clients are counted even though auth turns them away."""
    statuses = [(await app_client.get("/api/v1/auth/me")).status_code for _ in range(6)]
    assert statuses == [302] * 5 + [429]


async def test_user_limit_isolates_users():
    """Per-user quota is tracked separately from the per-IP quota."""
    from flowra.main import create_app

    settings = Settings(rate_limit=2, rate_limit_burst=0, dev_tokens_enabled=True, log_level="WARNING")
    store = MemoryRateLimitStore()
    app = create_app(settings=settings, rate_limit_store=store)
    transport = ASGITransport(app=app)

    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            # A fresh IP per request keeps the per-IP limiter out of the way
            statuses = []
            for n in range(1, 4):
                alice = session_headers("dev-token-alice", **{"X-Real-IP": f"10.0.0.{n}"})
                statuses.append((await client.get("/api/v1/auth/me", headers=alice)).status_code)
            assert statuses == [200, 200, 429]

            bob = session_headers("dev-token-bob", **{"X-Real-IP": "10.0.0.9"})
            assert (await client.get("/api/v1/auth/me", headers=bob)).status_code == 200

    # four per-IP counters plus one per user
    assert len(store) == 6


async def test_rate_limit_headers_on_api_responses(app_client):
    resp = await app_client.get("/api/v1/auth/me", headers=session_headers())
    assert resp.status_code == 200
    assert resp.headers["X-RateLimit-Limit"] == "5"
    assert "X-RateLimit-Reset" in resp.headers


async def test_disabled_rate_limiting_is_pass_through():
    from flowra.main import create_app

    app = create_app(settings=Settings(rate_limit_enabled=False, rate_limit=1, log_level="WARNING"))
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            for _ in range(3):
                resp = await client.get("/login")
                assert "X-RateLimit-Limit" not in resp.headers
