"""Shared test fixtures for the Flowra gateway."""

from __future__ import annotations

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from flowra.clock import Clock
from flowra.config import Settings


class ManualClock(Clock):
    """Clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0, wall: float = 1_700_000_000.0):
        self._mono = start
        self._wall = wall

    def monotonic(self) -> float:
        return self._mono

    def time(self) -> float:
        return self._wall

    def advance(self, seconds: float) -> None:
        self._mono += seconds
        self._wall += seconds


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def tmp_settings() -> Settings:
    """Settings for the full app: memory store, dev tokens, mock OAuth."""
    return Settings(
        rate_limit=5,
        rate_limit_burst=0,
        rate_limit_window_seconds=60,
        rate_limit_store="memory",
        workspace_rate_limit=3,
        dev_tokens_enabled=True,
        allow_mock_auth=True,
        log_level="WARNING",
    )


@pytest_asyncio.fixture
async def app_client(tmp_settings: Settings, clock: ManualClock):
    """AsyncClient backed by the real FastAPI app with test settings and lifespan."""
    from flowra.main import create_app

    app = create_app(settings=tmp_settings, clock=clock)

    # Trigger lifespan startup/shutdown
    async with app.router.lifespan_context(app):
        transport = ASGITransport(app=app, raise_app_exceptions=False)
        async with AsyncClient(transport=transport, base_url="http://test") as client:
            yield client


def session_headers(token: str = "dev-token-alice", **extra: str) -> dict[str, str]:
    """Return request headers carrying a session cookie."""
    return {"Cookie": f"flowra_session={token}", **extra}
