"""FastAPI application factory with lifespan context manager."""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI

from flowra.clock import SYSTEM_CLOCK, Clock
from flowra.config import Settings
from flowra.exceptions import register_exception_handlers

logger = logging.getLogger(__name__)

_start_time: float = 0.0


def get_uptime() -> int:
    """Return process uptime in seconds."""
    return int(time.monotonic() - _start_time)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: start/stop the store reaper and outbound clients."""
    global _start_time
    _start_time = time.monotonic()

    settings: Settings = app.state.settings

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    from flowra.adapters.rate_limit_store import MemoryRateLimitStore

    store = app.state.rate_limit_store
    if isinstance(store, MemoryRateLimitStore):
        await store.start()

    if settings.allow_mock_auth:
        logger.warning("Mock authentication is enabled - do not use in production")

    logger.info(
        "Flowra gateway started - store=%s, limit=%d+%d/%.0fs",
        settings.rate_limit_store if store is not None else "disabled",
        settings.rate_limit,
        settings.rate_limit_burst,
        settings.rate_limit_window_seconds,
    )

    yield

    # --- Shutdown ---
    if isinstance(store, MemoryRateLimitStore):
        await store.stop()
    redis_client = getattr(app.state, "redis_client", None)
    if redis_client is not None:
        await redis_client.aclose()
    oauth_client = getattr(app.state, "oauth_client", None)
    if oauth_client is not None:
        await oauth_client.aclose()
    logger.info("Flowra gateway stopped")


def _build_store(app: FastAPI, settings: Settings, clock: Clock):
    from flowra.adapters.rate_limit_store import MemoryRateLimitStore, RedisRateLimitStore

    app.state.redis_client = None
    if not settings.rate_limit_enabled:
        return None

    if settings.rate_limit_store == "redis":
        import redis.asyncio as aioredis

        client = aioredis.from_url(settings.redis_url)
        app.state.redis_client = client
        return RedisRateLimitStore(
            client,
            prefix=settings.redis_key_prefix,
            timeout=settings.store_timeout_seconds,
        )

    return MemoryRateLimitStore(
        clock=clock,
        reap_interval=settings.reap_interval(),
        max_entries=settings.memory_store_max_entries,
    )


def create_app(
    settings: Settings | None = None,
    *,
    token_validator=None,
    user_resolver=None,
    oauth_client=None,
    rate_limit_store=None,
    clock: Clock = SYSTEM_CLOCK,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Collaborators passed explicitly take precedence over the ones built from
    settings.
    """
    if settings is None:
        settings = Settings()

    version = "1.0.0"
    try:
        version_file = Path(__file__).parent.parent / "VERSION"
        if version_file.exists():
            version = version_file.read_text().strip()
    except OSError:
        pass

    from flowra.models.error import ErrorResponse

    app = FastAPI(
        title="Flowra API",
        version=version,
        summary="Flowra team-collaboration gateway",
        lifespan=lifespan,
        responses={
            400: {"model": ErrorResponse},
            401: {"model": ErrorResponse},
            403: {"model": ErrorResponse},
            429: {"model": ErrorResponse},
        },
    )

    app.state.settings = settings
    app.state.version = version

    # Register exception handlers
    register_exception_handlers(app)

    # --- Rate limit store ---
    store = rate_limit_store if rate_limit_store is not None else _build_store(app, settings, clock)
    app.state.rate_limit_store = store

    # --- Auth ---
    from flowra.adapters.oauth_client import KeycloakOAuthClient
    from flowra.services.oauth import OAuthCoordinator
    from flowra.services.session import (
        AuthConfig,
        InMemoryUserResolver,
        SessionAuthenticator,
        StaticTokenValidator,
    )

    if token_validator is None and settings.dev_tokens_enabled:
        token_validator = StaticTokenValidator()
    if user_resolver is None and token_validator is not None:
        user_resolver = InMemoryUserResolver()

    auth_config = AuthConfig(
        token_validator=token_validator,
        user_resolver=user_resolver,
        allow_mock_auth=settings.allow_mock_auth,
        validation_timeout=settings.token_validation_timeout_seconds,
        login_path=settings.login_path,
        trust_proxy=settings.trust_proxy_headers,
    )
    app.state.auth_config = auth_config

    app.state.oauth_client = None
    if oauth_client is None and settings.oauth_configured:
        oauth_client = KeycloakOAuthClient(
            settings.oauth_base_url,
            settings.oauth_realm,
            settings.oauth_client_id,
            settings.oauth_client_secret,
        )
        app.state.oauth_client = oauth_client

    app.state.oauth = OAuthCoordinator(
        SessionAuthenticator(auth_config),
        url_builder=oauth_client,
        code_exchanger=oauth_client,
        post_login_path=settings.post_login_path,
        post_logout_path=settings.post_logout_path,
        allow_mock_flow=settings.allow_mock_auth,
        trust_proxy=settings.trust_proxy_headers,
    )

    # --- Middleware ---
    from flowra.middleware.auth import AuthMiddleware
    from flowra.middleware.rate_limit import RateLimitConfig, RateLimitMiddleware, ip_key, user_key
    from flowra.middleware.workspace import (
        WorkspaceContextMiddleware,
        WorkspaceRateLimiter,
        WorkspaceRateLimitMiddleware,
    )

    ip_limit = RateLimitConfig(
        store=store,
        limit=settings.rate_limit,
        window=settings.rate_limit_window_seconds,
        burst=settings.rate_limit_burst,
        skip_paths=settings.parse_skip_paths(),
        key_fn=ip_key,
        message=settings.rate_limit_message,
        endpoint_limits=settings.parse_endpoint_limits(),
        clock=clock,
    )
    user_limit = ip_limit.with_key(user_key)

    workspace_limiter = WorkspaceRateLimiter(
        store,
        settings.workspace_rate_limit,
        settings.rate_limit_window_seconds,
        clock=clock,
    )
    for workspace_id, limit in settings.parse_workspace_overrides().items():
        workspace_limiter.set_workspace_limit(workspace_id, limit)
    app.state.workspace_limiter = workspace_limiter

    # Middleware is applied in reverse order (last added = first executed):
    # ip limit -> auth -> user limit -> workspace context -> workspace limit
    app.add_middleware(WorkspaceRateLimitMiddleware, limiter=workspace_limiter)
    app.add_middleware(WorkspaceContextMiddleware)
    app.add_middleware(RateLimitMiddleware, config=user_limit)
    app.add_middleware(
        AuthMiddleware,
        config=auth_config,
        required=True,
        public_paths=settings.parse_public_paths(),
    )
    app.add_middleware(RateLimitMiddleware, config=ip_limit)

    # Register routers
    from flowra.routers import auth, health, workspaces

    app.include_router(health.router)
    app.include_router(auth.router)
    app.include_router(workspaces.router)

    return app


# Default app instance for uvicorn
app = create_app()
