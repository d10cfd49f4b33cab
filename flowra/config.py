"""Application configuration via pydantic-settings."""

from __future__ import annotations

import logging
import uuid
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings

from flowra.services.quota import EndpointRateLimits

logger = logging.getLogger(__name__)


def _split_csv(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


class Settings(BaseSettings):
    """Flowra gateway configuration.

    Loaded from environment variables with the ``FLOWRA_`` prefix.
    """

    model_config = {"env_prefix": "FLOWRA_"}

    # -- Rate limit ----------------------------------------------------------
    rate_limit_enabled: bool = True
    rate_limit: int = 100  # requests per window, per client ip and per user
    rate_limit_burst: int = 10
    rate_limit_window_seconds: float = 60.0
    rate_limit_skip_paths: str = "/health,/ready"
    rate_limit_message: str = "Too many requests. Please try again later."
    endpoint_rate_limits: str = ""  # "POST:/api/v1/messages*=30,GET:/api/v1/search=20"

    workspace_rate_limit: int = 1000
    workspace_rate_limit_overrides: str = ""  # "<workspace uuid>=5000,..."

    # -- Rate limit store ----------------------------------------------------
    rate_limit_store: Literal["memory", "redis"] = "memory"
    redis_url: str = "redis://localhost:6379/0"
    redis_key_prefix: str = "flowra:ratelimit:"
    store_timeout_seconds: float = 0.5
    memory_store_reap_interval_seconds: float = 30.0
    memory_store_max_entries: int = 100_000

    # -- Auth ----------------------------------------------------------------
    allow_mock_auth: bool = False  # development only
    dev_tokens_enabled: bool = False  # accept "dev-token-<id>" sessions; development only
    token_validation_timeout_seconds: float = 5.0
    login_path: str = "/login"
    post_login_path: str = "/workspaces"
    post_logout_path: str = "/"
    public_paths: str = "/health,/ready,/login,/auth/callback,/logout,/docs,/openapi.json"
    trust_proxy_headers: bool = False

    # -- OAuth provider ------------------------------------------------------
    oauth_base_url: str = ""
    oauth_realm: str = ""
    oauth_client_id: str = ""
    oauth_client_secret: str = ""

    # -- Misc ----------------------------------------------------------------
    log_level: str = "INFO"

    @property
    def oauth_configured(self) -> bool:
        return bool(self.oauth_base_url and self.oauth_realm and self.oauth_client_id)

    def parse_skip_paths(self) -> frozenset[str]:
        return frozenset(_split_csv(self.rate_limit_skip_paths))

    def parse_public_paths(self) -> frozenset[str]:
        return frozenset(_split_csv(self.public_paths))

    def parse_endpoint_limits(self) -> EndpointRateLimits:
        """Parse ``METHOD:pattern=limit`` entries; malformed entries are skipped."""
        limits = EndpointRateLimits()
        for entry in _split_csv(self.endpoint_rate_limits):
            pattern, sep, raw_limit = entry.rpartition("=")
            try:
                if not sep:
                    raise ValueError("missing '='")
                limits.set(pattern.strip(), int(raw_limit))
            except ValueError as exc:
                logger.warning("Invalid endpoint rate limit %r: %s", entry, exc)
        return limits

    def parse_workspace_overrides(self) -> dict[uuid.UUID, int]:
        """Parse ``workspace_uuid=limit`` entries; malformed entries are skipped."""
        overrides: dict[uuid.UUID, int] = {}
        for entry in _split_csv(self.workspace_rate_limit_overrides):
            raw_id, sep, raw_limit = entry.partition("=")
            try:
                if not sep:
                    raise ValueError("missing '='")
                limit = int(raw_limit)
                if limit < 0:
                    raise ValueError("negative limit")
                overrides[uuid.UUID(raw_id.strip())] = limit
            except ValueError as exc:
                logger.warning("Invalid workspace rate limit override %r: %s", entry, exc)
        return overrides

    def reap_interval(self) -> float:
        """Reaper interval, never longer than the shortest limiter window."""
        return min(self.memory_store_reap_interval_seconds, self.rate_limit_window_seconds)

    @field_validator("log_level")
    @classmethod
    def _normalise_log_level(cls, v: str) -> str:
        return v.upper()

    @field_validator("rate_limit_window_seconds")
    @classmethod
    def _positive_window(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("rate_limit_window_seconds must be > 0")
        return v
