"""Session token validation, user resolution and development fallbacks."""

from __future__ import annotations

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Protocol

from flowra.exceptions import InvalidTokenError, MissingCredentialError, TokenExpiredError, UserResolutionError
from flowra.models.auth import TokenClaims

logger = logging.getLogger(__name__)

DEFAULT_VALIDATION_TIMEOUT_S = 5.0
_DEV_TOKEN_PREFIX = "dev-token-"
_DEV_TOKEN_TTL = timedelta(hours=24)

# Issued by the mock code flow
MOCK_SESSION_TOKEN = "mock-session-token"


class TokenValidator(Protocol):
    async def validate_token(self, token: str) -> TokenClaims:
        """Return claims for a valid token or raise InvalidTokenError."""
        ...


class UserResolver(Protocol):
    async def resolve_user(self, external_id: str, username: str, email: str) -> uuid.UUID:
        """Find or provision the internal user id for an external identity."""
        ...


def mock_claims(token: str) -> TokenClaims:
    """Deterministic development identity; the same token always maps to the same user."""
    return TokenClaims(
        user_id=uuid.uuid5(uuid.NAMESPACE_URL, f"flowra:mock-user:{token}"),
        external_user_id="mock-external-id",
        username="mockuser",
        email="user@example.com",
    )


@dataclass
class AuthConfig:
    """Collaborators for session authentication.

    Without a token validator, sessions only authenticate when
    ``allow_mock_auth`` is set.
    """

    token_validator: TokenValidator | None = None
    user_resolver: UserResolver | None = None
    allow_mock_auth: bool = False
    validation_timeout: float | None = DEFAULT_VALIDATION_TIMEOUT_S
    login_path: str = "/login"
    trust_proxy: bool = False


_auth_config: AuthConfig | None = None
_auth_config_lock = threading.Lock()


def set_auth_config(config: AuthConfig) -> None:
    """Install the process-wide auth configuration. Call once, before serving."""
    global _auth_config
    with _auth_config_lock:
        if _auth_config is not None:
            raise RuntimeError("auth configuration already set")
        _auth_config = config


def get_auth_config() -> AuthConfig | None:
    return _auth_config


class SessionAuthenticator:
    """Turns a session token into claims with a resolved internal user id."""

    def __init__(self, config: AuthConfig):
        self.config = config

    async def authenticate(self, token: str) -> TokenClaims:
        """Raise an AuthenticationError subclass on failure."""
        if not token:
            raise MissingCredentialError("empty token")

        if self.config.allow_mock_auth and token == MOCK_SESSION_TOKEN:
            claims = mock_claims(token)
            logger.debug("Using mock session (development mode): %s", claims.user_id)
            return claims

        validator = self.config.token_validator
        if validator is None:
            if not self.config.allow_mock_auth:
                logger.error("Token validator not configured and mock auth disabled")
                raise InvalidTokenError("token validator not configured")
            claims = mock_claims(token)
            logger.debug("Using mock user context (development mode): %s", claims.user_id)
            return claims

        claims = await self._validate(validator, token)
        if _expired(claims):
            raise TokenExpiredError("token expired")

        if claims.user_id is None:
            claims = claims.model_copy(update={"user_id": await self._resolve(claims)})
        return claims

    async def _validate(self, validator: TokenValidator, token: str) -> TokenClaims:
        try:
            if self.config.validation_timeout:
                return await asyncio.wait_for(validator.validate_token(token), self.config.validation_timeout)
            return await validator.validate_token(token)
        except InvalidTokenError:
            raise
        except asyncio.TimeoutError as exc:
            raise InvalidTokenError("token validation timed out") from exc
        except Exception as exc:
            raise InvalidTokenError(f"token validator error: {exc}") from exc

    async def _resolve(self, claims: TokenClaims) -> uuid.UUID:
        resolver = self.config.user_resolver
        if resolver is None or not claims.external_user_id:
            raise UserResolutionError("claims carry no internal user id")
        try:
            return await resolver.resolve_user(claims.external_user_id, claims.username, claims.email)
        except UserResolutionError:
            raise
        except Exception as exc:
            logger.error("Failed to resolve user %s: %s", claims.external_user_id, exc)
            raise UserResolutionError(str(exc)) from exc


def _expired(claims: TokenClaims) -> bool:
    expires_at = claims.expires_at
    if expires_at is None:
        return False
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= datetime.now(timezone.utc)


class StaticTokenValidator:
    """Development validator accepting ``dev-token-<id>`` tokens. Not for production."""

    async def validate_token(self, token: str) -> TokenClaims:
        if not token.startswith(_DEV_TOKEN_PREFIX):
            raise InvalidTokenError("not a development token")
        ident = token[len(_DEV_TOKEN_PREFIX):].split("-")[0]
        if not ident:
            raise InvalidTokenError("development token has no id")
        return TokenClaims(
            external_user_id=ident,
            username=f"dev-user-{ident}",
            email=f"dev-{ident}@example.com",
            roles=["user"],
            expires_at=datetime.now(timezone.utc) + _DEV_TOKEN_TTL,
        )


class InMemoryUserResolver:
    """Maps external ids to internal ids, provisioning on first sight."""

    def __init__(self):
        self._ids: dict[str, uuid.UUID] = {}
        self._lock = threading.Lock()

    async def resolve_user(self, external_id: str, username: str, email: str) -> uuid.UUID:
        with self._lock:
            user_id = self._ids.get(external_id)
            if user_id is None:
                user_id = uuid.uuid4()
                self._ids[external_id] = user_id
                logger.info("Provisioned user %s for external id %s", user_id, external_id)
            return user_id
