"""OpenID Connect authorization-code client (Keycloak realm layout)."""

from __future__ import annotations

import logging
from typing import Protocol
from urllib.parse import urlencode

import httpx
from pydantic import ValidationError as PydanticValidationError

from flowra.exceptions import CodeExchangeError
from flowra.models.auth import TokenResponse

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT_S = 30.0
DEFAULT_SCOPE = "openid profile email"


class AuthorizationURLBuilder(Protocol):
    def authorization_url(self, redirect_uri: str, state: str) -> str: ...


class CodeExchanger(Protocol):
    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse: ...


class KeycloakOAuthClient:
    """Builds authorization URLs and exchanges codes against a Keycloak realm."""

    def __init__(
        self,
        base_url: str,
        realm: str,
        client_id: str,
        client_secret: str,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = DEFAULT_HTTP_TIMEOUT_S,
    ):
        self._base_url = base_url.rstrip("/")
        self._realm = realm
        self._client_id = client_id
        self._client_secret = client_secret
        self._owns_client = http_client is None
        self._http = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def _oidc_base(self) -> str:
        return f"{self._base_url}/realms/{self._realm}/protocol/openid-connect"

    @property
    def token_endpoint(self) -> str:
        return f"{self._oidc_base}/token"

    def authorization_url(self, redirect_uri: str, state: str) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": DEFAULT_SCOPE,
            "state": state,
        }
        return f"{self._oidc_base}/auth?{urlencode(params)}"

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "client_id": self._client_id,
            "client_secret": self._client_secret,
        }
        try:
            resp = await self._http.post(self.token_endpoint, data=data)
        except httpx.HTTPError as exc:
            raise CodeExchangeError(f"token request failed: {exc}") from exc

        if resp.status_code != 200:
            logger.error("Token exchange failed: status=%d body=%s", resp.status_code, resp.text[:500])
            raise CodeExchangeError(f"token endpoint returned {resp.status_code}")

        try:
            return TokenResponse.model_validate(resp.json())
        except (ValueError, PydanticValidationError) as exc:
            raise CodeExchangeError("invalid token response") from exc

    async def aclose(self) -> None:
        if self._owns_client:
            await self._http.aclose()
