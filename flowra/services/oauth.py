"""Login, OAuth callback and logout flows.

The login page issues a random CSRF state in the ``flowra_state`` cookie and
sends the browser to the provider. The callback accepts the provider's
``code`` only if the echoed ``state`` matches that cookie; on success it stores
the access token in the ``flowra_session`` cookie and navigates to the page
remembered in ``flowra_redirect`` (or the default landing page).

When no OAuth client is configured and mock auth is allowed, the login link
points straight at the callback with a fixed ``mock-code``.
"""

from __future__ import annotations

import logging
import secrets
from urllib.parse import urlencode

from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from flowra.adapters.oauth_client import AuthorizationURLBuilder, CodeExchanger
from flowra.cookies import (
    clear_redirect_cookie,
    clear_session_cookie,
    clear_state_cookie,
    generate_state,
    get_redirect_cookie,
    get_session_cookie,
    get_state_cookie,
    is_local_path,
    is_secure,
    redirect_uri,
    set_session_cookie,
    set_state_cookie,
)
from flowra.exceptions import AuthenticationError, CodeExchangeError, OAuthError, StateMismatchError
from flowra.middleware.auth import is_htmx
from flowra.middleware.context import is_authenticated
from flowra.models.auth import TokenResponse
from flowra.services.pages import PageRenderer
from flowra.services.session import MOCK_SESSION_TOKEN, SessionAuthenticator

logger = logging.getLogger(__name__)

CALLBACK_PATH = "/auth/callback"
MOCK_CODE = "mock-code"
MOCK_SESSION_EXPIRES_IN = 3600


class OAuthCoordinator:
    def __init__(
        self,
        authenticator: SessionAuthenticator,
        url_builder: AuthorizationURLBuilder | None = None,
        code_exchanger: CodeExchanger | None = None,
        renderer: PageRenderer | None = None,
        post_login_path: str = "/workspaces",
        post_logout_path: str = "/",
        allow_mock_flow: bool = False,
        trust_proxy: bool = False,
    ):
        self._authenticator = authenticator
        self._url_builder = url_builder
        self._code_exchanger = code_exchanger
        self._renderer = renderer or PageRenderer()
        self._post_login_path = post_login_path
        self._post_logout_path = post_logout_path
        self._allow_mock_flow = allow_mock_flow
        self._trust_proxy = trust_proxy

    async def login(self, request: Request) -> Response:
        if await self._has_valid_session(request):
            return RedirectResponse(self._post_login_path, status_code=302)

        state = generate_state()
        callback_uri = redirect_uri(request, self._trust_proxy, CALLBACK_PATH)

        if self._url_builder is not None:
            auth_url = self._url_builder.authorization_url(callback_uri, state)
        elif self._allow_mock_flow:
            logger.warning("OAuth client not configured, using mock auth flow")
            auth_url = f"{CALLBACK_PATH}?{urlencode({'code': MOCK_CODE, 'state': state})}"
        else:
            logger.error("OAuth client not configured and mock auth disabled")
            return self._renderer.login("", error="Sign-in is not configured.", status_code=503)

        response = self._renderer.login(auth_url, error=request.query_params.get("error", ""))
        set_state_cookie(response, state, secure=is_secure(request, self._trust_proxy))
        return response

    async def callback(self, request: Request) -> Response:
        code = request.query_params.get("code", "")
        state = request.query_params.get("state", "")
        error = request.query_params.get("error", "")

        if error:
            response = self._renderer.callback(error=f"Authentication failed: {error}")
            clear_state_cookie(response)
            return response

        expected_state = get_state_cookie(request)
        try:
            if not expected_state or not secrets.compare_digest(state.encode(), expected_state.encode()):
                raise StateMismatchError("Invalid state parameter. Please try again.")
            tokens = await self._exchange(request, code)
        except OAuthError as exc:
            response = self._renderer.callback(error=str(exc))
            clear_state_cookie(response)
            return response

        target = get_redirect_cookie(request)
        if not is_local_path(target):
            target = self._post_login_path

        response = self._renderer.callback(redirect_url=target)
        clear_state_cookie(response)
        clear_redirect_cookie(response)
        set_session_cookie(
            response,
            tokens.access_token,
            tokens.expires_in,
            secure=is_secure(request, self._trust_proxy),
        )
        return response

    async def logout(self, request: Request) -> Response:
        if is_htmx(request):
            response = Response(status_code=200, headers={"Hx-Redirect": self._post_logout_path})
        else:
            response = RedirectResponse(self._post_logout_path, status_code=302)
        clear_session_cookie(response)
        clear_redirect_cookie(response)
        return response

    async def _has_valid_session(self, request: Request) -> bool:
        if is_authenticated(request):
            return True
        token = get_session_cookie(request)
        if not token:
            return False
        try:
            await self._authenticator.authenticate(token)
        except AuthenticationError:
            return False
        return True

    async def _exchange(self, request: Request, code: str) -> TokenResponse:
        if self._code_exchanger is not None:
            callback_uri = redirect_uri(request, self._trust_proxy, CALLBACK_PATH)
            try:
                return await self._code_exchanger.exchange_code(code, callback_uri)
            except CodeExchangeError as exc:
                logger.error("Failed to exchange code for tokens: %s", exc)
                raise CodeExchangeError("Authentication failed. Please try again.") from exc

        if self._allow_mock_flow and code == MOCK_CODE:
            logger.warning("Using mock authentication flow")
            return TokenResponse(access_token=MOCK_SESSION_TOKEN, expires_in=MOCK_SESSION_EXPIRES_IN)

        raise CodeExchangeError("Invalid authentication code")
