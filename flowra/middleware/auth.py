"""Session cookie and bearer token authentication middleware."""

from __future__ import annotations

import logging

from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import JSONResponse, RedirectResponse, Response

from flowra.cookies import (
    SESSION_COOKIE,
    clear_session_cookie,
    get_session_cookie,
    is_secure,
    set_redirect_cookie,
)
from flowra.exceptions import (
    AuthenticationError,
    MissingCredentialError,
    TokenExpiredError,
    UnauthorizedError,
    UserResolutionError,
    error_response,
)
from flowra.middleware.context import set_identity
from flowra.models.error import UnauthenticatedResponse
from flowra.services.session import AuthConfig, SessionAuthenticator, get_auth_config

logger = logging.getLogger(__name__)


def is_htmx(request: Request) -> bool:
    return request.headers.get("Hx-Request") == "true"


def unauthenticated_response(request: Request, login_path: str = "/login", trust_proxy: bool = False) -> Response:
    """401 + ``Hx-Redirect`` for fragment clients, otherwise a 302 to the login page.

    Browser GETs also remember the requested path for after login.
    """
    if is_htmx(request):
        return JSONResponse(
            status_code=401,
            content=UnauthenticatedResponse().model_dump(),
            headers={"Hx-Redirect": login_path},
        )

    response = RedirectResponse(login_path, status_code=302)
    if request.method == "GET":
        set_redirect_cookie(response, request.url.path, secure=is_secure(request, trust_proxy))
    return response


def bearer_token(request: Request) -> str | None:
    """Token from ``Authorization: Bearer``; ``""`` for a malformed header, ``None`` when absent."""
    header = request.headers.get("Authorization")
    if header is None:
        return None
    scheme, _, token = header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


def api_unauthorized_response(exc: AuthenticationError) -> Response:
    """JSON 401 with a stable code for API clients presenting a bearer token."""
    if isinstance(exc, TokenExpiredError):
        err = UnauthorizedError("Token has expired", code="TOKEN_EXPIRED")
    elif isinstance(exc, UserResolutionError):
        err = UnauthorizedError("User not found", code="USER_NOT_FOUND")
    elif isinstance(exc, MissingCredentialError):
        err = UnauthorizedError("Invalid authorization header")
    else:
        err = UnauthorizedError("Invalid or expired token")
    return error_response(err)


def _sets_cookie(response: Response, name: str) -> bool:
    prefix = f"{name}="
    return any(v.startswith(prefix) for v in response.headers.getlist("set-cookie"))


class AuthMiddleware(BaseHTTPMiddleware):
    """Authenticate the ``flowra_session`` cookie and populate ``request.state``.

    An ``Authorization: Bearer`` header takes precedence over the cookie. Such
    API requests get a JSON 401 with a stable error code instead of the login
    redirect.

    With ``required=True`` an unauthenticated request never reaches the handler.
    Paths in ``public_paths`` (and every path when ``required=False``) are
    authenticated opportunistically: identity is set when the session is valid
    and the request proceeds either way.

    Configuration is taken from the constructor, falling back to the
    process-wide slot set by ``set_auth_config``.
    """

    def __init__(
        self,
        app,
        config: AuthConfig | None = None,
        required: bool = True,
        public_paths: frozenset[str] | set[str] = frozenset(),
    ):
        super().__init__(app)
        if config is None:
            config = get_auth_config()
        if config is None:
            raise RuntimeError("AuthMiddleware requires an AuthConfig")
        self._config = config
        self._authenticator = SessionAuthenticator(config)
        self._required = required
        self._public_paths = frozenset(public_paths)

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        path = request.url.path
        required = self._required and path not in self._public_paths

        bearer = bearer_token(request)
        if bearer is not None:
            return await self._dispatch_bearer(request, call_next, bearer, required)

        token = get_session_cookie(request)
        if not token:
            if required:
                return self._unauthenticated(request)
            return await call_next(request)

        try:
            claims = await self._authenticator.authenticate(token)
        except AuthenticationError as exc:
            if required:
                logger.warning("Token validation failed: %s (path=%s)", exc, path)
                response = self._unauthenticated(request)
            else:
                logger.debug("Optional auth: token validation failed: %s", exc)
                response = await call_next(request)
            # Handlers such as the OAuth callback may have issued a fresh session
            if not _sets_cookie(response, SESSION_COOKIE):
                clear_session_cookie(response)
            return response

        set_identity(request, claims.user_id, claims)
        logger.debug("User authenticated: user_id=%s username=%s path=%s", claims.user_id, claims.username, path)
        return await call_next(request)

    async def _dispatch_bearer(
        self, request: Request, call_next: RequestResponseEndpoint, token: str, required: bool
    ) -> Response:
        # API clients: the session cookie is not consulted and nothing is redirected
        try:
            claims = await self._authenticator.authenticate(token)
        except AuthenticationError as exc:
            if required:
                logger.warning("Bearer token rejected: %s (path=%s)", exc, request.url.path)
                return api_unauthorized_response(exc)
            logger.debug("Optional auth: bearer token rejected: %s", exc)
            return await call_next(request)

        set_identity(request, claims.user_id, claims)
        logger.debug("API client authenticated: user_id=%s path=%s", claims.user_id, request.url.path)
        return await call_next(request)

    def _unauthenticated(self, request: Request) -> Response:
        return unauthenticated_response(request, self._config.login_path, self._config.trust_proxy)


class RequireAuthMiddleware(AuthMiddleware):
    def __init__(self, app, config: AuthConfig | None = None, public_paths: frozenset[str] | set[str] = frozenset()):
        super().__init__(app, config=config, required=True, public_paths=public_paths)


class OptionalAuthMiddleware(AuthMiddleware):
    def __init__(self, app, config: AuthConfig | None = None):
        super().__init__(app, config=config, required=False)
