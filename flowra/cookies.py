"""Session, OAuth state and post-login redirect cookies."""

from __future__ import annotations

import base64
import secrets

from starlette.requests import Request
from starlette.responses import Response

SESSION_COOKIE = "flowra_session"
STATE_COOKIE = "flowra_state"
REDIRECT_COOKIE = "flowra_redirect"

STATE_COOKIE_MAX_AGE = 300
REDIRECT_COOKIE_MAX_AGE = 300
STATE_RANDOM_BYTES = 16


def request_scheme(request: Request, trust_proxy: bool = False) -> str:
    """Scheme of the original request; ``X-Forwarded-Proto`` only from a trusted proxy."""
    if trust_proxy:
        forwarded = request.headers.get("X-Forwarded-Proto", "")
        if forwarded:
            return forwarded.split(",")[0].strip().lower()
    # url.scheme is empty when the request carries neither a host nor a server
    return request.url.scheme or request.scope.get("scheme", "http")


def is_secure(request: Request, trust_proxy: bool = False) -> bool:
    return request_scheme(request, trust_proxy) == "https"


def redirect_uri(request: Request, trust_proxy: bool = False, path: str = "/auth/callback") -> str:
    host = request.headers.get("host") or request.url.netloc
    return f"{request_scheme(request, trust_proxy)}://{host}{path}"


def generate_state() -> str:
    """16 random bytes, URL-safe base64 without padding."""
    return base64.urlsafe_b64encode(secrets.token_bytes(STATE_RANDOM_BYTES)).rstrip(b"=").decode("ascii")


def _set(response: Response, name: str, value: str, max_age: int | None, secure: bool) -> None:
    response.set_cookie(
        name,
        value,
        max_age=max_age,
        path="/",
        secure=secure,
        httponly=True,
        samesite="lax",
    )


def _clear(response: Response, name: str) -> None:
    response.delete_cookie(name, path="/", httponly=True, samesite="lax")


def _get(request: Request, name: str) -> str:
    return request.cookies.get(name, "")


# -- Session -------------------------------------------------------------------


def set_session_cookie(response: Response, token: str, expires_in: int, secure: bool) -> None:
    # No lifetime from the provider: browser-session cookie
    _set(response, SESSION_COOKIE, token, expires_in if expires_in > 0 else None, secure)


def get_session_cookie(request: Request) -> str:
    return _get(request, SESSION_COOKIE)


def clear_session_cookie(response: Response) -> None:
    _clear(response, SESSION_COOKIE)


# -- OAuth state ---------------------------------------------------------------


def set_state_cookie(response: Response, state: str, secure: bool) -> None:
    _set(response, STATE_COOKIE, state, STATE_COOKIE_MAX_AGE, secure)


def get_state_cookie(request: Request) -> str:
    return _get(request, STATE_COOKIE)


def clear_state_cookie(response: Response) -> None:
    _clear(response, STATE_COOKIE)


# -- Post-login redirect -------------------------------------------------------


def set_redirect_cookie(response: Response, path: str, secure: bool) -> None:
    _set(response, REDIRECT_COOKIE, path, REDIRECT_COOKIE_MAX_AGE, secure)


def get_redirect_cookie(request: Request) -> str:
    return _get(request, REDIRECT_COOKIE)


def clear_redirect_cookie(response: Response) -> None:
    _clear(response, REDIRECT_COOKIE)


def is_local_path(value: str) -> bool:
    """True for same-origin absolute paths (rejects ``//host`` and ``/\\host``)."""
    return value.startswith("/") and not value.startswith("//") and not value.startswith("/\\")
