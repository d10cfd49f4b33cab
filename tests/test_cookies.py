"""Tests for cookie helpers."""

from __future__ import annotations

import pytest
from starlette.requests import Request

from flowra.cookies import generate_state, is_local_path, redirect_uri, request_scheme


def _request(scheme: str = "http", headers: dict[str, str] | None = None, server: tuple | None = ("testserver", 80)) -> Request:
    raw = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    scope = {"type": "http", "scheme": scheme, "method": "GET", "path": "/", "headers": raw, "query_string": b""}
    if server is not None:
        scope["server"] = server
    return Request(scope)


def test_generate_state_is_random_and_unpadded():
    states = {generate_state() for _ in range(20)}
    assert len(states) == 20
    for state in states:
        assert len(state) == 22
        assert "=" not in state


@pytest.mark.parametrize(
    "value, expected",
    [
        ("/channels/1", True),
        ("/", True),
        ("//evil.example", False),
        ("/\\evil.example", False),
        ("https://evil.example", False),
        ("", False),
    ],
)
def test_is_local_path(value, expected):
    assert is_local_path(value) is expected


def test_request_scheme_ignores_untrusted_proxy():
    request = _request(headers={"X-Forwarded-Proto": "https"})
    assert request_scheme(request) == "http"
    assert request_scheme(request, trust_proxy=True) == "https"


def test_redirect_uri_uses_host_header():
    request = _request(scheme="https", headers={"Host": "chat.example.com"})
    assert redirect_uri(request) == "https://chat.example.com/auth/callback"


def test_request_scheme_without_host_or_server():
    request = _request(scheme="https", server=None)
    assert request_scheme(request) == "https"
    assert request_scheme(_request(server=None)) == "http"
