"""Minimal HTML for the login and OAuth callback pages."""

from __future__ import annotations

from html import escape

from starlette.responses import HTMLResponse

_LAYOUT = """<!DOCTYPE html>
<html lang="en">
<head><meta charset="utf-8"><title>{title} - Flowra</title>{head}</head>
<body>
<main>
{body}
</main>
</body>
</html>
"""


def _page(title: str, body: str, head: str = "", status_code: int = 200) -> HTMLResponse:
    return HTMLResponse(_LAYOUT.format(title=escape(title), head=head, body=body), status_code=status_code)


class PageRenderer:
    def login(self, auth_url: str, error: str = "", status_code: int = 200) -> HTMLResponse:
        parts = ["<h1>Sign in</h1>"]
        if error:
            parts.append(f'<p class="error">{escape(error)}</p>')
        if auth_url:
            parts.append(f'<a class="button" href="{escape(auth_url)}">Continue to sign in</a>')
        return _page("Login", "\n".join(parts), status_code=status_code)

    def callback(self, redirect_url: str = "", error: str = "") -> HTMLResponse:
        if error:
            body = (
                "<h1>Sign-in failed</h1>\n"
                f'<p class="error">{escape(error)}</p>\n'
                '<a href="/login">Try again</a>'
            )
            return _page("Signing In", body, status_code=400)

        target = escape(redirect_url)
        head = f'<meta http-equiv="refresh" content="0;url={target}">'
        body = (
            "<p>Signing you in&hellip;</p>\n"
            f'<a href="{target}">Continue</a>\n'
            f"<script>window.location.replace({_js_string(redirect_url)});</script>"
        )
        return _page("Signing In", body, head=head)


def _js_string(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace('"', '\\"').replace("<", "\\u003c").replace(">", "\\u003e")
    return f'"{escaped}"'
