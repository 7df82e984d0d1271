"""
auth/csrf.py -- Double-submit cookie CSRF protection.

A random token lives in a cookie that same-origin script CAN read
(httponly=False) and must be echoed back in a request header on every
state-changing call. A cross-origin page can make the browser send the
cookie, but cannot read it to forge the header -- that asymmetry is the
whole defense. The session cookie stays httpOnly; this one cannot be.

Verification:
  cookie and header both present, same length, equal under
  hmac.compare_digest (no early exit on the first differing byte).
  Anything else fails closed.

Token lifetime tracks the session's absolute lifetime. An existing token is
preserved (attributes refreshed, value unchanged) rather than rotated on every
response, so concurrent requests from open tabs keep working.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import hmac

from starlette.requests import Request
from starlette.responses import Response

from auth.tokens import generate_csrf_token
from core.config import Settings, get_settings


class CsrfGuard:
    def __init__(self, settings: Settings | None = None) -> None:
        self.settings = settings or get_settings()

    @property
    def cookie_name(self) -> str:
        return self.settings.csrf_cookie_name

    @property
    def header_name(self) -> str:
        return self.settings.csrf_header_name

    def read_cookie(self, request: Request) -> str | None:
        value = request.cookies.get(self.cookie_name)
        return value or None

    def verify(self, request: Request) -> bool:
        cookie_val = self.read_cookie(request)
        header_val = request.headers.get(self.header_name)
        return tokens_match(cookie_val, header_val)

    def set_cookie(self, response: Response, token: str | None = None) -> str:
        value = token or generate_csrf_token()
        response.set_cookie(
            self.cookie_name,
            value=value,
            max_age=self.settings.session_max_age_seconds,
            path="/",
            secure=True,
            httponly=False,  # double-submit requires a script-readable cookie
            samesite=self.settings.csrf_samesite,
        )
        return value

    def ensure_cookie(self, request: Request, response: Response) -> str:
        """Keep the request's token if it has one (refreshing attributes), else mint one.

        Returns the token value now on the client.
        """
        return self.set_cookie(response, self.read_cookie(request))


def tokens_match(cookie_val: str | None, header_val: str | None) -> bool:
    if not cookie_val or not header_val:
        return False
    a = cookie_val.encode("utf-8")
    b = header_val.encode("utf-8")
    if len(a) != len(b):
        return False
    return hmac.compare_digest(a, b)
