"""
auth/dependencies.py -- FastAPI Depends() helpers for session authentication.

The guards live on app.state (wired by api/main.py:init_auth_state) and are
reached through the request, so tests can swap the store and the clock
without touching module globals.

require_csrf() must run before anything else on a mutating endpoint:
FastAPI resolves dependencies in declaration order, so list it first.

require_session() validates and touches the session. Rejections become
Unauthenticated(reason) -- 401, or 403 for an inactive owner -- or
AccountLocked (423, Retry-After = remaining lock). On a Rotated outcome the
route must write outcome.session.id to the session cookie of its response;
the outcome is also kept on request.state.rotated_session so the error
handlers in api/main.py can carry the new id on a 4xx too.

Layer rule: auth/dependencies.py may import from fastapi/starlette because
it is part of the dependency injection system. No imports from api/.
"""

from __future__ import annotations

from fastapi import Request

from auth.csrf import CsrfGuard
from auth.errors import AccountLocked, AuthError, CsrfRejected, Unauthenticated
from auth.models import ClientInfo, Locked, Rejected, Rotated, Valid
from auth.sessions import SessionManager


def get_client_info(request: Request) -> ClientInfo:
    """Client IP and user-agent for this request.

    Forwarding headers are only honoured when TRUST_PROXY is set; otherwise
    any client could pick its own rate-limit bucket with X-Forwarded-For.
    """
    ip: str | None = None
    if request.app.state.settings.trust_proxy:
        forwarded = request.headers.get("x-forwarded-for", "")
        ip = forwarded.split(",")[0].strip() or request.headers.get("x-real-ip", "").strip() or None
    if ip is None and request.client is not None:
        ip = request.client.host
    return ClientInfo(ip=ip, user_agent=request.headers.get("user-agent") or None)


def read_session_id(request: Request) -> str | None:
    manager: SessionManager = request.app.state.sessions
    return request.cookies.get(manager.settings.session_cookie_name) or None


def require_csrf(request: Request) -> None:
    guard: CsrfGuard = request.app.state.csrf
    if not guard.verify(request):
        raise CsrfRejected()


def require_session(request: Request) -> Valid | Rotated:
    """Require a live session. Use as a FastAPI dependency."""
    manager: SessionManager = request.app.state.sessions
    outcome = manager.validate_and_touch(read_session_id(request), get_client_info(request))
    if isinstance(outcome, Rotated):
        # The old id is already gone; whatever response goes out must carry the new one.
        request.state.rotated_session = outcome
    if isinstance(outcome, (Valid, Rotated)):
        return outcome
    raise session_rejection(outcome)


def session_rejection(outcome: Rejected) -> AuthError:
    if isinstance(outcome, Locked):
        return AccountLocked(retry_after_ms=outcome.remaining_ms)
    return Unauthenticated(outcome.reason)

