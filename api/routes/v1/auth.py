"""
api/routes/v1/auth.py -- Session authentication REST endpoints.

Routes:
  POST /api/v1/auth/register                -- create an account (soft rate limit)
  POST /api/v1/auth/login                   -- password login; sets session + CSRF cookies
  POST /api/v1/auth/logout                  -- revoke the current session; clears cookie
  GET  /api/v1/auth/session                 -- probe: {authenticated, user?}, always 200
  POST /api/v1/auth/change-password         -- requires session; revokes other sessions
  POST /api/v1/auth/request-password-reset  -- always 200 (enumeration resistance)
  POST /api/v1/auth/reset-password          -- consume a reset token

Security:
  CSRF is verified before anything else on every POST except login, via the
  route-level dependencies list (solved before the handler's own params and
  body). Login has no session to protect yet and mints a fresh CSRF token.
  Errors are raised as AuthError subclasses and rendered by api/main.py; no
  handler here builds an error body by hand.
  Handlers are synchronous: FastAPI runs them in its worker thread pool,
  where the blocking SQLAlchemy and argon2 calls belong.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    LoginRequest,
    OkResponse,
    RegisterRequest,
    RequestPasswordResetRequest,
    RequestPasswordResetResponse,
    ResetPasswordRequest,
    SessionResponse,
    UserResponse,
)
from auth.accounts import AccountService
from auth.csrf import CsrfGuard
from auth.dependencies import get_client_info, read_session_id, require_csrf, require_session
from auth.models import Expired, IdleTimeout, NotFound, Rotated, Valid
from auth.reset import PasswordResetWorkflow
from auth.sessions import SessionManager
from core.config import get_settings

logger = logging.getLogger("sessionguard.api.auth")

# Auth policy:
# - POST /api/v1/auth/register:               public, CSRF
# - POST /api/v1/auth/login:                  public, no CSRF
# - POST /api/v1/auth/logout:                 CSRF; idempotent without a session
# - GET  /api/v1/auth/session:                public probe
# - POST /api/v1/auth/change-password:        CSRF + session (require_session)
# - POST /api/v1/auth/request-password-reset: public, CSRF
# - POST /api/v1/auth/reset-password:         public, CSRF (the token is the credential)
router = APIRouter()


def _json(model, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=model.model_dump(exclude_none=True))


# ---------------------------------------------------------------------------
# Registration and login
# ---------------------------------------------------------------------------


@limiter.limit(get_settings().register_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/register", status_code=201, response_model=OkResponse, dependencies=[Depends(require_csrf)])
def register(request: Request, body: RegisterRequest) -> JSONResponse:
    """Create an active account. 409 when the username or email is taken."""
    accounts: AccountService = request.app.state.accounts
    accounts.register(body.username, body.email, body.password)
    resp = _json(OkResponse(), status_code=201)
    request.app.state.csrf.ensure_cookie(request, resp)
    return resp


@router.post("/auth/login", response_model=SessionResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username and password; set session and CSRF cookies.

    Every credential failure -- unknown user, wrong password, inactive or
    locked account -- produces the same 401 body. Only the Retry-After
    header differs, and only for a lock the caller already triggered.
    """
    accounts: AccountService = request.app.state.accounts
    result = accounts.login(body.username, body.password, get_client_info(request))

    resp = _json(SessionResponse(authenticated=True, user=UserResponse.from_user(result.user)))
    sessions: SessionManager = request.app.state.sessions
    sessions.set_session_cookie(resp, result.session.id)
    csrf: CsrfGuard = request.app.state.csrf
    csrf.set_cookie(resp)
    return resp


@router.post("/auth/logout", response_model=OkResponse, dependencies=[Depends(require_csrf)])
def logout(request: Request) -> JSONResponse:
    """Revoke the presented session (if any) and clear the cookie."""
    sessions: SessionManager = request.app.state.sessions
    session_id = read_session_id(request)
    if session_id:
        sessions.revoke_session(session_id)
    resp = _json(OkResponse())
    sessions.clear_session_cookie(resp)
    return resp


# ---------------------------------------------------------------------------
# Session probe
# ---------------------------------------------------------------------------


@router.get("/auth/session", response_model=SessionResponse)
def session(request: Request) -> JSONResponse:
    """Report whether the request carries a live session.

    Always 200 so clients can probe freely. Also (re)issues the CSRF cookie,
    which is how a fresh client obtains its first token.
    """
    sessions: SessionManager = request.app.state.sessions
    csrf: CsrfGuard = request.app.state.csrf
    outcome = sessions.validate_and_touch(read_session_id(request), get_client_info(request))

    if isinstance(outcome, (Valid, Rotated)):
        resp = _json(SessionResponse(authenticated=True, user=UserResponse.from_user(outcome.user)))
        if isinstance(outcome, Rotated):
            sessions.set_session_cookie(resp, outcome.session.id)
    else:
        resp = _json(SessionResponse(authenticated=False))
        if isinstance(outcome, (NotFound, Expired, IdleTimeout)):
            # The browser is holding a dead id; drop it.
            sessions.clear_session_cookie(resp)
    csrf.ensure_cookie(request, resp)
    return resp


# ---------------------------------------------------------------------------
# Password management
# ---------------------------------------------------------------------------


@router.post("/auth/change-password", response_model=OkResponse, dependencies=[Depends(require_csrf)])
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    auth: Valid | Rotated = Depends(require_session),
) -> JSONResponse:
    """Rotate the password, keep this session, revoke every other one.

    The session cookie is rewritten so its Max-Age restarts; if the session
    rotated on this request the new id goes out here too.
    """
    accounts: AccountService = request.app.state.accounts
    accounts.change_password(auth.user.id, body.current_password, body.new_password, keep_session_id=auth.session.id)
    resp = _json(OkResponse())
    request.app.state.sessions.set_session_cookie(resp, auth.session.id)
    return resp


@router.post(
    "/auth/request-password-reset",
    response_model=RequestPasswordResetResponse,
    dependencies=[Depends(require_csrf)],
)
def request_password_reset(request: Request, body: RequestPasswordResetRequest) -> JSONResponse:
    """Start a password reset. The response is identical whether or not anything was issued."""
    settings = request.app.state.settings
    workflow: PasswordResetWorkflow = request.app.state.reset
    result = workflow.request_reset(body.identifier, get_client_info(request))

    dev_link = None
    if result.raw_token and settings.feature_dev_reset_link and not settings.is_production:
        dev_link = f"{request.base_url}reset-password?token={result.raw_token}"
        logger.warning("FEATURE_DEV_RESET_LINK is on: reset link returned in the response body")

    resp = _json(RequestPasswordResetResponse(dev_link=dev_link))
    request.app.state.csrf.ensure_cookie(request, resp)
    return resp


@router.post("/auth/reset-password", response_model=OkResponse, dependencies=[Depends(require_csrf)])
def reset_password(request: Request, body: ResetPasswordRequest) -> JSONResponse:
    """Consume a reset token and set the new password. Signs the user out everywhere."""
    workflow: PasswordResetWorkflow = request.app.state.reset
    workflow.reset_password(body.token, body.new_password)
    return _json(OkResponse())
