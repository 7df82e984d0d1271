"""
api/main.py -- FastAPI application entry point for SessionGuard.

Run with:      uvicorn api.main:app --reload

Middleware stack (outermost to innermost):
  1. log_requests          -- method, path, status, latency
  2. security_headers      -- no-store caching and hardening headers on every response
  3. TrustedHostMiddleware -- rejects requests with unexpected Host headers
  4. CORSMiddleware        -- adds CORS headers for allowed browser origins
  5. SlowAPIMiddleware     -- soft per-route limits from api.limiter

Lifespan opens the auth store, wires the guards onto app.state and starts
the retention prune task; shutdown reverses it.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.trustedhost import TrustedHostMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware
from starlette.exceptions import HTTPException

from api.limiter import limiter
from api.models import ErrorDetail, ErrorResponse, HealthResponse, ValidationIssue
from api.routes.v1.auth import router as auth_router
from auth.accounts import AccountService
from auth.csrf import CsrfGuard
from auth.errors import AuthError, CsrfRejected, InternalError, ValidationError
from auth.lockout import LockoutGuard
from auth.maintenance import prune_expired_records
from auth.rate_limit import RateLimiter
from auth.reset import PasswordResetWorkflow
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.tokens import Clock, now_ms
from core.config import Settings, get_settings

API_VERSION = "0.1.0"

settings = get_settings()

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("sessionguard.api")

# ---------------------------------------------------------------------------
# Auth wiring
# ---------------------------------------------------------------------------


def init_auth_state(app: FastAPI, store: AuthStore, settings: Settings, clock: Clock = now_ms) -> None:
    """Build every guard over one store and one clock and hang them on app.state.

    Route handlers and dependencies only ever reach the guards through
    request.app.state, so the test suite can call this with an isolated
    store and a controllable clock.
    """
    app.state.settings = settings
    app.state.store = store
    app.state.sessions = SessionManager(store, settings, clock)
    app.state.lockout = LockoutGuard(store, settings, clock)
    app.state.rate_limiter = RateLimiter(store, settings, clock)
    app.state.csrf = CsrfGuard(settings)
    app.state.reset = PasswordResetWorkflow(store, app.state.rate_limiter, settings, clock)
    app.state.accounts = AccountService(
        store, app.state.sessions, app.state.lockout, app.state.rate_limiter, clock
    )


# ---------------------------------------------------------------------------
# Background prune task
# ---------------------------------------------------------------------------


async def _prune_loop(app: FastAPI) -> None:
    """Prune expired sessions, old logs and spent tokens on a fixed interval.

    The store is synchronous, so each pass runs in a worker thread to keep
    the event loop free. CancelledError from task.cancel() during shutdown
    propagates out of asyncio.sleep and unwinds the coroutine cleanly.
    """
    while True:
        await asyncio.sleep(app.state.settings.prune_interval_seconds)
        try:
            await asyncio.to_thread(
                prune_expired_records, app.state.sessions, app.state.rate_limiter, app.state.reset
            )
        except Exception:
            logger.exception("Prune pass failed")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Everything before yield runs on startup; everything after on shutdown."""
    logger.info("SessionGuard API starting up (env=%s)", settings.app_env)
    store = AuthStore(settings.database_url)
    init_auth_state(app, store, settings)
    logger.info("Auth store initialized")
    app.state.prune_task = asyncio.create_task(_prune_loop(app))

    yield

    app.state.prune_task.cancel()
    app.state.store.close()
    logger.info("SessionGuard API shutdown complete")


# ---------------------------------------------------------------------------
# App instantiation
# ---------------------------------------------------------------------------

app = FastAPI(
    title="SessionGuard API",
    description="Session authentication, lockout, rate limiting, CSRF and password reset.",
    version=API_VERSION,
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None,
)

# ---------------------------------------------------------------------------
# Middleware stack
#
# add_middleware() wraps the app, so the LAST registered middleware is the
# outermost. Registered innermost-first: SlowAPI -> CORS -> TrustedHost, then
# the two @app.middleware functions below, which therefore wrap all three.
# ---------------------------------------------------------------------------

app.add_middleware(SlowAPIMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["Content-Type", settings.csrf_header_name],
    max_age=3600,
)

app.add_middleware(TrustedHostMiddleware, allowed_hosts=settings.allowed_hosts)

# SlowAPI looks for app.state.limiter by convention.
app.state.limiter = limiter

# ---------------------------------------------------------------------------
# Security headers middleware
#
# Every response is marked uncacheable: they carry session state, CSRF tokens
# or account-dependent answers.
# ---------------------------------------------------------------------------

SECURITY_HEADERS = {
    "Cache-Control": "no-store, max-age=0, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "X-Content-Type-Options": "nosniff",
    "Referrer-Policy": "no-referrer",
    "X-Frame-Options": "DENY",
}


@app.middleware("http")
async def security_headers(request: Request, call_next):
    response = await call_next(request)
    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value
    return response


# ---------------------------------------------------------------------------
# Request logging middleware
# ---------------------------------------------------------------------------


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.perf_counter()
    response = await call_next(request)
    ms = (time.perf_counter() - start) * 1000
    logger.info(
        "%s %s %d %.1fms %s",
        request.method,
        request.url.path,
        response.status_code,
        ms,
        request.client.host if request.client else "unknown",
    )
    return response


# ---------------------------------------------------------------------------
# Router registration
# ---------------------------------------------------------------------------

app.include_router(auth_router, prefix="/api/v1", tags=["Auth"])


# ---------------------------------------------------------------------------
# Exception handlers
#
# All handlers return the same ErrorResponse envelope so API clients can parse
# errors uniformly without inspecting status codes to choose a schema.
# ---------------------------------------------------------------------------


def _error_response(status_code: int, detail: ErrorDetail, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(error=detail).model_dump(exclude_none=True),
        headers=headers,
    )


def _render_auth_error(request: Request, exc: AuthError) -> JSONResponse:
    issues = getattr(exc, "issues", None)
    response = _error_response(
        exc.status_code,
        ErrorDetail(
            code=exc.code,
            message=exc.message,
            issues=[ValidationIssue(**issue) for issue in issues] if issues else None,
        ),
        headers=exc.headers(),
    )
    if isinstance(exc, CsrfRejected):
        request.app.state.csrf.ensure_cookie(request, response)
    rotated = getattr(request.state, "rotated_session", None)
    if rotated is not None:
        # The session rotated before the handler failed; the old id is already deleted.
        request.app.state.sessions.set_session_cookie(response, rotated.session.id)
    return response


@app.exception_handler(AuthError)
async def auth_error_handler(request: Request, exc: AuthError) -> JSONResponse:
    """Render any auth-layer error. The message is the public one; reasons stay internal.

    A CSRF rejection also (re)issues the CSRF cookie so a client that lost it
    can recover on the next attempt. A session that rotated earlier in the
    request gets its new id written here as well.
    """
    return _render_auth_error(request, exc)


def _issue_message(error: dict) -> str:
    # Custom validators raise ValueError; pydantic prefixes its text with "Value error, ".
    ctx_error = (error.get("ctx") or {}).get("error")
    if isinstance(ctx_error, ValueError):
        return str(ctx_error)
    return error.get("msg", "Invalid value.")


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Return 400 with one {path, message} issue per failed field."""
    issues = [
        {
            "path": ".".join(str(part) for part in error.get("loc", ()) if part != "body"),
            "message": _issue_message(error),
        }
        for error in exc.errors()
    ]
    return _render_auth_error(request, ValidationError(issues))


@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    """Soft-limit rejection from slowapi. Retry-After is the limit's period."""
    retry_after = int(exc.limit.limit.get_expiry()) if getattr(exc, "limit", None) else 60
    return _error_response(
        429,
        ErrorDetail(code="rate_limited", message="Too many requests.", detail=str(exc.detail)),
        headers={"Retry-After": str(retry_after)},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Structured error for FastAPI/Starlette HTTP exceptions (404, 405, ...)."""
    return _error_response(
        exc.status_code,
        ErrorDetail(code=f"http_{exc.status_code}", message=str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all handler for unexpected server errors.

    The raw exception goes to the log only, never to the response body.
    """
    logger.exception("Unhandled exception on %s %s", request.method, request.url.path)
    error = InternalError()
    return _error_response(
        error.status_code,
        ErrorDetail(code=error.code, message=error.message),
        headers=SECURITY_HEADERS,
    )


# ---------------------------------------------------------------------------
# Health endpoint
#
# Defined directly in main.py (not in a router) so it is always reachable
# regardless of router registration state. Not rate limited.
# ---------------------------------------------------------------------------


@app.get("/api/v1/health", tags=["Health"])
def health(request: Request) -> HealthResponse:
    """Return API liveness, version and database reachability."""
    try:
        database = "ok" if request.app.state.store.ping() else "error"
    except Exception:
        logger.exception("Health check database ping failed")
        database = "error"
    return HealthResponse(version=API_VERSION, components={"app": "ok", "database": database})
