"""
auth/errors.py -- Exception taxonomy for the authentication layer.

Every error carries the HTTP status, a machine-readable code, and the public
message. api/main.py renders them all into the same error envelope, so the
message here is exactly what a client sees -- never put internal detail in it.

Several true causes deliberately collapse into one public error:
  - unknown user, wrong password, inactive and locked accounts on login all
    raise Unauthenticated("invalid_credentials") with the same message;
  - unknown, expired and already-consumed reset tokens all raise InvalidToken.
This collapsing prevents account enumeration and credential-stuffing signal
leakage. Do not make the messages more specific.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import math

# Session rejection reasons that map to something other than 401.
_REASON_STATUS: dict[str, int] = {
    "inactive": 403,
}


class AuthError(Exception):
    """Base class. Subclasses override status_code, code and message."""

    status_code: int = 400
    code: str = "error"
    message: str = "Request failed."

    def __init__(self, message: str | None = None, *, retry_after_ms: int | None = None) -> None:
        if message is not None:
            self.message = message
        self.retry_after_ms = retry_after_ms
        super().__init__(self.message)

    @property
    def retry_after_seconds(self) -> int | None:
        """Retry-After value in whole seconds, rounded up. None when not applicable."""
        if self.retry_after_ms is None:
            return None
        return max(1, math.ceil(self.retry_after_ms / 1000))

    def headers(self) -> dict[str, str]:
        seconds = self.retry_after_seconds
        return {"Retry-After": str(seconds)} if seconds is not None else {}


class ValidationError(AuthError):
    """Structured per-field input issues. issues is a list of {path, message}."""

    status_code = 400
    code = "validation_error"
    message = "Invalid input."

    def __init__(self, issues: list[dict[str, str]], message: str | None = None) -> None:
        super().__init__(message)
        self.issues = issues


class Unauthenticated(AuthError):
    """Session missing or invalid, or credentials rejected.

    reason is the internal sub-reason (missing, not_found, expired,
    idle_timeout, inactive, invalid_credentials). It selects the status code
    but never appears in the response body.
    """

    status_code = 401
    code = "unauthorized"
    message = "Unauthorized."

    def __init__(self, reason: str, message: str | None = None, *, retry_after_ms: int | None = None) -> None:
        super().__init__(message, retry_after_ms=retry_after_ms)
        self.reason = reason
        self.status_code = _REASON_STATUS.get(reason, 401)


class InvalidCredentials(Unauthenticated):
    """The uniform login failure. Same body for every underlying cause."""

    code = "invalid_credentials"
    message = "Invalid credentials."

    def __init__(self, *, retry_after_ms: int | None = None) -> None:
        super().__init__("invalid_credentials", retry_after_ms=retry_after_ms)


class AccountLocked(AuthError):
    """The session's owner is locked out. Distinct status so clients can show the wait."""

    status_code = 423
    code = "account_locked"
    message = "Account is temporarily locked."


class CsrfRejected(AuthError):
    status_code = 403
    code = "csrf_failed"
    message = "CSRF token missing or invalid."


class RateLimited(AuthError):
    status_code = 429
    code = "rate_limited"
    message = "Too many attempts, try again later."


class Conflict(AuthError):
    status_code = 409
    code = "conflict"
    message = "Resource already exists."


class InvalidToken(AuthError):
    """Unknown, expired or consumed reset token. All three share one message."""

    status_code = 400
    code = "invalid_token"
    message = "Invalid or expired token."


class IncorrectPassword(AuthError):
    status_code = 400
    code = "incorrect_password"
    message = "Current password is incorrect."


class InternalError(AuthError):
    """Generic 500. The message never carries stack or query detail."""

    status_code = 500
    code = "internal_error"
    message = "An unexpected error occurred."
