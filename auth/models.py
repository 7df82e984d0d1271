"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). Dataclasses own domain
shape; the store and the guards do the work.

All timestamps are integer milliseconds since the Unix epoch (UTC). Integer
milliseconds keep window arithmetic exact and compare directly in SQL.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Union


@dataclass
class User:
    """An account that can log in with a local password.

    username is stored lower-cased; uniqueness is case-insensitive because
    the API layer normalizes before any lookup.

    failed_login_count and locked_until are mutually exclusive states: when a
    lock is set the counter is reset to zero, and the counter is never
    inspected again until the lock expires.
    """

    username: str
    password_hash: str
    id: int | None = None
    email: str | None = None
    is_active: bool = True
    failed_login_count: int = 0
    locked_until: int | None = None
    last_login_at: int | None = None
    password_updated_at: int | None = None
    created_at: int | None = None
    updated_at: int | None = None


@dataclass(frozen=True)
class ClientInfo:
    """Client attributes captured from the request at the transport edge."""

    ip: str | None = None
    user_agent: str | None = None


@dataclass
class Session:
    """A server-side login session.

    id is the bearer capability: possession of the value is authentication.
    It is only ever looked up by exact match, never by content.

    Invariant: expires_at == created_at + session_max_age_ms.
    """

    id: str
    user_id: int
    created_at: int
    last_used_at: int
    expires_at: int
    ip: str | None = None
    user_agent: str | None = None


@dataclass
class LoginAttempt:
    """Append-only login log row. Used only as a sliding-window count source."""

    ip: str | None
    username_key: str | None
    success: bool
    created_at: int
    id: int | None = None


@dataclass
class PasswordResetToken:
    """A single-use reset grant.

    Only token_hash is stored -- the raw token is handed out once for
    out-of-band delivery and is never persisted or retrievable again.
    used_at moves from None to a timestamp exactly once.
    """

    token_hash: str
    user_id: int
    created_at: int
    expires_at: int
    used_at: int | None = None
    id: int | None = None


@dataclass
class PasswordResetRequest:
    """Append-only reset request log row, used for per-IP throttling."""

    ip: str
    created_at: int
    id: int | None = None


@dataclass(frozen=True)
class LockoutStatus:
    locked: bool
    remaining_ms: int = 0


@dataclass(frozen=True)
class RateLimitCheck:
    """Result of a windowed count check.

    reason names the dimension that tripped ("ip" or "username" for logins,
    "ip" or "user" for reset requests). retry_after_seconds is 0 when allowed.
    """

    allowed: bool
    reason: str | None = None
    ip_count: int = 0
    username_count: int = 0
    retry_after_seconds: int = 0


# ---------------------------------------------------------------------------
# Session validation outcome -- closed tagged union
#
# One class per terminal reason. Callers dispatch with isinstance() or a
# match statement; there are no free-form reason strings to mistype.
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Missing:
    """No session credential was presented."""

    reason = "missing"


@dataclass(frozen=True)
class NotFound:
    """The identifier is not in storage (forged, revoked, or already deleted)."""

    reason = "not_found"


@dataclass(frozen=True)
class Expired:
    """Past the absolute lifetime. The row has been deleted."""

    reason = "expired"


@dataclass(frozen=True)
class IdleTimeout:
    """Unused for longer than the idle timeout. The row has been deleted."""

    reason = "idle_timeout"


@dataclass(frozen=True)
class Inactive:
    """The owning account is deactivated."""

    reason = "inactive"


@dataclass(frozen=True)
class Locked:
    """The owning account is under a lockout."""

    remaining_ms: int
    reason = "locked"


@dataclass(frozen=True)
class Valid:
    session: Session
    user: User


@dataclass(frozen=True)
class Rotated:
    """A fresh session replaced previous_id.

    The caller must put session.id on the response cookie in the same
    response; the previous identifier no longer authenticates.
    """

    session: Session
    user: User
    previous_id: str


SessionOutcome = Union[Missing, NotFound, Expired, IdleTimeout, Inactive, Locked, Valid, Rotated]
Rejected = Union[Missing, NotFound, Expired, IdleTimeout, Inactive, Locked]
