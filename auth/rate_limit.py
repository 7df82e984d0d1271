"""
auth/rate_limit.py -- Durable sliding-window rate limits for login and reset.

Every check recomputes its count from the durable logs over the trailing
window [now - window, now]. There are no in-process counters and no decay
timers, so limits hold across restarts and across any number of server
instances, at the cost of one storage round trip per dimension.

Login:
  Two independent dimensions, client IP and username key. IP is checked
  first. A missing dimension (no IP, no username) counts as zero and never
  denies.

Password reset:
  Per-IP counted from password_reset_requests (account-agnostic, checked
  first so the response cannot hint that the account is also limited).
  Per-user counted from password_reset_tokens.created_at.

The in-process slowapi limiter in api/limiter.py is a separate soft layer for
low-stakes endpoints. Nothing in this module falls back to it.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import math

from sqlalchemy.exc import SQLAlchemyError

from auth.models import LoginAttempt, PasswordResetRequest, RateLimitCheck
from auth.store import AuthStore
from auth.tokens import Clock, now_ms
from core.config import Settings, get_settings

logger = logging.getLogger("sessionguard.auth.rate_limit")

UNKNOWN_IP = "unknown"


def retry_after_seconds(oldest: int | None, window_ms: int, now: int) -> int:
    """Seconds until the oldest counted row leaves the window, in [1, window]."""
    window_s = max(1, math.ceil(window_ms / 1000))
    if oldest is None:
        return window_s
    remaining_ms = oldest + window_ms - now
    return min(window_s, max(1, math.ceil(remaining_ms / 1000)))


class RateLimiter:
    def __init__(self, store: AuthStore, settings: Settings | None = None, clock: Clock = now_ms) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Login
    # ------------------------------------------------------------------

    def check_login_rate_limit(self, ip: str | None, username_key: str | None) -> RateLimitCheck:
        window = self.settings.rate_limit_login_window_ms
        now = self.clock()
        since = now - window

        ip_count, ip_oldest = self.store.login_attempt_window(since, ip=ip) if ip else (0, None)
        user_count, user_oldest = (
            self.store.login_attempt_window(since, username_key=username_key) if username_key else (0, None)
        )

        if ip and ip_count >= self.settings.rate_limit_login_max_per_ip:
            logger.warning("Login rate limit tripped on ip dimension (count=%d)", ip_count)
            return RateLimitCheck(
                allowed=False,
                reason="ip",
                ip_count=ip_count,
                username_count=user_count,
                retry_after_seconds=retry_after_seconds(ip_oldest, window, now),
            )
        if username_key and user_count >= self.settings.rate_limit_login_max_per_username:
            logger.warning("Login rate limit tripped on username dimension (count=%d)", user_count)
            return RateLimitCheck(
                allowed=False,
                reason="username",
                ip_count=ip_count,
                username_count=user_count,
                retry_after_seconds=retry_after_seconds(user_oldest, window, now),
            )
        return RateLimitCheck(allowed=True, ip_count=ip_count, username_count=user_count)

    def record_login_attempt(self, ip: str | None, username_key: str | None, success: bool) -> None:
        """Append a login attempt row. Called for allowed AND denied attempts.

        Best-effort: a logging failure is reported and swallowed so it never
        fails the login it belongs to.
        """
        try:
            self.store.add_login_attempt(
                LoginAttempt(ip=ip, username_key=username_key, success=success, created_at=self.clock())
            )
        except SQLAlchemyError:
            logger.exception("Failed to record login attempt")

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    def check_reset_ip_limit(self, ip: str | None) -> RateLimitCheck:
        window = self.settings.reset_ip_window_ms
        now = self.clock()
        count, oldest = self.store.reset_request_window(ip or UNKNOWN_IP, now - window)
        if count >= self.settings.reset_max_per_ip:
            logger.warning("Reset request rate limit tripped on ip dimension (count=%d)", count)
            return RateLimitCheck(
                allowed=False, reason="ip", ip_count=count, retry_after_seconds=retry_after_seconds(oldest, window, now)
            )
        return RateLimitCheck(allowed=True, ip_count=count)

    def check_reset_user_limit(self, user_id: int) -> RateLimitCheck:
        window = self.settings.reset_window_ms
        now = self.clock()
        count, oldest = self.store.reset_token_window(user_id, now - window)
        if count >= self.settings.reset_max_per_user:
            logger.info("Reset request rate limit tripped on user dimension (user_id=%s)", user_id)
            return RateLimitCheck(
                allowed=False, reason="user", retry_after_seconds=retry_after_seconds(oldest, window, now)
            )
        return RateLimitCheck(allowed=True)

    def record_reset_request(self, ip: str | None) -> None:
        """Append a reset request row. Best-effort, like record_login_attempt()."""
        try:
            self.store.add_reset_request(PasswordResetRequest(ip=ip or UNKNOWN_IP, created_at=self.clock()))
        except SQLAlchemyError:
            logger.exception("Failed to record password reset request")

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------

    def prune(self) -> dict[str, int]:
        """Delete log rows older than their retention windows."""
        now = self.clock()
        return {
            "login_attempts": self.store.delete_login_attempts_before(now - self.settings.retention_login_attempts_ms),
            "reset_requests": self.store.delete_reset_requests_before(now - self.settings.retention_reset_requests_ms),
        }
