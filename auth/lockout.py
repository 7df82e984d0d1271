"""
auth/lockout.py -- Account lockout policy.

The failure counter and the lock window are mutually exclusive states:
  - While locked, failures change nothing. Probing a locked account can
    neither extend nor reset the lock.
  - When the counter reaches the threshold, the lock is set and the counter
    goes back to zero, so an account coming out of a lock starts fresh.

This guard is durable-store only. It never consults an in-process counter:
a lock has to hold across restarts and across every server instance.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from auth.models import LockoutStatus, User
from auth.store import AuthStore
from auth.tokens import Clock, now_ms
from core.config import Settings, get_settings

logger = logging.getLogger("sessionguard.auth.lockout")


def is_locked(locked_until: int | None, now: int) -> LockoutStatus:
    """Pure lock check. remaining_ms is clamped to zero once the lock has passed."""
    if not locked_until:
        return LockoutStatus(locked=False, remaining_ms=0)
    remaining = locked_until - now
    if remaining > 0:
        return LockoutStatus(locked=True, remaining_ms=remaining)
    return LockoutStatus(locked=False, remaining_ms=0)


class LockoutGuard:
    def __init__(self, store: AuthStore, settings: Settings | None = None, clock: Clock = now_ms) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    def status(self, user: User) -> LockoutStatus:
        return is_locked(user.locked_until, self.clock())

    def record_failed_login(self, user: User) -> LockoutStatus:
        """Count a failed login for `user` and lock the account at the threshold.

        The in-memory user is only used for the fast path (already locked).
        The authoritative decision is made by the store's conditional updates,
        so two concurrent failures cannot lose an increment or double-lock.
        """
        now = self.clock()
        current = is_locked(user.locked_until, now)
        if current.locked:
            return current

        duration = self.settings.lockout_duration_ms
        counted, locked_now = self.store.register_failed_login(
            user.id,
            now=now,
            threshold=self.settings.lockout_threshold,
            lock_until=now + duration,
        )
        if locked_now:
            logger.warning("Account locked after %d failed logins (user_id=%s)", self.settings.lockout_threshold, user.id)
            return LockoutStatus(locked=True, remaining_ms=duration)
        if not counted:
            # A concurrent request set the lock between our read and our write.
            fresh = self.store.get_user_by_id(user.id)
            return is_locked(fresh.locked_until if fresh else None, now)
        return LockoutStatus(locked=False, remaining_ms=0)

    def record_successful_login(self, user_id: int) -> None:
        self.store.clear_lockout(user_id, self.clock(), stamp_login=True)

    def unlock(self, user_id: int) -> bool:
        """Administrative clear of counter and lock. Does not stamp last_login_at."""
        cleared = self.store.clear_lockout(user_id, self.clock())
        if cleared:
            logger.info("Lock cleared by administrator (user_id=%s)", user_id)
        return cleared
