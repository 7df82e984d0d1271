"""
auth/accounts.py -- Register, login and change-password orchestration.

AccountService ties the guards together for the three credential flows. It
raises AuthError subclasses; api/routes/v1/auth.py turns them into responses
and owns cookies.

Login flow, in order:
  1. RateLimiter (IP, then username key)      -> RateLimited + Retry-After
  2. user lookup; unknown user still burns a full verify so response time
     does not reveal which usernames exist     -> InvalidCredentials
  3. inactive                                 -> InvalidCredentials
  4. locked                                   -> InvalidCredentials + Retry-After
  5. verify; failure goes through LockoutGuard -> InvalidCredentials
     (+ Retry-After when this failure set the lock)
  6. transparent rehash when the digest's cost parameters are stale
  7. clear counter and lock, stamp last_login_at, create the session
Every outcome appends a login attempt row, including the rate-limit denial.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import NoReturn

from sqlalchemy.exc import IntegrityError

from auth.errors import Conflict, IncorrectPassword, InvalidCredentials, RateLimited, Unauthenticated
from auth.lockout import LockoutGuard
from auth.models import ClientInfo, Session, User
from auth.passwords import burn_verify, hash_password, verify_password
from auth.rate_limit import RateLimiter
from auth.sessions import SessionManager
from auth.store import AuthStore
from auth.tokens import Clock, now_ms

logger = logging.getLogger("sessionguard.auth.accounts")

USERNAME_RE = re.compile(r"^[a-z0-9_]{3,32}$")


def normalize_username(raw: str) -> str:
    """Trim and lower-case. Callers validate the result against USERNAME_RE."""
    return raw.strip().lower()


@dataclass(frozen=True)
class LoginResult:
    user: User
    session: Session


class AccountService:
    def __init__(
        self,
        store: AuthStore,
        sessions: SessionManager,
        lockout: LockoutGuard,
        rate_limiter: RateLimiter,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.sessions = sessions
        self.lockout = lockout
        self.rate_limiter = rate_limiter
        self.clock = clock

    def register(self, username: str, email: str | None, password: str) -> User:
        """Create an active account. Raises Conflict on a taken username or email."""
        if self.store.get_user_by_username(username) is not None:
            raise Conflict("Username already taken.")
        if email and self.store.get_user_by_email(email) is not None:
            raise Conflict("Email already registered.")

        now = self.clock()
        user = User(
            username=username,
            email=email or None,
            password_hash=hash_password(password),
            password_updated_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            user.id = self.store.create_user(user)
        except IntegrityError as exc:
            # Lost a race with a concurrent registration of the same name or email.
            raise Conflict("Username or email already registered.") from exc
        logger.info("User registered (user_id=%s)", user.id)
        return user

    def login(self, username: str, password: str, client: ClientInfo) -> LoginResult:
        ip = client.ip
        check = self.rate_limiter.check_login_rate_limit(ip, username)
        if not check.allowed:
            self.rate_limiter.record_login_attempt(ip, username, success=False)
            raise RateLimited(retry_after_ms=check.retry_after_seconds * 1000)

        user = self.store.get_user_by_username(username)
        if user is None:
            burn_verify(password)
            self._reject(ip, username)

        if not user.is_active:
            self._reject(ip, username)

        lock = self.lockout.status(user)
        if lock.locked:
            self._reject(ip, username, retry_after_ms=lock.remaining_ms)

        result = verify_password(password, user.password_hash)
        if not result.valid:
            self.rate_limiter.record_login_attempt(ip, username, success=False)
            after = self.lockout.record_failed_login(user)
            raise InvalidCredentials(retry_after_ms=after.remaining_ms if after.locked else None)

        if result.needs_rehash:
            self.store.set_password(user.id, hash_password(password), self.clock(), clear_lockout=False)
            logger.info("Password digest upgraded to current cost parameters (user_id=%s)", user.id)

        self.lockout.record_successful_login(user.id)
        session = self.sessions.create_session(user.id, client)
        self.rate_limiter.record_login_attempt(ip, username, success=True)
        logger.info("Login succeeded (user_id=%s)", user.id)
        return LoginResult(user=user, session=session)

    def _reject(self, ip: str | None, username: str, retry_after_ms: int | None = None) -> NoReturn:
        self.rate_limiter.record_login_attempt(ip, username, success=False)
        raise InvalidCredentials(retry_after_ms=retry_after_ms)

    def change_password(self, user_id: int, current_password: str, new_password: str, keep_session_id: str) -> int:
        """Rotate the password and revoke every other session of the user.

        Returns the number of sessions revoked.
        """
        user = self.store.get_user_by_id(user_id)
        if user is None or not user.is_active:
            raise Unauthenticated("inactive" if user is not None else "not_found")

        if not verify_password(current_password, user.password_hash).valid:
            raise IncorrectPassword()

        self.store.set_password(user.id, hash_password(new_password), self.clock())
        revoked = self.sessions.revoke_all_user_sessions(user.id, except_id=keep_session_id)
        logger.info("Password changed (user_id=%s)", user.id)
        return revoked
