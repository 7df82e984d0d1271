"""
auth/reset.py -- Single-use password reset tokens.

Issue:
  request_reset() gives the same outward result on every path: unknown
  account, inactive account, per-IP limit, per-user limit and a real issue
  are indistinguishable to the caller. Only a real issue carries the raw
  token, and only the development reset-link escape hatch ever reads it.

  Order matters for enumeration resistance:
    1. per-IP limit (account-agnostic) -- exceeded: return, log nothing
    2. account lookup: normalized username, then email as given, then
       email lower-cased
    3. missing or inactive account -- record the request, return
    4. per-user limit -- record the request, return
    5. token row + request-log row in one transaction

Redeem:
  reset_password() hashes the new password BEFORE touching the token, so the
  slow KDF never runs inside the consuming transaction. The store then
  claims the token with a conditional update and, in the same transaction,
  writes the digest, clears lockout state and deletes every session of the
  owner. Unknown, expired, consumed and inactive-owner tokens all raise the
  same InvalidToken.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.exc import SQLAlchemyError

from auth.errors import InvalidToken
from auth.models import ClientInfo, PasswordResetToken, User
from auth.passwords import hash_password
from auth.rate_limit import UNKNOWN_IP, RateLimiter
from auth.store import AuthStore
from auth.tokens import Clock, generate_token, hash_token, now_ms
from core.config import Settings, get_settings

logger = logging.getLogger("sessionguard.auth.reset")

__all__ = ["PasswordResetWorkflow", "ResetRequestResult", "generate_token"]


@dataclass(frozen=True)
class ResetRequestResult:
    """Outcome of a reset request. raw_token is set only when a token was issued."""

    raw_token: str | None = None


class PasswordResetWorkflow:
    def __init__(
        self,
        store: AuthStore,
        rate_limiter: RateLimiter,
        settings: Settings | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.rate_limiter = rate_limiter
        self.settings = settings or get_settings()
        self.clock = clock

    def _find_account(self, identifier: str) -> User | None:
        candidate = identifier.strip()
        if not candidate:
            return None
        user = self.store.get_user_by_username(candidate.lower())
        if user is None:
            user = self.store.get_user_by_email(candidate, candidate.lower())
        return user

    def request_reset(self, identifier: str, client: ClientInfo) -> ResetRequestResult:
        ip = client.ip or UNKNOWN_IP

        if not self.rate_limiter.check_reset_ip_limit(ip).allowed:
            return ResetRequestResult()

        user = self._find_account(identifier)
        if user is None or not user.is_active:
            self.rate_limiter.record_reset_request(ip)
            return ResetRequestResult()

        if not self.rate_limiter.check_reset_user_limit(user.id).allowed:
            self.rate_limiter.record_reset_request(ip)
            return ResetRequestResult()

        raw_token, token_hash = generate_token()
        now = self.clock()
        token = PasswordResetToken(
            token_hash=token_hash,
            user_id=user.id,
            created_at=now,
            expires_at=now + self.settings.reset_token_ttl_ms,
        )
        try:
            self.store.create_reset_token(token, ip)
        except SQLAlchemyError:
            # The caller still sees the uniform success response.
            logger.exception("Failed to issue password reset token (user_id=%s)", user.id)
            return ResetRequestResult()

        logger.info("Password reset token issued (user_id=%s)", user.id)
        return ResetRequestResult(raw_token=raw_token)

    def reset_password(self, raw_token: str, new_password: str) -> int:
        """Consume raw_token and set new_password. Returns the owner's user id.

        Raises InvalidToken for every kind of unusable token.
        """
        if not raw_token:
            raise InvalidToken()
        digest = hash_password(new_password)
        user_id = self.store.redeem_reset_token(hash_token(raw_token), digest, self.clock())
        if user_id is None:
            logger.info("Password reset rejected: token unknown, expired, consumed or owner inactive")
            raise InvalidToken()
        logger.info("Password reset completed, all sessions revoked (user_id=%s)", user_id)
        return user_id

    def prune(self) -> int:
        """Delete used or expired tokens that no longer count toward the per-user window."""
        now = self.clock()
        return self.store.delete_spent_reset_tokens(now, now - self.settings.reset_window_ms)
