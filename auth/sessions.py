"""
auth/sessions.py -- Server-side session lifecycle.

Session ids are opaque bearer capabilities: authentication is possession of
the id, looked up by exact primary-key match.

Two independent timeouts, both enforced here on every validation:
  absolute -- expires_at = created_at + SESSION_MAX_AGE_MS, never extended.
  idle     -- now - last_used_at must not exceed SESSION_IDLE_TIMEOUT_MS.
The cookie's Max-Age is only a hint to the browser; the server decides.

Rotation replaces the id (a new row, the old row deleted) while keeping the
logical login. It bounds how long any single leaked id stays useful. Triggers,
any of:
  - session age >= SESSION_ROTATION_INTERVAL_MS
  - user-agent differs from the one captured at issue (ROTATE_ON_UA_CHANGE)
  - client IP differs from the one captured at issue (ROTATE_ON_IP_CHANGE)
The triggers are applied exactly as configured -- no fuzzy matching.

validate_and_touch() evaluates terminal conditions in a fixed order and
returns the first that matches. Nothing is mutated before a negative
outcome except the deletion of an expired or idle row.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from starlette.responses import Response

from auth.lockout import is_locked
from auth.models import (
    ClientInfo,
    Expired,
    IdleTimeout,
    Inactive,
    Locked,
    Missing,
    NotFound,
    Rotated,
    Session,
    SessionOutcome,
    Valid,
)
from auth.store import AuthStore
from auth.tokens import Clock, generate_session_id, now_ms
from core.config import Settings, get_settings

logger = logging.getLogger("sessionguard.auth.sessions")


class SessionManager:
    def __init__(self, store: AuthStore, settings: Settings | None = None, clock: Clock = now_ms) -> None:
        self.store = store
        self.settings = settings or get_settings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create_session(self, user_id: int, client: ClientInfo) -> Session:
        """Persist a new session, then enforce the per-user cap.

        Eviction is best-effort: a failure is logged and the new session is
        still returned.
        """
        session = self._insert_session(user_id, client)
        self._enforce_cap(user_id, session.id)
        return session

    def _insert_session(self, user_id: int, client: ClientInfo) -> Session:
        now = self.clock()
        session = Session(
            id=generate_session_id(),
            user_id=user_id,
            created_at=now,
            last_used_at=now,
            expires_at=now + self.settings.session_max_age_ms,
            ip=client.ip,
            user_agent=client.user_agent,
        )
        self.store.insert_session(session)
        return session

    def _enforce_cap(self, user_id: int, keep_id: str) -> None:
        cap = self.settings.session_max_sessions_per_user
        try:
            count = self.store.count_user_sessions(user_id)
            if count > cap:
                evicted = self.store.evict_oldest_sessions(user_id, keep_id=keep_id, excess=count - cap)
                logger.info("Evicted %d session(s) over the per-user cap (user_id=%s)", evicted, user_id)
        except SQLAlchemyError:
            logger.exception("Session eviction failed (user_id=%s)", user_id)

    def validate_and_touch(self, session_id: str | None, client: ClientInfo) -> SessionOutcome:
        """Validate a presented session id and either touch or rotate it.

        Order: Missing, NotFound, Expired, IdleTimeout, Inactive, Locked,
        then Rotated or Valid.
        """
        if not session_id:
            return Missing()

        loaded = self.store.get_session_with_user(session_id)
        if loaded is None:
            return NotFound()
        session, user = loaded

        now = self.clock()
        if now > session.expires_at:
            self.store.delete_session(session_id)
            return Expired()
        if now - session.last_used_at > self.settings.session_idle_timeout_ms:
            self.store.delete_session(session_id)
            return IdleTimeout()
        if not user.is_active:
            return Inactive()
        lock = is_locked(user.locked_until, now)
        if lock.locked:
            return Locked(remaining_ms=lock.remaining_ms)

        triggers = self._rotation_triggers(session, client, now)
        if triggers:
            fresh = self._insert_session(user.id, client)
            # Deleting the old row is the claim: only one concurrent rotation of an id wins.
            if not self.store.delete_session(session_id):
                self.store.delete_session(fresh.id)
                logger.info("Session rotation lost a race (user_id=%s)", user.id)
                return NotFound()
            # Old row goes before the cap check so it is not counted against the user.
            self._enforce_cap(user.id, fresh.id)
            logger.info("Session rotated (user_id=%s, triggers=%s)", user.id, ",".join(triggers))
            return Rotated(session=fresh, user=user, previous_id=session_id)

        if not self.store.touch_session(session_id, now):
            # Deleted between our read and our write (logout, revocation).
            return NotFound()
        session.last_used_at = now
        return Valid(session=session, user=user)

    def _rotation_triggers(self, session: Session, client: ClientInfo, now: int) -> list[str]:
        triggers: list[str] = []
        if now - session.created_at >= self.settings.session_rotation_interval_ms:
            triggers.append("age")
        if self.settings.rotate_on_ua_change and (session.user_agent or None) != (client.user_agent or None):
            triggers.append("user_agent")
        if self.settings.rotate_on_ip_change and (session.ip or None) != (client.ip or None):
            triggers.append("ip")
        return triggers

    def revoke_session(self, session_id: str) -> None:
        """Idempotent: revoking an unknown id is not an error."""
        self.store.delete_session(session_id)

    def revoke_all_user_sessions(self, user_id: int, except_id: str | None = None) -> int:
        revoked = self.store.delete_user_sessions(user_id, except_id=except_id)
        logger.info("Revoked %d session(s) (user_id=%s, kept_current=%s)", revoked, user_id, except_id is not None)
        return revoked

    def prune_expired(self) -> int:
        return self.store.delete_expired_sessions(self.clock())

    # ------------------------------------------------------------------
    # Cookie helpers
    # ------------------------------------------------------------------

    def set_session_cookie(self, response: Response, session_id: str) -> None:
        """Write the session id as an httpOnly cookie.

        httponly=True: script cannot read it (XSS mitigation).
        secure=True: required by the __Host- prefix.
        max_age: the absolute lifetime; idle timeout is enforced server-side.
        """
        response.set_cookie(
            self.settings.session_cookie_name,
            value=session_id,
            max_age=self.settings.session_max_age_seconds,
            path="/",
            secure=True,
            httponly=True,
            samesite=self.settings.session_samesite,
        )

    def clear_session_cookie(self, response: Response) -> None:
        response.delete_cookie(
            self.settings.session_cookie_name,
            path="/",
            secure=True,
            httponly=True,
            samesite=self.settings.session_samesite,
        )
