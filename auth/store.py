"""
auth/store.py -- SQLAlchemy Core persistence layer for auth entities.

Pattern: Repository + Data Mapper. AuthStore is the repository; the _row_to_*
functions are the mappers. Guards, workflows and routes never touch SQL
directly.

Security:
  All queries use bound parameters. No f-strings in SQL.

  Cross-request coordination relies on exactly one primitive: a conditional
  UPDATE whose WHERE clause re-states the precondition, followed by a check of
  result.rowcount. Whoever sees rowcount == 1 won; everyone else lost and must
  not assume the write happened. This is used for:
    - reset token consumption (used_at IS NULL AND expires_at >= now)
    - failed-login counting and lock setting (lock not active)
    - touching a session that may have been deleted concurrently

  Multi-statement sequences that must be all-or-nothing run inside
  engine.begin(), which commits on normal exit and rolls back on exception.

Timestamps are epoch milliseconds in BigInteger columns.

Layer rule: no imports from api/.
"""

from __future__ import annotations

from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    ForeignKey,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    event,
    func,
    or_,
    select,
    true,
)
from sqlalchemy.engine import Engine

from auth.models import LoginAttempt, PasswordResetRequest, PasswordResetToken, Session, User
from core.config import get_settings

# Busy timeout for SQLite writers waiting on a lock. Storage calls are
# bounded; a request never waits on the database indefinitely.
_SQLITE_TIMEOUT_SECONDS = 5

# ---------------------------------------------------------------------------
# Schema
# ---------------------------------------------------------------------------

_metadata = MetaData()

_users = Table(
    "users",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(32), nullable=False, unique=True),  # lower-cased
    Column("email", String(254), unique=True),  # NULLs are distinct, so optional emails coexist
    Column("password_hash", Text, nullable=False),
    Column("is_active", Boolean, nullable=False, server_default=true()),
    Column("failed_login_count", Integer, nullable=False, server_default="0"),
    Column("locked_until", BigInteger),
    Column("last_login_at", BigInteger),
    Column("password_updated_at", BigInteger),
    Column("created_at", BigInteger, nullable=False),
    Column("updated_at", BigInteger, nullable=False),
)

_sessions = Table(
    "sessions",
    _metadata,
    Column("id", String(64), primary_key=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", BigInteger, nullable=False),
    Column("last_used_at", BigInteger, nullable=False),
    Column("expires_at", BigInteger, nullable=False),
    Column("ip", String(64)),
    Column("user_agent", Text),
    Index("ix_sessions_user_id", "user_id"),
    Index("ix_sessions_expires_at", "expires_at"),
)

# Unowned log: ip / username_key are raw client attributes, not foreign keys,
# so rows survive account deletion and keep counting toward the window.
_login_attempts = Table(
    "login_attempts",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ip", String(64)),
    Column("username_key", String(254)),
    Column("success", Boolean, nullable=False),
    Column("created_at", BigInteger, nullable=False),
    Index("ix_login_attempts_ip_created", "ip", "created_at"),
    Index("ix_login_attempts_username_created", "username_key", "created_at"),
)

_reset_tokens = Table(
    "password_reset_tokens",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token_hash", String(64), nullable=False, unique=True),
    Column("user_id", Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False),
    Column("created_at", BigInteger, nullable=False),
    Column("expires_at", BigInteger, nullable=False),
    Column("used_at", BigInteger),
    Index("ix_reset_tokens_user_created", "user_id", "created_at"),
)

_reset_requests = Table(
    "password_reset_requests",
    _metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("ip", String(64), nullable=False),
    Column("created_at", BigInteger, nullable=False),
    Index("ix_reset_requests_ip_created", "ip", "created_at"),
)


# ---------------------------------------------------------------------------
# SQLite connection setup
# ---------------------------------------------------------------------------


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    """Enable WAL journal mode and foreign keys on every new connection.

    SQLite PRAGMAs are per-connection and are not inherited by new
    connections from the pool. foreign_keys makes ON DELETE CASCADE work.
    """
    dbapi_conn.execute("PRAGMA journal_mode=WAL")
    dbapi_conn.execute("PRAGMA foreign_keys=ON")


# ---------------------------------------------------------------------------
# Repository
# ---------------------------------------------------------------------------


class AuthStore:
    """Repository for users, sessions, login attempts and reset records.

    Usage:
        store = AuthStore()
        user_id = store.create_user(User(username="alice", password_hash=hash_password("..."), ...))
        user = store.get_user_by_username("alice")
        store.close()
    """

    def __init__(self, db_url: str | None = None) -> None:
        db_url = db_url or get_settings().database_url
        connect_args: dict = {}
        if db_url.startswith("sqlite"):
            connect_args["check_same_thread"] = False
            connect_args["timeout"] = _SQLITE_TIMEOUT_SECONDS
        self.engine: Engine = create_engine(db_url, connect_args=connect_args, pool_pre_ping=True)
        if db_url.startswith("sqlite"):
            event.listen(self.engine, "connect", _configure_sqlite)
        _metadata.create_all(self.engine)

    def ping(self) -> bool:
        """Return True if the database answers a trivial query."""
        with self.engine.connect() as conn:
            return conn.execute(select(1)).scalar() == 1

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    def create_user(self, user: User) -> int:
        """Insert a new user and return its assigned database ID.

        Raises sqlalchemy.exc.IntegrityError if the username or email already
        exists. Callers translate that into a 409 -- it is the signal that a
        concurrent registration won the race.
        """
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.insert().values(
                    username=user.username,
                    email=user.email,
                    password_hash=user.password_hash,
                    is_active=user.is_active,
                    failed_login_count=0,
                    locked_until=None,
                    last_login_at=None,
                    password_updated_at=user.password_updated_at,
                    created_at=user.created_at,
                    updated_at=user.updated_at or user.created_at,
                )
            )
            conn.commit()
            return result.inserted_primary_key[0]

    def get_user_by_id(self, user_id: int) -> User | None:
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.id == user_id)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_username(self, username: str) -> User | None:
        """Exact match. Callers pass the normalized (lower-cased) username."""
        with self.engine.connect() as conn:
            row = conn.execute(_users.select().where(_users.c.username == username)).fetchone()
        return _row_to_user(row) if row is not None else None

    def get_user_by_email(self, *candidates: str) -> User | None:
        """Return the first user whose email equals any of the candidates."""
        if not candidates:
            return None
        with self.engine.connect() as conn:
            row = conn.execute(
                _users.select().where(_users.c.email.in_(candidates)).order_by(_users.c.id).limit(1)
            ).fetchone()
        return _row_to_user(row) if row is not None else None

    def set_password(self, user_id: int, password_hash: str, now: int, *, clear_lockout: bool = True) -> bool:
        """Replace the password digest. Optionally clears counter and lock."""
        values: dict = {"password_hash": password_hash, "password_updated_at": now, "updated_at": now}
        if clear_lockout:
            values.update(failed_login_count=0, locked_until=None)
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    def set_active(self, user_id: int, is_active: bool, now: int) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(
                _users.update().where(_users.c.id == user_id).values(is_active=is_active, updated_at=now)
            )
            conn.commit()
        return result.rowcount > 0

    def register_failed_login(self, user_id: int, now: int, threshold: int, lock_until: int) -> tuple[bool, bool]:
        """Count one failed login and set the lock if the threshold is reached.

        Returns (counted, locked_now):
          counted    -- False if a lock was already active (nothing changed).
          locked_now -- True if this call set the lock.

        Both statements are conditional on "no active lock" and run in one
        transaction. The increment is done in SQL (failed_login_count + 1)
        so two concurrent failures cannot both read N and both write N+1.
        """
        not_locked = or_(_users.c.locked_until.is_(None), _users.c.locked_until <= now)
        with self.engine.begin() as conn:
            counted = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & not_locked)
                .values(failed_login_count=_users.c.failed_login_count + 1, updated_at=now)
            ).rowcount
            if counted == 0:
                return False, False
            locked = conn.execute(
                _users.update()
                .where((_users.c.id == user_id) & not_locked & (_users.c.failed_login_count >= threshold))
                .values(failed_login_count=0, locked_until=lock_until, updated_at=now)
            ).rowcount
        return True, locked > 0

    def clear_lockout(self, user_id: int, now: int, *, stamp_login: bool = False) -> bool:
        values: dict = {"failed_login_count": 0, "locked_until": None, "updated_at": now}
        if stamp_login:
            values["last_login_at"] = now
        with self.engine.connect() as conn:
            result = conn.execute(_users.update().where(_users.c.id == user_id).values(**values))
            conn.commit()
        return result.rowcount > 0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def insert_session(self, session: Session) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _sessions.insert().values(
                    id=session.id,
                    user_id=session.user_id,
                    created_at=session.created_at,
                    last_used_at=session.last_used_at,
                    expires_at=session.expires_at,
                    ip=session.ip,
                    user_agent=session.user_agent,
                )
            )
            conn.commit()

    def get_session(self, session_id: str) -> Session | None:
        with self.engine.connect() as conn:
            row = conn.execute(_sessions.select().where(_sessions.c.id == session_id)).fetchone()
        return _row_to_session(row) if row is not None else None

    def get_session_with_user(self, session_id: str) -> tuple[Session, User] | None:
        """Load a session and its owner in one round trip."""
        stmt = (
            select(_sessions, _users)
            .select_from(_sessions.join(_users, _sessions.c.user_id == _users.c.id))
            .where(_sessions.c.id == session_id)
        )
        with self.engine.connect() as conn:
            row = conn.execute(stmt).mappings().fetchone()
        if row is None:
            return None
        session = Session(
            id=row[_sessions.c.id],
            user_id=row[_sessions.c.user_id],
            created_at=row[_sessions.c.created_at],
            last_used_at=row[_sessions.c.last_used_at],
            expires_at=row[_sessions.c.expires_at],
            ip=row[_sessions.c.ip],
            user_agent=row[_sessions.c.user_agent],
        )
        user = User(
            id=row[_users.c.id],
            username=row[_users.c.username],
            email=row[_users.c.email],
            password_hash=row[_users.c.password_hash],
            is_active=bool(row[_users.c.is_active]),
            failed_login_count=row[_users.c.failed_login_count],
            locked_until=row[_users.c.locked_until],
            last_login_at=row[_users.c.last_login_at],
            password_updated_at=row[_users.c.password_updated_at],
            created_at=row[_users.c.created_at],
            updated_at=row[_users.c.updated_at],
        )
        return session, user

    def touch_session(self, session_id: str, now: int) -> bool:
        """Bump last_used_at. False means the row is gone (deleted concurrently)."""
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.update().where(_sessions.c.id == session_id).values(last_used_at=now))
            conn.commit()
        return result.rowcount > 0

    def delete_session(self, session_id: str) -> bool:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.id == session_id))
            conn.commit()
        return result.rowcount > 0

    def delete_user_sessions(self, user_id: int, except_id: str | None = None) -> int:
        where = _sessions.c.user_id == user_id
        if except_id is not None:
            where = where & (_sessions.c.id != except_id)
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(where))
            conn.commit()
        return result.rowcount

    def count_user_sessions(self, user_id: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(
                select(func.count()).select_from(_sessions).where(_sessions.c.user_id == user_id)
            ).scalar()
        return result or 0

    def list_user_sessions(self, user_id: int) -> list[Session]:
        """All sessions of a user, least-recently-used first."""
        with self.engine.connect() as conn:
            rows = conn.execute(
                _sessions.select()
                .where(_sessions.c.user_id == user_id)
                .order_by(_sessions.c.last_used_at, _sessions.c.created_at)
            ).fetchall()
        return [_row_to_session(r) for r in rows]

    def evict_oldest_sessions(self, user_id: int, keep_id: str, excess: int) -> int:
        """Delete the `excess` least-recently-used sessions of a user, never keep_id."""
        if excess <= 0:
            return 0
        with self.engine.begin() as conn:
            ids = conn.execute(
                select(_sessions.c.id)
                .where((_sessions.c.user_id == user_id) & (_sessions.c.id != keep_id))
                .order_by(_sessions.c.last_used_at, _sessions.c.created_at)
                .limit(excess)
            ).scalars().all()
            if not ids:
                return 0
            result = conn.execute(_sessions.delete().where(_sessions.c.id.in_(ids)))
        return result.rowcount

    def delete_expired_sessions(self, now: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_sessions.delete().where(_sessions.c.expires_at < now))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Login attempts
    # ------------------------------------------------------------------

    def add_login_attempt(self, attempt: LoginAttempt) -> None:
        with self.engine.connect() as conn:
            conn.execute(
                _login_attempts.insert().values(
                    ip=attempt.ip,
                    username_key=attempt.username_key,
                    success=attempt.success,
                    created_at=attempt.created_at,
                )
            )
            conn.commit()

    def login_attempt_window(
        self, since: int, *, ip: str | None = None, username_key: str | None = None
    ) -> tuple[int, int | None]:
        """Return (count, oldest created_at) of attempts at or after `since` for one dimension."""
        if ip is not None:
            where = _login_attempts.c.ip == ip
        elif username_key is not None:
            where = _login_attempts.c.username_key == username_key
        else:
            raise ValueError("login_attempt_window() needs ip or username_key")
        stmt = select(func.count(), func.min(_login_attempts.c.created_at)).where(
            where & (_login_attempts.c.created_at >= since)
        )
        with self.engine.connect() as conn:
            count, oldest = conn.execute(stmt).one()
        return count or 0, oldest

    def delete_login_attempts_before(self, cutoff: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_login_attempts.delete().where(_login_attempts.c.created_at < cutoff))
            conn.commit()
        return result.rowcount

    # ------------------------------------------------------------------
    # Password reset tokens and requests
    # ------------------------------------------------------------------

    def add_reset_request(self, request: PasswordResetRequest) -> None:
        with self.engine.connect() as conn:
            conn.execute(_reset_requests.insert().values(ip=request.ip, created_at=request.created_at))
            conn.commit()

    def reset_request_window(self, ip: str, since: int) -> tuple[int, int | None]:
        stmt = select(func.count(), func.min(_reset_requests.c.created_at)).where(
            (_reset_requests.c.ip == ip) & (_reset_requests.c.created_at >= since)
        )
        with self.engine.connect() as conn:
            count, oldest = conn.execute(stmt).one()
        return count or 0, oldest

    def reset_token_window(self, user_id: int, since: int) -> tuple[int, int | None]:
        stmt = select(func.count(), func.min(_reset_tokens.c.created_at)).where(
            (_reset_tokens.c.user_id == user_id) & (_reset_tokens.c.created_at >= since)
        )
        with self.engine.connect() as conn:
            count, oldest = conn.execute(stmt).one()
        return count or 0, oldest

    def create_reset_token(self, token: PasswordResetToken, ip: str) -> None:
        """Insert the token and its request-log row in one transaction."""
        with self.engine.begin() as conn:
            conn.execute(
                _reset_tokens.insert().values(
                    token_hash=token.token_hash,
                    user_id=token.user_id,
                    created_at=token.created_at,
                    expires_at=token.expires_at,
                    used_at=None,
                )
            )
            conn.execute(_reset_requests.insert().values(ip=ip, created_at=token.created_at))

    def get_reset_token(self, token_hash: str) -> PasswordResetToken | None:
        with self.engine.connect() as conn:
            row = conn.execute(_reset_tokens.select().where(_reset_tokens.c.token_hash == token_hash)).fetchone()
        return _row_to_reset_token(row) if row is not None else None

    def redeem_reset_token(self, token_hash: str, password_hash: str, now: int) -> int | None:
        """Consume a reset token and rotate the owner's password atomically.

        Returns the owner's user id, or None if the token is unknown, expired,
        already used, or owned by an inactive account.

        One transaction:
          1. Conditional UPDATE used_at = now WHERE token_hash matches AND
             used_at IS NULL AND expires_at >= now. rowcount 0 -> None.
             Two concurrent callers cannot both see rowcount 1.
          2. Load the owner; inactive -> roll back (used_at returns to NULL).
          3. Write the digest, clear lockout, delete every session.
        Any exception in 2-3 rolls back step 1 too, so a failed consumption
        never leaves the token silently burned.
        """
        with self.engine.connect() as conn:
            trans = conn.begin()
            try:
                claimed = conn.execute(
                    _reset_tokens.update()
                    .where(
                        (_reset_tokens.c.token_hash == token_hash)
                        & _reset_tokens.c.used_at.is_(None)
                        & (_reset_tokens.c.expires_at >= now)
                    )
                    .values(used_at=now)
                ).rowcount
                if claimed != 1:
                    trans.rollback()
                    return None
                owner = conn.execute(
                    select(_users.c.id, _users.c.is_active)
                    .select_from(_reset_tokens.join(_users, _reset_tokens.c.user_id == _users.c.id))
                    .where(_reset_tokens.c.token_hash == token_hash)
                ).fetchone()
                if owner is None or not owner.is_active:
                    trans.rollback()
                    return None
                conn.execute(
                    _users.update()
                    .where(_users.c.id == owner.id)
                    .values(
                        password_hash=password_hash,
                        password_updated_at=now,
                        failed_login_count=0,
                        locked_until=None,
                        updated_at=now,
                    )
                )
                conn.execute(_sessions.delete().where(_sessions.c.user_id == owner.id))
                trans.commit()
            except Exception:
                trans.rollback()
                raise
        return owner.id

    def delete_reset_requests_before(self, cutoff: int) -> int:
        with self.engine.connect() as conn:
            result = conn.execute(_reset_requests.delete().where(_reset_requests.c.created_at < cutoff))
            conn.commit()
        return result.rowcount

    def delete_spent_reset_tokens(self, now: int, created_before: int) -> int:
        """Delete used or expired tokens created before `created_before`.

        created_before keeps tokens that still count toward the per-user
        request window.
        """
        spent = or_(_reset_tokens.c.used_at.is_not(None), _reset_tokens.c.expires_at < now)
        with self.engine.connect() as conn:
            result = conn.execute(
                _reset_tokens.delete().where(spent & (_reset_tokens.c.created_at < created_before))
            )
            conn.commit()
        return result.rowcount

    def close(self) -> None:
        self.engine.dispose()


# ---------------------------------------------------------------------------
# Row mappers (Data Mapper pattern)
# ---------------------------------------------------------------------------


def _row_to_user(row) -> User:
    return User(
        id=row.id,
        username=row.username,
        email=row.email,
        password_hash=row.password_hash,
        is_active=bool(row.is_active),
        failed_login_count=row.failed_login_count,
        locked_until=row.locked_until,
        last_login_at=row.last_login_at,
        password_updated_at=row.password_updated_at,
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _row_to_session(row) -> Session:
    return Session(
        id=row.id,
        user_id=row.user_id,
        created_at=row.created_at,
        last_used_at=row.last_used_at,
        expires_at=row.expires_at,
        ip=row.ip,
        user_agent=row.user_agent,
    )


def _row_to_reset_token(row) -> PasswordResetToken:
    return PasswordResetToken(
        id=row.id,
        token_hash=row.token_hash,
        user_id=row.user_id,
        created_at=row.created_at,
        expires_at=row.expires_at,
        used_at=row.used_at,
    )
