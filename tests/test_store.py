"""
tests/test_store.py -- Unit tests for auth/store.py.

Uses an in-memory SQLite database (":memory:") so tests are fast and isolated.
Each test receives a fresh AuthStore from the store fixture.

Covers:
  - uniqueness of username and email (IntegrityError), optional emails coexist
  - email lookup across candidate spellings
  - register_failed_login(): conditional increment and lock setting
  - session touch/evict helpers and the sliding-window count queries
"""

from __future__ import annotations

import pytest
from sqlalchemy.exc import IntegrityError

from auth.models import LoginAttempt, Session, User


def _user(username: str, email: str | None = None) -> User:
    return User(username=username, email=email, password_hash="x", created_at=1, updated_at=1)


def _session(session_id: str, user_id: int, last_used_at: int) -> Session:
    return Session(
        id=session_id,
        user_id=user_id,
        created_at=last_used_at,
        last_used_at=last_used_at,
        expires_at=last_used_at + 60_000,
    )


class TestUsers:
    def test_ping(self, store) -> None:
        assert store.ping() is True

    def test_create_and_fetch(self, store) -> None:
        user_id = store.create_user(_user("alice", "alice@example.com"))
        user = store.get_user_by_id(user_id)
        assert user.username == "alice"
        assert user.is_active is True
        assert user.failed_login_count == 0
        assert store.get_user_by_username("alice").id == user_id

    def test_duplicate_username_raises_integrity_error(self, store) -> None:
        store.create_user(_user("alice"))
        with pytest.raises(IntegrityError):
            store.create_user(_user("alice"))

    def test_duplicate_email_raises_integrity_error(self, store) -> None:
        store.create_user(_user("alice", "same@example.com"))
        with pytest.raises(IntegrityError):
            store.create_user(_user("bob", "same@example.com"))

    def test_users_without_email_coexist(self, store) -> None:
        store.create_user(_user("alice"))
        store.create_user(_user("bob"))
        assert store.get_user_by_username("bob").email is None

    def test_email_lookup_matches_any_candidate(self, store) -> None:
        user_id = store.create_user(_user("alice", "alice@example.com"))
        assert store.get_user_by_email("ALICE@example.com", "alice@example.com").id == user_id
        assert store.get_user_by_email("ALICE@example.com") is None
        assert store.get_user_by_email() is None

    def test_unknown_user(self, store) -> None:
        assert store.get_user_by_id(404) is None
        assert store.get_user_by_username("nobody") is None


class TestRegisterFailedLogin:
    def test_counts_below_threshold(self, store) -> None:
        user_id = store.create_user(_user("alice"))
        assert store.register_failed_login(user_id, 1_000, threshold=3, lock_until=2_000) == (True, False)
        assert store.register_failed_login(user_id, 1_000, threshold=3, lock_until=2_000) == (True, False)
        assert store.get_user_by_id(user_id).failed_login_count == 2

    def test_threshold_sets_lock_and_resets_counter(self, store) -> None:
        user_id = store.create_user(_user("alice"))
        store.register_failed_login(user_id, 1_000, threshold=2, lock_until=9_000)
        assert store.register_failed_login(user_id, 1_000, threshold=2, lock_until=9_000) == (True, True)
        user = store.get_user_by_id(user_id)
        assert user.locked_until == 9_000
        assert user.failed_login_count == 0

    def test_refuses_while_locked(self, store) -> None:
        user_id = store.create_user(_user("alice"))
        store.register_failed_login(user_id, 1_000, threshold=1, lock_until=9_000)
        assert store.register_failed_login(user_id, 5_000, threshold=1, lock_until=20_000) == (False, False)
        assert store.get_user_by_id(user_id).locked_until == 9_000

    def test_counts_again_once_lock_passed(self, store) -> None:
        user_id = store.create_user(_user("alice"))
        store.register_failed_login(user_id, 1_000, threshold=2, lock_until=9_000)
        store.register_failed_login(user_id, 1_000, threshold=2, lock_until=9_000)
        assert store.register_failed_login(user_id, 9_000, threshold=2, lock_until=20_000) == (True, False)

    def test_clear_lockout_stamps_login_on_request(self, store) -> None:
        user_id = store.create_user(_user("alice"))
        store.register_failed_login(user_id, 1_000, threshold=1, lock_until=9_000)
        assert store.clear_lockout(user_id, 2_000, stamp_login=True)
        user = store.get_user_by_id(user_id)
        assert user.locked_until is None
        assert user.last_login_at == 2_000


class TestSessions:
    def test_touch_missing_session(self, store) -> None:
        assert store.touch_session("gone", 1_000) is False

    def test_get_session_with_user(self, store) -> None:
        user_id = store.create_user(_user("alice"))
        store.insert_session(_session("s1", user_id, 1_000))
        session, user = store.get_session_with_user("s1")
        assert session.user_id == user_id
        assert user.username == "alice"
        assert store.get_session_with_user("missing") is None

    def test_evict_never_removes_keep_id(self, store) -> None:
        user_id = store.create_user(_user("alice"))
        store.insert_session(_session("oldest", user_id, 1_000))
        store.insert_session(_session("middle", user_id, 2_000))
        store.insert_session(_session("newest", user_id, 3_000))
        assert store.evict_oldest_sessions(user_id, keep_id="oldest", excess=1) == 1
        assert [s.id for s in store.list_user_sessions(user_id)] == ["oldest", "newest"]

    def test_evict_nothing_when_no_excess(self, store) -> None:
        user_id = store.create_user(_user("alice"))
        store.insert_session(_session("s1", user_id, 1_000))
        assert store.evict_oldest_sessions(user_id, keep_id="s1", excess=0) == 0

    def test_delete_expired(self, store) -> None:
        user_id = store.create_user(_user("alice"))
        store.insert_session(_session("s1", user_id, 1_000))
        assert store.delete_expired_sessions(61_000) == 0
        assert store.delete_expired_sessions(61_001) == 1


class TestWindows:
    def test_login_window_counts_and_oldest(self, store) -> None:
        for ts in (1_000, 2_000, 3_000):
            store.add_login_attempt(LoginAttempt(ip="10.0.0.1", username_key="alice", success=False, created_at=ts))
        assert store.login_attempt_window(2_000, ip="10.0.0.1") == (2, 2_000)
        assert store.login_attempt_window(0, username_key="alice") == (3, 1_000)
        assert store.login_attempt_window(5_000, ip="10.0.0.1") == (0, None)

    def test_login_window_needs_a_dimension(self, store) -> None:
        with pytest.raises(ValueError):
            store.login_attempt_window(0)
