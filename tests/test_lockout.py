"""
tests/test_lockout.py -- Unit tests for auth/lockout.py.

Covers:
  - is_locked() is pure and clamps remaining_ms at zero
  - threshold - 1 failures leave the account unlocked; the threshold-th locks it
  - the lock resets the counter, and failures while locked change nothing
  - remaining_ms decreases with time and reaches zero by lockout_duration_ms
  - successful login and admin unlock clear counter and lock
  - concurrent failures lose no increment and set the lock once
"""

from __future__ import annotations

import threading

import pytest

from auth.lockout import LockoutGuard, is_locked
from auth.models import User
from auth.store import AuthStore

from conftest import FakeClock


@pytest.fixture
def guard(store, settings, clock) -> LockoutGuard:
    return LockoutGuard(store, settings, clock)


class TestIsLocked:
    def test_no_lock(self) -> None:
        status = is_locked(None, 1_000)
        assert not status.locked
        assert status.remaining_ms == 0

    def test_future_lock(self) -> None:
        status = is_locked(5_000, 1_000)
        assert status.locked
        assert status.remaining_ms == 4_000

    def test_past_lock_clamps_to_zero(self) -> None:
        status = is_locked(1_000, 5_000)
        assert not status.locked
        assert status.remaining_ms == 0

    def test_lock_ending_exactly_now_is_not_locked(self) -> None:
        assert not is_locked(5_000, 5_000).locked


class TestRecordFailedLogin:
    def test_threshold_minus_one_failures_leave_account_unlocked(self, guard, store, settings, make_user) -> None:
        user = make_user()
        for _ in range(settings.lockout_threshold - 1):
            status = guard.record_failed_login(store.get_user_by_id(user.id))
            assert not status.locked
        fresh = store.get_user_by_id(user.id)
        assert fresh.failed_login_count == settings.lockout_threshold - 1
        assert fresh.locked_until is None

    def test_threshold_failures_lock_for_full_duration(self, guard, store, settings, clock, make_user) -> None:
        user = make_user()
        status = None
        for _ in range(settings.lockout_threshold):
            status = guard.record_failed_login(store.get_user_by_id(user.id))
        assert status.locked
        assert status.remaining_ms == settings.lockout_duration_ms
        fresh = store.get_user_by_id(user.id)
        assert fresh.locked_until == clock() + settings.lockout_duration_ms
        assert fresh.failed_login_count == 0, "Setting the lock must reset the counter"

    def test_failures_while_locked_do_not_extend_lock(self, guard, store, settings, clock, make_user) -> None:
        user = make_user()
        for _ in range(settings.lockout_threshold):
            guard.record_failed_login(store.get_user_by_id(user.id))
        locked_until = store.get_user_by_id(user.id).locked_until

        clock.advance(60_000)
        status = guard.record_failed_login(store.get_user_by_id(user.id))
        assert status.locked
        fresh = store.get_user_by_id(user.id)
        assert fresh.locked_until == locked_until
        assert fresh.failed_login_count == 0

    def test_stale_user_snapshot_cannot_count_against_a_locked_account(
        self, guard, store, settings, make_user
    ) -> None:
        """A caller holding a pre-lock snapshot still sees the lock; the store refuses the increment."""
        user = make_user()
        stale = store.get_user_by_id(user.id)
        for _ in range(settings.lockout_threshold):
            guard.record_failed_login(store.get_user_by_id(user.id))
        status = guard.record_failed_login(stale)
        assert status.locked
        assert store.get_user_by_id(user.id).failed_login_count == 0

    def test_remaining_decreases_and_expires(self, guard, store, settings, clock, make_user) -> None:
        user = make_user()
        for _ in range(settings.lockout_threshold):
            guard.record_failed_login(store.get_user_by_id(user.id))

        first = guard.status(store.get_user_by_id(user.id)).remaining_ms
        clock.advance(1_000)
        second = guard.status(store.get_user_by_id(user.id)).remaining_ms
        assert second < first

        clock.advance(settings.lockout_duration_ms)
        assert not guard.status(store.get_user_by_id(user.id)).locked

    def test_account_starts_fresh_after_lock_expires(self, guard, store, settings, clock, make_user) -> None:
        user = make_user()
        for _ in range(settings.lockout_threshold):
            guard.record_failed_login(store.get_user_by_id(user.id))
        clock.advance(settings.lockout_duration_ms + 1)

        status = guard.record_failed_login(store.get_user_by_id(user.id))
        assert not status.locked
        assert store.get_user_by_id(user.id).failed_login_count == 1


class TestClearing:
    def test_successful_login_clears_and_stamps(self, guard, store, clock, make_user) -> None:
        user = make_user()
        guard.record_failed_login(store.get_user_by_id(user.id))
        guard.record_successful_login(user.id)
        fresh = store.get_user_by_id(user.id)
        assert fresh.failed_login_count == 0
        assert fresh.locked_until is None
        assert fresh.last_login_at == clock()

    def test_unlock_clears_lock_without_stamping_login(self, guard, store, settings, make_user) -> None:
        user = make_user()
        for _ in range(settings.lockout_threshold):
            guard.record_failed_login(store.get_user_by_id(user.id))
        assert guard.unlock(user.id) is True
        fresh = store.get_user_by_id(user.id)
        assert fresh.locked_until is None
        assert fresh.last_login_at is None

    def test_unlock_unknown_user(self, guard) -> None:
        assert guard.unlock(9999) is False


class TestConcurrentFailures:
    """Failed logins racing on a file database, one connection per thread."""

    @staticmethod
    def _race(workers: int, action) -> list:
        barrier = threading.Barrier(workers)
        results: list = []
        lock = threading.Lock()

        def run() -> None:
            barrier.wait()
            outcome = action()
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=run) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=30)
        assert len(results) == workers
        return results

    @pytest.fixture
    def file_store(self, tmp_path):
        store = AuthStore(f"sqlite:///{tmp_path / 'lockout.db'}")
        yield store
        store.close()

    def test_no_increment_is_lost(self, file_store, settings) -> None:
        clock = FakeClock()
        guard = LockoutGuard(file_store, settings, clock)
        user_id = file_store.create_user(User(username="alice", password_hash="x", created_at=1, updated_at=1))
        snapshot = file_store.get_user_by_id(user_id)

        workers = settings.lockout_threshold - 1
        self._race(workers, lambda: guard.record_failed_login(snapshot))

        fresh = file_store.get_user_by_id(user_id)
        assert fresh.failed_login_count == workers
        assert fresh.locked_until is None

    def test_lock_is_set_exactly_once(self, file_store, settings) -> None:
        now = FakeClock()()
        user_id = file_store.create_user(User(username="alice", password_hash="x", created_at=1, updated_at=1))
        threshold = settings.lockout_threshold
        lock_until = now + settings.lockout_duration_ms

        results = self._race(
            threshold * 2,
            lambda: file_store.register_failed_login(user_id, now, threshold=threshold, lock_until=lock_until),
        )

        assert sum(locked_now for _, locked_now in results) == 1
        assert sum(counted for counted, _ in results) == threshold
        fresh = file_store.get_user_by_id(user_id)
        assert fresh.locked_until == lock_until
        assert fresh.failed_login_count == 0
