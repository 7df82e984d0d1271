"""
tests/test_rate_limit.py -- Unit tests for auth/rate_limit.py.

Covers:
  - retry_after_seconds() arithmetic and clamping
  - login: the (M+1)-th attempt from one IP inside the window is denied,
    with Retry-After <= window; allowed again once the oldest attempt ages out
  - login: IP dimension is reported before username; missing dimensions count as zero
  - reset: per-IP and per-user limits
  - prune() honours retention windows
"""

from __future__ import annotations

import pytest

from auth.models import PasswordResetToken
from auth.rate_limit import RateLimiter, retry_after_seconds


@pytest.fixture
def limiter(store, settings, clock) -> RateLimiter:
    return RateLimiter(store, settings, clock)


class TestRetryAfter:
    def test_counts_from_oldest_row(self) -> None:
        assert retry_after_seconds(oldest=10_000, window_ms=60_000, now=40_000) == 30

    def test_rounds_up(self) -> None:
        assert retry_after_seconds(oldest=10_000, window_ms=60_000, now=40_001) == 30
        assert retry_after_seconds(oldest=10_000, window_ms=60_000, now=39_999) == 31

    def test_clamped_to_at_least_one_second(self) -> None:
        assert retry_after_seconds(oldest=0, window_ms=60_000, now=60_000) == 1

    def test_never_exceeds_window(self) -> None:
        assert retry_after_seconds(oldest=None, window_ms=60_000, now=0) == 60
        assert retry_after_seconds(oldest=100_000, window_ms=60_000, now=0) == 60


class TestLoginRateLimit:
    def test_denies_attempt_after_ip_maximum(self, limiter, settings) -> None:
        maximum = settings.rate_limit_login_max_per_ip
        for i in range(maximum):
            assert limiter.check_login_rate_limit("10.0.0.1", f"user{i}").allowed
            limiter.record_login_attempt("10.0.0.1", f"user{i}", success=False)

        check = limiter.check_login_rate_limit("10.0.0.1", "someone_else")
        assert not check.allowed
        assert check.reason == "ip"
        assert check.ip_count == maximum
        assert 1 <= check.retry_after_seconds <= settings.rate_limit_login_window_ms // 1000

    def test_allowed_again_after_window_passes_oldest_attempt(self, limiter, settings, clock) -> None:
        for _ in range(settings.rate_limit_login_max_per_ip):
            limiter.record_login_attempt("10.0.0.1", None, success=False)
            clock.advance(1_000)
        assert not limiter.check_login_rate_limit("10.0.0.1", None).allowed

        # The first attempt was recorded max_per_ip seconds ago; move it just outside the window.
        clock.advance(settings.rate_limit_login_window_ms - settings.rate_limit_login_max_per_ip * 1_000 + 1)
        assert limiter.check_login_rate_limit("10.0.0.1", None).allowed

    def test_retry_after_tracks_the_oldest_attempt(self, limiter, settings, clock) -> None:
        for _ in range(settings.rate_limit_login_max_per_ip):
            limiter.record_login_attempt("10.0.0.1", None, success=True)
        clock.advance(20_000)
        check = limiter.check_login_rate_limit("10.0.0.1", None)
        assert check.retry_after_seconds == settings.rate_limit_login_window_ms // 1000 - 20

    def test_username_dimension_counts_across_ips(self, limiter, settings) -> None:
        for i in range(settings.rate_limit_login_max_per_username):
            limiter.record_login_attempt(f"10.0.1.{i}", "alice", success=False)
        check = limiter.check_login_rate_limit("10.0.2.1", "alice")
        assert not check.allowed
        assert check.reason == "username"

    def test_ip_reported_before_username(self, limiter, settings) -> None:
        for _ in range(max(settings.rate_limit_login_max_per_ip, settings.rate_limit_login_max_per_username)):
            limiter.record_login_attempt("10.0.0.1", "alice", success=False)
        assert limiter.check_login_rate_limit("10.0.0.1", "alice").reason == "ip"

    def test_missing_dimensions_never_deny(self, limiter, settings) -> None:
        for _ in range(settings.rate_limit_login_max_per_ip + 5):
            limiter.record_login_attempt(None, None, success=False)
        check = limiter.check_login_rate_limit(None, None)
        assert check.allowed
        assert check.ip_count == 0
        assert check.username_count == 0

    def test_successful_attempts_count_too(self, limiter, settings) -> None:
        for _ in range(settings.rate_limit_login_max_per_ip):
            limiter.record_login_attempt("10.0.0.1", "alice", success=True)
        assert not limiter.check_login_rate_limit("10.0.0.1", "bob").allowed


class TestResetRateLimit:
    def test_ip_limit(self, limiter, settings) -> None:
        for _ in range(settings.reset_max_per_ip):
            assert limiter.check_reset_ip_limit("10.0.0.1").allowed
            limiter.record_reset_request("10.0.0.1")
        check = limiter.check_reset_ip_limit("10.0.0.1")
        assert not check.allowed
        assert check.reason == "ip"
        assert limiter.check_reset_ip_limit("10.0.0.2").allowed

    def test_missing_ip_is_bucketed_as_unknown(self, limiter, settings) -> None:
        for _ in range(settings.reset_max_per_ip):
            limiter.record_reset_request(None)
        assert not limiter.check_reset_ip_limit(None).allowed

    def test_user_limit_counts_issued_tokens(self, limiter, store, settings, clock, make_user) -> None:
        user = make_user()
        for i in range(settings.reset_max_per_user):
            assert limiter.check_reset_user_limit(user.id).allowed
            store.create_reset_token(
                PasswordResetToken(
                    token_hash=f"hash-{i}",
                    user_id=user.id,
                    created_at=clock(),
                    expires_at=clock() + settings.reset_token_ttl_ms,
                ),
                ip="10.0.0.1",
            )
        check = limiter.check_reset_user_limit(user.id)
        assert not check.allowed
        assert check.reason == "user"

        clock.advance(settings.reset_window_ms + 1)
        assert limiter.check_reset_user_limit(user.id).allowed


class TestPrune:
    def test_prune_drops_only_rows_past_retention(self, limiter, store, settings, clock) -> None:
        limiter.record_login_attempt("10.0.0.1", "alice", success=False)
        limiter.record_reset_request("10.0.0.1")
        clock.advance(max(settings.retention_login_attempts_ms, settings.retention_reset_requests_ms) + 1)
        limiter.record_login_attempt("10.0.0.1", "alice", success=False)
        limiter.record_reset_request("10.0.0.1")

        assert limiter.prune() == {"login_attempts": 1, "reset_requests": 1}
        assert store.login_attempt_window(0, ip="10.0.0.1")[0] == 1
        assert store.reset_request_window("10.0.0.1", 0)[0] == 1
