"""
core/config.py -- Centralized security configuration via pydantic-settings.

All environment variable reads for SessionGuard happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Field names map to env var names
      (e.g. session_max_age_ms -> SESSION_MAX_AGE_MS). Type coercion and
      per-field bounds are built in.

  frozen=True: the assembled configuration is immutable after startup.
      Any attempt to assign a field raises a ValidationError.

  @model_validator(mode="after"): cross-field invariants are checked once,
      at process startup. An invalid combination refuses to start instead of
      surfacing mid-request.

Security notes:
  [C2] Idle timeout must never exceed the absolute session lifetime.
  [C3] In production the session and CSRF cookie names must carry the
       __Host- prefix (Secure, Path=/, no Domain -- browser-enforced).
  [C4] FEATURE_DEV_RESET_LINK leaks reset links in API responses. It is a
       labeled development escape hatch and is rejected outright when
       APP_ENV=production.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessionguard.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'sessionguard_auth.db'}"

_SECOND_MS = 1000
_MINUTE_MS = 60 * _SECOND_MS
_HOUR_MS = 60 * _MINUTE_MS
_DAY_MS = 24 * _HOUR_MS

HOST_PREFIX = "__Host-"

SameSite = Literal["lax", "strict", "none"]


class Settings(BaseSettings):
    """Security settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Durations are integer milliseconds
    to match the stored timestamps.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    # Production is the default so a missing APP_ENV never relaxes checks.
    app_env: Literal["development", "test", "production"] = "production"
    database_url: str = _DEFAULT_DB_URL
    log_level: str = "INFO"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = []

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_cookie_name: str = Field(default="__Host-sid", min_length=1)
    session_max_age_ms: int = Field(default=7 * _DAY_MS, ge=_MINUTE_MS)
    session_idle_timeout_ms: int = Field(default=30 * _MINUTE_MS, ge=30 * _SECOND_MS)
    session_samesite: SameSite = "strict"
    session_rotation_interval_ms: int = Field(default=12 * _HOUR_MS, ge=_MINUTE_MS)
    session_max_sessions_per_user: int = Field(default=5, ge=1)

    # ------------------------------------------------------------------
    # CSRF (double-submit cookie)
    # ------------------------------------------------------------------

    csrf_cookie_name: str = Field(default="__Host-csrf", min_length=1)
    csrf_header_name: str = Field(default="x-csrf-token", min_length=1)
    csrf_samesite: SameSite = "strict"

    # ------------------------------------------------------------------
    # Login rate limiting and lockout
    # ------------------------------------------------------------------

    rate_limit_login_window_ms: int = Field(default=_MINUTE_MS, ge=_SECOND_MS)
    rate_limit_login_max_per_ip: int = Field(default=10, ge=1)
    rate_limit_login_max_per_username: int = Field(default=10, ge=1)

    lockout_threshold: int = Field(default=5, ge=1)
    lockout_duration_ms: int = Field(default=15 * _MINUTE_MS, ge=_SECOND_MS)

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    reset_token_ttl_ms: int = Field(default=30 * _MINUTE_MS, ge=_MINUTE_MS)
    reset_max_per_user: int = Field(default=3, ge=1)
    reset_window_ms: int = Field(default=15 * _MINUTE_MS, ge=_MINUTE_MS)
    reset_max_per_ip: int = Field(default=30, ge=1)
    reset_ip_window_ms: int = Field(default=15 * _MINUTE_MS, ge=_MINUTE_MS)
    # Development-only: echo the reset link in the API response [C4].
    feature_dev_reset_link: bool = False

    # ------------------------------------------------------------------
    # Network, retention, rotation policy
    # ------------------------------------------------------------------

    # Honour X-Forwarded-For / X-Real-IP only behind a trusted proxy.
    trust_proxy: bool = False

    retention_login_attempts_ms: int = Field(default=30 * _DAY_MS, ge=_MINUTE_MS)
    retention_reset_requests_ms: int = Field(default=30 * _DAY_MS, ge=_MINUTE_MS)
    prune_interval_seconds: int = Field(default=3600, ge=1)

    rotate_on_ip_change: bool = True
    rotate_on_ua_change: bool = True

    # In-process soft limit (slowapi syntax). Not authoritative.
    register_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Password hashing (argon2id)
    # ------------------------------------------------------------------

    password_hash_time_cost: int = Field(default=3, ge=1)
    password_hash_memory_kib: int = Field(default=64 * 1024, ge=8)
    password_hash_parallelism: int = Field(default=1, ge=1)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_invariants(self) -> "Settings":
        """Enforce cross-field invariants at startup [C2][C3][C4]."""
        if self.session_idle_timeout_ms > self.session_max_age_ms:
            raise ValueError(
                f"SESSION_IDLE_TIMEOUT_MS ({self.session_idle_timeout_ms}) must be "
                f"<= SESSION_MAX_AGE_MS ({self.session_max_age_ms})."
            )
        if self.is_production:
            if not self.session_cookie_name.startswith(HOST_PREFIX):
                raise ValueError(f"SESSION_COOKIE_NAME must start with {HOST_PREFIX} in production.")
            if not self.csrf_cookie_name.startswith(HOST_PREFIX):
                raise ValueError(f"CSRF_COOKIE_NAME must start with {HOST_PREFIX} in production.")
            if self.feature_dev_reset_link:
                raise ValueError("FEATURE_DEV_RESET_LINK cannot be enabled in production.")
        elif self.feature_dev_reset_link:
            logger.warning("FEATURE_DEV_RESET_LINK is enabled: reset links will be returned in API responses.")
        return self

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def session_max_age_seconds(self) -> int:
        """Cookie Max-Age for both the session and the CSRF cookie."""
        return self.session_max_age_ms // 1000


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or build Settings(...) directly.
    """
    return Settings()
