#!/usr/bin/env python3
"""
SessionGuard -- administrative command line.

Usage:
  python main.py check-config
  python main.py prune
  python main.py unlock USERNAME

check-config validates the environment exactly as the API does at startup
and prints a summary; exit status 1 means the API would refuse to start.
prune runs one retention pass (the API also runs it on a timer).
unlock clears the failed-login counter and lock of one account.

Configuration comes from environment variables and .env, see core/config.py.
"""

import argparse
import logging
import sys
from typing import Optional

from pydantic import ValidationError

from core.config import get_settings


def _check_config() -> int:
    try:
        settings = get_settings()
    except ValidationError as e:
        print("  [!] Invalid configuration:")
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"]) or "settings"
            print(f"      {field}: {error['msg']}")
        return 1

    # Imported here: auth.passwords reads settings at import time.
    from auth.passwords import hasher_summary

    print("SessionGuard configuration")
    print("-" * 40)
    print(f"  environment         {settings.app_env}")
    print(f"  database            {settings.database_url}")
    print(f"  session cookie      {settings.session_cookie_name} (samesite={settings.session_samesite})")
    print(f"  csrf cookie         {settings.csrf_cookie_name} header={settings.csrf_header_name}")
    print(
        f"  session lifetime    max_age={settings.session_max_age_ms}ms idle={settings.session_idle_timeout_ms}ms "
        f"rotate_every={settings.session_rotation_interval_ms}ms cap={settings.session_max_sessions_per_user}"
    )
    print(
        f"  login limits        {settings.rate_limit_login_max_per_ip}/ip "
        f"{settings.rate_limit_login_max_per_username}/username per {settings.rate_limit_login_window_ms}ms"
    )
    print(f"  lockout             {settings.lockout_threshold} failures -> {settings.lockout_duration_ms}ms")
    print(
        f"  password reset      ttl={settings.reset_token_ttl_ms}ms {settings.reset_max_per_user}/user "
        f"{settings.reset_max_per_ip}/ip dev_link={settings.feature_dev_reset_link}"
    )
    print(f"  password hashing    {hasher_summary()}")
    print("  OK")
    return 0


def _prune() -> int:
    from auth.maintenance import prune_expired_records
    from auth.rate_limit import RateLimiter
    from auth.reset import PasswordResetWorkflow
    from auth.sessions import SessionManager
    from auth.store import AuthStore

    settings = get_settings()
    store = AuthStore(settings.database_url)
    try:
        rate_limiter = RateLimiter(store, settings)
        counts = prune_expired_records(
            SessionManager(store, settings),
            rate_limiter,
            PasswordResetWorkflow(store, rate_limiter, settings),
        )
    finally:
        store.close()
    for table, count in counts.items():
        print(f"  {table:<16} {count if count >= 0 else 'FAILED'}")
    return 1 if any(count < 0 for count in counts.values()) else 0


def _unlock(username: str) -> int:
    from auth.accounts import normalize_username
    from auth.lockout import LockoutGuard
    from auth.store import AuthStore

    settings = get_settings()
    store = AuthStore(settings.database_url)
    try:
        user = store.get_user_by_username(normalize_username(username))
        if user is None:
            print(f"  [!] No account named '{username}'.")
            return 1
        LockoutGuard(store, settings).unlock(user.id)
    finally:
        store.close()
    print(f"  Unlocked '{user.username}'.")
    return 0


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sessionguard",
        description="Administrative commands for the SessionGuard auth store.",
    )
    commands = parser.add_subparsers(dest="command", required=True, metavar="COMMAND")
    commands.add_parser("check-config", help="Validate configuration and print a summary")
    commands.add_parser("prune", help="Delete expired sessions, old attempt logs and spent reset tokens")
    unlock = commands.add_parser("unlock", help="Clear the failed-login counter and lock of an account")
    unlock.add_argument("username", metavar="USERNAME", help="Account to unlock")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)-5s %(name)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "check-config":
        return _check_config()
    if args.command == "prune":
        return _prune()
    return _unlock(args.username)


if __name__ == "__main__":
    sys.exit(main())
