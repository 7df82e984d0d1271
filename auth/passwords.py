"""
auth/passwords.py -- Password hashing, rehash detection and password policy.

Security design decisions:
  Hashing: argon2id via argon2-cffi. Memory-hard, salted, and the digest
       encodes its own parameters ($argon2id$v=19$m=...,t=...,p=...), so a
       change of cost settings is detectable per digest with
       check_needs_rehash(). The login flow re-hashes transparently when
       needs_rehash is reported on a successful verify.

  Cost parameters come from Settings (PASSWORD_HASH_*). Production keeps
       the defaults (t=3, m=64 MiB, p=1); the test suite lowers them.

  Timing equalization [C1]: login must run a full verify even when the
       username does not exist, otherwise response time reveals which
       usernames are registered. burn_verify() runs against a dummy digest
       computed once at module load.

  Policy: at least 12 characters and at least 3 of 4 character classes.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from core.config import get_settings

_settings = get_settings()

_hasher = PasswordHasher(
    time_cost=_settings.password_hash_time_cost,
    memory_cost=_settings.password_hash_memory_kib,
    parallelism=_settings.password_hash_parallelism,
    hash_len=32,
    type=Type.ID,
)

PASSWORD_MIN_LENGTH = 12
PASSWORD_REQUIRED_CLASSES = 3

_CLASS_PATTERNS = (
    re.compile(r"[A-Z]"),
    re.compile(r"[a-z]"),
    re.compile(r"[0-9]"),
    re.compile(r"[^A-Za-z0-9]"),
)


@dataclass(frozen=True)
class VerifyResult:
    valid: bool
    needs_rehash: bool = False


def hash_password(plain: str) -> str:
    """Return an argon2id digest of the given plaintext password."""
    return _hasher.hash(plain)


def verify_password(plain: str, digest: str) -> VerifyResult:
    """Check plain against digest.

    needs_rehash is only meaningful when valid is True: it reports that the
    digest was produced with different cost parameters than the current ones.
    A malformed digest verifies as invalid rather than raising.
    """
    try:
        _hasher.verify(digest, plain)
    except (VerifyMismatchError, VerificationError, InvalidHashError):
        return VerifyResult(valid=False)
    return VerifyResult(valid=True, needs_rehash=_hasher.check_needs_rehash(digest))


# Computed once so the first unknown-user login is not measurably slower.
_DUMMY_HASH: str = hash_password("sessionguard_timing_dummy")


def burn_verify(plain: str) -> None:
    """Run a verify of equal cost that always fails [C1]."""
    verify_password(plain, _DUMMY_HASH)


def check_password_policy(password: str) -> list[str]:
    """Return the list of policy violations. Empty list means acceptable."""
    errors: list[str] = []
    if len(password) < PASSWORD_MIN_LENGTH:
        errors.append(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long.")
    classes = sum(1 for pattern in _CLASS_PATTERNS if pattern.search(password))
    if classes < PASSWORD_REQUIRED_CLASSES:
        errors.append(
            f"Password must include at least {PASSWORD_REQUIRED_CLASSES} of: uppercase, lowercase, digit, special."
        )
    return errors


def hasher_summary() -> str:
    return (
        f"argon2id m={_settings.password_hash_memory_kib} t={_settings.password_hash_time_cost} "
        f"p={_settings.password_hash_parallelism}"
    )
