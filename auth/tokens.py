"""
auth/tokens.py -- Random identifiers and one-way token digests.

Security design decisions:
  Session ids: secrets.token_urlsafe(27) -> 36 URL-safe characters, 216 bits
       of entropy. The id is a bearer capability and is only ever matched
       exactly against the primary key.

  CSRF tokens: 32 random bytes, URL-safe. Not secret from same-origin script
       (that is the point of double-submit), but unguessable cross-origin.

  Reset tokens: 32 random bytes, URL-safe, returned to the caller exactly
       once. We store SHA-256(raw) base64url-encoded. A plain hash (no key,
       no slow KDF) is enough: the input is 256 bits of entropy, so there is
       nothing to brute-force, and a deterministic digest lets the store find
       the row with one indexed equality lookup.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import base64
import hashlib
import secrets
import time
from typing import Callable

SESSION_ID_BYTES = 27  # -> 36 chars
CSRF_TOKEN_BYTES = 32
RESET_TOKEN_BYTES = 32

Clock = Callable[[], int]


def now_ms() -> int:
    """Current wall-clock time in integer epoch milliseconds."""
    return time.time_ns() // 1_000_000


def generate_session_id() -> str:
    return secrets.token_urlsafe(SESSION_ID_BYTES)


def generate_csrf_token(byte_length: int = CSRF_TOKEN_BYTES) -> str:
    return secrets.token_urlsafe(byte_length)


def hash_token(raw_token: str) -> str:
    """Return base64url(SHA-256(raw_token)) without padding."""
    digest = hashlib.sha256(raw_token.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_token(byte_length: int = RESET_TOKEN_BYTES) -> tuple[str, str]:
    """Generate an opaque single-use token.

    Returns (raw_token, token_hash). Persist only token_hash; hand raw_token
    to the out-of-band channel and drop it.
    """
    raw_token = secrets.token_urlsafe(byte_length)
    return raw_token, hash_token(raw_token)
