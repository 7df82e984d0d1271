"""
tests/conftest.py -- Shared test fixtures for SessionGuard.

This module provides:
  - FakeClock / clock: a controllable epoch-millisecond clock
  - settings: a Settings instance built from the test environment
  - store: an isolated in-memory AuthStore for unit tests
  - make_user: insert an account with a known password
  - client: TestClient over the real app with a patched lifespan
  - api / logged_in: request helpers that handle the CSRF handshake and log in

Design: unit tests use plain sqlite:///:memory: (single thread, SQLAlchemy
keeps one connection per thread). The TestClient runs route handlers in a
thread pool, so API tests use named shared-memory URIs
(file:name?mode=memory&cache=shared&uri=true) that every connection in the
process sees. Each test gets its own name, so no state leaks between tests.

Environment variables must be set before any core/auth/api import:
get_settings() is cached on first call and auth.passwords builds its hasher
at import time.
"""

from __future__ import annotations

import asyncio
import os
import uuid
from collections.abc import Callable, Generator
from contextlib import asynccontextmanager

# CRITICAL: set before any core/auth/api import.
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("ALLOWED_HOSTS", '["testserver"]')
os.environ.setdefault("DATABASE_URL", "sqlite:///file:sessionguard_unused?mode=memory&cache=shared&uri=true")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_KIB", "1024")
os.environ.setdefault("FEATURE_DEV_RESET_LINK", "true")
os.environ.setdefault("REGISTER_RATE_LIMIT", "1000/minute")

import pytest
from fastapi.testclient import TestClient

from api.main import app, init_auth_state
from auth.models import User
from auth.passwords import hash_password
from auth.store import AuthStore
from core.config import Settings, get_settings

PASSWORD = "Correct-Horse-9"
NEW_PASSWORD = "Battery-Staple-42"

# Fixed starting point so expiry arithmetic in assertions is readable.
START_MS = 1_700_000_000_000


class FakeClock:
    """Callable clock returning integer epoch milliseconds. advance() moves it forward."""

    def __init__(self, now: int = START_MS) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


# ---------------------------------------------------------------------------
# Unit-level fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore("sqlite:///:memory:")
    yield s
    s.close()


@pytest.fixture
def make_user(store: AuthStore, clock: FakeClock) -> Callable[..., User]:
    """Insert a user with PASSWORD (or the given password) and return it with its id."""

    def _make(username: str = "alice", password: str = PASSWORD, **fields) -> User:
        user = User(
            username=username,
            password_hash=hash_password(password),
            created_at=clock(),
            updated_at=clock(),
            password_updated_at=clock(),
            **fields,
        )
        user.id = store.create_user(user)
        return user

    return _make


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------


def _patch_lifespan(store: AuthStore, settings: Settings, clock: FakeClock):
    """Return an async context manager that replaces the real lifespan.

    Wires the test store and clock into app.state via the same
    init_auth_state() the real lifespan uses. The prune task is a
    long-sleeping coroutine so shutdown can cancel a real asyncio.Task.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        init_auth_state(app, store, settings, clock)
        app.state.prune_task = asyncio.create_task(asyncio.sleep(99999))
        yield
        app.state.prune_task.cancel()

    return test_lifespan


@pytest.fixture
def api_store() -> Generator[AuthStore, None, None]:
    s = AuthStore(f"sqlite:///file:test_auth_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    yield s
    s.close()


@pytest.fixture
def client(api_store: AuthStore, settings: Settings, clock: FakeClock) -> Generator[TestClient, None, None]:
    """TestClient over the real app with isolated storage.

    base_url is https so the client's cookie jar returns Secure cookies,
    which is every cookie this app sets.
    """
    app.router.lifespan_context = _patch_lifespan(api_store, settings, clock)
    with TestClient(app, base_url="https://testserver", raise_server_exceptions=True) as c:
        yield c


class Api:
    """Thin request helpers over a TestClient. Handles the CSRF handshake."""

    PASSWORD = PASSWORD
    NEW_PASSWORD = NEW_PASSWORD

    def __init__(self, client: TestClient, settings: Settings) -> None:
        self.client = client
        self.settings = settings

    def csrf_headers(self) -> dict[str, str]:
        return {self.settings.csrf_header_name: self.client.cookies.get(self.settings.csrf_cookie_name) or ""}

    def prime_csrf(self) -> dict[str, str]:
        """Hit the session probe so the CSRF cookie is set; return the matching header."""
        self.client.get("/api/v1/auth/session")
        return self.csrf_headers()

    def session_cookie(self) -> str | None:
        return self.client.cookies.get(self.settings.session_cookie_name)

    def register(self, username: str = "alice", password: str = PASSWORD, **extra):
        return self.client.post(
            "/api/v1/auth/register",
            json={"username": username, "password": password, **extra},
            headers=self.prime_csrf(),
        )

    def login(self, username: str = "alice", password: str = PASSWORD, **kwargs):
        return self.client.post("/api/v1/auth/login", json={"username": username, "password": password}, **kwargs)

    def post(self, path: str, json: dict | None = None, **kwargs):
        """POST with the CSRF header attached."""
        headers = {**self.csrf_headers(), **kwargs.pop("headers", {})}
        return self.client.post(path, json=json, headers=headers, **kwargs)


@pytest.fixture
def api(client: TestClient, settings: Settings) -> Api:
    return Api(client, settings)


@pytest.fixture
def logged_in(api: Api) -> Api:
    """Api helper with a registered account "alice" and a live session."""
    assert api.register().status_code == 201
    assert api.login().status_code == 200
    return api
