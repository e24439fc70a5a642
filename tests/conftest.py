"""
tests/conftest.py -- Shared test fixtures for authgate tests.

This module provides:
  - _make_test_stores(): creates an isolated in-memory DB with both stores
  - _patch_lifespan(): wires test stores into app.state, bypassing real startup
  - api_client: TestClient plus an admin user and an access token for it
  - client: the module's TestClient with an empty cookie jar for each test
  - FakeClock: a settable clock for walking sessions through their TTLs

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs route handlers in a thread pool. Plain :memory: DBs
are per-connection and would present a blank schema to each worker thread.
The named URI format (file:name?mode=memory&cache=shared&uri=true) shares
one in-memory instance across all connections in the same process.

Settings are read once at import time, so the environment below must be set
before any authgate module is imported.
"""

from __future__ import annotations

import os
from collections.abc import Generator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

# CRITICAL: Set the environment before any auth/core import.
os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-0123456789abcdef0123456789")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-0123456789abcdef012345678")
os.environ.setdefault("BCRYPT_ROUNDS", "4")
os.environ.setdefault("AUTH_RATE_LIMIT", "1000/minute")
os.environ.setdefault("TOKEN_PURGE_INTERVAL_SECONDS", "0")

import pytest
from fastapi.testclient import TestClient

from api.main import app
from auth.models import User
from auth.sessions import SessionManager
from auth.store import RefreshTokenStore, UserStore
from auth.tokens import hash_password, issue_access_token

ADMIN_EMAIL = "admin@example.com"
ADMIN_PASSWORD = "AdminPass123"

# ---------------------------------------------------------------------------
# Clock
# ---------------------------------------------------------------------------


@dataclass
class FakeClock:
    """Callable clock for SessionManager. Advance it instead of sleeping."""

    now: datetime

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime.now(timezone.utc).replace(microsecond=0))


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def _make_test_stores(db_suffix: str) -> tuple[UserStore, RefreshTokenStore]:
    """Create an isolated named shared-memory SQLite DB and both stores on it.

    Args:
        db_suffix: Unique string appended to the DB name so test modules
                   don't share state (e.g. 'auth_routes', 'users_routes').
    """
    db_url = f"sqlite:///file:test_auth_{db_suffix}?mode=memory&cache=shared&uri=true"
    user_store = UserStore(db_url=db_url)
    tokens = RefreshTokenStore(user_store.engine, retry_backoff=0)
    return user_store, tokens


def _patch_lifespan(user_store: UserStore, tokens: RefreshTokenStore):
    """Return an async context manager that replaces the real lifespan.

    Wires pre-created test stores into app.state so TestClient routes see
    isolated test DBs rather than the configured database. No purge task is
    started.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        app.state.refresh_tokens = tokens
        app.state.sessions = SessionManager(user_store, tokens)
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Module-scoped fixtures -- one TestClient per test module for speed
# ---------------------------------------------------------------------------


@pytest.fixture(scope="module")
def api_client(request) -> Generator[tuple[TestClient, str, int], None, None]:
    """Yield (client, admin_token, admin_id) for API integration tests.

    Each test module gets its own database, named after the module. The admin
    user is created before the client starts; its access token is meant for
    Authorization headers.
    """
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    user_store, tokens = _make_test_stores(suffix)

    admin = User(
        email=ADMIN_EMAIL,
        name="Test Admin",
        password_hash=hash_password(ADMIN_PASSWORD),
        role="admin",
    )
    uid = user_store.create_user(admin)
    token = issue_access_token(uid)

    app.router.lifespan_context = _patch_lifespan(user_store, tokens)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client, token, uid

    user_store.close()


@pytest.fixture(scope="module")
def empty_api_client(request) -> Generator[TestClient, None, None]:
    """Yield a TestClient over a database with no users at all."""
    suffix = request.module.__name__.rsplit(".", 1)[-1]
    user_store, tokens = _make_test_stores(f"{suffix}_empty")
    app.router.lifespan_context = _patch_lifespan(user_store, tokens)

    with TestClient(app, raise_server_exceptions=True) as client:
        yield client

    user_store.close()


@pytest.fixture
def client(api_client) -> TestClient:
    """The module's TestClient with a clean cookie jar."""
    test_client, _token, _uid = api_client
    test_client.cookies.clear()
    return test_client


@pytest.fixture
def admin_headers(api_client) -> dict[str, str]:
    _client, token, _uid = api_client
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def stores() -> Generator[tuple[UserStore, RefreshTokenStore], None, None]:
    """Fresh plain :memory: stores for unit tests (single thread, no TestClient)."""
    user_store = UserStore(db_url="sqlite:///:memory:")
    tokens = RefreshTokenStore(user_store.engine, retry_backoff=0)
    yield user_store, tokens
    user_store.close()
