"""
tests/conftest.py -- Shared test fixtures for Formwork integration tests.

This module provides:
  - make_test_store(): isolated in-memory user store per test
  - _patch_lifespan(): wires the test store into app.state, bypassing real startup
  - client / auth_client: TestClient against the assembled app (api + web)
  - csrf_headers(): the double-submit header for the client's current cookie

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient runs sync route handlers in a thread pool. Plain :memory:
DBs are per-connection and would present a blank schema to each worker
thread. The named URI format (file:name?mode=memory&cache=shared&uri=true)
shares one in-memory instance across all connections in the process.

Environment variables must be set before any core/auth/api import:
  DEBUG             -- get_settings() auto-generates SECRET_KEY instead of raising
  RATE_LIMIT,
  LOGIN_RATE_LIMIT  -- the production limits would throttle a fast test run
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager

os.environ.setdefault("DEBUG", "true")
os.environ.setdefault("RATE_LIMIT", "10000/second")
os.environ.setdefault("LOGIN_RATE_LIMIT", "10000/minute")

import pytest
from fastapi.testclient import TestClient

from asgi import app
from auth.models import User
from auth.store import UserStore
from auth.tokens import create_access_token, hash_password

TEST_PASSWORD = "password123"


# ---------------------------------------------------------------------------
# Store helpers
# ---------------------------------------------------------------------------


def make_test_store() -> UserStore:
    """Create an isolated named shared-memory store. The uuid keeps tests apart."""
    return UserStore(f"sqlite:///file:test_users_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")


def _patch_lifespan(user_store: UserStore):
    """Return an async context manager that replaces the real lifespan."""

    @asynccontextmanager
    async def test_lifespan(app):
        app.state.user_store = user_store
        yield

    return test_lifespan


def csrf_headers(client: TestClient, **extra: str) -> dict[str, str]:
    """Return headers carrying the client's current CSRF cookie value.

    Every response rotates the cookie, so call this right before each
    state-changing request rather than reusing an older value.
    """
    token = client.cookies.get("_csrf")
    if token is None:
        client.get("/api/v1/health")
        token = client.cookies.get("_csrf")
    headers = {"X-CSRF-Token": token}
    headers.update(extra)
    return headers


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> Generator[UserStore, None, None]:
    user_store = make_test_store()
    yield user_store
    user_store.close()


@pytest.fixture
def user(store: UserStore) -> User:
    """An active user who can sign in with TEST_PASSWORD."""
    uid = store.create_user(
        User(email="ada@example.com", name="Ada Lovelace", hashed_password=hash_password(TEST_PASSWORD))
    )
    return store.get_by_id(uid)


@pytest.fixture
def client(store: UserStore) -> Generator[TestClient, None, None]:
    """TestClient on the full app with follow_redirects=False.

    Web tests assert on redirect Location headers, which are invisible once
    the client follows the redirect.
    """
    original = app.router.lifespan_context
    app.router.lifespan_context = _patch_lifespan(store)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as test_client:
        yield test_client
    app.router.lifespan_context = original


@pytest.fixture
def auth_client(client: TestClient, user: User) -> TestClient:
    """The client fixture with a valid session cookie for `user`."""
    client.cookies.set("access_token", create_access_token(user.id, user.email))
    return client
