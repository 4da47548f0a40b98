"""
tests/conftest.py -- Shared test fixtures for SessionGate tests.

This module provides:
  - settings:       a Settings instance built for tests (no .env file)
  - clock:          a settable UTC clock for expiry-boundary tests
  - store:          an isolated AuthStore on a named shared-memory SQLite DB
  - sessions:       SessionService over store, driven by clock
  - fake_identity:  stand-in for the OAuth identity client (no network)
  - client:         TestClient over the real app with a patched lifespan

Design: Named shared-memory SQLite URIs (not plain :memory:) are required
because TestClient and run_in_threadpool run store calls on worker threads.
Plain ':memory:' DBs are per-connection and would present a blank schema to
each worker thread. Each store gets a unique name so tests never share rows.

The DEBUG env var must be set before any api/ import so get_settings()
auto-generates SECRET_KEY in dev mode rather than raising ValueError.
"""

from __future__ import annotations

import os
import uuid
from collections.abc import Generator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

# CRITICAL: Set DEBUG before any api/core import so get_settings() can
# auto-generate SECRET_KEY in dev mode instead of raising ValueError.
os.environ.setdefault("DEBUG", "true")

import pytest
from fastapi.responses import RedirectResponse
from fastapi.testclient import TestClient
from sqlalchemy import text

from api.main import app, wire_services
from auth.models import ProviderIdentity, Role, User
from auth.sessions import SessionService
from auth.store import AuthStore
from core.config import Settings

APP_ORIGIN = "https://app.example.test"

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class FixedClock:
    """Callable clock whose time only moves when a test moves it."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class FakeIdentity:
    """Records exchange() calls and returns a canned identity or raises a canned error."""

    providers = ["discord", "google"]

    def __init__(self) -> None:
        self.identity: ProviderIdentity = ProviderIdentity(
            email="jane@example.com", name="Jane", image="https://img.example/jane.png"
        )
        self.error: Exception | None = None
        self.calls: list[str] = []

    def is_enabled(self, provider: str) -> bool:
        return provider in self.providers

    async def authorize_redirect(self, request, provider: str, redirect_uri: str):
        return RedirectResponse(f"https://provider.example/{provider}/authorize?redirect_uri={redirect_uri}")

    async def exchange(self, request, provider: str) -> ProviderIdentity:
        self.calls.append(provider)
        if self.error is not None:
            raise self.error
        return self.identity


def make_user(store: AuthStore, email: str, *roles: Role, username: str | None = None) -> User:
    """Create a user through the normal upsert and grant extra roles.

    The upsert always grants COMMUNITY; pass roles to add more.
    """
    user = store.upsert_by_email(email, username or email.split("@")[0], None)
    for role in roles:
        store.grant_role(user.id, role)
    return store.get_by_id(user.id)


def cookie_header(settings: Settings, token: str) -> dict[str, str]:
    return {"cookie": f"{settings.cookie_name}={token}"}


def insert_raw_session(store: AuthStore, token: str, user_id: int, expires_at: str) -> None:
    """Write a sessions row with SQL, bypassing the mappers, so tests can plant bad data."""
    with store.engine.begin() as conn:
        conn.execute(
            text(
                "INSERT INTO sessions (token, user_id, expires_at, created_at) "
                "VALUES (:token, :uid, :expires_at, :created_at)"
            ),
            {"token": token, "uid": user_id, "expires_at": expires_at, "created_at": "2030-01-01T00:00:00+00:00"},
        )


def make_settings(**overrides) -> Settings:
    values = {
        "debug": True,
        "app_origin": APP_ORIGIN,
        "cookie_name": "bsc_session",
        "cookie_domain": "",
        "cookie_secure": False,
        "cookie_samesite": "Lax",
        "session_ttl_seconds": 3600,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def _patch_lifespan(settings: Settings, store: AuthStore, identity: FakeIdentity):
    """Return a lifespan that wires test collaborators into app.state.

    Route handlers see the isolated store and the fake identity client
    rather than the production database and real OAuth providers.
    """

    @asynccontextmanager
    async def test_lifespan(app):
        wire_services(app, settings, store, identity=identity)
        yield

    return test_lifespan


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2030, 1, 2, 3, 4, 5, 123456, tzinfo=timezone.utc))


@pytest.fixture
def store() -> Generator[AuthStore, None, None]:
    s = AuthStore(f"sqlite:///file:sessiongate_{uuid.uuid4().hex}?mode=memory&cache=shared&uri=true")
    yield s
    s.close()


@pytest.fixture
def sessions(store: AuthStore, settings: Settings, clock: FixedClock) -> SessionService:
    return SessionService(store, settings, now=clock)


@pytest.fixture
def fake_identity() -> FakeIdentity:
    return FakeIdentity()


@pytest.fixture
def client(settings: Settings, store: AuthStore, fake_identity: FakeIdentity) -> Generator[TestClient, None, None]:
    """TestClient over the real app with follow_redirects=False.

    Redirect tests assert on Location headers, which are invisible once the
    client follows the redirect.
    """
    app.router.lifespan_context = _patch_lifespan(settings, store, fake_identity)
    with TestClient(app, follow_redirects=False, raise_server_exceptions=True) as c:
        yield c
