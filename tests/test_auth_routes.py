"""
tests/test_auth_routes.py -- Integration tests for the OAuth callback, logout and /me.

The OAuth provider is replaced by FakeIdentity (see conftest.py); everything
else is the real stack: orchestrator, store, session service, cookie codec.

Coverage:
  - Callback failure exits: no_code, auth_failed, invalid_user, callback_failed
  - Callback success: user upserted with COMMUNITY, session cookie set, redirect to app
  - Upsert on repeat login overwrites username/avatar
  - Logout revokes, clears the cookie, reports success even without a cookie
  - /me returns the projection or null, never an error
  - Provider listing and sign-in redirect
"""

from __future__ import annotations

from urllib.parse import parse_qs, urlparse

import pytest
from fastapi.testclient import TestClient

from auth.errors import StorageFailure, UpstreamIdentityFailure
from auth.models import ProviderIdentity, Role
from auth.sessions import SessionService
from auth.store import AuthStore
from conftest import APP_ORIGIN, FakeIdentity, cookie_header, insert_raw_session, make_user
from core.config import Settings

CALLBACK = "/api/v1/auth/callback/google"


def _error_code(location: str) -> str | None:
    parsed = urlparse(location)
    assert f"{parsed.scheme}://{parsed.netloc}{parsed.path}" == f"{APP_ORIGIN}/login"
    return parse_qs(parsed.query)["error"][0]


def _set_cookies(resp) -> list[str]:
    return resp.headers.get_list("set-cookie")


def _session_cookie(resp, settings: Settings) -> str | None:
    for header in _set_cookies(resp):
        if header.startswith(f"{settings.cookie_name}="):
            return header
    return None


class TestCallbackFailures:
    def test_missing_code(self, client: TestClient, fake_identity: FakeIdentity, store: AuthStore) -> None:
        resp = client.get(CALLBACK)
        assert resp.status_code == 302
        assert _error_code(resp.headers["location"]) == "no_code"
        assert fake_identity.calls == []
        assert store.get_by_email("jane@example.com") is None

    def test_empty_code(self, client: TestClient) -> None:
        resp = client.get(CALLBACK, params={"code": "", "state": "s"})
        assert _error_code(resp.headers["location"]) == "no_code"

    def test_no_session_cookie_on_failure(self, client: TestClient, settings: Settings) -> None:
        resp = client.get(CALLBACK)
        assert _session_cookie(resp, settings) is None

    def test_exchange_failure(self, client: TestClient, fake_identity: FakeIdentity, store: AuthStore) -> None:
        fake_identity.error = UpstreamIdentityFailure("google code exchange failed: invalid_grant")
        resp = client.get(CALLBACK, params={"code": "bad"})
        assert resp.status_code == 302
        assert _error_code(resp.headers["location"]) == "auth_failed"
        assert store.get_by_email("jane@example.com") is None

    def test_identity_without_email(self, client: TestClient, fake_identity: FakeIdentity) -> None:
        fake_identity.identity = ProviderIdentity(email=None, name="Anon")
        resp = client.get(CALLBACK, params={"code": "abc"})
        assert _error_code(resp.headers["location"]) == "invalid_user"

    def test_storage_failure_during_upsert(
        self, client: TestClient, store: AuthStore, settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def boom(*args, **kwargs):
            raise StorageFailure("upsert_by_email failed: OperationalError")

        monkeypatch.setattr(store, "upsert_by_email", boom)
        resp = client.get(CALLBACK, params={"code": "abc"})
        assert _error_code(resp.headers["location"]) == "callback_failed"
        assert _session_cookie(resp, settings) is None

    def test_storage_failure_during_session_issue(
        self, client: TestClient, store: AuthStore, settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def boom(session):
            raise StorageFailure("create_session failed: IntegrityError")

        monkeypatch.setattr(store, "create_session", boom)
        resp = client.get(CALLBACK, params={"code": "abc"})
        assert _error_code(resp.headers["location"]) == "callback_failed"
        assert _session_cookie(resp, settings) is None

    def test_unexpected_error(self, client: TestClient, fake_identity: FakeIdentity) -> None:
        fake_identity.error = RuntimeError("provider SDK bug")
        resp = client.get(CALLBACK, params={"code": "abc"})
        assert _error_code(resp.headers["location"]) == "callback_failed"


class TestCallbackSuccess:
    def test_first_login_creates_community_user_and_session(
        self, client: TestClient, store: AuthStore, settings: Settings
    ) -> None:
        resp = client.get(CALLBACK, params={"code": "abc", "state": "xyz"})
        assert resp.status_code == 302
        assert resp.headers["location"] == APP_ORIGIN
        assert resp.headers["cache-control"] == "no-store"

        set_cookie = _session_cookie(resp, settings)
        assert set_cookie is not None
        assert "HttpOnly" in set_cookie

        user = store.get_by_email("jane@example.com")
        assert user.username == "Jane"
        assert user.avatar_url == "https://img.example/jane.png"
        assert user.roles == frozenset({Role.COMMUNITY})

        token = set_cookie.split(";", 1)[0].split("=", 1)[1]
        assert SessionService(store, settings).resolve_session(token).id == user.id

    def test_cookie_logs_the_browser_in(self, client: TestClient) -> None:
        client.get(CALLBACK, params={"code": "abc"})
        me = client.get("/api/v1/me").json()
        assert me["user"]["email"] == "jane@example.com"
        assert me["user"]["roles"] == ["COMMUNITY"]

    def test_repeat_login_overwrites_profile_and_keeps_roles(
        self, client: TestClient, store: AuthStore, fake_identity: FakeIdentity
    ) -> None:
        existing = make_user(store, "jane@example.com", Role.EXPERT, username="old-name")
        fake_identity.identity = ProviderIdentity(email="jane@example.com", name="Jane New", image=None)

        client.get(CALLBACK, params={"code": "abc"})

        user = store.get_by_email("jane@example.com")
        assert user.id == existing.id
        assert user.username == "Jane New"
        assert user.avatar_url is None
        assert user.roles == frozenset({Role.COMMUNITY, Role.EXPERT})

    def test_provenance_is_captured(self, client: TestClient, store: AuthStore) -> None:
        client.get(
            CALLBACK,
            params={"code": "abc"},
            headers={"user-agent": "TestBrowser/1.0", "x-forwarded-for": "203.0.113.5, 10.0.0.1"},
        )
        user = store.get_by_email("jane@example.com")
        (session,) = store.list_sessions(user.id)
        assert session.user_agent == "TestBrowser/1.0"
        assert session.ip == "203.0.113.5"

    def test_each_login_issues_a_new_session(self, client: TestClient, store: AuthStore) -> None:
        client.get(CALLBACK, params={"code": "one"})
        client.get(CALLBACK, params={"code": "two"})
        user = store.get_by_email("jane@example.com")
        tokens = {s.token for s in store.list_sessions(user.id)}
        assert len(tokens) == 2


class TestLogout:
    def test_logout_revokes_and_clears(self, client: TestClient, store: AuthStore, settings: Settings) -> None:
        user = make_user(store, "jane@example.com")
        issued = SessionService(store, settings).create_session(user.id)

        resp = client.post("/api/v1/auth/logout", headers=cookie_header(settings, issued.token))
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}

        cleared = _session_cookie(resp, settings)
        assert cleared is not None
        assert "01 Jan 1970 00:00:00 GMT" in cleared

        session, _ = store.find_by_token(issued.token)
        assert session.revoked_at is not None
        assert client.get("/api/v1/me", headers=cookie_header(settings, issued.token)).json() == {"user": None}

    def test_logout_without_cookie_still_succeeds(self, client: TestClient, settings: Settings) -> None:
        resp = client.post("/api/v1/auth/logout")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}
        assert _session_cookie(resp, settings) is not None

    def test_logout_twice(self, client: TestClient, store: AuthStore, settings: Settings) -> None:
        user = make_user(store, "jane@example.com")
        issued = SessionService(store, settings).create_session(user.id)
        headers = cookie_header(settings, issued.token)
        assert client.post("/api/v1/auth/logout", headers=headers).json() == {"ok": True}
        assert client.post("/api/v1/auth/logout", headers=headers).json() == {"ok": True}

    def test_logout_storage_failure_still_reports_success(
        self, client: TestClient, store: AuthStore, settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def boom(*args, **kwargs):
            raise StorageFailure("revoke_session failed: OperationalError")

        monkeypatch.setattr(store, "revoke_session", boom)
        resp = client.post("/api/v1/auth/logout", headers=cookie_header(settings, "some.token"))
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}
        assert _session_cookie(resp, settings) is not None


class TestMe:
    def test_anonymous(self, client: TestClient) -> None:
        resp = client.get("/api/v1/me")
        assert resp.status_code == 200
        assert resp.json() == {"user": None}

    def test_projection(self, client: TestClient, store: AuthStore, settings: Settings) -> None:
        user = make_user(store, "jane@example.com", Role.MODERATOR, username="Jane")
        issued = SessionService(store, settings).create_session(user.id)
        resp = client.get("/api/v1/me", headers=cookie_header(settings, issued.token))
        assert resp.json() == {
            "user": {
                "id": user.id,
                "email": "jane@example.com",
                "username": "Jane",
                "avatar_url": None,
                "roles": ["COMMUNITY", "MODERATOR"],
            }
        }

    def test_storage_failure_is_null_user(
        self, client: TestClient, store: AuthStore, settings: Settings, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        def boom(token):
            raise StorageFailure("find_by_token failed: OperationalError")

        monkeypatch.setattr(store, "find_by_token", boom)
        resp = client.get("/api/v1/me", headers=cookie_header(settings, "some.token"))
        assert resp.status_code == 200
        assert resp.json() == {"user": None}

    def test_corrupt_session_row_is_null_user(
        self, client: TestClient, store: AuthStore, settings: Settings
    ) -> None:
        user = make_user(store, "jane@example.com")
        insert_raw_session(store, "corrupt.tok", user.id, expires_at="not-a-date")
        resp = client.get("/api/v1/me", headers=cookie_header(settings, "corrupt.tok"))
        assert resp.status_code == 200
        assert resp.json() == {"user": None}


class TestProviders:
    def test_sign_in_redirects_to_provider(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/signin/google")
        assert resp.status_code in (302, 307)
        assert resp.headers["location"].startswith("https://provider.example/google/authorize")

    def test_sign_in_with_unknown_provider(self, client: TestClient) -> None:
        resp = client.get("/api/v1/auth/signin/myspace")
        assert resp.status_code == 302
        assert _error_code(resp.headers["location"]) == "auth_failed"

    def test_provider_list_reflects_settings(self, client: TestClient) -> None:
        # Test settings configure no OAuth credentials.
        resp = client.get("/api/v1/auth/providers")
        assert resp.status_code == 200
        assert resp.json() == []
