"""
auth/orchestrator.py -- OAuth callback handling, logout and current-user lookup.

The callback walks a fixed sequence of states:

    AWAITING_CODE -> EXCHANGING_CODE -> RESOLVING_IDENTITY
        -> UPSERTING_USER -> ISSUING_SESSION -> REDIRECTING

Every state has a single terminal failure exit: a redirect to the app's
login page carrying a machine-readable ?error= code.

    no_code          code query parameter missing
    auth_failed      provider unknown/disabled or code exchange failed
    invalid_user     provider identity has no (verified) email
    callback_failed  anything else, including storage failures

There is no retry inside one callback. The user starts the login over.

Upsert policy: match by email, overwrite username/avatar with the provider's
latest values, create with the COMMUNITY role when the email is new. The
session is only issued after the upsert has committed.

Store calls are blocking SQLAlchemy calls; they run in Starlette's threadpool
so the event loop keeps serving other requests during the callback.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Protocol
from urllib.parse import urlencode

from starlette.concurrency import run_in_threadpool
from starlette.requests import Request

from auth.cookies import CookieCodec
from auth.errors import AuthError, InvalidIdentity, MalformedCallback, StorageFailure
from auth.models import DEFAULT_ROLE, ProviderIdentity, User
from auth.sessions import SessionService
from auth.store import AuthStore
from core.config import Settings

logger = logging.getLogger("sessiongate.auth.orchestrator")


class IdentityExchange(Protocol):
    """What the orchestrator needs from the OAuth side (see auth.oauth.OAuthIdentityClient)."""

    async def exchange(self, request: Request, provider: str) -> ProviderIdentity: ...


class CallbackState(str, Enum):
    AWAITING_CODE = "awaiting_code"
    EXCHANGING_CODE = "exchanging_code"
    RESOLVING_IDENTITY = "resolving_identity"
    UPSERTING_USER = "upserting_user"
    ISSUING_SESSION = "issuing_session"
    REDIRECTING = "redirecting"


@dataclass(frozen=True)
class CallbackResult:
    """Where to send the browser, and the cookie to set on success."""

    location: str
    set_cookie: str | None = None
    error: str | None = None


def client_ip(request: Request) -> str | None:
    """First X-Forwarded-For hop, else the socket peer address."""
    forwarded = request.headers.get("x-forwarded-for", "")
    first = forwarded.split(",")[0].strip()
    if first:
        return first
    return request.client.host if request.client else None


class AuthOrchestrator:
    """Glue between the identity provider, the user store and the session service."""

    def __init__(
        self,
        settings: Settings,
        store: AuthStore,
        sessions: SessionService,
        cookies: CookieCodec,
        identity: IdentityExchange,
    ) -> None:
        self._settings = settings
        self._store = store
        self._sessions = sessions
        self._cookies = cookies
        self._identity = identity

    # ------------------------------------------------------------------
    # OAuth callback
    # ------------------------------------------------------------------

    async def complete_login(self, request: Request, provider: str) -> CallbackResult:
        """Run the callback state machine for one request.

        Never raises: every failure becomes a CallbackResult pointing at the
        login page with an error code.
        """
        state = CallbackState.AWAITING_CODE
        try:
            if not request.query_params.get("code"):
                raise MalformedCallback("callback has no code parameter")

            state = CallbackState.EXCHANGING_CODE
            identity = await self._identity.exchange(request, provider)

            state = CallbackState.RESOLVING_IDENTITY
            if not identity.email:
                raise InvalidIdentity(f"{provider} identity has no verified email")

            state = CallbackState.UPSERTING_USER
            user = await run_in_threadpool(
                self._store.upsert_by_email,
                identity.email,
                identity.name or None,
                identity.image or None,
                DEFAULT_ROLE,
            )

            state = CallbackState.ISSUING_SESSION
            issued = await run_in_threadpool(
                self._sessions.create_session,
                user.id,
                request.headers.get("user-agent") or None,
                client_ip(request),
            )

            state = CallbackState.REDIRECTING
            logger.info("OAuth login via %s completed for user %s", provider, user.id)
            return CallbackResult(
                location=self._settings.app_origin,
                set_cookie=self._cookies.encode(issued.token, issued.expires_at),
            )
        except StorageFailure:
            logger.exception("OAuth callback for %s failed in state %s", provider, state.value)
            return self._failure(StorageFailure.code)
        except AuthError as exc:
            logger.warning("OAuth callback for %s rejected in state %s: %s", provider, state.value, exc)
            return self._failure(exc.code)
        except Exception:
            logger.exception("OAuth callback for %s crashed in state %s", provider, state.value)
            return self._failure("callback_failed")

    def _failure(self, code: str) -> CallbackResult:
        return CallbackResult(location=f"{self._settings.login_url}?{urlencode({'error': code})}", error=code)

    # ------------------------------------------------------------------
    # Logout / current user
    # ------------------------------------------------------------------

    def logout(self, headers: Mapping[str, str]) -> str:
        """Revoke the cookie's session if there is one; return the clearing cookie.

        A storage failure while revoking is logged and swallowed: the browser
        still gets its cookie cleared and the endpoint still reports success.
        """
        token = self._cookies.extract(headers)
        if token is not None:
            try:
                self._sessions.revoke_session(token)
            except StorageFailure:
                logger.exception("Session revocation failed during logout")
        return self._cookies.encode_cleared()

    def current_user(self, headers: Mapping[str, str]) -> User | None:
        """Return the user behind the session cookie, or None. Never raises."""
        token = self._cookies.extract(headers)
        if token is None:
            return None
        return self._sessions.resolve_session(token)
