"""
auth/sessions.py -- Session issuance, resolution and revocation.

SessionService is the only code that creates or revokes sessions. The RBAC
gate and the current-user endpoint only read through lookup() or
resolve_session().

Validity rule, checked on every call with no caching:
    revoked_at is None and now < expires_at

The comparison is strict, so a session whose expiry equals "now" is already
invalid.

Tokens: two independent 128-bit random identifiers from the secrets module,
hex-encoded and joined by ".". That is 256 bits of entropy and only uses
characters that are legal in a cookie value without quoting.

Failure policy:
  lookup()          -> returns SessionResolution(STORAGE_FAILURE); never raises
  resolve_session() -> degrades STORAGE_FAILURE to None, logs it
  create_session(), revoke_session(), revoke_user_sessions() -> raise
                       StorageFailure; a write must never report false success
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import datetime, timedelta, timezone

from auth.errors import StorageFailure
from auth.models import IssuedSession, ResolutionStatus, Session, SessionResolution, User
from auth.store import AuthStore
from core.config import Settings

logger = logging.getLogger("sessiongate.auth.sessions")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_token() -> str:
    return f"{secrets.token_hex(16)}.{secrets.token_hex(16)}"


def token_hint(token: str) -> str:
    """Short, non-secret prefix for log lines. Full tokens are never logged."""
    return f"{token[:8]}..."


class SessionService:
    """Issues and validates opaque session tokens against AuthStore.

    Args:
        store:    Backing repository.
        settings: Supplies session_ttl_seconds.
        now:      Clock returning an aware UTC datetime. Tests pass a fixed
                  clock to probe the expiry boundary.
    """

    def __init__(self, store: AuthStore, settings: Settings, now: Callable[[], datetime] = _utcnow) -> None:
        self._store = store
        self._ttl = timedelta(seconds=settings.session_ttl_seconds)
        self._now = now

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_session(self, user_id: int, user_agent: str | None = None, ip: str | None = None) -> IssuedSession:
        """Persist a new session for user_id and return its token and expiry.

        Raises StorageFailure if the row cannot be written, including the
        astronomically unlikely token collision.
        """
        now = self._now()
        issued = IssuedSession(token=generate_token(), expires_at=now + self._ttl)
        self._store.create_session(
            Session(
                token=issued.token,
                user_id=user_id,
                expires_at=issued.expires_at,
                user_agent=user_agent,
                ip=ip,
                created_at=now,
            )
        )
        logger.info("Session %s issued for user %s", token_hint(issued.token), user_id)
        return issued

    def revoke_session(self, token: str) -> None:
        """Revoke the session for token. Unknown or already-revoked tokens are a no-op."""
        if self._store.revoke_session(token, self._now()):
            logger.info("Session %s revoked", token_hint(token))

    def revoke_user_sessions(self, user_id: int) -> int:
        """Revoke every live session owned by user_id. Returns how many were revoked."""
        count = self._store.revoke_user_sessions(user_id, self._now())
        logger.info("Revoked %d session(s) for user %s", count, user_id)
        return count

    def purge_expired(self, older_than_days: int) -> int:
        """Delete sessions that expired more than older_than_days ago.

        Only rows that can never be valid again are touched, so this does not
        change the outcome of any lookup.
        """
        cutoff = self._now() - timedelta(days=older_than_days)
        removed = self._store.purge_sessions_expired_before(cutoff)
        if removed:
            logger.info("Purged %d session(s) expired before %s", removed, cutoff.isoformat())
        return removed

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def lookup(self, token: str) -> SessionResolution:
        """Resolve token to a user, reporting storage failures explicitly.

        Missing, revoked and expired sessions all come back as
        UNAUTHENTICATED; callers cannot tell which.
        """
        try:
            found = self._store.find_by_token(token)
            if found is None:
                return SessionResolution(ResolutionStatus.UNAUTHENTICATED)
            session, user = found
            if not is_valid(session, self._now()):
                return SessionResolution(ResolutionStatus.UNAUTHENTICATED)
        except StorageFailure:
            logger.exception("Session lookup failed for %s", token_hint(token))
            return SessionResolution(ResolutionStatus.STORAGE_FAILURE)
        except Exception:
            logger.exception("Unexpected error during session lookup for %s", token_hint(token))
            return SessionResolution(ResolutionStatus.STORAGE_FAILURE)
        return SessionResolution(ResolutionStatus.OK, user)

    def resolve_session(self, token: str) -> User | None:
        """Return the owning user if token names a valid session, else None."""
        resolution = self.lookup(token)
        return resolution.user if resolution.ok else None


def is_valid(session: Session, now: datetime) -> bool:
    return session.revoked_at is None and now < session.expires_at
