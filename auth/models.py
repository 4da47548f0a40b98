"""
auth/models.py -- Domain dataclasses for authentication entities.

Pattern: Data class (pure data container, zero logic). The store maps rows
into these; the session service and gate do the work.

Layer rule: no imports from api/ or core/.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Role(str, Enum):
    """Roles a user can hold. A user holds a set of these, never a list."""

    COMMUNITY = "COMMUNITY"
    EXPERT = "EXPERT"
    MODERATOR = "MODERATOR"
    ADMIN = "ADMIN"


DEFAULT_ROLE = Role.COMMUNITY


@dataclass(frozen=True)
class User:
    """An identity created on first OAuth login.

    email is the natural key used by the OAuth upsert. username and avatar_url
    are overwritten with the provider's latest values on every login.
    """

    email: str
    id: int | None = None
    username: str | None = None
    avatar_url: str | None = None
    roles: frozenset[Role] = field(default_factory=frozenset)
    created_at: str | None = None
    last_login: str | None = None


@dataclass(frozen=True)
class Session:
    """Server-side record binding an opaque token to a user.

    user_agent and ip are provenance for audit only. They never take part in
    validation.
    """

    token: str
    user_id: int
    expires_at: datetime
    revoked_at: datetime | None = None
    user_agent: str | None = None
    ip: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class IssuedSession:
    """What createSession hands back to the caller: the token and its expiry."""

    token: str
    expires_at: datetime


@dataclass(frozen=True)
class ProviderIdentity:
    """Normalized identity returned by an OAuth provider after code exchange."""

    email: str | None
    name: str | None = None
    image: str | None = None


class ResolutionStatus(str, Enum):
    OK = "ok"
    UNAUTHENTICATED = "unauthenticated"
    STORAGE_FAILURE = "storage_failure"


@dataclass(frozen=True)
class SessionResolution:
    """Outcome of a session lookup.

    Each boundary decides what STORAGE_FAILURE means for it: read paths treat
    it as UNAUTHENTICATED, nothing ever reports it to the client.
    """

    status: ResolutionStatus
    user: User | None = None

    @property
    def ok(self) -> bool:
        return self.status is ResolutionStatus.OK
