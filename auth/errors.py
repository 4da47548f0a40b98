"""
auth/errors.py -- Exception taxonomy for the auth package.

Unauthenticated and Forbidden are HTTPException subclasses: the RBAC gate
raises them from FastAPI dependencies and the application's HTTPException
handler renders them into the standard error envelope.

The remaining errors never reach the browser as exceptions. The OAuth
orchestrator turns them into a redirect carrying their `code`, and
StorageFailure is degraded or surfaced as a generic 500 depending on whether
the failing operation was a read or a write.
"""

from __future__ import annotations

from fastapi import HTTPException


class Unauthenticated(HTTPException):
    """No cookie, or the session is unknown, expired, or revoked."""

    def __init__(self) -> None:
        super().__init__(
            status_code=401,
            detail={"code": "unauthorized", "message": "Authentication required."},
        )


class Forbidden(HTTPException):
    """Authenticated, but holding none of the required roles."""

    def __init__(self) -> None:
        super().__init__(
            status_code=403,
            detail={"code": "forbidden", "message": "You do not have access to this resource."},
        )


class AuthError(Exception):
    """Base class for errors that carry a machine-readable redirect code."""

    code = "callback_failed"


class MalformedCallback(AuthError):
    """The OAuth callback is missing a required query parameter."""

    code = "no_code"


class UpstreamIdentityFailure(AuthError):
    """The provider rejected the code exchange or returned an unusable response."""

    code = "auth_failed"


class InvalidIdentity(AuthError):
    """The provider identity has no email, so it cannot be matched to a user."""

    code = "invalid_user"


class StorageFailure(AuthError):
    """The backing store raised. Wraps the underlying SQLAlchemy error."""

    code = "callback_failed"
