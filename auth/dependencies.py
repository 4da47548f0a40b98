"""
auth/dependencies.py -- FastAPI Depends() helpers: the RBAC gate.

Every protected request goes through the same three steps:
  1. Extract the session token from the cookie (CookieCodec).
  2. Resolve it to a User (SessionService) -- full re-check, no caching.
  3. If roles are required, the user must hold at least one of them.

try_get_current_user() is the soft variant (returns None on failure).
get_current_user() wraps it and raises 401 if unauthenticated.
require_roles(...) wraps get_current_user() and raises 403 on a role miss.

The gate has no state and never writes to request.state. The resolved User
is the dependency's return value, so FastAPI hands it to the handler as a
parameter:

    @router.get("/admin/ping")
    def ping(user: User = Depends(require_roles(Role.ADMIN))): ...

Layer rule: auth/dependencies.py may import from fastapi because it is part
of the FastAPI dependency injection system. It reads its collaborators from
request.app.state, where the lifespan put them.
"""

from __future__ import annotations

from collections.abc import Callable, Iterable

from fastapi import Request

from auth.cookies import CookieCodec
from auth.errors import Forbidden, Unauthenticated
from auth.models import Role, User
from auth.sessions import SessionService


def has_any_role(user: User, required: Iterable[Role]) -> bool:
    """Any-of check: True if required is empty or shares at least one role with the user."""
    required = frozenset(required)
    return not required or bool(user.roles & required)


def try_get_current_user(request: Request) -> User | None:
    """Resolve the session cookie to a User, or None.

    Never raises -- storage failures are logged by SessionService and come
    back as None here, exactly like a missing cookie.
    """
    codec: CookieCodec = request.app.state.cookie_codec
    sessions: SessionService = request.app.state.sessions
    token = codec.extract(request.headers)
    if token is None:
        return None
    return sessions.resolve_session(token)


def get_current_user(request: Request) -> User:
    """Require authentication. Raises 401 if the request has no valid session."""
    user = try_get_current_user(request)
    if user is None:
        raise Unauthenticated()
    return user


def require_roles(*roles: Role) -> Callable[[Request], User]:
    """Build a dependency that requires at least one of roles.

    With no roles it only requires a valid session. Raises 401 if
    unauthenticated, 403 if the user holds none of the roles.
    """
    required = frozenset(roles)

    def dependency(request: Request) -> User:
        user = get_current_user(request)
        if not has_any_role(user, required):
            raise Forbidden()
        return user

    dependency.__name__ = "require_" + ("_or_".join(sorted(r.value.lower() for r in required)) or "session")
    return dependency


require_admin = require_roles(Role.ADMIN)
require_moderator = require_roles(Role.MODERATOR, Role.ADMIN)
