"""
API request and response models for SessionGate REST endpoints.

These Pydantic v2 models define the HTTP transport contract for the API layer.
They are intentionally separate from the dataclasses in auth/models.py, which
own the internal domain representation. Route handlers map between the two.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict

from auth.models import User

# ---------------------------------------------------------------------------
# Errors / health
# ---------------------------------------------------------------------------


class ErrorDetail(BaseModel):
    """Machine-readable error payload."""

    model_config = ConfigDict(frozen=True)

    code: str
    message: str
    detail: Optional[str] = None


class ErrorResponse(BaseModel):
    """Top-level error envelope returned on 4xx/5xx responses."""

    model_config = ConfigDict(frozen=True)

    error: ErrorDetail


class HealthResponse(BaseModel):
    """Response for GET /api/v1/health."""

    model_config = ConfigDict(frozen=True)

    status: str = "healthy"
    version: str
    components: dict[str, str]


# ---------------------------------------------------------------------------
# Auth
# ---------------------------------------------------------------------------


class UserProjection(BaseModel):
    """Public view of a user. Roles are sorted so the output is stable."""

    model_config = ConfigDict(frozen=True)

    id: int
    email: str
    username: Optional[str] = None
    avatar_url: Optional[str] = None
    roles: list[str]

    @classmethod
    def from_user(cls, user: User) -> "UserProjection":
        return cls(
            id=user.id,
            email=user.email,
            username=user.username,
            avatar_url=user.avatar_url,
            roles=sorted(r.value for r in user.roles),
        )


class MeResponse(BaseModel):
    """GET /api/v1/me. user is null when there is no valid session."""

    user: Optional[UserProjection] = None


class LogoutResponse(BaseModel):
    ok: bool = True


class OAuthProviderInfo(BaseModel):
    name: str
    label: str


class PingResponse(BaseModel):
    """Echoes who passed the gate so callers can see the resolved identity."""

    pong: bool = True
    user_id: int
    roles: list[str]
