"""
api/routes/v1/protected.py -- Role-gated endpoints.

Routes:
  GET /api/v1/admin/ping       -- requires ADMIN
  GET /api/v1/moderation/ping  -- requires MODERATOR or ADMIN

The gate dependency returns the resolved User and FastAPI passes it straight
into the handler; nothing is read back from request.state.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends

from api.models import PingResponse
from auth.dependencies import require_admin, require_moderator
from auth.models import User

logger = logging.getLogger("sessiongate.api.protected")

router = APIRouter()


@router.get("/admin/ping", response_model=PingResponse)
def admin_ping(current_user: User = Depends(require_admin)) -> PingResponse:
    logger.debug("admin ping from user %s", current_user.id)
    return _pong(current_user)


@router.get("/moderation/ping", response_model=PingResponse)
def moderation_ping(current_user: User = Depends(require_moderator)) -> PingResponse:
    logger.debug("moderation ping from user %s", current_user.id)
    return _pong(current_user)


def _pong(user: User) -> PingResponse:
    return PingResponse(user_id=user.id, roles=sorted(r.value for r in user.roles))
