"""
api/routes/v1/auth.py -- OAuth sign-in, callback, logout and current-user endpoints.

Routes:
  GET  /api/v1/auth/providers            -- list enabled OAuth providers (public)
  GET  /api/v1/auth/signin/{provider}    -- redirect to the provider's consent page
  GET  /api/v1/auth/callback/{provider}  -- finish OAuth, set session cookie, redirect to app
  POST /api/v1/auth/logout               -- revoke session, clear cookie; always {"ok": true}
  GET  /api/v1/me                        -- current user or {"user": null}; never errors

Security:
  Cache-Control: no-store on every response that sets or clears the session cookie.
  The callback never shows an exception to the browser; failures become
  /login?error=<code> redirects.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse, RedirectResponse

from api.models import LogoutResponse, MeResponse, OAuthProviderInfo, UserProjection
from auth.oauth import get_enabled_providers
from auth.orchestrator import AuthOrchestrator

logger = logging.getLogger("sessiongate.api.auth")

# Auth policy:
# - GET  /auth/providers:            public -- login page renders buttons from it
# - GET  /auth/signin/{provider}:    public -- starts the OAuth flow
# - GET  /auth/callback/{provider}:  public -- provider redirects here
# - POST /auth/logout:               public -- revoking a missing session is a no-op
# - GET  /me:                        public -- returns null for anonymous callers
router = APIRouter()


@router.get("/auth/providers", response_model=list[OAuthProviderInfo])
async def list_providers(request: Request) -> list[OAuthProviderInfo]:
    """Return the configured OAuth providers. Empty list if none are configured."""
    return [OAuthProviderInfo(**p) for p in get_enabled_providers(request.app.state.settings)]


@router.get("/auth/signin/{provider}")
async def signin(request: Request, provider: str):
    """Redirect the browser to the provider's authorization page.

    The provider name is checked against the enabled list first so a crafted
    name cannot reach the registry.
    """
    identity = request.app.state.identity
    if not identity.is_enabled(provider):
        return RedirectResponse(f"{request.app.state.settings.login_url}?error=auth_failed", status_code=302)
    redirect_uri = str(request.url_for("oauth_callback", provider=provider))
    return await identity.authorize_redirect(request, provider, redirect_uri)


@router.get("/auth/callback/{provider}", name="oauth_callback")
async def oauth_callback(request: Request, provider: str) -> RedirectResponse:
    """Finish the OAuth flow and redirect back to the app.

    Success: 302 to APP_ORIGIN with the session cookie set.
    Failure: 302 to APP_ORIGIN/login?error=no_code|auth_failed|invalid_user|callback_failed.
    """
    orchestrator: AuthOrchestrator = request.app.state.orchestrator
    result = await orchestrator.complete_login(request, provider)
    resp = RedirectResponse(result.location, status_code=302)
    if result.set_cookie is not None:
        resp.headers.append("Set-Cookie", result.set_cookie)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout", response_model=LogoutResponse)
def logout(request: Request) -> JSONResponse:
    """Revoke the current session (if any) and clear the cookie. Always reports success."""
    orchestrator: AuthOrchestrator = request.app.state.orchestrator
    cleared = orchestrator.logout(request.headers)
    resp = JSONResponse(content=LogoutResponse().model_dump())
    resp.headers.append("Set-Cookie", cleared)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.get("/me", response_model=MeResponse)
def me(request: Request) -> MeResponse:
    """Return the current user, or {"user": null}.

    Missing cookie, dead session and storage failure all look the same to
    the caller.
    """
    orchestrator: AuthOrchestrator = request.app.state.orchestrator
    user = orchestrator.current_user(request.headers)
    if user is None:
        return MeResponse(user=None)
    return MeResponse(user=UserProjection.from_user(user))
