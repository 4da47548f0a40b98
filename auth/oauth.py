"""
auth/oauth.py -- Authlib OAuth/OIDC provider configuration and identity exchange.

build_oauth_registry() registers only the providers whose client ID and
secret are both configured. The registry is built once in the application
lifespan from the Settings instance and handed to OAuthIdentityClient;
nothing is registered at import time.

Supported providers:
  google  -- OIDC discovery; identity comes from the id_token claims.
  discord -- Static endpoints; identity comes from GET /users/@me.

Security notes:
  Email verification is mandatory. An unverified address could belong to
  someone else, and email is the key the user upsert matches on. When the
  provider does not confirm verification, exchange() returns an identity
  without an email and the orchestrator rejects it as invalid_user.

  The OAuth state parameter (CSRF protection) is handled by authlib through
  Starlette's SessionMiddleware: state is stored in the signed session cookie
  before the authorization redirect and checked on the callback.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

import httpx
from authlib.integrations.starlette_client import OAuth, OAuthError
from starlette.requests import Request

from auth.errors import UpstreamIdentityFailure
from auth.models import ProviderIdentity
from core.config import Settings

logger = logging.getLogger("sessiongate.auth.oauth")

_PROVIDER_LABELS = {"google": "Google", "discord": "Discord"}

_DISCORD_CDN = "https://cdn.discordapp.com/avatars/{user_id}/{avatar}.png"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def build_oauth_registry(settings: Settings) -> OAuth:
    """Create an authlib OAuth registry with every configured provider."""
    oauth = OAuth()

    if settings.oauth_google_client_id and settings.oauth_google_client_secret:
        oauth.register(
            name="google",
            client_id=settings.oauth_google_client_id,
            client_secret=settings.oauth_google_client_secret,
            server_metadata_url="https://accounts.google.com/.well-known/openid-configuration",
            client_kwargs={"scope": "openid email profile"},
        )
        logger.info("Google OAuth provider registered")

    if settings.oauth_discord_client_id and settings.oauth_discord_client_secret:
        oauth.register(
            name="discord",
            client_id=settings.oauth_discord_client_id,
            client_secret=settings.oauth_discord_client_secret,
            access_token_url="https://discord.com/api/oauth2/token",  # noqa: S106 -- URL, not a password
            authorize_url="https://discord.com/api/oauth2/authorize",
            api_base_url="https://discord.com/api/",
            client_kwargs={"scope": "identify email"},
        )
        logger.info("Discord OAuth provider registered")

    return oauth


def get_enabled_providers(settings: Settings) -> list[dict]:
    """Return [{"name": ..., "label": ...}] for every configured provider.

    Used by GET /api/v1/auth/providers so the frontend can render one sign-in
    button per provider.
    """
    providers: list[dict] = []
    if settings.oauth_google_client_id and settings.oauth_google_client_secret:
        providers.append({"name": "google", "label": _PROVIDER_LABELS["google"]})
    if settings.oauth_discord_client_id and settings.oauth_discord_client_secret:
        providers.append({"name": "discord", "label": _PROVIDER_LABELS["discord"]})
    return providers


# ---------------------------------------------------------------------------
# Identity exchange
# ---------------------------------------------------------------------------


class OAuthIdentityClient:
    """Wraps the authlib registry behind the two calls the auth flow needs.

    authorize_redirect() starts the flow; exchange() finishes it by trading
    the authorization code on the callback request for a ProviderIdentity.
    """

    def __init__(self, registry: OAuth, settings: Settings) -> None:
        self._registry = registry
        self._enabled = {p["name"] for p in get_enabled_providers(settings)}

    @property
    def providers(self) -> list[str]:
        return sorted(self._enabled)

    def is_enabled(self, provider: str) -> bool:
        return provider in self._enabled

    async def authorize_redirect(self, request: Request, provider: str, redirect_uri: str):
        client = self._client(provider)
        return await client.authorize_redirect(request, redirect_uri)

    async def exchange(self, request: Request, provider: str) -> ProviderIdentity:
        """Exchange the callback's authorization code for a normalized identity.

        authlib reads code and state from the request itself and checks state
        against the session.

        Raises:
            UpstreamIdentityFailure: unknown provider, rejected code, state
                mismatch, or an HTTP error from the provider API.
        """
        client = self._client(provider)
        try:
            token = await client.authorize_access_token(request)
            if provider == "discord":
                return await _discord_identity(client, token)
            return _oidc_identity(token, provider)
        except OAuthError as exc:
            raise UpstreamIdentityFailure(f"{provider} code exchange failed: {exc.error}") from exc
        except httpx.HTTPError as exc:
            raise UpstreamIdentityFailure(f"{provider} API request failed: {exc}") from exc

    def _client(self, provider: str):
        if provider not in self._enabled:
            raise UpstreamIdentityFailure(f"Unknown or disabled OAuth provider: {provider!r}")
        client = self._registry.create_client(provider)
        if client is None:
            raise UpstreamIdentityFailure(f"OAuth provider {provider!r} is not registered")
        return client


def _oidc_identity(token: dict, provider: str) -> ProviderIdentity:
    """Build an identity from the id_token claims authlib attached as token["userinfo"]."""
    userinfo = token.get("userinfo")
    if not userinfo:
        raise UpstreamIdentityFailure(f"{provider} OAuth: no userinfo in token response")

    email = userinfo.get("email")
    if email and not userinfo.get("email_verified", False):
        logger.warning("%s OAuth: ignoring unverified email", provider)
        email = None

    return ProviderIdentity(email=email, name=userinfo.get("name"), image=userinfo.get("picture"))


async def _discord_identity(client, token: dict) -> ProviderIdentity:
    """Build an identity from Discord's /users/@me.

    Discord reports verification as a top-level "verified" flag. The display
    name prefers global_name over the legacy username.
    """
    resp = await client.get("users/@me", token=token)
    resp.raise_for_status()
    profile = resp.json()

    email = profile.get("email")
    if email and not profile.get("verified", False):
        logger.warning("discord OAuth: ignoring unverified email")
        email = None

    image = None
    if profile.get("avatar") and profile.get("id"):
        image = _DISCORD_CDN.format(user_id=profile["id"], avatar=profile["avatar"])

    return ProviderIdentity(
        email=email,
        name=profile.get("global_name") or profile.get("username"),
        image=image,
    )
