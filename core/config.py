"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. The
      instance is then handed to CookieCodec, SessionService, the OAuth client
      and AuthOrchestrator through their constructors. Nothing reads it from
      module globals after startup.

  Immutable settings: frozen=True makes every field read-only once the
      process has started. Tests build their own Settings(...) rather than
      patching the singleton.

Security notes:
  SECRET_KEY signs the Starlette session cookie that carries the OAuth state
  parameter between the authorization redirect and the callback. Keys shorter
  than 32 chars are rejected. Debug mode generates a throwaway key; production
  refuses to start without one.

  SameSite=None is only honoured by browsers on Secure cookies, so that
  combination is rejected at startup instead of silently dropping the cookie.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import Field, ValidationInfo, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessiongate.config")

_THIRTY_DAYS = 30 * 24 * 60 * 60


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Field names map to upper-cased
    env vars (cookie_name -> COOKIE_NAME).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        frozen=True,
        validate_default=True,
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the sentinel for "not configured". The validator below
    # either generates a dev key or raises, so callers never see "".
    secret_key: str = ""

    app_origin: str = "http://localhost:3000"
    api_origin: str = "http://localhost:8000"
    allowed_hosts: list[str] = ["*"]
    # Empty list means "only APP_ORIGIN".
    cors_origins: list[str] = []

    database_url: str = "sqlite:///sessiongate.db"

    # ------------------------------------------------------------------
    # Session cookie
    # ------------------------------------------------------------------

    cookie_name: str = "bsc_session"
    # Empty string -> host-only cookie (no Domain attribute).
    cookie_domain: str = ""
    cookie_secure: bool = False
    cookie_samesite: Literal["Lax", "Strict", "None"] = "Lax"

    session_ttl_seconds: int = Field(default=_THIRTY_DAYS, gt=0)
    # 0 disables background pruning; sessions are then kept forever as an
    # audit trail.
    session_purge_after_days: int = Field(default=0, ge=0)

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    oauth_google_client_id: str = ""
    oauth_google_client_secret: str = ""
    oauth_discord_client_id: str = ""
    oauth_discord_client_secret: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("secret_key")
    @classmethod
    def validate_secret_key(cls, value: str, info: ValidationInfo) -> str:
        """Generate a key in debug mode, demand one otherwise, reject short keys."""
        if not value:
            if info.data.get("debug"):
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "OAuth state will not survive restarts."
                )
                return secrets.token_hex(32)
            raise ValueError(
                "SECRET_KEY is required in production mode. "
                "Set SECRET_KEY in your environment or .env file. "
                "To run in development mode, set DEBUG=true."
            )
        if len(value) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return value

    @model_validator(mode="after")
    def validate_cookie_policy(self) -> "Settings":
        if self.cookie_samesite == "None" and not self.cookie_secure:
            raise ValueError("COOKIE_SAMESITE=None requires COOKIE_SECURE=true.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def login_url(self) -> str:
        return f"{self.app_origin.rstrip('/')}/login"

    @property
    def effective_cors_origins(self) -> list[str]:
        return self.cors_origins or [self.app_origin]


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
