"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for the auth service happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). A few fields also accept the legacy
      SUPABASE_* names through AliasChoices.

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Implements the DEBUG-conditional secret policy.

Security notes:
  [M6] A session secret shorter than 32 chars is rejected outright. Session
       and CSRF state tokens are HMAC-SHA256 signed with it.

  [M7] Outside DEBUG, a missing secret is a hard startup failure. A random
       per-process key would silently log everybody out on every restart.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
directory/, or cache/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Optional

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("steamauth.config")

_DISABLED_VALUES = {"0", "false", "no", "off", "disabled"}

_PROVIDER_ALIASES = {
    "auto": "auto",
    "remote": "remote",
    "supabase": "remote",
    "local": "local",
    "sqlite": "local",
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file (DEBUG=true is still required to
    get an auto-generated secret).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    # Empty string is the "not configured" sentinel; the validator below
    # either generates a dev key or raises.
    secret_key: str = Field(default="", validation_alias=AliasChoices("SECRET_KEY", "SESSION_SECRET"))
    # Externally visible origin, used only when forwarded/Host headers are absent.
    base_url: str = ""
    allowed_hosts: list[str] = ["*"]
    cors_origins: list[str] = []

    # ------------------------------------------------------------------
    # Cookies and tokens
    # ------------------------------------------------------------------

    # None = decide per request from X-Forwarded-Proto / Host.
    secure_cookies: Optional[bool] = None
    session_cookie_name: str = "admin_auth"
    state_cookie_name: str = "steam_auth_state"
    session_ttl_seconds: int = 60 * 60 * 24 * 30
    state_ttl_seconds: int = 60 * 10

    # ------------------------------------------------------------------
    # Steam
    # ------------------------------------------------------------------

    steam_login_enabled: str = "true"
    steam_openid_endpoint: str = "https://steamcommunity.com/openid/login"
    steam_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("STEAM_API_KEY", "STEAM_WEB_API_KEY", "STEAM_KEY"),
    )
    steam_openid_timeout: float = 10.0
    steam_profile_timeout: float = 5.0
    profile_cache_ttl_seconds: int = 5 * 60
    login_rate_limit: str = "30/minute"

    # ------------------------------------------------------------------
    # Admin directory
    # ------------------------------------------------------------------

    admins_provider: str = "auto"
    directory_url: str = Field(
        default="",
        validation_alias=AliasChoices("DIRECTORY_URL", "SUPABASE_URL", "SUPABASE_PROJECT_URL"),
    )
    directory_key: str = Field(
        default="",
        validation_alias=AliasChoices(
            "DIRECTORY_KEY",
            "SUPABASE_SERVICE_ROLE_KEY",
            "SUPABASE_SERVICE_KEY",
            "SUPABASE_ANON_KEY",
        ),
    )
    directory_schema: str = "public"
    directory_table: str = "admin_steam_ids"
    directory_timeout: float = 8.0
    # Local embedded store; doubles as the mirror in remote mode.
    admins_db_url: str = "sqlite:///admins.db"

    # Seed sources, merged by steam id (later sources win).
    bootstrap_admin_ids: str = ""
    bootstrap_admin_table: str = ""
    bootstrap_admins_json: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("admins_provider", mode="before")
    @classmethod
    def normalize_provider(cls, value: object) -> str:
        """Map provider spellings onto auto/remote/local; unknown values mean auto."""
        return _PROVIDER_ALIASES.get(str(value or "").strip().lower(), "auto")

    @field_validator("directory_url", "base_url", mode="after")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the session secret policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode: refuse to start without a secret.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY (or SESSION_SECRET) is required in production mode. "
                    "Set it in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def steam_login_ready(self) -> bool:
        return self.steam_login_enabled.strip().lower() not in _DISABLED_VALUES

    @property
    def steam_login_reason(self) -> str:
        if self.steam_login_ready:
            return ""
        return "Steam login disabled by STEAM_LOGIN_ENABLED on the server."

    @property
    def remote_directory_configured(self) -> bool:
        return bool(self.directory_url and self.directory_key)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
