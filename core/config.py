"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Cross-field validation once every field is
      resolved. Implements the environment-conditional secret policy: the
      development environment generates throwaway secrets with a warning,
      production refuses to start without them.

Security notes:
  [M6] Signing secrets shorter than 32 chars are rejected outright.

  [M7] In production a missing secret is a hard startup failure. A random
       secret in production would silently log every user out on restart.

  [M8] The access and refresh secrets must differ. A leaked access secret
       must not be enough to forge refresh tokens.

Layer rule: core/ is the kernel. This module may not import from api/, auth/
or client/.
"""

import logging
import secrets
from datetime import datetime, timezone
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("mandarin.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'auth' / 'mandarin_auth.db'}"


def utcnow() -> datetime:
    """Default clock for expiry math. Injected wherever time matters."""
    return datetime.now(timezone.utc)


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file, as long as ENVIRONMENT=development
    (secrets are then generated).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    environment: Literal["development", "production"] = "production"
    database_url: str = _DEFAULT_DB_URL
    api_prefix: str = "/api/v1"

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The validator
    # either generates a dev secret or raises, so callers never see "".
    access_token_secret: str = ""
    refresh_token_secret: str = ""
    access_token_ttl_seconds: int = 15 * 60
    refresh_token_ttl_seconds: int = 7 * 24 * 3600

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    # 12 rounds is ~200ms on current hardware; tests drop this to 4.
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Cookie transport
    # ------------------------------------------------------------------

    refresh_cookie_name: str = "refresh_token"
    cookie_domain: str | None = None

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost:5173", "http://localhost:3000"]
    login_rate_limit: str = "5/minute"

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    session_purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # Derived
    # ------------------------------------------------------------------

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def cookie_secure(self) -> bool:
        return self.is_production

    @property
    def cookie_samesite(self) -> str:
        # Lax in development so the dev server proxy on another port still
        # receives the cookie. Strict everywhere else.
        return "strict" if self.is_production else "lax"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy [M6] [M7] [M8].

        Development: auto-generate each missing secret with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production: refuse to start if either secret is missing.

        Both: reject secrets shorter than 32 characters, and reject a
            configuration where both secrets are identical.
        """
        for field_name in ("access_token_secret", "refresh_token_secret"):
            value = getattr(self, field_name)
            if not value:
                if self.is_production:
                    raise ValueError(
                        f"{field_name.upper()} is required in production. "
                        "Set it in your environment or .env file. "
                        "To run locally, set ENVIRONMENT=development."
                    )
                setattr(self, field_name, secrets.token_hex(32))
                logger.warning(
                    "Using auto-generated %s. Sessions will not persist across restarts.", field_name.upper()
                )
            elif len(value) < 32:
                raise ValueError(f"{field_name.upper()} must be at least 32 characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")
        if self.access_token_ttl_seconds <= 0 or self.refresh_token_ttl_seconds <= 0:
            raise ValueError("Token TTLs must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
