"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionKeeper happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. access_token_secret -> ACCESS_TOKEN_SECRET).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Implements the DEBUG-conditional secret policy: dev mode
      generates signing secrets with a warning, production mode refuses to
      start without them.

Security notes:
  Signing secrets shorter than 32 chars are rejected outright. The access and
  refresh secrets must differ: a leaked refresh secret must not be able to
  forge access tokens and vice versa.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from core.durations import parse_duration

logger = logging.getLogger("sessionkeeper.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'sessionkeeper.db'}"


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The model_validator enforces
    production-safety rules at startup.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = _DEFAULT_DB_URL
    frontend_url: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Token signing
    # ------------------------------------------------------------------

    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev secret or raises, so callers never see "".
    access_token_secret: str = ""
    refresh_token_secret: str = ""

    access_token_expires_in: str = "15m"
    refresh_token_expires_in: str = "7d"
    access_token_expires_in_long: str = "1d"
    refresh_token_expires_in_long: str = "30d"

    # ------------------------------------------------------------------
    # Credential lifecycle policy
    # ------------------------------------------------------------------

    verification_token_ttl_minutes: int = 10
    reset_token_ttl_minutes: int = 60
    max_login_attempts: int = 5
    login_lockout_minutes: int = 15
    login_attempt_retention_hours: int = 24
    maintenance_interval_hours: int = 24
    bcrypt_rounds: int = 12

    # ------------------------------------------------------------------
    # Cookies / HTTP
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    cookie_domain: str = ""
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost:3000", "http://127.0.0.1:3000"]

    # ------------------------------------------------------------------
    # Outbound email (empty smtp_host = dev mode, messages are logged)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_from: str = ""
    mail_from_name: str = "SessionKeeper"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator(
        "access_token_expires_in",
        "refresh_token_expires_in",
        "access_token_expires_in_long",
        "refresh_token_expires_in_long",
    )
    @classmethod
    def validate_duration(cls, value: str) -> str:
        """Reject unparseable lifetimes at startup instead of at first login."""
        if parse_duration(value) <= timedelta(0):
            raise ValueError(f"Token lifetime must be positive, got {value!r}")
        return value

    @field_validator("bcrypt_rounds")
    @classmethod
    def validate_bcrypt_rounds(cls, value: int) -> int:
        if not 4 <= value <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        return value

    @model_validator(mode="after")
    def validate_secrets(self) -> "Settings":
        """Enforce the signing-secret policy.

        Dev mode (DEBUG=true): auto-generate random secrets with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if either
            secret is missing.

        Both modes: reject secrets shorter than 32 characters and identical
            access/refresh secrets.
        """
        for field_name in ("access_token_secret", "refresh_token_secret"):
            value = getattr(self, field_name)
            if not value:
                if self.debug:
                    setattr(self, field_name, secrets.token_hex(32))
                    logger.warning(
                        "WARNING: Using auto-generated %s. Sessions will not persist across restarts.",
                        field_name.upper(),
                    )
                else:
                    raise ValueError(
                        f"{field_name.upper()} is required in production mode. "
                        "Set it in your environment or .env file. "
                        "To run in development mode, set DEBUG=true."
                    )
            if len(getattr(self, field_name)) < 32:
                raise ValueError(f"{field_name.upper()} must be at least 32 characters.")
        if self.access_token_secret == self.refresh_token_secret:
            raise ValueError("ACCESS_TOKEN_SECRET and REFRESH_TOKEN_SECRET must differ.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    def access_lifetime(self, persistent: bool) -> timedelta:
        """Access token lifetime: long ("remember me") or standard."""
        return parse_duration(self.access_token_expires_in_long if persistent else self.access_token_expires_in)

    def refresh_lifetime(self, persistent: bool) -> timedelta:
        """Refresh token lifetime: long ("remember me") or standard."""
        return parse_duration(self.refresh_token_expires_in_long if persistent else self.refresh_token_expires_in)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
