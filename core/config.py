"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for IDCore happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. Services
      never call get_settings() themselves; the composition root (api/main.py,
      main.py) reads it once and passes the values into constructors.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Used for the DEBUG-conditional SECRET_KEY
      logic and the bcrypt cost floor.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing
       relies on key entropy -- a short key makes offline forgery feasible.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. Auto-generated keys would invalidate every access
       token on restart.

  [M8] BCRYPT_ROUNDS below 10 is only accepted in DEBUG mode (tests use 4 for
       speed). Production hashes must stay deliberately expensive.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/, cache/, or notify/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("idcore.config")


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
    # Empty string is the sentinel for "not configured". The model_validator
    # below either generates a dev key or raises, so callers never see "".
    secret_key: str = ""
    log_level: str = "INFO"

    # ------------------------------------------------------------------
    # Access tokens (JWT) and refresh tokens
    # ------------------------------------------------------------------

    jwt_issuer: str = "idcore"
    jwt_audience: str = "idcore-api"
    access_token_expire_seconds: int = 3600
    refresh_token_expire_days: int = 30

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    password_min_length: int = 8
    require_email_verification: bool = False

    # ------------------------------------------------------------------
    # Links embedded in notifications and OAuth redirects
    # ------------------------------------------------------------------

    frontend_url: str = "http://localhost:3000"
    # Tokens are appended to this URL as a fragment after the Google callback.
    oauth_frontend_url: str = "http://localhost:3000/auth/callback"
    cors_origins: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    database_url: str = "sqlite:///idcore_auth.db"

    # "sqlite" keeps counters in a local SQLite file (single node);
    # "redis" shares them across API workers.
    cache_driver: str = "sqlite"
    cache_path: str = "idcore_cache.db"
    redis_url: str = "redis://localhost:6379/0"

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    email_driver: str = "console"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    email_from_address: str = "noreply@localhost"
    email_from_name: str = "IDCore"

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    google_client_id: str = ""
    google_client_secret: str = ""

    # ------------------------------------------------------------------
    # Rate limiting (per-IP, in front of the per-email lockout)
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Admin seed (both must be set for seeding to run)
    # ------------------------------------------------------------------

    admin_email: str = ""
    admin_password: str = ""
    admin_name: str = "Admin"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M6] [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Access tokens will not survive restarts.")
            else:
                raise ValueError(
                    "SECRET_KEY is required in production mode. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_token_lifetimes(self) -> "Settings":
        """Reject lifetimes and costs that would silently disable a control [M8]."""
        if self.access_token_expire_seconds < 1:
            raise ValueError("ACCESS_TOKEN_EXPIRE_SECONDS must be at least 1.")
        if self.refresh_token_expire_days < 1:
            raise ValueError("REFRESH_TOKEN_EXPIRE_DAYS must be at least 1.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        if self.bcrypt_rounds < 10 and not self.debug:
            raise ValueError("BCRYPT_ROUNDS below 10 is only allowed with DEBUG=true.")
        if self.cache_driver not in ("sqlite", "redis"):
            raise ValueError(f"CACHE_DRIVER must be 'sqlite' or 'redis' (got {self.cache_driver!r}).")
        if self.email_driver not in ("console", "smtp"):
            raise ValueError(f"EMAIL_DRIVER must be 'console' or 'smtp' (got {self.email_driver!r}).")
        if self.google_client_id and not self.google_client_secret:
            raise ValueError("GOOGLE_CLIENT_SECRET is required when GOOGLE_CLIENT_ID is set.")
        return self

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
