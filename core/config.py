"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionGate happen here. No module should
call os.getenv() or os.environ.get() directly -- the composition roots
(api/main.py and main.py) call get_settings() and pass the Settings instance
into the services they construct.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Implements the DEBUG-conditional SECRET_KEY policy and the
      token lifetime sanity checks.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. JWT signing
       relies on key entropy -- a short key weakens every issued token.

  [M7] In production mode (DEBUG not set or false), a missing SECRET_KEY is a
       hard startup failure. A random key in production would invalidate every
       access token on restart.

Layer rule: core/ is the kernel. This module may not import from api/, auth/,
or cache/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessiongate.config")

_ROOT = Path(__file__).resolve().parent.parent


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
    app_version: str = "0.3.0"

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = f"sqlite:///{_ROOT / 'sessiongate.db'}"
    cache_db_path: str = str(_ROOT / "sessiongate_cache.db")

    # ------------------------------------------------------------------
    # Tokens and cookies
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    access_token_expire_seconds: int = 3600
    refresh_token_expire_days: int = 3
    # Cookie lifetimes differ per identity class; the ledger record's own
    # expires_at is what actually bounds a refresh token.
    admin_refresh_cookie_days: int = 3
    user_refresh_cookie_days: int = 7
    max_refresh_tokens: int = 3
    refresh_rotate_on_use: bool = False

    # ------------------------------------------------------------------
    # Identity cache
    # ------------------------------------------------------------------

    identity_cache_ttl_seconds: int = 3600
    cache_purge_interval_seconds: int = 6 * 60 * 60

    # ------------------------------------------------------------------
    # OTP password reset
    # ------------------------------------------------------------------

    otp_length: int = 6
    otp_expire_seconds: int = 300
    otp_delivery_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # SMTP (optional -- empty host means "log instead of send")
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = ""
    mail_from_name: str = "SessionGate"

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    otp_rate_limit: str = "5/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce SECRET_KEY policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated SECRET_KEY. Tokens will not persist across restarts.")
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
    def validate_lifetimes(self) -> "Settings":
        """Reject non-positive lifetimes and quotas -- they would disable auth silently."""
        positive = {
            "access_token_expire_seconds": self.access_token_expire_seconds,
            "refresh_token_expire_days": self.refresh_token_expire_days,
            "max_refresh_tokens": self.max_refresh_tokens,
            "identity_cache_ttl_seconds": self.identity_cache_ttl_seconds,
            "otp_expire_seconds": self.otp_expire_seconds,
        }
        bad = [name for name, value in positive.items() if value <= 0]
        if bad:
            raise ValueError(f"These settings must be positive: {', '.join(bad)}")
        if not 4 <= self.otp_length <= 10:
            raise ValueError("OTP_LENGTH must be between 4 and 10 digits.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Only composition roots call this. Services take a Settings argument so
    tests can build them with explicit values.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
