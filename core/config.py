"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for WikiMillionaire auth happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead, or better, accept a Settings instance from the process entry point.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. jwt_secret -> JWT_SECRET). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a signing key with a
      warning, production mode refuses to start without one.

Security notes:
  [M6] JWT_SECRET shorter than 32 chars is rejected outright. HS256 signing
       relies on key entropy -- a short key weakens every issued token.

  [M7] In production mode (DEBUG not set or false), a missing JWT_SECRET is a
       hard startup failure. There is no hard-coded fallback secret.

  Token lifetimes use the compact duration grammar ^(\\d+)([smhd])$. A
  malformed value fails at startup rather than on the first login.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
or auth/.
"""

import logging
import re
import secrets
from functools import lru_cache
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("wikimillionaire.config")

DURATION_PATTERN = re.compile(r"^(\d+)([smhd])$")

# Transient flow cookies must not outlive the login they correlate.
MAX_TRANSIENT_COOKIE_AGE = 15 * 60


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. The validators enforce
    production-safety rules at startup.

    Provider credentials default to "" (not configured). They are checked at
    first use by the signer / flow that needs them and raise
    ConfigurationError there, so an OAuth 2.0-only deployment does not need
    OAuth 1.0a credentials and vice versa.
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
    jwt_secret: str = ""
    jwt_issuer: str = "wikimillionaire"
    jwt_audience: str = "wikimillionaire-users"

    access_token_expiry: str = "15m"
    refresh_token_expiry: str = "7d"

    # ------------------------------------------------------------------
    # Wikimedia identity provider
    # ------------------------------------------------------------------

    wikimedia_base_url: str = "https://meta.wikimedia.org"
    provider_timeout: float = 10.0

    # OAuth 1.0a (HMAC-SHA1 signed requests)
    wikimedia_consumer_key: str = ""
    wikimedia_consumer_secret: str = ""
    wikimedia_oauth1_callback: str = "oob"
    oauth1_verify_identity: bool = True

    # OAuth 2.0 + PKCE
    wikimedia_client_id: str = ""
    wikimedia_client_secret: str = ""  # optional -- public clients rely on PKCE alone
    wikimedia_redirect_uri: str = ""

    # ------------------------------------------------------------------
    # Database
    # ------------------------------------------------------------------

    db_type: str = "sqlite"
    database_url: str = ""

    # ------------------------------------------------------------------
    # Cookies
    # ------------------------------------------------------------------

    # None = derive from DEBUG (Secure everywhere except development).
    secure_cookies: Optional[bool] = None
    cookie_domain: str = ""
    transient_cookie_max_age: int = MAX_TRANSIENT_COOKIE_AGE

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    login_rate_limit: str = "20/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    error_page: str = "/auth/error"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @field_validator("access_token_expiry", "refresh_token_expiry")
    @classmethod
    def validate_duration(cls, value: str) -> str:
        if not DURATION_PATTERN.match(value):
            raise ValueError(f"Invalid token expiry {value!r}: expected <number><s|m|h|d>, e.g. 15m or 7d.")
        return value

    @field_validator("transient_cookie_max_age")
    @classmethod
    def validate_transient_age(cls, value: int) -> int:
        if value <= 0 or value > MAX_TRANSIENT_COOKIE_AGE:
            raise ValueError(f"TRANSIENT_COOKIE_MAX_AGE must be between 1 and {MAX_TRANSIENT_COOKIE_AGE} seconds.")
        return value

    @field_validator("db_type")
    @classmethod
    def normalize_db_type(cls, value: str) -> str:
        return value.strip().lower()

    @model_validator(mode="after")
    def validate_jwt_secret(self) -> "Settings":
        """Enforce JWT_SECRET policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            JWT_SECRET is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.jwt_secret:
            if self.debug:
                self.jwt_secret = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated JWT_SECRET. Sessions will not persist across restarts.")
            else:
                raise ValueError(
                    "JWT_SECRET is required in production mode. "
                    "Set JWT_SECRET in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.jwt_secret) < 32:
            raise ValueError("JWT_SECRET must be at least 32 characters.")
        return self

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def cookie_secure(self) -> bool:
        if self.secure_cookies is not None:
            return self.secure_cookies
        return not self.debug

    @property
    def oauth1_configured(self) -> bool:
        return bool(self.wikimedia_consumer_key and self.wikimedia_consumer_secret)

    @property
    def oauth2_configured(self) -> bool:
        return bool(self.wikimedia_client_id and self.wikimedia_redirect_uri)


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or construct Settings(...)
    directly and hand it to the component under test.
    """
    return Settings()
