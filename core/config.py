"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads happen here. No module should call os.getenv()
or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. session_ttl_seconds -> SESSION_TTL_SECONDS).

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Used for the DEBUG-conditional SECRET_KEY logic and for sanity
      checks on the session / rate-limit / password policy numbers.

Security notes:
  SECRET_KEY keys the HMAC that protects session tokens at rest. Keys shorter
  than 32 chars are rejected. In production mode a missing key is a hard
  startup failure, since a random key would orphan every stored session on
  restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("church.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
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
    # Empty string is the sentinel for "not configured".
    secret_key: str = ""
    database_url: str = "sqlite:///church_auth.db"

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_ttl_seconds: int = 24 * 60 * 60
    remember_me_ttl_seconds: int = 7 * 24 * 60 * 60
    session_cleanup_interval_seconds: int = 5 * 60

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    rate_limit_max_attempts: int = 5
    rate_limit_window_seconds: int = 15 * 60
    # limits storage URI: "memory://" or e.g. "redis://localhost:6379/0"
    rate_limit_storage_uri: str = "memory://"
    # Per client address, applied by slowapi on POST /auth/login.
    login_ip_rate_limit: str = "20/minute"

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    bcrypt_rounds: int = 12
    password_min_length: int = 8
    password_require_uppercase: bool = True
    password_require_lowercase: bool = True
    password_require_digit: bool = True
    password_require_special: bool = False
    # Consecutive failed logins before the account is deactivated. 0 disables.
    lockout_threshold: int = 5

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start if SECRET_KEY is missing.
        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not survive a restart."
                )
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
    def validate_limits(self) -> "Settings":
        """Reject policy numbers that would silently disable a control."""
        if self.rate_limit_max_attempts < 1:
            raise ValueError("RATE_LIMIT_MAX_ATTEMPTS must be at least 1.")
        if self.rate_limit_window_seconds < 1:
            raise ValueError("RATE_LIMIT_WINDOW_SECONDS must be at least 1.")
        if self.password_min_length < 1:
            raise ValueError("PASSWORD_MIN_LENGTH must be at least 1.")
        if not 4 <= self.bcrypt_rounds <= 31:
            raise ValueError("BCRYPT_ROUNDS must be between 4 and 31.")
        if self.lockout_threshold < 0:
            raise ValueError("LOCKOUT_THRESHOLD must not be negative.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
