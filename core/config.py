"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for VulnConsole happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY).

  @model_validator(mode="after"): cross-field validation. Dev mode generates a
      SECRET_KEY with a warning, production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright; JWT signing relies on
  key entropy.

  ALLOW_IDENTITY_OVERRIDES lets a token carry inline user_type/roles claims.
  It exists for the test harness only and is refused outside DEBUG mode.

Layer rule: core/ is the kernel. This module may not import from api/,
auth/ or cmdb/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("vulnconsole.config")

_DATA_DIR = Path(__file__).resolve().parent.parent


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

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    token_expire_seconds: int = 3600
    allow_identity_overrides: bool = False

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    auth_database_url: str = f"sqlite:///{_DATA_DIR / 'vulnconsole_auth.db'}"
    cmdb_database_url: str = f"sqlite:///{_DATA_DIR / 'vulnconsole_cmdb.db'}"

    # ------------------------------------------------------------------
    # Search
    # ------------------------------------------------------------------

    default_page_size: int = 25
    max_page_size: int = 100

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    rate_limit_enabled: bool = True
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

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
                logger.warning("Using auto-generated SECRET_KEY. Tokens will not survive restarts.")
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
    def validate_overrides(self) -> "Settings":
        """Inline identity overrides are a test-harness feature only."""
        if self.allow_identity_overrides and not self.debug:
            raise ValueError("ALLOW_IDENTITY_OVERRIDES requires DEBUG=true.")
        if self.default_page_size < 1 or self.max_page_size < self.default_page_size:
            raise ValueError("Page size settings must satisfy 1 <= DEFAULT_PAGE_SIZE <= MAX_PAGE_SIZE.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
