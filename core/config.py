"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for AuthCore happen here. No module should
call os.getenv() or os.environ.get() directly.

Two ways to get a Settings value:
  get_settings(): lru_cache singleton for the process edge (api/main.py and
      the CLI). Reads env vars and an optional .env file once.

  Settings(...): explicit construction. The auth core (AuthOrchestrator,
      CredentialStore, SessionManager) never calls get_settings() -- it is
      handed a Settings instance at construction time so tests can build
      one with fast hashing costs and short session lifetimes.

Security notes:
  SECRET_KEY keys the HMAC that stores session tokens at rest. Shorter than
  32 chars is rejected outright. In production mode (DEBUG unset or false)
  a missing SECRET_KEY is a hard startup failure, because a random key would
  invalidate every stored session on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or
auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authcore.config")

# Slugs that would collide with application routes. Carried over from the
# product's organization config.
_DEFAULT_FORBIDDEN_SLUGS = [
    "new-organization",
    "admin",
    "settings",
    "ai-demo",
    "api",
    "auth",
]


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Field names map to upper-cased
    env vars, e.g. `session_max_age_seconds` reads SESSION_MAX_AGE_SECONDS.
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
    database_url: str = "sqlite:///authcore.db"

    # ------------------------------------------------------------------
    # Password policy
    # ------------------------------------------------------------------

    password_min_length: int = Field(default=8, ge=1)
    password_max_length: int = Field(default=128, ge=1)
    # "argon2id" for new hashes; "bcrypt" records from older deployments
    # still verify and are upgraded on the next successful sign-in.
    password_hash_algorithm: str = "argon2id"
    argon2_time_cost: int = Field(default=3, ge=1)
    argon2_memory_cost: int = Field(default=65536, ge=8)  # KiB
    argon2_parallelism: int = Field(default=4, ge=1)
    bcrypt_rounds: int = Field(default=12, ge=4, le=31)

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    session_max_age_seconds: int = Field(default=60 * 60 * 24 * 30, gt=0)  # 30 days
    # Sliding window: a validated session is extended once more than this
    # fraction of the max age has passed since it was last seen.
    session_sliding_refresh: bool = True
    session_refresh_fraction: float = Field(default=1 / 30, ge=0.0, le=1.0)
    # 0 = no absolute cap; otherwise refresh never extends past created_at + this.
    session_absolute_max_age_seconds: int = Field(default=0, ge=0)
    session_purge_interval_seconds: int = Field(default=6 * 60 * 60, gt=0)
    session_cookie_name: str = "authcore.session_token"
    secure_cookies: bool = False

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True
    require_email_verification: bool = False

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    allow_user_organizations: bool = True
    forbidden_organization_slugs: list[str] = Field(default_factory=lambda: list(_DEFAULT_FORBIDDEN_SLUGS))

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    storage_timeout_seconds: float = Field(default=5.0, gt=0)
    storage_retry_attempts: int = Field(default=1, ge=0)

    # ------------------------------------------------------------------
    # HTTP adapter
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    signup_rate_limit: str = "5/minute"
    allowed_hosts: list[str] = Field(default_factory=lambda: ["localhost", "127.0.0.1", "*.localhost", "testserver"])
    trusted_origins: list[str] = Field(default_factory=lambda: ["http://localhost:3001"])

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
        Production mode: refuse to start without one.
        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("Using auto-generated SECRET_KEY. Sessions will not survive a restart.")
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
    def validate_policy(self) -> "Settings":
        """Reject settings combinations the core cannot honour."""
        if self.password_max_length < self.password_min_length:
            raise ValueError("PASSWORD_MAX_LENGTH must be >= PASSWORD_MIN_LENGTH.")
        if self.password_hash_algorithm not in ("argon2id", "bcrypt"):
            raise ValueError("PASSWORD_HASH_ALGORITHM must be 'argon2id' or 'bcrypt'.")
        if 0 < self.session_absolute_max_age_seconds < self.session_max_age_seconds:
            raise ValueError("SESSION_ABSOLUTE_MAX_AGE_SECONDS must be 0 or >= SESSION_MAX_AGE_SECONDS.")
        self.forbidden_organization_slugs = [s.strip().lower() for s in self.forbidden_organization_slugs]
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings singleton.

    Only the process edge (api/main.py, main.py) should call this. In tests:
    call get_settings.cache_clear() if you need different env vars.
    """
    return Settings()
