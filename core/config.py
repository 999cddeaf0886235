"""
core/config.py -- Centralized configuration via pydantic-settings.

All environment variable reads for identity-core happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file. Nested groups use a double underscore, e.g.
      JWT__SECRET_KEY, LOCKOUT__ALLOWED_FOR_NEW_USERS, ADMIN_USER__PASSWORD.
      List-valued settings (DEFAULT_ROLES, EXTERNAL_LOGINS) are JSON.

  @model_validator(mode="after"): Cross-field validation after all fields
      are resolved. Dev mode generates a signing key with a warning,
      production mode refuses to start without one.

Security notes:
  [M6] JWT__SECRET_KEY shorter than 32 chars is rejected outright. HMAC-SHA256
       signing relies on key entropy -- a short key weakens every token.

  [M7] In production mode (DEBUG not set or false), a missing secret key is a
       hard startup failure.

Layer rule: core/ is the kernel. This module may not import from identity/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import BaseModel, Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("identitycore.config")


class JwtSettings(BaseModel):
    issuer: str = "identity-core"
    # Empty string means "same as issuer" -- filled in by the Settings validator.
    audience: str = ""
    # Empty string is the sentinel for "not configured" (see validate_secret_key).
    secret_key: str = ""
    access_hours: int = Field(default=24, gt=0)
    refresh_hours: int = Field(default=720, gt=0)


class LockoutSettings(BaseModel):
    allowed_for_new_users: bool = True
    max_failed_access_attempts: int = Field(default=5, gt=0)
    lockout_minutes: int = Field(default=5, gt=0)


class PasswordSettings(BaseModel):
    required_length: int = Field(default=8, ge=1)
    require_digit: bool = True
    require_lowercase: bool = True
    require_uppercase: bool = True
    require_non_alphanumeric: bool = True


class AdminUserSettings(BaseModel):
    # Used by the storeless sign-in path only. Empty password disables it.
    username: str = "admin"
    password: str = ""
    email: str = "admin@localhost"


class ExternalLoginSettings(BaseModel):
    name: str
    client_id: str
    client_secret: str = ""


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    debug: bool = False
    database_url: str = "sqlite:///identity.db"

    # ------------------------------------------------------------------
    # Tokens, lockout, password policy
    # ------------------------------------------------------------------

    jwt: JwtSettings = Field(default_factory=JwtSettings)
    lockout: LockoutSettings = Field(default_factory=LockoutSettings)
    password: PasswordSettings = Field(default_factory=PasswordSettings)
    require_unique_email: bool = True
    # Lifetime of reset-password / confirm-email / change-phone tokens.
    purpose_token_hours: int = Field(default=24, gt=0)

    # ------------------------------------------------------------------
    # Users
    # ------------------------------------------------------------------

    admin_user: AdminUserSettings = Field(default_factory=AdminUserSettings)
    default_roles: list[str] = Field(default_factory=list)

    # ------------------------------------------------------------------
    # External providers
    # ------------------------------------------------------------------

    external_logins: list[ExternalLoginSettings] = Field(default_factory=list)
    http_timeout_seconds: float = 10.0
    oidc_cache_ttl_seconds: int = 60 * 60 * 24

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the signing-key policy [M7].

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Tokens will not survive restart -- acceptable for local dev.

        Production mode: refuse to start if JWT__SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters [M6].
        """
        if not self.jwt.secret_key:
            if self.debug:
                self.jwt.secret_key = secrets.token_hex(32)
                logger.warning("WARNING: Using auto-generated JWT secret key. Tokens will not persist across restarts.")
            else:
                raise ValueError(
                    "JWT__SECRET_KEY is required in production mode. "
                    "Set JWT__SECRET_KEY in your environment or .env file. "
                    "To run in development mode, set DEBUG=true."
                )
        if len(self.jwt.secret_key) < 32:
            raise ValueError("JWT__SECRET_KEY must be at least 32 characters.")
        if not self.jwt.audience:
            self.jwt.audience = self.jwt.issuer
        return self

    @model_validator(mode="after")
    def validate_external_logins(self) -> "Settings":
        """Reject duplicate provider names -- lookup is by name, first match would silently win."""
        names = [login.name for login in self.external_logins]
        duplicates = {n for n in names if names.count(n) > 1}
        if duplicates:
            raise ValueError(f"Duplicate EXTERNAL_LOGINS entries: {sorted(duplicates)!r}")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables, or build Settings(...) directly
    and pass it to the components -- nothing below core/ calls get_settings()
    at import time.
    """
    return Settings()
