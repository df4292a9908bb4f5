"""
core/config.py -- Centralized configuration via pydantic-settings.

passgate reads its environment in exactly one place. auth/ modules take a
Settings from get_settings() (or accept one as an argument in tests) and
never look at os.environ themselves.

  get_settings() is memoized with lru_cache, so the environment and .env
      file are parsed once per process.

  Settings is a pydantic-settings BaseSettings: SESSION_VALIDITY_DAYS,
      GITHUB_CLIENT_ID and friends map onto the lower-case fields below and
      are coerced and range-checked on load.

  The SECRET_KEY policy lives in a model_validator that runs once every
      field is resolved; see validate_secret_key().

Token validity windows:
  Each token purpose has its own window. Reset links are deliberately short
  lived (minutes); confirmation and email-change links last a day; sessions
  last 60 days from issuance. The windows are tunable here, but collapsing
  them into one shared value is not supported.

Layer rule: core/ is the kernel. This module may not import from auth/.
"""

import logging
import secrets
from datetime import timedelta
from functools import lru_cache
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("passgate.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).parent.parent / 'passgate_accounts.db'}"


class Settings(BaseSettings):
    """Process-wide account settings.

    Every field has a default; only SECRET_KEY must be supplied outside of
    DEBUG mode.
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
    # Signs session tokens. "" means unset; validate_secret_key() replaces or rejects it.
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Credentials
    # ------------------------------------------------------------------

    # bcrypt cost factor. Tests lower this to keep the suite fast.
    password_hash_rounds: int = Field(default=12, ge=4, le=31)
    token_bytes: int = Field(default=32, ge=24)

    # ------------------------------------------------------------------
    # Token validity windows
    # ------------------------------------------------------------------

    session_validity_days: int = Field(default=60, gt=0)
    confirm_validity_days: int = Field(default=1, gt=0)
    change_email_validity_days: int = Field(default=1, gt=0)
    reset_password_validity_minutes: int = Field(default=10, gt=0)

    # ------------------------------------------------------------------
    # OAuth providers (optional -- empty string means provider is disabled)
    # ------------------------------------------------------------------

    github_client_id: str = ""
    github_client_secret: str = ""
    google_client_id: str = ""
    google_client_secret: str = ""

    # Generic OIDC (Okta, Azure AD, Keycloak, Authentik, etc.)
    oidc_client_id: str = ""
    oidc_client_secret: str = ""
    oidc_discovery_url: str = ""
    oidc_display_name: str = "SSO"

    oauth_redirect_uri: str = ""

    # ------------------------------------------------------------------
    # Email
    # ------------------------------------------------------------------

    mail_from: str = "no-reply@localhost"

    # ------------------------------------------------------------------
    # Derived values
    # ------------------------------------------------------------------

    @property
    def session_max_age(self) -> timedelta:
        return timedelta(days=self.session_validity_days)

    @property
    def confirm_max_age(self) -> timedelta:
        return timedelta(days=self.confirm_validity_days)

    @property
    def change_email_max_age(self) -> timedelta:
        return timedelta(days=self.change_email_validity_days)

    @property
    def reset_password_max_age(self) -> timedelta:
        return timedelta(minutes=self.reset_password_validity_minutes)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """SECRET_KEY signs every session token.

        DEBUG=true and no key: a random key is generated and a warning logged;
            sessions issued before a restart stop verifying.
        DEBUG unset and no key: refuse to load.
        Any mode: keys under 32 characters are rejected (HS256 signatures).
        """
        if not self.secret_key:
            if not self.debug:
                raise ValueError(
                    "SECRET_KEY must be set outside DEBUG mode; "
                    "session tokens are signed with it. Add it to the environment or .env."
                )
            self.secret_key = secrets.token_hex(32)
            logger.warning("No SECRET_KEY configured; generated a throwaway key for this DEBUG process.")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the process-wide Settings, loading it on first use.

    Tests that change the environment must call get_settings.cache_clear().
    """
    return Settings()
