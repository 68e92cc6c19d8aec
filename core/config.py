"""
core/config.py -- Runtime settings for tokenward, read once from the environment.

Every knob the auth core and the API need lives on Settings: signing key and
token lifetimes, the refresh-token cap, cleanup cadence, cookie and rate-limit
policy, and the feature flags for self-registration and external identities.
Nothing else in the tree reads os.environ; call get_settings().

Env var names are the upper-cased field names (access_token_minutes ->
ACCESS_TOKEN_MINUTES); an optional .env file in the working directory is
read as well.

Signing key policy:
  [M6] Keys under 32 characters are refused; every HS256 token is only as
       strong as the key.
  [M7] Without DEBUG a missing SECRET_KEY stops startup. With DEBUG a random
       key is generated per process, so tokens die on restart.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("tokenward.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'tokenward.db'}"


class Settings(BaseSettings):
    """Environment-backed settings. Every field has a default, so tests can
    build Settings(...) directly with only the overrides they care about.
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
    # "" means unset; validate_secret_key replaces or rejects it.
    secret_key: str = ""
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # Token lifetimes and limits
    # ------------------------------------------------------------------

    token_issuer: str = "tokenward"
    token_audience: str = "tokenward-api"
    access_token_minutes: int = 15
    refresh_token_days: int = 7
    max_refresh_tokens_per_user: int = 5

    # ------------------------------------------------------------------
    # Background cleanup
    # ------------------------------------------------------------------

    cleanup_interval_minutes: int = 30
    session_inactivity_days: int = 7

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost", "testserver"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Registration and external identity
    # ------------------------------------------------------------------

    self_registration_enabled: bool = True
    # External identity arrives in a header set by a trusted reverse proxy
    # (Kerberos/negotiate terminates there). Never enable this when clients
    # can reach the app directly.
    external_auth_enabled: bool = False
    external_identity_header: str = "X-Remote-User"
    default_domain: str = "LOCAL"

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Generate a dev key under DEBUG, otherwise require one [M7]; enforce length [M6]."""
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning("SECRET_KEY not set; generated a per-process key (DEBUG mode only)")
            else:
                raise ValueError("SECRET_KEY must be set unless DEBUG=true (tokens are signed with it).")
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        return self

    @model_validator(mode="after")
    def validate_limits(self) -> "Settings":
        """Reject lifetimes and limits that would disable a security control."""
        if self.access_token_minutes <= 0 or self.refresh_token_days <= 0:
            raise ValueError("Token lifetimes must be positive.")
        if self.max_refresh_tokens_per_user < 1:
            raise ValueError("MAX_REFRESH_TOKENS_PER_USER must be at least 1.")
        if self.cleanup_interval_minutes <= 0 or self.session_inactivity_days <= 0:
            raise ValueError("Cleanup interval and session inactivity threshold must be positive.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Build Settings on first use and cache it for the process.

    Tests that change environment variables must call get_settings.cache_clear().
    """
    return Settings()
