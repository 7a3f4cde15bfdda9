"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for FarmAssist happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. oidc_issuer -> OIDC_ISSUER). Type coercion and validation are built in.

  @model_validator(mode="after"): Cross-field rules that depend on ENVIRONMENT
      (secret handling, the OIDC development bypass) run once all fields are
      resolved.

Security notes:
  [M6] SECRET_KEY shorter than 32 chars is rejected outright. Session tokens
       are HS256-signed with it.

  [M7] In production a missing SECRET_KEY is a hard startup failure. Outside
       production a random key is generated with a warning (tokens do not
       survive a restart).

  [O1] OIDC_DEV_BYPASS can never be active in production. The validator
       forces it off and logs an error if someone sets it there.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache
from typing import Literal

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("farmassist.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. Optional integrations (SMTP, SMS,
    OIDC) use the empty string as the "not configured" sentinel.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Core
    # ------------------------------------------------------------------

    environment: Literal["development", "test", "production"] = "production"
    secret_key: str = ""
    session_secret: str = ""
    database_url: str = ""
    host: str = "0.0.0.0"  # nosec B104 -- container bind address
    port: int = 5000

    # ------------------------------------------------------------------
    # Session tokens and credential recovery
    # ------------------------------------------------------------------

    token_expire_seconds: int = 7 * 24 * 3600
    reset_token_expire_seconds: int = 600

    # ------------------------------------------------------------------
    # External identity provider (OIDC)
    # ------------------------------------------------------------------

    oidc_issuer: str = ""
    oidc_audience: str = ""
    oidc_logout_redirect: str = ""
    oidc_dev_bypass: bool = False
    jwks_cache_max_entries: int = 5
    jwks_cache_ttl_seconds: int = 600
    outbound_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Browser-facing
    # ------------------------------------------------------------------

    client_url: str = "http://localhost:3000"
    cors_origin: str = "http://localhost:3000"

    # ------------------------------------------------------------------
    # TLS
    # ------------------------------------------------------------------

    https_enable: bool = False
    ssl_key_path: str = ""
    ssl_cert_path: str = ""

    # ------------------------------------------------------------------
    # Notifications (optional -- empty string means disabled)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    smtp_from: str = ""
    contact_inbox: str = ""

    twilio_sid: str = ""
    twilio_token: str = ""
    twilio_from: str = ""

    # ------------------------------------------------------------------
    # Request hardening
    # ------------------------------------------------------------------

    general_rate_limit: str = "100/15minutes"
    auth_rate_limit: str = "20/15minutes"
    contact_rate_limit: str = "30/hour"
    max_body_bytes: int = 10 * 1024 * 1024
    injection_scan_enabled: bool = True
    json_only_prefixes: list[str] = ["/api/admin"]

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    audit_log_path: str = ""

    # ------------------------------------------------------------------
    # Derived
    # ------------------------------------------------------------------

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def smtp_configured(self) -> bool:
        return bool(self.smtp_host and self.smtp_user and self.smtp_pass)

    @property
    def sms_configured(self) -> bool:
        return bool(self.twilio_sid and self.twilio_token and self.twilio_from)

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy [M6][M7].

        Outside production: auto-generate a random key with a warning.
        Production: refuse to start without one.
        Both: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if not self.is_production:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Issued tokens will not survive a restart."
                )
            else:
                raise ValueError(
                    "SECRET_KEY is required in production. "
                    "Set SECRET_KEY in your environment or .env file. "
                    "To run locally, set ENVIRONMENT=development."
                )
        if len(self.secret_key) < 32:
            raise ValueError("SECRET_KEY must be at least 32 characters.")
        if not self.session_secret:
            self.session_secret = self.secret_key
        return self

    @model_validator(mode="after")
    def validate_dev_bypass(self) -> "Settings":
        """The OIDC development bypass is inert in production [O1]."""
        if self.oidc_dev_bypass and self.is_production:
            logger.error("OIDC_DEV_BYPASS is set in production -- ignoring it.")
            self.oidc_dev_bypass = False
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
