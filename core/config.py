"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for authgate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the official FastAPI dependency injection pattern for config.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. secret_key -> SECRET_KEY). Type coercion and validation are built in.

  @model_validator(mode="after"): Runs cross-field validation after all fields
      are resolved from environment. Dev mode generates a SECRET_KEY with a
      warning, production mode refuses to start without one.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. JWT signing and the
  HMAC used to store token and reset-ticket hashes both rely on key entropy.

  Rate-limit thresholds must be positive. A zero threshold would either lock
  every caller out or disable the captcha gate silently.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("authgate.config")


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
    # Empty string means "use the SQLite file next to auth/store.py".
    database_url: str = ""
    cors_origins: list[str] = ["http://localhost", "http://localhost:4200"]
    allowed_hosts: list[str] = ["*"]

    # ------------------------------------------------------------------
    # Tokens
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    token_ttl_seconds: int = 3600
    token_purge_interval_seconds: int = 3600

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    # Outer slowapi cap on the anonymous auth endpoints, per client IP.
    login_rate_limit: str = "30/minute"
    # "memory://", "redis://host:6379" or "database" (SQL counter table).
    rate_limit_storage_uri: str = "memory://"
    ip_max_attempts: int = 20
    ip_window_seconds: int = 3600
    captcha_exempt_attempts: int = 3
    identity_window_seconds: int = 900

    # ------------------------------------------------------------------
    # Captcha (Google reCAPTCHA compatible)
    # ------------------------------------------------------------------

    recaptcha_site_key: str = ""
    recaptcha_secret_key: str = ""
    recaptcha_verify_url: str = "https://www.google.com/recaptcha/api/siteverify"
    recaptcha_timeout_seconds: float = 5.0
    # 0.0 accepts any successful v2 response; v3 deployments set e.g. 0.5.
    recaptcha_min_score: float = 0.0

    # ------------------------------------------------------------------
    # Password reset
    # ------------------------------------------------------------------

    reset_token_ttl_seconds: int = 3600
    reset_throttle_seconds: int = 60
    reset_url_template: str = "http://localhost:4200/auth/password/reset?token={token}&email={email}"
    password_min_length: int = 8
    revoke_tokens_on_password_reset: bool = True

    # ------------------------------------------------------------------
    # Mail (empty smtp_host = log the reset link instead of sending it)
    # ------------------------------------------------------------------

    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    mail_from: str = ""

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Issued tokens will not survive a restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
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
    def validate_thresholds(self) -> "Settings":
        for name in (
            "token_ttl_seconds",
            "ip_max_attempts",
            "ip_window_seconds",
            "captcha_exempt_attempts",
            "identity_window_seconds",
            "reset_token_ttl_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be a positive integer.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
