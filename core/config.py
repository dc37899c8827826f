"""
core/config.py -- Centralized application configuration via pydantic-settings.

All environment variable reads for SessionGate happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  Explicit injection: the lifespan in api/main.py reads get_settings() once and
      hands the values to TokenSigner, SessionManager, RequestGate and the
      notifier. Components never reach back into global config, so tests can
      build them with any values they like.

  @model_validator(mode="after"): cross-field validation once all fields are
      resolved. Used for the DEBUG-conditional SECRET_KEY rule and to keep the
      refresh window at least as long as the access window.

Security notes:
  SECRET_KEY shorter than 32 chars is rejected outright. Session token signing
  and opaque token derivation both rely on its entropy.

  In production mode (DEBUG not set or false), a missing SECRET_KEY is a hard
  startup failure. Rotating SECRET_KEY invalidates every outstanding session
  cookie; that is the accepted rotation policy.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
import secrets
from functools import lru_cache

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("sessiongate.config")


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env file.

    All fields have defaults so Settings() can be instantiated in test
    environments without a real .env file. List fields are read from the
    environment as JSON, e.g. PRIVATE_PREFIXES='["/dashboard", "/account"]'.
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

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    database_url: str = ""  # empty = auth/sessiongate.db next to the store module
    storage_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    secure_cookies: bool = False
    # Access window. A refresh extends it by the same amount.
    session_expire_seconds: int = 3600
    # Refresh window, counted from session creation. Also the cookie lifetime.
    refresh_expire_seconds: int = 7 * 24 * 3600
    # One point lookup per validation so logged-out sessions stop working at once.
    session_check_revocation: bool = True

    # ------------------------------------------------------------------
    # Email verification
    # ------------------------------------------------------------------

    verification_code_ttl_seconds: int = 3600
    verification_resend_cooldown_seconds: int = 300

    # ------------------------------------------------------------------
    # Request gate
    # ------------------------------------------------------------------

    public_prefixes: list[str] = ["/", "/auth/", "/api/v1/auth/"]
    private_prefixes: list[str] = ["/dashboard", "/api/v1/dashboard", "/api/v1/auth/me", "/api/v1/auth/sessions"]
    login_redirect_url: str = "/auth/login"
    # Where a successful login or verification sends the user when no safe redirect_uri is given.
    post_login_redirect_url: str = "/dashboard"
    gate_timeout_seconds: float = 5.0

    # ------------------------------------------------------------------
    # Outbound email (Resend HTTP API). Empty key = log messages instead.
    # ------------------------------------------------------------------

    resend_api_key: str = ""
    mail_from: str = "SessionGate <no-reply@localhost>"
    mail_timeout_seconds: float = 10.0

    # ------------------------------------------------------------------
    # Rate limiting
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------------

    allowed_hosts: list[str] = ["localhost", "127.0.0.1", "*.localhost"]
    cors_origins: list[str] = ["http://localhost", "http://localhost:3000", "http://127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_secret_key(self) -> "Settings":
        """Enforce the SECRET_KEY policy.

        Dev mode (DEBUG=true): auto-generate a random key with a warning.
            Sessions will not survive restart -- acceptable for local dev.

        Production mode (DEBUG=false or not set): refuse to start if
            SECRET_KEY is missing.

        Both modes: reject keys shorter than 32 characters.
        """
        if not self.secret_key:
            if self.debug:
                self.secret_key = secrets.token_hex(32)
                logger.warning(
                    "WARNING: Using auto-generated SECRET_KEY. " "Sessions will not persist across restarts."
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
    def validate_durations(self) -> "Settings":
        """Reject non-positive lifetimes and a refresh window shorter than the access window."""
        for name in (
            "session_expire_seconds",
            "refresh_expire_seconds",
            "verification_code_ttl_seconds",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name.upper()} must be positive.")
        if self.verification_resend_cooldown_seconds < 0:
            raise ValueError("VERIFICATION_RESEND_COOLDOWN_SECONDS must not be negative.")
        if self.refresh_expire_seconds < self.session_expire_seconds:
            raise ValueError("REFRESH_EXPIRE_SECONDS must be >= SESSION_EXPIRE_SECONDS.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the application Settings singleton.

    Uses lru_cache so Settings() is instantiated exactly once -- at first call.
    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
