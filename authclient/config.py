"""
Application Configuration.

Pydantic Settings model for the auth client.  All configuration is
loaded from environment variables and ``.env`` files.  Inject an
``AppConfig`` instance via dependency injection where needed.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Optional

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings


class AppConfig(BaseSettings):
    """Central configuration loaded from environment variables and defaults."""

    # --- Remote Auth API ---
    API_BASE_URL: str = "https://dam-backend-g2p9.onrender.com/api/v1/"

    LOGIN_PATH: str = "auth/login"
    REGISTER_PATH: str = "auth/register"
    RESEND_VERIFICATION_PATH: str = "auth/resend-verification"
    VERIFY_EMAIL_PATH: str = "auth/verify-email"
    FORGOT_PASSWORD_PATH: str = "auth/forgot-password"
    VERIFY_RESET_CODE_PATH: str = "auth/verify-reset-code"
    RESET_PASSWORD_PATH: str = "auth/reset-password"
    USER_BY_ID_PATH: str = "users/{user_id}"

    # --- Per-I/O timeouts (seconds) ---
    # The backend sleeps when idle and can take 30-60s to wake up, so the
    # socket-level ceilings are generous; the overall deadlines below are
    # what actually bound a call.
    CONNECT_TIMEOUT_S: float = 300.0
    READ_TIMEOUT_S: float = 300.0
    WRITE_TIMEOUT_S: float = 300.0

    # --- Overall deadlines (seconds) ---
    LOGIN_DEADLINE_S: float = 90.0
    REGISTER_DEADLINE_S: float = 90.0
    RESEND_DEADLINE_S: float = 60.0
    DEFAULT_DEADLINE_S: float = 60.0

    # --- Retry ---
    RETRY_MAX_ATTEMPTS: int = 3
    RETRY_BACKOFF_BASE_MS: int = 1000

    # --- Local storage ---
    SESSION_DB_PATH: str = "authclient_local.db"
    ENCRYPT_TOKENS: bool = True
    TOKEN_KDF_ITERATIONS: int = 600_000
    TOKEN_SALT_PATH: str = str(Path.home() / ".authclient_token_salt")

    # --- Logging ---
    LOG_LEVEL: str = "INFO"
    LOG_FILE: str = "authclient.log"
    LOG_MAX_BYTES: int = 5_242_880  # 5 MB
    LOG_BACKUP_COUNT: int = 3
    LOG_HTTP_BODIES: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8", "extra": "ignore"}

    @field_validator("API_BASE_URL")
    @classmethod
    def _require_http_scheme(cls, value: str) -> str:
        """Reject base URLs without an explicit scheme and force a trailing slash.

        ``httpx`` joins relative paths against the base URL the same way a
        browser does, so a missing trailing slash would silently drop the
        last path segment (``/api/v1`` + ``auth/login`` -> ``/api/auth/login``).
        """
        if not value.startswith(("http://", "https://")):
            raise ValueError(
                "API_BASE_URL must start with 'http://' or 'https://'. "
                f"Current value: {value!r}"
            )
        return value if value.endswith("/") else f"{value}/"

    @model_validator(mode="after")
    def _warn_suspicious_settings(self) -> "AppConfig":
        """Emit startup warnings for settings that are legal but risky."""
        _log = logging.getLogger("authclient.config")

        if not Path(".env").exists():
            _log.warning(
                "No .env file found; all configuration loaded from "
                "environment variables or defaults."
            )

        if self.RETRY_MAX_ATTEMPTS < 1:
            _log.warning(
                "RETRY_MAX_ATTEMPTS=%d is below 1; every request will still "
                "be attempted exactly once.",
                self.RETRY_MAX_ATTEMPTS,
            )

        if not self.ENCRYPT_TOKENS:
            _log.warning(
                "ENCRYPT_TOKENS is disabled; session tokens are stored in "
                "plain text in %s.",
                self.SESSION_DB_PATH,
            )

        return self

    def endpoint(self, name: str, **params: str) -> str:
        """Return the configured relative path for a logical endpoint.

        Parameters
        ----------
        name:
            Logical endpoint name, e.g. ``"login"`` or ``"user_by_id"``.
        params:
            Values substituted into ``{placeholders}`` of the path.

        Raises
        ------
        KeyError
            If *name* is not a known endpoint.
        """
        path: str = getattr(self, f"{name.upper()}_PATH", None) or ""
        if not path:
            raise KeyError(f"Unknown endpoint: {name}")
        return path.format(**params) if params else path


# ---------------------------------------------------------------------------
# Module-level singleton factory
# ---------------------------------------------------------------------------

_config_instance: Optional[AppConfig] = None
_config_lock: threading.Lock = threading.Lock()


def get_config() -> AppConfig:
    """Return a cached ``AppConfig`` singleton.

    On first call, creates an ``AppConfig`` instance (reading from ``.env``).
    Subsequent calls return the same instance.  Prefer constructor
    injection of ``AppConfig``; this factory serves the logger and the
    entry point, which run before any object graph exists.
    """
    global _config_instance
    if _config_instance is None:
        with _config_lock:
            if _config_instance is None:
                _config_instance = AppConfig()
    return _config_instance
