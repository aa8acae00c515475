"""
core/config.py -- Centralized console configuration via pydantic-settings.

All environment variable reads for the IAM console happen here. No module
should call os.getenv() or os.environ.get() directly -- import get_settings()
instead.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call. This is
      the FastAPI dependency injection pattern for config, and the CLI reuses it.

  BaseSettings (pydantic-settings): Reads values from environment variables
      and an optional .env file automatically. Field names map to env var names
      (e.g. api_base_url -> API_BASE_URL). Type coercion and validation are
      built in.

  @model_validator(mode="after"): Cross-field validation after all fields are
      resolved. Rejects a backend URL that is not http(s) and an unknown
      dashboard failure policy.

Layer rule: core/ is the kernel. This module may not import from api/, web/,
auth/, or vault/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("iamconsole.config")

DASHBOARD_POLICIES = ("degrade", "atomic")


def default_session_db_url() -> str:
    """SQLite file under ~/.iam-console holding the single persisted token."""
    return f"sqlite:///{Path.home() / '.iam-console' / 'session.db'}"


class Settings(BaseSettings):
    """Console settings loaded from environment variables and .env file.

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

    # ------------------------------------------------------------------
    # Backend
    # ------------------------------------------------------------------

    api_base_url: str = "http://localhost:5000/api/v1"
    request_timeout: float = 10.0

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    # Empty string means "use default_session_db_url()".
    session_db_url: str = ""

    # ------------------------------------------------------------------
    # Vault
    # ------------------------------------------------------------------

    # True: every reveal re-fetches the decrypted value from the backend.
    # False: a plaintext kept from an earlier reveal is shown again on reveal.
    secret_refetch_on_reveal: bool = True

    # ------------------------------------------------------------------
    # Dashboard / audit
    # ------------------------------------------------------------------

    dashboard_policy: str = "degrade"
    dashboard_audit_limit: int = 100
    audit_page_size: int = 100

    # ------------------------------------------------------------------
    # Web console
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"
    allowed_hosts: list[str] = ["localhost", "127.0.0.1"]

    # ------------------------------------------------------------------
    # Validators
    # ------------------------------------------------------------------

    @model_validator(mode="after")
    def validate_backend(self) -> "Settings":
        """Normalize the backend URL and check the dashboard policy.

        A base URL without an http(s) scheme would make requests raise
        MissingSchema on the first call, long after startup. Failing here
        surfaces the typo immediately.
        """
        if not self.api_base_url.startswith(("http://", "https://")):
            raise ValueError("API_BASE_URL must start with http:// or https://")
        self.api_base_url = self.api_base_url.rstrip("/")
        if self.dashboard_policy not in DASHBOARD_POLICIES:
            raise ValueError(f"DASHBOARD_POLICY must be one of {', '.join(DASHBOARD_POLICIES)}")
        if self.request_timeout <= 0:
            raise ValueError("REQUEST_TIMEOUT must be positive.")
        if not self.session_db_url:
            self.session_db_url = default_session_db_url()
        if self.debug:
            logger.warning("DEBUG is enabled -- request logging is verbose.")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return the console Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
