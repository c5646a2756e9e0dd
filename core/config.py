"""
core/config.py -- Centralized process configuration via pydantic-settings.

All environment variable reads for multiauth happen here. No module should
call os.getenv() or os.environ.get() directly -- import get_settings() instead.

Two configuration layers exist and must not be confused:

  Process settings (this module): where the database lives, log verbosity,
      rate limits, and the fallback wording for "operation not supported"
      messages. Read once from the environment / .env file.

  Runtime auth settings (auth.store.ConfigStore): values stored in the
      settings table that administrators change without a restart, such as
      Auth:enable_fallback and the Auth:unique_id counter.

Design patterns used:
  Singleton via lru_cache: get_settings() instantiates Settings once at first
      call and returns the cached instance on every subsequent call.

  BaseSettings (pydantic-settings): field names map to env var names
      (e.g. database_url -> DATABASE_URL). Type coercion is built in.

Layer rule: core/ is the kernel. This module may not import from api/ or auth/.
"""

import logging
from functools import lru_cache
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger("multiauth.config")

_DEFAULT_DB_URL = f"sqlite:///{Path(__file__).resolve().parent.parent / 'multiauth.db'}"

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


class Settings(BaseSettings):
    """Process settings loaded from environment variables and .env file.

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
    log_level: str = "INFO"
    database_url: str = _DEFAULT_DB_URL

    # ------------------------------------------------------------------
    # HTTP surface
    # ------------------------------------------------------------------

    login_rate_limit: str = "10/minute"

    # ------------------------------------------------------------------
    # Default "unsupported operation" wording. Each AuthMethod may
    # override these with a parameter of the same name, and the settings
    # table may override them with AuthMethod:<name>.
    # ------------------------------------------------------------------

    noactivate_message: str = "Account activation is not required for this account."
    norecover_message: str = "Account recovery is not available for this account."
    nopasschange_message: str = "Passwords for this account can not be changed here."

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, value: str) -> str:
        """Normalize to upper case and reject names the logging module does not know."""
        level = value.strip().upper()
        if level not in _LOG_LEVELS:
            raise ValueError(f"LOG_LEVEL must be one of {sorted(_LOG_LEVELS)}, got {value!r}")
        return level


@lru_cache
def get_settings() -> Settings:
    """Return the process Settings singleton.

    In tests: call get_settings.cache_clear() between test cases if you need
    to inject different environment variables.
    """
    return Settings()
