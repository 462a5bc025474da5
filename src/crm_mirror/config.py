"""Application configuration via Pydantic BaseSettings."""

from __future__ import annotations

from enum import Enum
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Environment(str, Enum):
    development = "development"
    staging = "staging"
    production = "production"


class Settings(BaseSettings):
    """Mirror settings loaded from environment variables and .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./crm_mirror.db"

    # Environment
    ENVIRONMENT: Environment = Environment.development

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_SQL: bool = False
    LOG_SQL_PARAMS: bool = False

    # Mirror layout
    TABLE_PREFIX: str = "zoho_"
    MODULES: str = "Contacts"  # Comma-separated remote module names
    METADATA_FILE: str = ""  # Empty: field metadata is fetched from the remote service

    # Synchronization behaviour
    TWO_WAY_SYNC: bool = True
    CONTINUE_ON_ERROR: bool = False
    PULL_PAGE_SIZE: int = 200
    PUSH_BATCH_SIZE: int = 100  # Remote API limit for insert/update/delete calls
    CHECKPOINT_MARGIN_SECONDS: int = 1

    # Remote CRM service (Zoho CRM REST API)
    ZOHO_API_BASE_URL: str = "https://www.zohoapis.com"
    ZOHO_API_VERSION: str = "v2"
    ZOHO_ACCESS_TOKEN: str = ""
    ZOHO_TIMEOUT: float = 30.0
    ZOHO_MAX_RETRIES: int = 3

    # Process lock preventing overlapping runs
    LOCK_FILE: str = "/tmp/crm_mirror.lock"

    def module_names(self) -> list[str]:
        """Return the configured module names, in order, without blanks."""
        return [name.strip() for name in self.MODULES.split(",") if name.strip()]


@lru_cache
def get_settings() -> Settings:
    """Singleton settings instance."""
    return Settings()
