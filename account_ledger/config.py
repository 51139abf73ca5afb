"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .storage import InMemoryStorage, PostgreSQLStorage, SQLiteStorage, StorageInterface


class LedgerConfig(BaseSettings):
    """Account ledger configuration"""

    model_config = SettingsConfigDict(
        env_prefix="LEDGER_",
        env_file=".env",
        case_sensitive=False,
        extra="ignore",
    )

    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path.db, postgresql://...
    sqlite_timeout_seconds: float = 5.0
    postgres_lock_timeout_ms: int = 5000

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text

    # Business rules configuration
    conflict_retries: int = 3  # Fresh-read retries after a concurrent write
    enforce_status_transitions: bool = True  # CLOSED is terminal when enforced
    default_country_code: str = "FR"  # Used when generating account numbers

    @field_validator("log_format")
    @classmethod
    def _check_log_format(cls, value: str) -> str:
        if value not in ("json", "text"):
            raise ValueError("log_format must be 'json' or 'text'")
        return value

    @field_validator("conflict_retries")
    @classmethod
    def _check_retries(cls, value: int) -> int:
        if value < 0:
            raise ValueError("conflict_retries cannot be negative")
        return value

    @field_validator("default_country_code")
    @classmethod
    def _check_country(cls, value: str) -> str:
        if len(value) != 2 or not value.isalpha():
            raise ValueError("default_country_code must be a 2-letter ISO 3166 code")
        return value.upper()


# Global configuration instance
config = LedgerConfig()


def get_config() -> LedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LedgerConfig:
    """Reload configuration from environment"""
    global config
    config = LedgerConfig()
    return config


def create_storage(settings: LedgerConfig = None) -> StorageInterface:
    """Build the storage backend named by ``database_url``"""
    settings = settings or get_config()
    url = settings.database_url

    if url in ("memory://", ""):
        return InMemoryStorage()
    if url.startswith("sqlite:///"):
        return SQLiteStorage(url[len("sqlite:///"):] or ":memory:",
                             timeout=settings.sqlite_timeout_seconds)
    if url.startswith(("postgresql://", "postgres://")):
        return PostgreSQLStorage(url, lock_timeout_ms=settings.postgres_lock_timeout_ms)
    raise ValueError(f"Unsupported database_url: {url}")
