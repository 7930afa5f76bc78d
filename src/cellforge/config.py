"""Settings for CellForge, loaded from CELLFORGE_* environment variables."""

from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings.

    every field can be overridden with an env var, e.g. CELLFORGE_REDIS_URL.
    leaving redis_url unset runs the cache purely in-process which is what
    you want for tests and local use.
    """

    model_config = SettingsConfigDict(
        env_prefix="CELLFORGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Cache
    redis_url: str | None = None
    cache_ttl_seconds: int = 900
    cache_sweep_interval_seconds: float = 60.0

    # DuckDB - None means in-memory
    warehouse_path: str | None = None
    datastore_path: str | None = None
    sql_dialect: str = "duckdb"

    # Materialization
    insert_batch_size: int = 1000

    # Logging
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    log_format: Literal["json", "console"] = "console"


_settings: Settings | None = None


def get_settings() -> Settings:
    """Get or create settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reset_settings() -> None:
    """Reset settings (for testing)."""
    global _settings
    _settings = None
