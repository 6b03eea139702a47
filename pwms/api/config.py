"""Configuration settings for the PWMS backend."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment."""

    # Supabase: durable mirror/change-log backend and the remote system of record
    supabase_url: str | None = None
    supabase_secret_key: str | None = None
    supabase_service_role_key: str | None = None  # Legacy key name

    # Durable key-value fallback for the mirror/change log (SQLite file)
    storage_path: str | None = None

    # Local-first deployment: local SQLite store + sync queue
    local_first: bool = False
    local_db_path: str = "local.db"
    sync_interval_seconds: float = 0  # 0 disables the timer
    sync_max_retries: int = 5

    changelog_capacity: int = 1000
    change_rate_limit: str = "120/minute"

    # App
    debug: bool = False  # Include error details in 500 responses
    cors_origins: list[str] = ["*"]

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"  # Ignore extra env vars not in model


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
