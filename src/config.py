"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Marginalia"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    # Empty means in-memory storage (local development only)
    database_url: str = ""
    db_pool_min_size: int = 1
    db_pool_max_size: int = 10

    # --- Readwise sync (fallbacks when no value is stored in the database) ---
    readwise_sync_enabled: bool | None = None
    readwise_token: str = ""
    readwise_sync_schedule: str = ""

    # --- Obsidian export (fallbacks when no value is stored in the database) ---
    obsidian_sync_enabled: bool | None = None
    obsidian_sync_schedule: str = ""
    obsidian_sync_destination: str = ""

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
