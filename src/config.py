"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "NutriSync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Postgres ---
    database_url: str | None = None  # unset → in-memory repository
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10

    # --- Credentials ---
    token_encryption_key: str  # Fernet key; tokens are stored only as ciphertext

    # --- Sync engine ---
    sync_config_path: str | None = None  # override for sync_config.yaml
    scheduler_enabled: bool = True
    scheduler_tick_seconds: int = 60
    worker_pool_size: int = 5

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
