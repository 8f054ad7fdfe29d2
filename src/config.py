"""Application configuration loaded from environment variables."""

from functools import lru_cache

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """All configuration is loaded from environment variables (or .env file)."""

    # --- App ---
    app_name: str = "Coachie Health Sync"
    app_version: str = "0.1.0"
    debug: bool = False
    log_level: str = "INFO"
    environment: str = "development"  # development | staging | production

    # --- Database ---
    # Unset → documents are kept in process memory (development / tests)
    database_url: str | None = None
    database_pool_min: int = 2
    database_pool_max: int = 20

    # --- Upstream sources ---
    health_connect_base_url: str = "http://localhost:8765/health-connect"
    google_fit_base_url: str = "https://www.googleapis.com/fitness/v1/users/me"
    source_http_timeout_seconds: float = 15.0

    # --- Background sync ---
    sync_schedule_enabled: bool = True
    sync_schedule_times: list[str] = ["00:00", "09:00", "15:00"]
    sync_schedule_timezone: str = "UTC"
    sync_max_concurrent: int = 5

    # --- CORS ---
    cors_origins: list[str] = ["http://localhost:3000"]

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
