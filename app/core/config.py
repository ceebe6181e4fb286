from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")

    # Database
    db_path: str = "./nutrition_sync.db"

    # Provider gateway (stub adapter is used when unset)
    provider_gateway_url: str | None = None
    provider_gateway_timeout: float = 30.0

    # Sync behaviour
    default_sync_window_hours: int = 24
    conflict_window_minutes: int = 30

    # Scheduled auto sync
    auto_sync_enabled: bool = True
    auto_sync_check_minutes: int = 15

    debug: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
