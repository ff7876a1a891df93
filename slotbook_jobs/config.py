from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Celery worker and beat configuration."""

    redis_url: str = "redis://redis:6379/0"
    timezone: str = "Asia/Manila"

    notification_sweep_minutes: int = 10
    slot_sweep_minutes: int = 5
    photo_retention_hour: int = 3

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
