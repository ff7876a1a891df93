from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    app_name: str = "Slotbook API"
    database_url: str = (
        "postgresql+psycopg2://slotbook:slotbook@db:5432/slotbook"  # pragma: allowlist secret
    )
    redis_url: str = "redis://redis:6379/0"
    timezone: str = "Asia/Manila"
    cors_origins: list[str] = ["http://localhost:3000"]
    rate_limit_enabled: bool = True
    rate_limit_requests: int = 120
    rate_limit_window_seconds: int = 60
    cron_secret: str = ""

    booking_code_prefix: str = "GN"

    # Reminder policy, hours relative to booking creation / appointment start.
    payment_reminder_hours: list[int] = [6, 12, 23]
    payment_cancel_hours: int = 24
    appointment_reminder_hours: list[int] = [24, 2]
    notification_window_minutes: int = 20

    photo_retention_days: int = 30
    slot_sweep_interval_seconds: int = 300

    storage_api_base_url: str = "http://localhost:8090"
    storage_api_key: str = ""
    storage_mock_mode: bool = False

    notify_api_base_url: str = "http://localhost:8091"
    notify_api_key: str = ""
    notify_mock_mode: bool = False

    max_photos_per_category: int = 3
    max_upload_bytes: int = 5 * 1024 * 1024
    allowed_image_types: list[str] = ["image/jpeg", "image/png", "image/webp"]

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached settings instance."""

    return Settings()


settings = get_settings()
