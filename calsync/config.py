# calsync/config.py
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    ENV: str = "dev"
    APP_NAME: str = "Coaching Calendar Sync"
    LOG_LEVEL: str = "INFO"

    # DB URL: SQLite locally, Postgres in production
    DATABASE_URL: str = "sqlite:///./app.db"

    # Cal.com platform OAuth client
    CAL_API_BASE_URL: str = "https://api.cal.com/v2"
    CAL_API_VERSION: str = "2024-08-13"
    CAL_CLIENT_ID: Optional[str] = None
    CAL_CLIENT_SECRET: Optional[str] = None
    CAL_REDIRECT_URI: Optional[str] = None
    CAL_TIMEOUT_SECONDS: float = 10.0

    # Shared secret Cal.com signs webhook bodies with (X-Cal-Signature-256)
    CAL_WEBHOOK_SECRET: Optional[str] = None
    # Public base URL the provider should call back on
    WEBHOOK_BASE_URL: str = "http://localhost:8000"

    # Token lifecycle
    TOKEN_EXPIRY_BUFFER_MINUTES: int = 5

    # Booking policy
    CANCELLATION_CUTOFF_HOURS: int = 24
    BOOKING_WINDOW_DAYS: int = 15

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

_settings: Optional[Settings] = None

def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
