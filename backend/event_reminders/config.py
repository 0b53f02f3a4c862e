"""Application configuration via environment variables."""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """App settings loaded from .env or environment."""

    DATABASE_URL: str = "sqlite:///./event_reminders.db"
    CORS_ORIGINS: str = "http://localhost:3000"
    LOG_LEVEL: str = "INFO"

    # Reminder processor
    REMINDER_PROCESSOR_AUTOSTART: bool = False
    REMINDER_BATCH_SIZE: int = 50
    REMINDER_TICK_INTERVAL_MS: int = 60000
    REMINDER_MAX_RETRIES: int = 3
    REMINDER_LOOKAHEAD_DAYS: int = 30
    REMINDER_BATCH_WINDOW_SECONDS: int = 300
    REMINDER_RETENTION_DAYS: int = 7
    MATERIALIZE_MAX_OCCURRENCES: int = 500

    # Reminders / recurring series
    MAX_REMINDERS_PER_EVENT: int = 10
    INSTANCES_DEFAULT_WINDOW_DAYS: int = 365

    class Config:
        env_file = ".env"


settings = Settings()
