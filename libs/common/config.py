from functools import lru_cache
from typing import Literal, Optional

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Global application settings."""

    # Application
    ENVIRONMENT: Literal["local", "development", "production", "test"] = "local"
    LOG_LEVEL: str = "INFO"
    SERVICE_NAME: str = "classes"

    # Database
    DATABASE_URL: str
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 1800
    # "auto" probes the connection; pooled deployments that cannot hold an
    # interactive transaction can force "best_effort".
    DB_TRANSACTION_MODE: Literal["auto", "transactional", "best_effort"] = "auto"

    # Redis (ARQ worker)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Auth
    JWT_SECRET: str = "test-jwt-secret"
    JWT_ALGORITHM: str = "HS256"
    CRON_SECRET: Optional[str] = None

    # Collaborators
    COMMUNICATIONS_SERVICE_URL: str = "http://communications-service:8004"
    AUDIT_SERVICE_URL: str = "http://audit-service:8010"

    # Class booking
    CLASS_BOOKING_ENABLED: bool = True
    BOOKING_TIMEZONE: str = "Europe/London"

    # Facility-wide booking defaults. None falls through to the engine's
    # hardcoded defaults.
    BOOKING_OPEN_HOURS_DEFAULT: Optional[int] = None
    BOOKING_CLOSE_MINUTES_DEFAULT: Optional[int] = None
    LATE_CANCEL_CUTOFF_MINUTES_DEFAULT: Optional[int] = None
    DEFAULT_WAITLIST_CAP: Optional[int] = None
    DEFAULT_CLASS_CAPACITY: Optional[int] = None
    DEFAULT_CREDITS_PER_BOOKING: Optional[int] = None
    LATE_CANCEL_REFUNDS_CREDIT: Optional[bool] = None

    model_config = SettingsConfigDict(
        env_file=".env", env_file_encoding="utf-8", extra="ignore"
    )

    @field_validator("DATABASE_URL")
    @classmethod
    def assemble_db_connection(cls, v: Optional[str]) -> str:
        if isinstance(v, str):
            if v.startswith("postgresql://"):
                return v.replace("postgresql://", "postgresql+psycopg://", 1)
        return v


@lru_cache
def get_settings() -> Settings:
    """
    Return the global settings instance, cached.
    """
    return Settings()
