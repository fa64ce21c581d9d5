from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator
from functools import lru_cache


class Settings(BaseSettings):
    """Engine settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Database
    DATABASE_URL: str = "sqlite+aiosqlite:///./fulfillment.db"

    # Database Connection Pool Settings
    DB_POOL_SIZE: int = 10  # Base number of connections in pool
    DB_MAX_OVERFLOW: int = 20  # Extra connections allowed beyond pool_size
    DB_POOL_TIMEOUT: int = 30  # Seconds to wait for connection from pool
    DB_POOL_RECYCLE: int = 1800  # Recycle connections after 30 minutes
    DB_LOCK_TIMEOUT_MS: int = 5000  # Max wait on a contended row lock

    # App Settings
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Operator capacity
    MAX_ORDERS_PER_PICKER: int = 5
    MAX_ORDERS_PER_PACKER: int = 5

    # Cancellation policy: largest share of requested units that may already
    # be deducted by completed pick tasks for the order to remain cancellable
    CANCEL_MAX_PICKED_RATIO: float = 1.0

    # Inventory alerts
    LOW_STOCK_THRESHOLD: int = 10

    @field_validator("MAX_ORDERS_PER_PICKER", "MAX_ORDERS_PER_PACKER")
    @classmethod
    def validate_capacity(cls, v):
        if v < 1:
            raise ValueError("capacity limits must be at least 1")
        return v

    @field_validator("CANCEL_MAX_PICKED_RATIO")
    @classmethod
    def validate_cancel_ratio(cls, v):
        if not 0.0 <= v <= 1.0:
            raise ValueError("CANCEL_MAX_PICKED_RATIO must be between 0 and 1")
        return v

    @field_validator("LOG_LEVEL", mode="before")
    @classmethod
    def normalize_log_level(cls, v):
        if isinstance(v, str):
            return v.strip().upper()
        return v


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
