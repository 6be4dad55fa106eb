import json
import logging
from decimal import Decimal
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Ledger settings loaded from environment variables."""

    APP_NAME: str = "Cashback Ledger API"
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"

    # Store
    MAX_TRANSACTION_ATTEMPTS: int = 5  # Optimistic-concurrency retries before giving up
    BATCH_WRITE_LIMIT: int = 500  # Max writes per atomic batch

    # Money
    DEFAULT_CURRENCY: str = "INR"
    SETTLEMENT_TOLERANCE: Decimal = Decimal("0.01")
    MIN_PAYOUT_THRESHOLD: Decimal = Decimal("2000")

    # Listing
    DEFAULT_PAGE_SIZE: int = 20
    MAX_PAGE_SIZE: int = 100

    CORS_ORIGINS: list[str] = ["*"]

    @field_validator("CORS_ORIGINS", mode="before")
    @classmethod
    def parse_cors_origins(cls, v):
        if isinstance(v, str):
            try:
                return json.loads(v)
            except json.JSONDecodeError:
                return [origin.strip() for origin in v.split(",")]
        return v

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def configure_logging(level: str | None = None) -> None:
    logging.basicConfig(
        level=(level or get_settings().LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
