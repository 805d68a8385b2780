from decimal import Decimal
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Referral program settings loaded from environment variables."""

    APP_NAME: str = "Driver Referral Ledger API"
    APP_VERSION: str = "1.0.0"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "*"  # comma-separated

    # Referral codes look like GRP-SDS001-AY
    REFERRAL_CODE_PREFIX: str = "GRP-SDS"
    REFERRAL_VALIDITY_DAYS: int = 30

    # Completion criteria applied to new referrals
    DEFAULT_REQUIRED_DELIVERIES: int = 5
    DEFAULT_REQUIRED_EARNINGS: Decimal = Decimal("500")
    DEFAULT_REQUIRED_DAYS: int = 30

    # Rewards issued once per side on completion
    REFERRER_REWARD_AMOUNT: Decimal = Decimal("1000")
    REFERRED_REWARD_AMOUNT: Decimal = Decimal("500")

    LEADERBOARD_DEFAULT_LIMIT: int = 10
    HISTORY_DEFAULT_LIMIT: int = 20

    # Optimistic write attempts before giving up with WriteConflictError
    MAX_WRITE_ATTEMPTS: int = 5

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    @field_validator("MAX_WRITE_ATTEMPTS")
    @classmethod
    def at_least_one_attempt(cls, v: int) -> int:
        if v < 1:
            raise ValueError("MAX_WRITE_ATTEMPTS must be at least 1")
        return v

    @property
    def cors_origins(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
