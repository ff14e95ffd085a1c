from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Dict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file="creditsync/.env",
        env_file_encoding="utf-8",
        extra="allow",
    )
    # Application
    APP_NAME: str = "CreditSync API"
    PROJECT_NAME: str = "CreditSync"
    API_V1_STR: str = "/api/v1"
    ENVIRONMENT: str = "development"
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./creditsync.db"
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 20

    @property
    def is_sqlite(self) -> bool:
        return self.DATABASE_URL.startswith("sqlite")

    # Admin
    ADMIN_API_TOKEN: str = ""

    # Payment processor
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_API_TIMEOUT_SECONDS: int = 10
    PROCESSOR_METADATA_USER_KEY: str = "userId"

    # Upstream retry policy (bounded exponential backoff)
    UPSTREAM_RETRY_ATTEMPTS: int = 3
    UPSTREAM_RETRY_BASE_DELAY_SECONDS: float = 0.5
    UPSTREAM_RETRY_MAX_DELAY_SECONDS: float = 4.0

    # Identity matching
    MATCH_AUTO_LINK_LOW_CONFIDENCE: bool = True
    FUZZY_MIN_NAME_LENGTH: int = 3
    SYNC_PROCESSOR_METADATA: bool = True
    BATCH_MATCH_WORKERS: int = 4
    USER_SEARCH_LIMIT: int = 20

    # Plan credits
    MONTHLY_PLAN_CREDITS: int = 120  # 월간 구독 기본 크레딧
    YEARLY_PLAN_CREDITS: int = 1800  # 연간 구독 기본 크레딧
    PLAN_CREDITS_BY_UNIT_AMOUNT: Dict[int, int] = {1690: 120, 11880: 1800}
    SIGNUP_BONUS_CREDITS: int = 5

    # Expiry sweep
    EXPIRY_SWEEP_BATCH_SIZE: int = 500


settings = Settings()
