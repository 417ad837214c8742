from typing import List
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 8000
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = [
        "http://localhost:5173",
        "http://localhost:3000",
    ]

    # Database
    DATABASE_URL: str
    DB_POOL_TIMEOUT_SECONDS: int = 5
    DB_STATEMENT_TIMEOUT_MS: int = 5000

    # Authentication
    JWT_SECRET: str
    JWT_EXPIRES_IN: str = "7d"
    ADMIN_JWT_EXPIRES_IN: str = "24h"
    JWT_ALGORITHM: str = "HS256"

    # One-time codes
    CODE_LENGTH: int = 6
    CODE_TTL_MINUTES: int = 5
    CODE_RESEND_COOLDOWN_SECONDS: int = 30  # 0 disables the cooldown
    EXPOSE_CODES_IN_RESPONSE: bool = False  # development only

    # Account deletion
    ACCOUNT_GRACE_PERIOD_DAYS: int = 30
    PURGE_SCHEDULER_ENABLED: bool = True
    PURGE_CRON_HOUR: int = 3
    PURGE_CRON_MINUTE: int = 0
    PURGE_TIMEZONE: str = "Asia/Seoul"

    # E-mail delivery
    EMAIL_SERVICE_URL: str = "http://localhost:8025/api/send"
    EMAIL_API_KEY: str = ""
    EMAIL_FROM: str = "no-reply@foodiemap.app"
    EMAIL_FROM_NAME: str = "FoodieMap"
    EMAIL_TIMEOUT_SECONDS: float = 10.0
    EMAIL_DISPATCH_WORKERS: int = 2
    SKIP_EMAIL_IN_DEV: bool = True  # log codes instead of sending them

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
