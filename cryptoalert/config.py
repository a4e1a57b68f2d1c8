"""Application configuration"""

from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    PROJECT_NAME: str = "CryptoAlert"
    VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # database
    DATABASE_URL: str = "sqlite:///./cryptoalert.db"
    SQL_ECHO: bool = False

    # price source (CoinGecko compatible)
    PRICE_API_URL: str = "https://api.coingecko.com/api/v3"
    PRICE_API_KEY: Optional[str] = None
    PRICE_API_TIMEOUT_SECONDS: float = 10.0

    # alert monitor
    MONITOR_ENABLED: bool = True
    PRICE_CHECK_INTERVAL_SECONDS: int = 30
    ALERT_CHECK_INTERVAL_SECONDS: int = 5
    ALERT_RESYNC_INTERVAL_SECONDS: int = 300
    DEFAULT_REPEAT_INTERVAL_MINUTES: int = 0
    MAX_ALERTS_PER_USER: int = 10

    # notification rate limits (per destination)
    EMAIL_RATE_LIMIT: int = 100
    EMAIL_RATE_WINDOW_SECONDS: int = 3600
    SMS_RATE_LIMIT: int = 20
    SMS_RATE_WINDOW_SECONDS: int = 3600
    PUSH_RATE_LIMIT: int = 200
    PUSH_RATE_WINDOW_SECONDS: int = 3600

    # Email
    RESEND_API_KEY: Optional[str] = None
    RESEND_FROM_EMAIL: str = "CryptoAlert <alerts@cryptoalert.dev>"

    # SMS
    TWILIO_ACCOUNT_SID: Optional[str] = None
    TWILIO_AUTH_TOKEN: Optional[str] = None
    TWILIO_FROM_NUMBER: Optional[str] = None

    # Web Push
    VAPID_PUBLIC_KEY: Optional[str] = None
    VAPID_PRIVATE_KEY: Optional[str] = None
    VAPID_CLAIMS_EMAIL: str = "mailto:admin@cryptoalert.dev"

    # Frontend
    FRONTEND_URL: str = "http://localhost:3000"

    model_config = SettingsConfigDict(
        env_file=".env", case_sensitive=True, extra="ignore"
    )


settings = Settings()
