from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    DEBUG: bool = False
    APP_NAME: str = "cadence-billing"
    APP_DATABASE_DSN: str = "sqlite:////tmp/cadence.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Billing defaults
    DEFAULT_CURRENCY: str = "INR"
    DEFAULT_TAX_RATE: Decimal = Decimal("18")  # GST applied to subscription billing
    DEFAULT_TAX_NAME: str = "GST"
    DEFAULT_PAYMENT_TERMS_DAYS: int = 30
    INVOICE_PREFIX: str = "INV"
    INVOICE_NUMBER_START: int = 1000
    PAYMENT_PREFIX: str = "PAY"

    # Scheduler
    RENEWAL_LOOKAHEAD_HOURS: int = 24
    RENEWAL_SWEEP_INTERVAL_SECONDS: int = 3600
    TRIAL_SWEEP_INTERVAL_SECONDS: int = 3600
    OVERDUE_SWEEP_INTERVAL_SECONDS: int = 3600
    WEBHOOK_RETRY_SWEEP_INTERVAL_SECONDS: int = 300

    # Webhook delivery
    WEBHOOK_RETRY_BASE_MINUTES: int = 5
    WEBHOOK_RETRY_BATCH_SIZE: int = 50
    WEBHOOK_DEFAULT_RETRY_COUNT: int = 3
    WEBHOOK_DEFAULT_TIMEOUT_SECONDS: int = 30
    WEBHOOK_DELIVERY_WORKERS: int = 4
    WEBHOOK_USER_AGENT: str = "Cadence-Billing/1.0"


settings = Settings()
