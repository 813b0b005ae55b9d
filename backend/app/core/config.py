from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    APP_NAME: str = "Subledger"
    version: str = "0.1.0"
    APP_DATABASE_DSN: str = "sqlite:////tmp/subledger.db"
    REDIS_URL: str = "redis://localhost:6379"

    # Admin endpoints (grant/extend/revoke, refunds, invoices, parked events)
    ADMIN_API_KEY: str = ""

    # Stripe
    stripe_api_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_webhook_tolerance_seconds: int = 300

    # Apple App Store
    apple_shared_secret: str = ""
    apple_bundle_id: str = ""
    apple_root_certificates: str = ""  # PEM bundle, Apple Root CA - G3

    # Google Play
    google_package_name: str = ""
    google_service_account_email: str = ""
    google_service_account_private_key: str = ""
    google_pubsub_audience: str = ""
    google_pubsub_service_account_email: str = ""

    # Reconciliation
    grace_period_days: int = 3
    provider_timeout_seconds: float = 10.0
    provider_max_attempts: int = 3
    provider_backoff_base_seconds: float = 0.5
    parked_event_max_attempts: int = 5

    # Outbound notifications
    notification_webhook_url: str = ""
    webhook_secret: str = "whsec_default_secret"

    # Invoicing
    default_currency: str = "USD"
    default_tax_rate: Decimal = Decimal("0")

    # CORS
    CORS_ORIGINS: str = "http://localhost:3000,http://localhost:5173"


settings = Settings()
