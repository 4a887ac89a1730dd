from pydantic_settings import BaseSettings
from typing import Dict, Optional
import os


class Settings(BaseSettings):
    # Environment configuration
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")

    # Database configuration (async SQLAlchemy URL, e.g. postgresql+asyncpg://...)
    database_url: Optional[str] = os.getenv("DATABASE_URL", "")
    database_echo: bool = os.getenv("DATABASE_ECHO", "false").lower() == "true"

    # Stripe configuration
    stripe_secret: Optional[str] = os.getenv("STRIPE_SECRET", "")
    stripe_webhook_secret: Optional[str] = os.getenv("STRIPE_WEBHOOK_SECRET", "")
    stripe_webhook_tolerance: int = int(os.getenv("STRIPE_WEBHOOK_TOLERANCE", "300"))

    # Base plan prices
    stripe_price_starter: Optional[str] = os.getenv("STRIPE_PRICE_STARTER", "")
    stripe_price_professional: Optional[str] = os.getenv("STRIPE_PRICE_PROFESSIONAL", "")
    stripe_price_enterprise: Optional[str] = os.getenv("STRIPE_PRICE_ENTERPRISE", "")

    # Add-on prices: JSON object of price id -> add-on name
    stripe_addon_prices: Dict[str, str] = {}
    price_catalog_version: str = os.getenv("PRICE_CATALOG_VERSION", "1")

    # Idempotency ledger
    max_failed_attempts: int = int(os.getenv("MAX_FAILED_ATTEMPTS", "5"))
    processing_stale_after_seconds: int = int(os.getenv("PROCESSING_STALE_AFTER_SECONDS", "900"))

    # Entitlement sync collaborator (logging only when no URL is set)
    entitlement_sync_url: Optional[str] = os.getenv("ENTITLEMENT_SYNC_URL", "")
    entitlement_sync_timeout: float = float(os.getenv("ENTITLEMENT_SYNC_TIMEOUT", "5.0"))

    class Config:
        env_file = ".env"
        extra = "ignore"


settings = Settings()
