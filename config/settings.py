"""
Configuration settings for the application
"""
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

# Normalized plan IDs
PLAN_FREE = "free"
PLAN_PREMIUM = "premium"
PLANS = (PLAN_FREE, PLAN_PREMIUM)


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        populate_by_name=True,
        extra="ignore",
    )

    # Core authentication and security
    jwt_secret_key: Optional[str] = Field(default=None, alias="JWT_SECRET_KEY")

    # PayFast merchant configuration
    payfast_merchant_id: Optional[str] = Field(default=None, alias="PAYFAST_MERCHANT_ID")
    payfast_merchant_key: Optional[str] = Field(default=None, alias="PAYFAST_MERCHANT_KEY")
    payfast_passphrase: Optional[str] = Field(default=None, alias="PAYFAST_PASSPHRASE")
    payfast_sandbox: bool = Field(default=True, alias="PAYFAST_SANDBOX")
    payfast_validate_timeout: float = Field(default=5.0, alias="PAYFAST_VALIDATE_TIMEOUT")

    # Premium plan (monthly subscription, cycles=0 runs until cancelled)
    premium_amount: str = Field(default="10.00", alias="PREMIUM_AMOUNT")
    premium_item_name: str = Field(default="MineAI Premium Subscription", alias="PREMIUM_ITEM_NAME")
    premium_item_description: str = Field(
        default="Premium monthly subscription",
        alias="PREMIUM_ITEM_DESCRIPTION"
    )
    premium_subscription_type: str = Field(default="1", alias="PREMIUM_SUBSCRIPTION_TYPE")
    premium_frequency: str = Field(default="3", alias="PREMIUM_FREQUENCY")
    premium_cycles: str = Field(default="0", alias="PREMIUM_CYCLES")
    payment_reference_prefix: str = Field(default="mineai", alias="PAYMENT_REFERENCE_PREFIX")

    # Free tier limits
    free_daily_message_limit: int = Field(default=30, alias="FREE_DAILY_MESSAGE_LIMIT")

    # Infrastructure configuration
    redis_url: Optional[str] = Field(default=None, alias="REDIS_URL")
    rate_limit_per_minute: int = Field(default=60, alias="RATE_LIMIT_PER_MINUTE")
    database_url: Optional[str] = Field(default="sqlite+aiosqlite:///./sql_app.db", alias="DATABASE_URL")
    # Privileged credential, only used to apply verified upgrades
    service_database_url: Optional[str] = Field(default=None, alias="SERVICE_DATABASE_URL")

    # Public site URL (return/cancel/notify URLs and CORS origin)
    site_url: str = Field(default="http://localhost:3000", alias="SITE_URL")

    # Render.com sets RENDER on its hosts
    render: Optional[str] = Field(default=None, alias="RENDER")

    # Environment configuration
    env: Optional[str] = Field(default=None, alias="ENV")


# Instantiate settings object
settings = Settings()


def is_production_env(current: Optional[Settings] = None) -> bool:
    """Production when running on Render (RENDER set) or ENV=production."""
    current = current or settings
    return bool(current.render) or bool(current.env and current.env.lower() == "production")


# Determine if we're in production mode
IS_PRODUCTION = is_production_env()
