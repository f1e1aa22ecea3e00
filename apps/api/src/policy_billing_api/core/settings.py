from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./policy_billing.db"

    # Stripe configuration
    stripe_secret_key: str = ""
    stripe_webhook_secret: str = ""
    stripe_product_id: str = ""
    stripe_api_version: str | None = None

    # Policy administration API
    policy_api_base_url: str = "https://sandbox.root.co.za/v1/insurance"
    policy_api_key: str = ""
    policy_api_timeout_seconds: float = 15.0
    collection_module_key: str = ""

    # Inbound policy hook security
    hook_api_key: str = ""

    # Billing behaviour
    billing_currency: str = "zar"
    billing_timezone: str = "Africa/Johannesburg"
    cooling_off_period_days: int = 14
    invoice_metadata_retry_attempts: int = 2
    invoice_metadata_retry_delay_seconds: float = 10.0

    # Processor event replays
    processor_replay_max_attempts: int = 5

    @field_validator("billing_currency", mode="before")
    @classmethod
    def _normalize_currency(cls, value: str) -> str:
        return str(value or "").strip().lower()

    def missing_billing_settings(self) -> list[str]:
        """Return the names of required billing settings that are unset."""

        required = {
            "stripe_secret_key": self.stripe_secret_key,
            "stripe_product_id": self.stripe_product_id,
            "policy_api_base_url": self.policy_api_base_url,
            "policy_api_key": self.policy_api_key,
        }
        return [name for name, value in required.items() if not value]


@lru_cache
def get_settings() -> Settings:
    return Settings()  # type: ignore[arg-type]


settings = get_settings()
