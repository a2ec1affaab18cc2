from functools import lru_cache
from typing import Literal

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./knockbites_loyalty.db"
    database_echo: bool = False

    # Operator API security
    operator_api_key: str = ""

    # Awards
    bulk_award_max_accounts: int = 500
    bulk_award_concurrency: int = 4
    ledger_history_max_limit: int = 100

    # Order tracking
    order_tracking_poll_interval_seconds: float = 15.0
    order_tracking_max_missed_polls: int = 3
    order_tracking_request_timeout_seconds: float = 10.0
    order_event_queue_size: int = 32

    # Referral expiration sweep
    referral_expiration_worker_enabled: bool = False
    referral_expiration_interval_seconds: int = 900
    referral_expiration_batch_size: int = 200

    # Ledger reconciliation sweep
    ledger_reconciliation_worker_enabled: bool = False
    ledger_reconciliation_interval_seconds: int = 3600
    ledger_reconciliation_batch_size: int = 100

    @field_validator("bulk_award_concurrency", "order_tracking_max_missed_polls", mode="before")
    @classmethod
    def _at_least_one(cls, value: object) -> object:
        if isinstance(value, (int, str)) and str(value).strip().lstrip("-").isdigit():
            return max(int(value), 1)
        return value


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
