"""Application configuration using pydantic settings with structured sections."""

from decimal import Decimal
from functools import lru_cache
from typing import Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class LimitSettings(BaseModel):
    merchant_daily_collection_limit: Decimal = Decimal("1000000")
    cashier_daily_transfer_limit: Decimal = Decimal("1000000")
    default_daily_transaction_limit: Decimal = Decimal("5000000")
    default_monthly_transaction_limit: Decimal = Decimal("50000000")
    default_single_transaction_limit: Decimal = Decimal("500000")


class TransactionSettings(BaseModel):
    pending_ttl_seconds: int = 120
    reference_prefix: str = "LUS"
    reference_digits: int = 6
    reference_max_attempts: int = 50


class QrSettings(BaseModel):
    validity_seconds: int = 120
    amount_tolerance: Decimal = Decimal("0.01")


class SchedulerSettings(BaseModel):
    enabled: bool = True
    wallet_reset_interval_seconds: int = 600
    expiry_sweep_interval_seconds: int = 30


class AmlSettings(BaseModel):
    manual_review_score: int = 70
    reporting_threshold: Decimal = Decimal("50000")
    structuring_band: Decimal = Decimal("0.8")
    structuring_lookback_days: int = 30
    # Rule dicts in the same shape ``aml.Rule.from_dict`` accepts.
    rules: Optional[list[dict]] = None


class Settings(BaseSettings):
    """Top-level settings; nested sections are overridable as ``CASHLEDGER_QR__VALIDITY_SECONDS``."""

    model_config = SettingsConfigDict(
        env_prefix="CASHLEDGER_",
        env_file=".env",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    project_name: str = "Cash Ledger"
    currency: str = "ZMW"
    timezone: str = Field(default="Africa/Lusaka")
    debug: bool = False

    limits: LimitSettings = LimitSettings()
    transactions: TransactionSettings = TransactionSettings()
    qr: QrSettings = QrSettings()
    scheduler: SchedulerSettings = SchedulerSettings()
    aml: AmlSettings = AmlSettings()


@lru_cache()
def get_settings() -> Settings:
    return Settings()
