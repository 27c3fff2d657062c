import os
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, Optional


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {value!r}")


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be a number, got {value!r}")


def _env_decimal(name: str, default: str) -> Decimal:
    return Decimal(os.getenv(name) or default)


def _default_prices() -> Dict[str, Decimal]:
    return {"trial": Decimal("0"), "monthly": Decimal("10"), "yearly": Decimal("8")}


@dataclass
class BillingSettings:
    """
    Runtime settings for the billing engine.

    Built from environment variables with :meth:`from_env`; tests construct it
    directly with the values they need.
    """

    database_url: str = "sqlite:///./billing.db"
    plan_prices: Dict[str, Decimal] = field(default_factory=_default_prices)
    currency: str = "USD"
    trial_reminder_days: int = 2
    expiry_reminder_days: int = 5
    renewal_window_days: int = 3
    failed_payment_threshold: int = 3
    data_retention_days: int = 30
    batch_max_workers: int = 4
    integration_timeout_seconds: float = 10.0
    job_lease_seconds: int = 3600
    shop_cache_ttl_seconds: int = 300
    shop_cache_capacity: int = 1024
    stripe_api_key: Optional[str] = None
    stripe_endpoint_secret: Optional[str] = None
    gateway_max_retries: int = 3
    gateway_retry_delay: float = 1.0

    def __post_init__(self) -> None:
        if self.failed_payment_threshold < 1:
            raise ValueError("failed_payment_threshold must be at least 1")
        if self.batch_max_workers < 1:
            raise ValueError("batch_max_workers must be at least 1")
        if self.integration_timeout_seconds <= 0:
            raise ValueError("integration_timeout_seconds must be positive")

    @classmethod
    def from_env(cls) -> "BillingSettings":
        prices = {
            "trial": Decimal("0"),
            "monthly": _env_decimal("PLAN_PRICE_MONTHLY", "10"),
            "yearly": _env_decimal("PLAN_PRICE_YEARLY", "8"),
        }
        return cls(
            database_url=os.getenv("DATABASE_URL", "sqlite:///./billing.db"),
            plan_prices=prices,
            currency=os.getenv("BILLING_CURRENCY", "USD"),
            trial_reminder_days=_env_int("TRIAL_REMINDER_DAYS", 2),
            expiry_reminder_days=_env_int("EXPIRY_REMINDER_DAYS", 5),
            renewal_window_days=_env_int("RENEWAL_WINDOW_DAYS", 3),
            failed_payment_threshold=_env_int("FAILED_PAYMENT_THRESHOLD", 3),
            data_retention_days=_env_int("DATA_RETENTION_DAYS", 30),
            batch_max_workers=_env_int("BATCH_MAX_WORKERS", 4),
            integration_timeout_seconds=_env_float("INTEGRATION_TIMEOUT_SECONDS", 10.0),
            job_lease_seconds=_env_int("JOB_LEASE_SECONDS", 3600),
            shop_cache_ttl_seconds=_env_int("SHOP_CACHE_TTL_SECONDS", 300),
            shop_cache_capacity=_env_int("SHOP_CACHE_CAPACITY", 1024),
            stripe_api_key=os.getenv("STRIPE_API_KEY"),
            stripe_endpoint_secret=os.getenv("STRIPE_ENDPOINT_SECRET"),
            gateway_max_retries=_env_int("GATEWAY_MAX_RETRIES", 3),
            gateway_retry_delay=_env_float("GATEWAY_RETRY_DELAY", 1.0),
        )
