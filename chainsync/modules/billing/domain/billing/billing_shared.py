"""Shared primitives for the webhook ingestion and subscription billing modules."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import Any

import structlog

from chainsync.shared.core.config import get_settings

logger = structlog.get_logger()


class _SettingsProxy:
    """Lazy settings accessor to avoid stale module-level configuration."""

    def __getattr__(self, name: str) -> Any:
        return getattr(get_settings(), name)


settings: Any = _SettingsProxy()


class Provider(str, Enum):
    PAYSTACK = "paystack"
    FLUTTERWAVE = "flutterwave"

    @classmethod
    def parse(cls, value: str) -> "Provider":
        return cls(str(value).strip().lower())


class SubscriptionStatus(str, Enum):
    TRIAL = "trial"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"


class AutopayStatus(str, Enum):
    CONFIGURED = "configured"
    PENDING_CHARGE = "pending_charge"
    CHARGED = "charged"
    FAILED = "failed"
    MISSING_METHOD = "missing_method"
    DISABLED = "disabled"


class PaymentStatus(str, Enum):
    COMPLETED = "completed"
    FAILED = "failed"


class PaymentType(str, Enum):
    UPFRONT_FEE = "upfront_fee"
    RECURRING = "recurring"


class ChargeOutcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class ChargeSource(str, Enum):
    WEBHOOK = "webhook"
    SWEEP = "auto_renew"
    MANUAL = "manual"


# Monthly list price per tier, in minor units (kobo / cents).
PRICING_TIERS: dict[str, dict[str, int]] = {
    "basic": {"ngn": 3_000_000, "usd": 3_000},
    "pro": {"ngn": 10_000_000, "usd": 10_000},
    "enterprise": {"ngn": 50_000_000, "usd": 50_000},
}


DEFAULT_TIER = "basic"
FALLBACK_CURRENCY = "USD"


def to_minor_units(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).to_integral_value())


def to_major_units(amount_minor: int) -> Decimal:
    return (Decimal(amount_minor) / Decimal(100)).quantize(Decimal("0.01"))


def tier_price_minor(tier: str, currency: str) -> tuple[int, str]:
    """Catalog price for a tier. Unknown tiers bill as basic, unlisted currencies in USD."""
    prices = PRICING_TIERS.get((tier or "").lower()) or PRICING_TIERS[DEFAULT_TIER]
    code = (currency or "").upper()
    if code.lower() not in prices:
        code = FALLBACK_CURRENCY
    return prices[code.lower()], code
