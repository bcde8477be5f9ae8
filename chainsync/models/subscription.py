from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Uuid as PG_UUID,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from chainsync.shared.db.base import Base


class Subscription(Base):
    """
    A tenant's subscription, including trial/billing dates and the stored
    autopay credential used by the billing sweep.

    TRIAL rows are driven by ``trial_end_date``; ACTIVE rows by
    ``next_billing_date`` (null until the first successful charge).
    """

    __tablename__ = "subscriptions"

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    org_id: Mapped[str] = mapped_column(
        String(64),
        ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )
    user_id: Mapped[Optional[str]] = mapped_column(String(64))
    provider: Mapped[str] = mapped_column(String(20), nullable=False)

    # Plan
    plan_code: Mapped[Optional[str]] = mapped_column(String(50))
    tier: Mapped[str] = mapped_column(String(20), default="basic")
    monthly_amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(12, 2))
    monthly_currency: Mapped[str] = mapped_column(String(3), default="NGN")
    upfront_fee_paid: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    upfront_fee_currency: Mapped[Optional[str]] = mapped_column(String(3))

    # Lifecycle
    status: Mapped[str] = mapped_column(String(20), default="trial", index=True)
    trial_start_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    trial_end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    next_billing_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Autopay
    autopay_enabled: Mapped[bool] = mapped_column(Boolean, default=False)
    autopay_provider: Mapped[Optional[str]] = mapped_column(String(20))
    autopay_reference: Mapped[Optional[str]] = mapped_column(String(255))
    autopay_last_status: Mapped[Optional[str]] = mapped_column(String(32))
    autopay_configured_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    billing_email: Mapped[Optional[str]] = mapped_column(String(255))

    # Provider-side identifiers used when a webhook carries no metadata
    external_subscription_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)
    external_customer_id: Mapped[Optional[str]] = mapped_column(String(255), index=True)

    # Set while a sweep run holds the row
    billing_claimed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )


class SubscriptionPayment(Base):
    """Append-only record of one charge attempt (completed or failed)."""

    __tablename__ = "subscription_payments"
    __table_args__ = (
        Index("ix_subscription_payments_provider_reference", "provider", "reference"),
    )

    id: Mapped[UUID] = mapped_column(PG_UUID(), primary_key=True, default=uuid4)
    subscription_id: Mapped[UUID] = mapped_column(
        PG_UUID(),
        ForeignKey("subscriptions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    org_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    reference: Mapped[Optional[str]] = mapped_column(String(255))
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0"))
    currency: Mapped[str] = mapped_column(String(3), default="NGN")
    payment_type: Mapped[str] = mapped_column(String(20), default="recurring")
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    event_type: Mapped[Optional[str]] = mapped_column(String(50))
    payment_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSON().with_variant(JSONB, "postgresql"), default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
