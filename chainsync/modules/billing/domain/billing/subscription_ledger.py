"""
Subscription state machine.

TRIAL --success--> ACTIVE     TRIAL --failure--> PAST_DUE
ACTIVE --success--> ACTIVE    ACTIVE --failure--> PAST_DUE
PAST_DUE --success--> ACTIVE  PAST_DUE --failure--> PAST_DUE
CANCELED accepts nothing.

Every applied transition appends exactly one SubscriptionPayment row and
locks or unlocks the organization through OrganizationLockManager.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from chainsync.models.subscription import Subscription, SubscriptionPayment
from chainsync.shared.core.clock import Clock, as_utc, utcnow
from chainsync.shared.core.exceptions import (
    BillingError,
    InvalidStateTransition,
    ResourceNotFoundError,
)

from .billing_shared import (
    AutopayStatus,
    ChargeOutcome,
    ChargeSource,
    PaymentStatus,
    PaymentType,
    Provider,
    SubscriptionStatus,
    logger,
    settings,
    tier_price_minor,
    to_major_units,
    to_minor_units,
)
from .event_translator import NormalizedEvent
from .organization_lock import OrganizationLockManager


@dataclass(frozen=True)
class TransitionResult:
    applied: bool
    org_id: Optional[str] = None
    subscription_id: Optional[UUID] = None
    previous_status: Optional[str] = None
    status: Optional[str] = None
    payment_id: Optional[UUID] = None
    reason: Optional[str] = None


class SubscriptionLedger:
    """Applies charge outcomes to subscriptions and keeps the payment audit trail."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        clock: Clock = utcnow,
        lock_manager_factory: Callable[[AsyncSession], OrganizationLockManager] | None = None,
    ):
        self.db = db
        self._clock = clock
        self._locks = (lock_manager_factory or OrganizationLockManager)(db)

    @property
    def billing_period(self) -> timedelta:
        return timedelta(days=int(settings.BILLING_PERIOD_DAYS))

    @property
    def lock_grace(self) -> timedelta:
        return timedelta(days=int(settings.ORG_LOCK_GRACE_DAYS))

    async def get_by_org(self, org_id: str) -> Optional[Subscription]:
        result = await self.db.execute(
            select(Subscription).where(Subscription.org_id == org_id)
        )
        return result.scalar_one_or_none()

    async def find_by_external_reference(
        self,
        subscription_ref: Optional[str],
        customer_ref: Optional[str],
    ) -> Optional[Subscription]:
        """Resolve a subscription from a prior provider subscription/customer id."""
        if subscription_ref:
            result = await self.db.execute(
                select(Subscription).where(
                    Subscription.external_subscription_id == subscription_ref
                )
            )
            found = result.scalars().first()
            if found is not None:
                return found
        if customer_ref:
            result = await self.db.execute(
                select(Subscription).where(
                    Subscription.external_customer_id == customer_ref
                )
            )
            return result.scalars().first()
        return None

    async def has_completed_payment(self, provider: Provider, reference: str) -> bool:
        result = await self.db.execute(
            select(SubscriptionPayment.id)
            .where(
                SubscriptionPayment.provider == provider.value,
                SubscriptionPayment.reference == reference,
                SubscriptionPayment.status == PaymentStatus.COMPLETED.value,
            )
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    def _next_billing_after_success(self, subscription: Subscription, now: datetime) -> datetime:
        period = self.billing_period
        if subscription.status != SubscriptionStatus.ACTIVE.value or not subscription.next_billing_date:
            return now + period
        # Renewal: advance from the previous anchor unless it is too stale to land in the future.
        candidate = as_utc(subscription.next_billing_date) + period
        if candidate <= now:
            candidate = now + period
        return candidate

    async def apply_charge_result(
        self,
        subscription: Subscription,
        outcome: ChargeOutcome,
        *,
        source: ChargeSource,
        reference: Optional[str],
        amount: Optional[Decimal] = None,
        currency: Optional[str] = None,
        payment_type: PaymentType = PaymentType.RECURRING,
        provider: Optional[Provider] = None,
        event_type: Optional[str] = None,
        raw: Optional[dict[str, Any]] = None,
        failure_status: AutopayStatus = AutopayStatus.FAILED,
    ) -> TransitionResult:
        """Apply one charge attempt and commit the transition."""
        previous = subscription.status
        if previous == SubscriptionStatus.CANCELED.value:
            logger.warning(
                "subscription_transition_rejected",
                org_id=subscription.org_id,
                status=previous,
                outcome=outcome.value,
                source=source.value,
            )
            raise InvalidStateTransition(
                f"Cannot apply a {outcome.value} charge to a {previous} subscription",
                details={"org_id": subscription.org_id, "status": previous},
            )

        now = self._clock()
        provider_value = (provider.value if provider else None) or subscription.provider
        payment = SubscriptionPayment(
            subscription_id=subscription.id,
            org_id=subscription.org_id,
            reference=reference,
            amount=amount if amount is not None else Decimal("0"),
            currency=(currency or subscription.monthly_currency or "NGN").upper(),
            payment_type=payment_type.value,
            provider=provider_value,
            event_type=event_type or source.value,
            payment_metadata={"source": source.value, "raw": raw or {}},
            created_at=now,
        )

        if outcome is ChargeOutcome.SUCCESS:
            subscription.next_billing_date = self._next_billing_after_success(subscription, now)
            subscription.status = SubscriptionStatus.ACTIVE.value
            subscription.autopay_last_status = AutopayStatus.CHARGED.value
            payment.status = PaymentStatus.COMPLETED.value
            await self._locks.unlock(subscription.org_id)
        else:
            subscription.status = SubscriptionStatus.PAST_DUE.value
            subscription.autopay_last_status = failure_status.value
            payment.status = PaymentStatus.FAILED.value
            await self._locks.lock(subscription.org_id, now + self.lock_grace)

        subscription.billing_claimed_at = None
        subscription.updated_at = now
        self.db.add(payment)
        await self.db.commit()

        logger.info(
            "subscription_transitioned",
            org_id=subscription.org_id,
            subscription_id=str(subscription.id),
            previous_status=previous,
            status=subscription.status,
            outcome=outcome.value,
            source=source.value,
            reference=reference,
        )
        return TransitionResult(
            applied=True,
            org_id=subscription.org_id,
            subscription_id=subscription.id,
            previous_status=previous,
            status=subscription.status,
            payment_id=payment.id,
        )

    async def resolve_subscription(self, event: NormalizedEvent) -> Optional[Subscription]:
        if event.org_id:
            return await self.get_by_org(event.org_id)
        return await self.find_by_external_reference(event.subscription_ref, event.customer_ref)

    async def apply_webhook_event(
        self, event: NormalizedEvent, subscription: Optional[Subscription] = None
    ) -> TransitionResult:
        """
        Apply a provider charge confirmation.

        Only what the event implies is changed: a non-terminal provider status
        is acknowledged without mutation, and a reference already recorded as
        completed is treated as applied.
        """
        if subscription is None:
            subscription = await self.resolve_subscription(event)
        if subscription is None:
            logger.warning(
                "webhook_subscription_not_found",
                provider=event.provider.value,
                org_id=event.org_id,
            )
            return TransitionResult(applied=False, org_id=event.org_id, reason="subscription_not_found")

        if event.status is None:
            logger.info(
                "webhook_status_ignored",
                provider=event.provider.value,
                org_id=subscription.org_id,
                raw_status=event.raw_status,
            )
            return TransitionResult(
                applied=False,
                org_id=subscription.org_id,
                subscription_id=subscription.id,
                status=subscription.status,
                reason="non_terminal_status",
            )

        reference = event.reference or event.tx_id
        if (
            event.status is ChargeOutcome.SUCCESS
            and reference
            and await self.has_completed_payment(event.provider, reference)
        ):
            logger.info(
                "webhook_payment_already_recorded",
                provider=event.provider.value,
                org_id=subscription.org_id,
                reference=reference,
            )
            return TransitionResult(
                applied=False,
                org_id=subscription.org_id,
                subscription_id=subscription.id,
                status=subscription.status,
                reason="already_recorded",
            )

        if event.plan_code:
            subscription.plan_code = event.plan_code
        if event.subscription_ref and not subscription.external_subscription_id:
            subscription.external_subscription_id = event.subscription_ref
        if event.customer_ref and not subscription.external_customer_id:
            subscription.external_customer_id = event.customer_ref

        return await self.apply_charge_result(
            subscription,
            event.status,
            source=ChargeSource.WEBHOOK,
            reference=reference,
            amount=event.amount,
            currency=event.currency,
            provider=event.provider,
            event_type=event.event_type,
            raw={"event_id": event.event_id, "tx_id": event.tx_id, "status": event.raw_status},
        )

    def list_price_minor(self, subscription: Subscription) -> tuple[int, str]:
        currency = (subscription.monthly_currency or "NGN").upper()
        if subscription.monthly_amount is not None:
            return to_minor_units(subscription.monthly_amount), currency
        return tier_price_minor(subscription.tier, currency)

    def first_charge_amount(self, subscription: Subscription) -> Decimal:
        """Monthly price less the upfront fee credit, floored at zero."""
        amount_minor, currency = self.list_price_minor(subscription)
        fee_currency = (subscription.upfront_fee_currency or currency).upper()
        if subscription.upfront_fee_paid and fee_currency == currency:
            amount_minor = max(0, amount_minor - to_minor_units(subscription.upfront_fee_paid))
        return to_major_units(amount_minor)

    def charge_amount_minor(self, subscription: Subscription) -> tuple[int, str]:
        """Amount due for the next charge, in minor units."""
        if subscription.status == SubscriptionStatus.TRIAL.value:
            _, currency = self.list_price_minor(subscription)
            return to_minor_units(self.first_charge_amount(subscription)), currency
        return self.list_price_minor(subscription)

    def charge_amount(self, subscription: Subscription) -> tuple[Decimal, str]:
        amount_minor, currency = self.charge_amount_minor(subscription)
        return to_major_units(amount_minor), currency

    async def _require(self, org_id: str) -> Subscription:
        subscription = await self.get_by_org(org_id)
        if subscription is None:
            raise ResourceNotFoundError(
                "Subscription not found", details={"org_id": org_id}
            )
        return subscription

    async def start_trial(
        self,
        org_id: str,
        *,
        provider: Provider,
        tier: str = "basic",
        plan_code: Optional[str] = None,
        user_id: Optional[str] = None,
        monthly_amount: Optional[Decimal] = None,
        monthly_currency: str = "NGN",
        upfront_fee: Optional[Decimal] = None,
        upfront_fee_currency: Optional[str] = None,
        upfront_reference: Optional[str] = None,
    ) -> Subscription:
        """
        Open a trial after the upfront fee was collected.

        An existing subscription for the organization is returned unchanged.
        A paid upfront fee is recorded as a completed ``upfront_fee`` payment
        and later credited against the first post-trial charge.
        """
        existing = await self.get_by_org(org_id)
        if existing is not None:
            logger.info("trial_start_reused", org_id=org_id, subscription_id=str(existing.id))
            return existing

        now = self._clock()
        currency = monthly_currency.upper()
        subscription = Subscription(
            org_id=org_id,
            user_id=user_id,
            provider=provider.value,
            tier=tier,
            plan_code=plan_code,
            monthly_amount=monthly_amount,
            monthly_currency=currency,
            upfront_fee_paid=upfront_fee or Decimal("0"),
            upfront_fee_currency=(upfront_fee_currency or currency).upper(),
            status=SubscriptionStatus.TRIAL.value,
            trial_start_date=now,
            trial_end_date=now + timedelta(days=int(settings.TRIAL_LENGTH_DAYS)),
            created_at=now,
            updated_at=now,
        )
        self.db.add(subscription)
        await self.db.flush()

        if upfront_fee:
            self.db.add(
                SubscriptionPayment(
                    subscription_id=subscription.id,
                    org_id=org_id,
                    reference=upfront_reference,
                    amount=upfront_fee,
                    currency=subscription.upfront_fee_currency,
                    payment_type=PaymentType.UPFRONT_FEE.value,
                    status=PaymentStatus.COMPLETED.value,
                    provider=provider.value,
                    event_type=PaymentType.UPFRONT_FEE.value,
                    payment_metadata={"source": ChargeSource.MANUAL.value},
                    created_at=now,
                )
            )
        await self.db.commit()
        logger.info(
            "trial_started",
            org_id=org_id,
            subscription_id=str(subscription.id),
            trial_end_date=subscription.trial_end_date.isoformat(),
        )
        return subscription

    async def configure_autopay(
        self,
        org_id: str,
        provider: Provider,
        reference: str,
        email: Optional[str] = None,
    ) -> Subscription:
        if not reference:
            raise BillingError("Autopay reference is required", details={"org_id": org_id})
        subscription = await self._require(org_id)
        subscription.autopay_enabled = True
        subscription.autopay_provider = provider.value
        subscription.autopay_reference = reference
        subscription.autopay_last_status = AutopayStatus.CONFIGURED.value
        subscription.autopay_configured_at = self._clock()
        if email:
            subscription.billing_email = email
        await self.db.commit()
        logger.info("autopay_configured", org_id=org_id, provider=provider.value)
        return subscription

    async def disable_autopay(self, org_id: str) -> Subscription:
        subscription = await self._require(org_id)
        subscription.autopay_enabled = False
        subscription.autopay_provider = None
        subscription.autopay_reference = None
        subscription.autopay_last_status = AutopayStatus.DISABLED.value
        await self.db.commit()
        logger.info("autopay_disabled", org_id=org_id)
        return subscription

    async def payment_history(self, subscription_id: UUID) -> list[SubscriptionPayment]:
        result = await self.db.execute(
            select(SubscriptionPayment)
            .where(SubscriptionPayment.subscription_id == subscription_id)
            .order_by(SubscriptionPayment.created_at.asc())
        )
        return list(result.scalars().all())

    async def due_subscriptions(self, now: Optional[datetime] = None) -> list[Subscription]:
        """TRIAL rows past ``trial_end_date`` and ACTIVE rows past ``next_billing_date``."""
        now = now or self._clock()
        result = await self.db.execute(
            select(Subscription).where(
                or_(
                    (Subscription.status == SubscriptionStatus.TRIAL.value)
                    & (Subscription.trial_end_date <= now),
                    (Subscription.status == SubscriptionStatus.ACTIVE.value)
                    & (Subscription.next_billing_date <= now),
                )
            )
        )
        return list(result.scalars().all())
