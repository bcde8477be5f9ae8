"""
Billing Sweep - off-session renewal of due subscriptions

1. Select TRIAL rows whose trial has ended and ACTIVE rows whose billing date passed
2. Claim each row with a conditional update so overlapping runs cannot double-charge
3. Charge the stored credential through the PaymentGatewayAdapter, bounded by a timeout
4. Apply success/failure through the SubscriptionLedger

One subscription's failure never aborts the rest of the run.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Optional
from uuid import UUID

from sqlalchemy import and_, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from chainsync.models.subscription import Subscription
from chainsync.shared.core.clock import Clock, utcnow
from chainsync.shared.core.exceptions import BillingError

from .billing_shared import (
    AutopayStatus,
    ChargeOutcome,
    ChargeSource,
    PaymentType,
    Provider,
    SubscriptionStatus,
    logger,
    settings,
    to_major_units,
)
from .payment_gateway import (
    ChargeResult,
    PaymentGatewayAdapter,
    StoredCredential,
    generate_reference,
)
from .subscription_ledger import SubscriptionLedger


@dataclass
class SweepReport:
    selected: int = 0
    charged: int = 0
    failed: int = 0
    skipped: int = 0
    errors: int = 0
    details: list[dict[str, Any]] = field(default_factory=list)

    def as_dict(self) -> dict[str, Any]:
        return {
            "selected": self.selected,
            "charged": self.charged,
            "failed": self.failed,
            "skipped": self.skipped,
            "errors": self.errors,
        }


def _due_clause(now: datetime) -> Any:
    return or_(
        and_(
            Subscription.status == SubscriptionStatus.TRIAL.value,
            Subscription.trial_end_date <= now,
        ),
        and_(
            Subscription.status == SubscriptionStatus.ACTIVE.value,
            Subscription.next_billing_date <= now,
        ),
    )


class BillingSweep:
    def __init__(
        self,
        db: AsyncSession,
        gateway: Optional[PaymentGatewayAdapter] = None,
        *,
        clock: Clock = utcnow,
        ledger_factory: Callable[..., SubscriptionLedger] | None = None,
        charge_timeout_seconds: Optional[float] = None,
    ):
        self.db = db
        self._gateway = gateway
        self._clock = clock
        self._ledger = (ledger_factory or SubscriptionLedger)(db, clock=clock)
        self._charge_reference: Optional[str] = None
        self._charge_timeout = float(
            charge_timeout_seconds
            if charge_timeout_seconds is not None
            else settings.BILLING_CHARGE_TIMEOUT_SECONDS
        )

    def _resolve_gateway(self, override: Optional[PaymentGatewayAdapter]) -> PaymentGatewayAdapter:
        gateway = override or self._gateway
        if gateway is None:
            from .payment_gateway import HttpPaymentGateway

            gateway = HttpPaymentGateway()
            self._gateway = gateway
        return gateway

    async def run(self, payment_adapter: Optional[PaymentGatewayAdapter] = None) -> SweepReport:
        gateway = self._resolve_gateway(payment_adapter)
        now = self._clock()
        report = SweepReport()

        result = await self.db.execute(select(Subscription.id).where(_due_clause(now)))
        due_ids = list(result.scalars().all())
        report.selected = len(due_ids)
        logger.info("billing_sweep_started", selected=report.selected)

        for subscription_id in due_ids:
            self._charge_reference = None
            try:
                outcome = await self._process(subscription_id, gateway)
            except Exception as exc:
                await self.db.rollback()
                report.errors += 1
                report.details.append(
                    {"subscription_id": str(subscription_id), "outcome": "error", "error": str(exc)}
                )
                logger.error(
                    "billing_sweep_item_failed",
                    subscription_id=str(subscription_id),
                    error=str(exc),
                    error_type=type(exc).__name__,
                    charge_reference=self._charge_reference,
                )
                continue

            if outcome == "charged":
                report.charged += 1
            elif outcome == "failed":
                report.failed += 1
            else:
                report.skipped += 1
            report.details.append({"subscription_id": str(subscription_id), "outcome": outcome})

        logger.info("billing_sweep_completed", **report.as_dict())
        return report

    async def _claim(self, subscription_id: UUID) -> bool:
        """Mark the row in-flight only if it is still due and unclaimed (or the claim went stale)."""
        now = self._clock()
        stale_before = now - timedelta(seconds=int(settings.BILLING_CLAIM_TTL_SECONDS))
        result = await self.db.execute(
            update(Subscription)
            .where(
                Subscription.id == subscription_id,
                _due_clause(now),
                or_(
                    Subscription.billing_claimed_at.is_(None),
                    and_(
                        Subscription.billing_claimed_at <= stale_before,
                        # Not when the charge succeeded but was never applied.
                        or_(
                            Subscription.autopay_last_status.is_(None),
                            Subscription.autopay_last_status != AutopayStatus.CHARGED.value,
                        ),
                    ),
                ),
            )
            .values(
                billing_claimed_at=now,
                autopay_last_status=AutopayStatus.PENDING_CHARGE.value,
            )
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return bool(result.rowcount)

    async def _process(self, subscription_id: UUID, gateway: PaymentGatewayAdapter) -> str:
        if not await self._claim(subscription_id):
            logger.info("billing_sweep_claim_lost", subscription_id=str(subscription_id))
            return "skipped"

        subscription = await self.db.get(Subscription, subscription_id, populate_existing=True)
        if subscription is None:
            return "skipped"

        credential = self._credential_for(subscription)
        if credential is None:
            logger.warning(
                "billing_sweep_missing_method",
                org_id=subscription.org_id,
                subscription_id=str(subscription.id),
            )
            await self._ledger.apply_charge_result(
                subscription,
                ChargeOutcome.FAILURE,
                source=ChargeSource.SWEEP,
                reference=None,
                currency=subscription.monthly_currency,
                failure_status=AutopayStatus.MISSING_METHOD,
                raw={"reason": AutopayStatus.MISSING_METHOD.value},
            )
            return "failed"

        list_minor, _ = self._ledger.list_price_minor(subscription)
        if list_minor <= 0:
            raise BillingError(
                "Subscription has no chargeable price",
                details={"org_id": subscription.org_id, "tier": subscription.tier},
            )

        amount_minor, currency = self._ledger.charge_amount_minor(subscription)
        if amount_minor <= 0:
            # Upfront fee already covers this period.
            charge = ChargeResult(
                success=True,
                reference=generate_reference(credential.provider),
                message="covered_by_upfront_fee",
            )
        else:
            charge = await self._charge(subscription, credential, amount_minor, currency, gateway)
            if charge.success:
                self._charge_reference = charge.reference or None
                subscription.autopay_last_status = AutopayStatus.CHARGED.value
                await self.db.commit()

        outcome = ChargeOutcome.SUCCESS if charge.success else ChargeOutcome.FAILURE
        await self._ledger.apply_charge_result(
            subscription,
            outcome,
            source=ChargeSource.SWEEP,
            reference=charge.reference or None,
            amount=to_major_units(amount_minor),
            currency=currency,
            payment_type=PaymentType.RECURRING,
            provider=credential.provider,
            raw={"message": charge.message, "response": charge.raw},
        )
        return "charged" if charge.success else "failed"

    def _credential_for(self, subscription: Subscription) -> Optional[StoredCredential]:
        if not subscription.autopay_enabled or not subscription.autopay_reference:
            return None
        try:
            provider = Provider.parse(subscription.autopay_provider or subscription.provider)
        except ValueError:
            return None
        if provider is Provider.PAYSTACK and not subscription.billing_email:
            return None
        return StoredCredential(
            provider=provider,
            reference=subscription.autopay_reference,
            email=subscription.billing_email,
        )

    async def _charge(
        self,
        subscription: Subscription,
        credential: StoredCredential,
        amount_minor: int,
        currency: str,
        gateway: PaymentGatewayAdapter,
    ) -> ChargeResult:
        metadata = {
            "orgId": subscription.org_id,
            "planCode": subscription.plan_code,
            "subscriptionId": str(subscription.id),
            "type": ChargeSource.SWEEP.value,
        }
        try:
            async with asyncio.timeout(self._charge_timeout):
                return await gateway.charge_by_stored_credential(
                    credential, amount_minor, currency, metadata
                )
        except TimeoutError:
            logger.warning(
                "billing_sweep_charge_timeout",
                org_id=subscription.org_id,
                timeout_seconds=self._charge_timeout,
            )
            return ChargeResult(success=False, reference="", message="charge_timeout")
        except Exception as exc:
            logger.error(
                "billing_sweep_charge_exception",
                org_id=subscription.org_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return ChargeResult(success=False, reference="", message=str(exc))
