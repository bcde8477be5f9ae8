"""
Sweep-driven lifecycle: trial conversion, dunning lock and renewal.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest
from httpx import AsyncClient
from sqlalchemy import select

from chainsync.models import SubscriptionPayment
from chainsync.modules.billing.domain.billing.billing_sweep import BillingSweep
from chainsync.modules.billing.domain.billing.payment_gateway import ChargeResult
from chainsync.shared.core.clock import as_utc
from tests.utils import encode, paystack_charge_event, paystack_headers

AUTOPAY = {
    "autopay_enabled": True,
    "autopay_provider": "paystack",
    "autopay_reference": "AUTH_abc123",
    "billing_email": "billing@example.com",
}


def _adapter(success: bool) -> MagicMock:
    adapter = MagicMock()
    adapter.charge_by_stored_credential = AsyncMock(
        return_value=ChargeResult(
            success=success,
            reference="PAYSTACK_1772366400000_SWEEP1",
            message=None if success else "Insufficient Funds",
        )
    )
    return adapter


async def _payments(db, subscription_id):
    result = await db.execute(
        select(SubscriptionPayment).where(SubscriptionPayment.subscription_id == subscription_id)
    )
    return list(result.scalars().all())


@pytest.mark.asyncio
async def test_trial_conversion_on_successful_charge(db, clock, make_subscription):
    org, sub = await make_subscription(
        trial_end_date=clock() - timedelta(hours=2), **AUTOPAY
    )

    report = await BillingSweep(db, clock=clock).run(payment_adapter=_adapter(True))

    assert report.charged == 1
    await db.refresh(sub)
    await db.refresh(org)
    assert sub.status == "active"
    assert as_utc(sub.next_billing_date) > clock()
    assert org.is_active is True
    assert org.locked_until is None
    payments = await _payments(db, sub.id)
    assert [p.status for p in payments] == ["completed"]


@pytest.mark.asyncio
async def test_trial_conversion_failure_locks_org(db, clock, make_subscription):
    org, sub = await make_subscription(
        trial_end_date=clock() - timedelta(hours=2), **AUTOPAY
    )

    report = await BillingSweep(db, clock=clock).run(payment_adapter=_adapter(False))

    assert report.failed == 1
    await db.refresh(sub)
    await db.refresh(org)
    assert sub.status == "past_due"
    assert org.is_active is False
    assert org.locked_until is not None
    payments = await _payments(db, sub.id)
    assert [p.status for p in payments] == ["failed"]


@pytest.mark.asyncio
async def test_past_due_recovers_through_webhook(
    ac: AsyncClient, db, clock, make_subscription
):
    org, sub = await make_subscription(
        trial_end_date=clock() - timedelta(hours=2), **AUTOPAY
    )
    await BillingSweep(db, clock=clock).run(payment_adapter=_adapter(False))

    clock.advance(hours=6)
    payload = encode(paystack_charge_event(tx_id="tx-recovery-1"))
    response = await ac.post(
        "/webhooks/paystack", content=payload, headers=paystack_headers(payload, clock())
    )

    assert response.status_code == 200
    await db.refresh(sub)
    await db.refresh(org)
    assert sub.status == "active"
    assert org.is_active is True
    assert org.locked_until is None
    assert as_utc(sub.next_billing_date) == clock() + timedelta(days=30)
    assert sorted(p.status for p in await _payments(db, sub.id)) == ["completed", "failed"]


@pytest.mark.asyncio
async def test_active_renewal_advances_billing_date(db, clock, make_subscription):
    previous = clock() - timedelta(hours=1)
    _, sub = await make_subscription(
        status="active", next_billing_date=previous, **AUTOPAY
    )

    report = await BillingSweep(db, clock=clock).run(payment_adapter=_adapter(True))

    assert report.charged == 1
    await db.refresh(sub)
    assert sub.status == "active"
    assert as_utc(sub.next_billing_date) > previous
    assert as_utc(sub.next_billing_date) == previous + timedelta(days=30)
