"""Webhook ingestion and subscription billing."""

from chainsync.modules.billing.domain.billing.billing_sweep import BillingSweep, SweepReport
from chainsync.modules.billing.domain.billing.event_translator import (
    EventTranslator,
    NormalizedEvent,
)
from chainsync.modules.billing.domain.billing.organization_lock import OrganizationLockManager
from chainsync.modules.billing.domain.billing.payment_gateway import (
    ChargeResult,
    HttpPaymentGateway,
    PaymentGatewayAdapter,
    StoredCredential,
)
from chainsync.modules.billing.domain.billing.replay_guard import (
    DatabaseIdempotencyStore,
    InMemoryIdempotencyStore,
    ReplayGuard,
    resolve_idempotency_key,
)
from chainsync.modules.billing.domain.billing.signature import SignatureVerifier, check_freshness
from chainsync.modules.billing.domain.billing.subscription_ledger import SubscriptionLedger
from chainsync.modules.billing.domain.billing.webhook_gateway import WebhookGateway

__all__ = [
    "BillingSweep",
    "SweepReport",
    "EventTranslator",
    "NormalizedEvent",
    "OrganizationLockManager",
    "ChargeResult",
    "HttpPaymentGateway",
    "PaymentGatewayAdapter",
    "StoredCredential",
    "DatabaseIdempotencyStore",
    "InMemoryIdempotencyStore",
    "ReplayGuard",
    "resolve_idempotency_key",
    "SignatureVerifier",
    "check_freshness",
    "SubscriptionLedger",
    "WebhookGateway",
]
