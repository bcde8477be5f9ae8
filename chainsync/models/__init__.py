from chainsync.models.organization import Organization
from chainsync.models.subscription import Subscription, SubscriptionPayment
from chainsync.models.webhook_idempotency import WebhookIdempotencyKey

__all__ = [
    "Organization",
    "Subscription",
    "SubscriptionPayment",
    "WebhookIdempotencyKey",
]
