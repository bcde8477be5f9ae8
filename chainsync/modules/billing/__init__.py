from chainsync.modules.billing.api.v1.webhooks import router
from chainsync.modules.billing.domain.billing import (
    BillingSweep,
    SubscriptionLedger,
    WebhookGateway,
)

__all__ = ["router", "BillingSweep", "SubscriptionLedger", "WebhookGateway"]
