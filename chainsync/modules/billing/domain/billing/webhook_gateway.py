"""
Per-delivery webhook pipeline.

signature -> freshness -> JSON parse -> delivery id -> translate
-> replay guard -> ledger. Each step short-circuits; authentication
failures answer 401 and validation failures answer 400, before anything is
written. Once the replay guard has recorded the key the delivery counts as
handled and is acknowledged even if the ledger step fails.
"""

from __future__ import annotations

import json
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Callable, Mapping, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from chainsync.shared.core.clock import Clock, utcnow
from chainsync.shared.core.exceptions import (
    ChainSyncException,
    InvalidStateTransition,
    MalformedPayloadError,
    MissingDeliveryIdError,
    MissingIdentifiersError,
    WebhookAuthenticationError,
    WebhookValidationError,
)

from .billing_shared import Provider, logger, settings
from .event_translator import EventTranslator, NormalizedEvent
from .replay_guard import ReplayGuard, resolve_idempotency_key
from .signature import (
    EVENT_ID_HEADER,
    EVENT_TIMESTAMP_HEADER,
    SIGNATURE_HEADERS,
    Freshness,
    SignatureVerifier,
    check_freshness,
    get_header,
)
from .subscription_ledger import SubscriptionLedger

_FRESHNESS_MESSAGES = {
    Freshness.MISSING: "Missing event timestamp",
    Freshness.INVALID: "Invalid event timestamp",
    Freshness.STALE: "Stale event timestamp",
    Freshness.FUTURE: "Event timestamp is in the future",
}


@dataclass(frozen=True)
class WebhookResponse:
    status_code: int
    body: dict[str, Any]


def render_error(exc: ChainSyncException) -> WebhookResponse:
    if isinstance(exc, WebhookAuthenticationError):
        return WebhookResponse(401, {"status": "error", "message": exc.message})
    return WebhookResponse(exc.status_code, {"error": exc.message})


class WebhookGateway:
    def __init__(
        self,
        db: AsyncSession,
        replay_guard: ReplayGuard,
        *,
        verifier: Optional[SignatureVerifier] = None,
        translator: Optional[EventTranslator] = None,
        ledger_factory: Callable[..., SubscriptionLedger] | None = None,
        clock: Clock = utcnow,
        skew_window: Optional[timedelta] = None,
    ):
        self.db = db
        self.replay_guard = replay_guard
        self.verifier = verifier or SignatureVerifier()
        self.translator = translator or EventTranslator()
        self._clock = clock
        self._ledger = (ledger_factory or SubscriptionLedger)(db, clock=clock)
        self.skew_window = skew_window or timedelta(
            seconds=settings.WEBHOOK_ALLOWED_SKEW_SECONDS
        )

    async def handle(
        self, provider: Provider, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookResponse:
        """Always answers; authentication/validation errors become 401/400 bodies."""
        try:
            return await self.process(provider, raw_body, headers)
        except (WebhookAuthenticationError, WebhookValidationError) as exc:
            return render_error(exc)

    def authenticate(
        self, provider: Provider, raw_body: bytes, headers: Mapping[str, str]
    ) -> None:
        signature = get_header(headers, SIGNATURE_HEADERS[provider])
        if not signature:
            raise WebhookAuthenticationError("Missing signature")
        if not self.verifier.verify(provider, raw_body, signature):
            raise WebhookAuthenticationError("Invalid signature")

        freshness = check_freshness(
            get_header(headers, EVENT_TIMESTAMP_HEADER), self._clock(), self.skew_window
        )
        if freshness is not Freshness.OK:
            logger.warning(
                "webhook_timestamp_rejected",
                provider=provider.value,
                freshness=freshness.value,
            )
            raise WebhookAuthenticationError(_FRESHNESS_MESSAGES[freshness])

    @staticmethod
    def parse(raw_body: bytes) -> dict[str, Any]:
        try:
            body = json.loads(raw_body)
        except (json.JSONDecodeError, UnicodeDecodeError):
            logger.error("webhook_invalid_json", payload_len=len(raw_body))
            raise MalformedPayloadError("Invalid JSON payload")
        if not isinstance(body, dict):
            raise MalformedPayloadError("Invalid JSON payload")
        return body

    async def process(
        self, provider: Provider, raw_body: bytes, headers: Mapping[str, str]
    ) -> WebhookResponse:
        self.authenticate(provider, raw_body, headers)
        body = self.parse(raw_body)

        delivery_id = (get_header(headers, EVENT_ID_HEADER) or "").strip()
        if not delivery_id:
            raise MissingDeliveryIdError("Missing event id")

        event = self.translator.translate(provider, body, delivery_id=delivery_id)
        subscription = await self._ledger.resolve_subscription(event)
        if not event.org_id and subscription is None:
            logger.warning(
                "webhook_fallback_identifier_unresolved",
                provider=provider.value,
                subscription_ref=event.subscription_ref,
                customer_ref=event.customer_ref,
            )
            raise MissingIdentifiersError("Missing subscription identifiers")

        logger.info(
            "webhook_received",
            provider=provider.value,
            event_type=event.event_type,
            event_id=delivery_id,
            tx_id=event.tx_id,
        )

        key = resolve_idempotency_key(provider, event.tx_id, delivery_id)
        check = await self.replay_guard.check_and_record(key)
        if not check.is_new:
            logger.info(
                "webhook_duplicate_delivery",
                provider=provider.value,
                event_id=delivery_id,
                tx_id=event.tx_id,
            )
            return WebhookResponse(
                200, {"status": "success", "received": True, "idempotent": True}
            )

        await self._apply(event, subscription)
        return WebhookResponse(
            200, {"status": "success", "received": True, "idempotent": False}
        )

    async def _apply(self, event: NormalizedEvent, subscription: Any) -> None:
        try:
            await self._ledger.apply_webhook_event(event, subscription)
        except InvalidStateTransition as exc:
            await self.db.rollback()
            logger.warning(
                "webhook_transition_rejected",
                provider=event.provider.value,
                org_id=event.org_id,
                error=exc.message,
            )
        except Exception as exc:
            # Key already recorded: the delivery counts as handled.
            await self.db.rollback()
            logger.error(
                "webhook_ledger_apply_failed",
                provider=event.provider.value,
                org_id=event.org_id,
                tx_id=event.tx_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
