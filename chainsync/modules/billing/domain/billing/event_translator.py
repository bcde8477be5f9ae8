"""Normalizes provider webhook envelopes into a single event shape."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Optional

from chainsync.shared.core.exceptions import (
    MissingIdentifiersError,
    UnsupportedEventError,
)

from .billing_shared import ChargeOutcome, Provider, logger, to_major_units


@dataclass(frozen=True)
class NormalizedEvent:
    provider: Provider
    event_id: Optional[str]
    tx_id: Optional[str]
    event_type: str
    status: Optional[ChargeOutcome]
    raw_status: Optional[str]
    org_id: Optional[str]
    plan_code: Optional[str]
    reference: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    subscription_ref: Optional[str] = None
    customer_ref: Optional[str] = None
    customer_email: Optional[str] = None
    data: dict[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def has_fallback_identifier(self) -> bool:
        return bool(self.subscription_ref or self.customer_ref)


@dataclass(frozen=True)
class _ProviderShape:
    supported_events: frozenset[str]
    metadata_key: str
    success_statuses: frozenset[str]
    failure_statuses: frozenset[str]
    tx_id: Callable[[dict[str, Any]], Optional[str]]
    reference: Callable[[dict[str, Any]], Optional[str]]
    subscription_ref: Callable[[dict[str, Any]], Optional[str]]
    customer_ref: Callable[[dict[str, Any]], Optional[str]]
    amount: Callable[[Any], Optional[Decimal]]


def _first(data: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = data.get(key)
        if value is None or value == "":
            continue
        if isinstance(value, dict):
            continue
        return str(value)
    return None


def _customer(data: dict[str, Any]) -> dict[str, Any]:
    customer = data.get("customer")
    return customer if isinstance(customer, dict) else {}


def _nested_code(data: dict[str, Any], key: str, code_key: str) -> Optional[str]:
    value = data.get(key)
    if isinstance(value, dict):
        return _first(value, code_key, "id")
    if value is None or value == "":
        return None
    return str(value)


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    return amount if amount.is_finite() else None


def _kobo_to_major(value: Any) -> Optional[Decimal]:
    amount = _decimal(value)
    if amount is None:
        return None
    return to_major_units(int(amount))


_SHAPES: dict[Provider, _ProviderShape] = {
    Provider.PAYSTACK: _ProviderShape(
        supported_events=frozenset({"charge.success"}),
        metadata_key="metadata",
        success_statuses=frozenset({"success"}),
        failure_statuses=frozenset({"failed", "reversed"}),
        tx_id=lambda d: _first(d, "id", "reference", "transaction_reference"),
        reference=lambda d: _first(d, "reference", "transaction_reference", "id"),
        subscription_ref=lambda d: _nested_code(d, "subscription", "subscription_code")
        or _first(d, "subscription_code"),
        customer_ref=lambda d: _first(_customer(d), "customer_code", "id"),
        amount=_kobo_to_major,
    ),
    Provider.FLUTTERWAVE: _ProviderShape(
        supported_events=frozenset({"charge.completed"}),
        metadata_key="meta",
        success_statuses=frozenset({"successful"}),
        failure_statuses=frozenset({"failed"}),
        tx_id=lambda d: _first(d, "id", "tx_ref"),
        reference=lambda d: _first(d, "tx_ref", "flw_ref", "id"),
        subscription_ref=lambda d: _nested_code(d, "plan", "id")
        or _first(d, "payment_plan"),
        customer_ref=lambda d: _first(_customer(d), "id"),
        amount=_decimal,
    ),
}


def supported_event_types(provider: Provider) -> frozenset[str]:
    return _SHAPES[provider].supported_events


class EventTranslator:
    """
    Maps a parsed provider envelope to a NormalizedEvent.

    Only allow-listed event types are translated. Subscription identifiers
    come from the provider's metadata bag; without them a prior
    subscription/customer reference must be present for later resolution.
    """

    def translate(
        self,
        provider: Provider,
        body: dict[str, Any],
        delivery_id: Optional[str] = None,
    ) -> NormalizedEvent:
        shape = _SHAPES[provider]
        event_type = body.get("event") or body.get("type")
        if not isinstance(event_type, str) or event_type not in shape.supported_events:
            logger.info(
                "webhook_event_unsupported",
                provider=provider.value,
                event_type=str(event_type),
            )
            raise UnsupportedEventError(
                "Unsupported event type",
                details={"event_type": event_type, "provider": provider.value},
            )

        data = body.get("data")
        if not isinstance(data, dict):
            data = {}
        metadata = data.get(shape.metadata_key)
        if not isinstance(metadata, dict):
            metadata = {}

        org_id = _first(metadata, "orgId", "org_id")
        plan_code = _first(metadata, "planCode", "plan_code")
        subscription_ref = shape.subscription_ref(data)
        customer_ref = shape.customer_ref(data)

        if not org_id and not (subscription_ref or customer_ref):
            logger.warning(
                "webhook_missing_identifiers",
                provider=provider.value,
                event_type=event_type,
            )
            raise MissingIdentifiersError(
                "Missing subscription identifiers",
                details={"provider": provider.value},
            )

        raw_status = _first(data, "status")
        status_norm = (raw_status or "").lower()
        status: Optional[ChargeOutcome] = None
        if status_norm in shape.success_statuses:
            status = ChargeOutcome.SUCCESS
        elif status_norm in shape.failure_statuses:
            status = ChargeOutcome.FAILURE

        currency = _first(data, "currency")
        return NormalizedEvent(
            provider=provider,
            event_id=delivery_id,
            tx_id=shape.tx_id(data),
            event_type=event_type,
            status=status,
            raw_status=raw_status,
            org_id=org_id,
            plan_code=plan_code,
            reference=shape.reference(data),
            amount=shape.amount(data.get("amount")),
            currency=currency.upper() if currency else None,
            subscription_ref=subscription_ref,
            customer_ref=customer_ref,
            customer_email=_first(_customer(data), "email"),
            data=data,
        )
