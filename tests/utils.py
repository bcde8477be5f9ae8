"""Shared helpers for building signed provider webhook deliveries."""
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

PAYSTACK_SECRET = "sk_test_paystack_secret"
FLUTTERWAVE_SECRET = "FLWSECK_TEST-flutterwave-secret"


class FrozenClock:
    """Deterministic clock; ``advance`` moves time forward."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


def sign_paystack(payload: bytes, secret: str = PAYSTACK_SECRET) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha512).hexdigest()


def sign_flutterwave(payload: bytes, secret: str = FLUTTERWAVE_SECRET) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()


def epoch_ms(moment: datetime) -> str:
    return str(int(moment.timestamp() * 1000))


def encode(body: dict[str, Any]) -> bytes:
    return json.dumps(body).encode()


def paystack_charge_event(
    tx_id: Optional[str] = "tx-abc-123",
    status: str = "success",
    metadata: Optional[dict[str, Any]] = None,
    event: str = "charge.success",
    **data: Any,
) -> dict[str, Any]:
    body_data: dict[str, Any] = {
        "status": status,
        "amount": 3_000_000,
        "currency": "NGN",
        "metadata": {"orgId": "org-test", "planCode": "BASIC"} if metadata is None else metadata,
    }
    if tx_id is not None:
        body_data["id"] = tx_id
    body_data.update(data)
    return {"event": event, "data": body_data}


def flutterwave_charge_event(
    tx_id: Optional[str] = "flw-9001",
    status: str = "successful",
    meta: Optional[dict[str, Any]] = None,
    **data: Any,
) -> dict[str, Any]:
    body_data: dict[str, Any] = {
        "status": status,
        "amount": 30000,
        "currency": "NGN",
        "tx_ref": "FLUTTERWAVE_1767225600000_ABC123",
        "meta": {"orgId": "org-test", "planCode": "BASIC"} if meta is None else meta,
    }
    if tx_id is not None:
        body_data["id"] = tx_id
    body_data.update(data)
    return {"event": "charge.completed", "data": body_data}


def paystack_headers(
    payload: bytes,
    now: datetime,
    event_id: Optional[str] = "evt-1",
    signature: Optional[str] = None,
) -> dict[str, str]:
    headers = {
        "content-type": "application/json",
        "x-paystack-signature": signature if signature is not None else sign_paystack(payload),
        "x-event-timestamp": epoch_ms(now),
    }
    if event_id is not None:
        headers["x-event-id"] = event_id
    return headers


def flutterwave_headers(
    payload: bytes, now: datetime, event_id: Optional[str] = "flw-evt-1"
) -> dict[str, str]:
    headers = {
        "content-type": "application/json",
        "verif-hash": sign_flutterwave(payload),
        "x-event-timestamp": epoch_ms(now),
    }
    if event_id is not None:
        headers["x-event-id"] = event_id
    return headers
