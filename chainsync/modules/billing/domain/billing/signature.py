"""
Authenticity checks for inbound payment-provider webhooks.

Signatures are HMACs over the exact raw request bytes; a re-serialized body
would not match. Freshness bounds how long a captured, validly-signed
delivery can be replayed.
"""

from __future__ import annotations

import hashlib
import hmac
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Mapping, Optional

from .billing_shared import Provider, logger, settings

EVENT_TIMESTAMP_HEADER = "x-event-timestamp"
EVENT_ID_HEADER = "x-event-id"

SIGNATURE_HEADERS: dict[Provider, str] = {
    Provider.PAYSTACK: "x-paystack-signature",
    Provider.FLUTTERWAVE: "verif-hash",
}

_DIGESTS: dict[Provider, Callable[..., Any]] = {
    Provider.PAYSTACK: hashlib.sha512,
    Provider.FLUTTERWAVE: hashlib.sha256,
}


def get_header(headers: Mapping[str, str], name: str) -> Optional[str]:
    """Case-insensitive header lookup over any mapping."""
    direct = headers.get(name)
    if direct is not None:
        return direct
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def _configured_secret(provider: Provider) -> Optional[str]:
    if provider is Provider.PAYSTACK:
        return settings.paystack_webhook_secret
    return settings.flutterwave_webhook_secret


class SignatureVerifier:
    """Verifies provider HMAC signatures in constant time."""

    def __init__(self, secrets: Optional[Mapping[Provider, Optional[str]]] = None):
        self._secrets = dict(secrets) if secrets is not None else None

    def secret_for(self, provider: Provider) -> Optional[str]:
        if self._secrets is not None:
            return self._secrets.get(provider)
        return _configured_secret(provider)

    def sign(self, provider: Provider, raw_body: bytes) -> str:
        secret = self.secret_for(provider)
        if not secret:
            raise ValueError(f"No webhook secret configured for {provider.value}")
        return hmac.new(secret.encode(), raw_body, _DIGESTS[provider]).hexdigest()

    def verify(
        self, provider: Provider, raw_body: bytes, signature: Optional[str]
    ) -> bool:
        if not signature:
            logger.warning("webhook_missing_signature", provider=provider.value)
            return False

        if not self.secret_for(provider):
            logger.error("webhook_secret_not_configured", provider=provider.value)
            return False

        expected = self.sign(provider, raw_body)
        is_valid = hmac.compare_digest(
            expected.encode(), signature.strip().lower().encode()
        )
        if not is_valid:
            logger.warning(
                "webhook_invalid_signature",
                provider=provider.value,
                provided_sig=signature[:8] + "...",
            )
        return is_valid


class Freshness(str, Enum):
    OK = "ok"
    STALE = "stale"
    FUTURE = "future"
    MISSING = "missing"
    INVALID = "invalid"


def parse_event_timestamp(value: str) -> Optional[datetime]:
    """Epoch milliseconds, or an ISO-8601 string."""
    raw = value.strip()
    if not raw:
        return None
    try:
        millis = float(raw)
    except ValueError:
        pass
    else:
        try:
            return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def check_freshness(
    timestamp_header: Optional[str], now: datetime, skew_window: timedelta
) -> Freshness:
    """Accept only timestamps inside ``[now - skew, now + skew]``."""
    if timestamp_header is None or not timestamp_header.strip():
        return Freshness.MISSING
    event_time = parse_event_timestamp(timestamp_header)
    if event_time is None:
        return Freshness.INVALID
    if event_time < now - skew_window:
        return Freshness.STALE
    if event_time > now + skew_window:
        return Freshness.FUTURE
    return Freshness.OK
