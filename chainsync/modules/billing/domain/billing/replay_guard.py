"""
Time-bounded deduplication of webhook deliveries.

Payment providers deliver at least once. The first delivery to win the
atomic insert-if-absent on its idempotency key performs the side effects;
every later delivery inside the TTL window is acknowledged as a no-op.
Records expire, so a redelivery after the window is processed again. The
durable audit trail is the SubscriptionPayment ledger, not this store.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Optional, Protocol

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError

from chainsync.models.webhook_idempotency import WebhookIdempotencyKey
from chainsync.shared.core.clock import Clock, utcnow

from .billing_shared import Provider, logger, settings


def resolve_idempotency_key(
    provider: Provider,
    business_tx_id: Optional[str],
    delivery_id: Optional[str],
) -> str:
    """
    Canonical dedup key for a delivery.

    The business transaction id wins so that two deliveries with different
    delivery ids for the same payment collapse to one key.
    """
    if business_tx_id:
        return f"{provider.value}:tx:{business_tx_id}"
    if delivery_id:
        return f"{provider.value}:evt:{delivery_id}"
    raise ValueError("An idempotency key needs a transaction id or a delivery id")


@dataclass(frozen=True)
class ReplayCheck:
    is_new: bool
    degraded: bool = False


class IdempotencyStore(Protocol):
    async def check_and_record(self, key: str, ttl: timedelta) -> ReplayCheck: ...

    async def purge_expired(self) -> int: ...


class InMemoryIdempotencyStore:
    """Process-local store; expiry is evaluated on read against the injected clock."""

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._expires_at: dict[str, datetime] = {}
        self._lock = asyncio.Lock()

    async def check_and_record(self, key: str, ttl: timedelta) -> ReplayCheck:
        async with self._lock:
            now = self._clock()
            expires_at = self._expires_at.get(key)
            if expires_at is not None and expires_at > now:
                return ReplayCheck(is_new=False)
            self._expires_at[key] = now + ttl
            return ReplayCheck(is_new=True)

    async def purge_expired(self) -> int:
        async with self._lock:
            now = self._clock()
            expired = [k for k, exp in self._expires_at.items() if exp <= now]
            for key in expired:
                del self._expires_at[key]
            return len(expired)

    def __len__(self) -> int:
        return len(self._expires_at)


class DatabaseIdempotencyStore:
    """
    Durable store backed by ``webhook_idempotency_keys``.

    Uses its own short session so the dedup claim commits independently of
    the ledger transaction. The primary key is the serialization point.
    """

    def __init__(
        self,
        session_factory: Optional[Callable[[], Any]] = None,
        clock: Clock = utcnow,
    ):
        if session_factory is None:
            from chainsync.shared.db.session import async_session_maker

            session_factory = async_session_maker
        self._session_factory = session_factory
        self._clock = clock

    async def check_and_record(self, key: str, ttl: timedelta) -> ReplayCheck:
        now = self._clock()
        provider = key.split(":", 1)[0]
        async with self._session_factory() as session:
            await session.execute(
                delete(WebhookIdempotencyKey).where(
                    WebhookIdempotencyKey.key == key,
                    WebhookIdempotencyKey.expires_at <= now,
                )
            )
            session.add(
                WebhookIdempotencyKey(
                    key=key,
                    provider=provider,
                    received_at=now,
                    expires_at=now + ttl,
                )
            )
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return ReplayCheck(is_new=False)
        return ReplayCheck(is_new=True)

    async def purge_expired(self) -> int:
        async with self._session_factory() as session:
            result = await session.execute(
                delete(WebhookIdempotencyKey).where(
                    WebhookIdempotencyKey.expires_at <= self._clock()
                )
            )
            await session.commit()
            return int(result.rowcount or 0)


class ReplayGuard:
    """
    Wraps an IdempotencyStore with the configured TTL.

    A store failure does not block acknowledging the webhook: the delivery
    is treated as new and the degradation is logged.
    """

    def __init__(self, store: IdempotencyStore, ttl: Optional[timedelta] = None):
        self.store = store
        self.ttl = ttl or timedelta(seconds=settings.WEBHOOK_REPLAY_TTL_SECONDS)

    async def check_and_record(self, key: str) -> ReplayCheck:
        try:
            return await self.store.check_and_record(key, self.ttl)
        except Exception as exc:
            logger.error(
                "replay_guard_degraded",
                idempotency=key,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return ReplayCheck(is_new=True, degraded=True)


def build_idempotency_store(clock: Clock = utcnow) -> IdempotencyStore:
    backend = str(settings.WEBHOOK_IDEMPOTENCY_BACKEND).lower()
    if backend == "memory":
        return InMemoryIdempotencyStore(clock=clock)
    return DatabaseIdempotencyStore(clock=clock)
