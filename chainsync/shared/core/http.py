"""
Process-wide httpx client for payment-provider calls.

The API lifespan and each Celery sweep run open it once and close it on the
way out; provider connections are pooled in between.
"""

import inspect
from typing import Optional

import httpx
import structlog

from chainsync.shared.core.config import get_settings

logger = structlog.get_logger()

_client: Optional[httpx.AsyncClient] = None

PROVIDER_TIMEOUT = httpx.Timeout(20.0, connect=10.0)


def _new_client(max_connections: int, max_keepalive: int) -> httpx.AsyncClient:
    settings = get_settings()
    return httpx.AsyncClient(
        http2=True,
        timeout=PROVIDER_TIMEOUT,
        limits=httpx.Limits(
            max_connections=max_connections,
            max_keepalive_connections=max_keepalive,
            keepalive_expiry=30.0,
        ),
        headers={"User-Agent": f"{settings.APP_NAME}-Billing/{settings.VERSION}"},
    )


def get_http_client() -> httpx.AsyncClient:
    """Shared client; created on first use when the lifespan did not open it."""
    global _client
    if _client is None:
        logger.warning("http_client_lazy_initialized")
        _client = _new_client(max_connections=20, max_keepalive=10)
    return _client


async def init_http_client() -> None:
    global _client
    if _client is not None:
        logger.warning("http_client_already_initialized")
        return
    _client = _new_client(max_connections=100, max_keepalive=20)
    logger.info("http_client_initialized", http2=True)


async def close_http_client() -> None:
    global _client

    client, _client = _client, None
    if client is None:
        return

    close_result = client.aclose()
    if inspect.isawaitable(close_result):
        await close_result
    logger.info("http_client_closed")
