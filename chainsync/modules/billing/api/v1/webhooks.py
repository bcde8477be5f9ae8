"""
Payment-provider webhook endpoints.

- POST /webhooks/paystack, /webhooks/flutterwave
- Legacy aliases under /api/payment/* and /api/webhook/*
- GET /webhooks/ping
"""

import structlog
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from chainsync.modules.billing.domain.billing.billing_shared import Provider
from chainsync.modules.billing.domain.billing.replay_guard import ReplayGuard
from chainsync.modules.billing.domain.billing.webhook_gateway import WebhookGateway
from chainsync.shared.core.clock import utcnow
from chainsync.shared.db.session import get_db

logger = structlog.get_logger()
router = APIRouter(tags=["Webhooks"])


def get_replay_guard(request: Request) -> ReplayGuard:
    """The guard lives on app state so every request shares one store."""
    guard = getattr(request.app.state, "replay_guard", None)
    if guard is None:
        raise RuntimeError("replay_guard is not configured on app.state")
    return guard


async def _handle(
    provider: Provider, request: Request, db: AsyncSession, guard: ReplayGuard
) -> JSONResponse:
    payload = await request.body()
    gateway = WebhookGateway(
        db,
        guard,
        clock=getattr(request.app.state, "clock", utcnow),
    )
    response = await gateway.handle(provider, payload, request.headers)
    if response.status_code >= 400:
        logger.info(
            "webhook_rejected",
            provider=provider.value,
            status_code=response.status_code,
            reason=response.body.get("message") or response.body.get("error"),
        )
    return JSONResponse(status_code=response.status_code, content=response.body)


@router.post("/webhooks/paystack")
@router.post("/api/payment/paystack-webhook", include_in_schema=False)
@router.post("/api/webhook/paystack", include_in_schema=False)
async def paystack_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    guard: ReplayGuard = Depends(get_replay_guard),
) -> JSONResponse:
    return await _handle(Provider.PAYSTACK, request, db, guard)


@router.post("/webhooks/flutterwave")
@router.post("/api/payment/flutterwave-webhook", include_in_schema=False)
@router.post("/api/webhook/flutterwave", include_in_schema=False)
async def flutterwave_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    guard: ReplayGuard = Depends(get_replay_guard),
) -> JSONResponse:
    return await _handle(Provider.FLUTTERWAVE, request, db, guard)


@router.get("/webhooks/ping")
async def ping() -> dict[str, bool]:
    return {"ok": True}
