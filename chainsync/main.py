from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator

import structlog
from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse

from chainsync.modules.billing.api.v1.webhooks import router as webhooks_router
from chainsync.modules.billing.domain.billing.replay_guard import (
    ReplayGuard,
    build_idempotency_store,
)
from chainsync.shared.core.config import get_settings, reload_settings_from_environment
from chainsync.shared.core.exceptions import ChainSyncException
from chainsync.shared.core.http import close_http_client, init_http_client
from chainsync.shared.core.logging import setup_logging
from chainsync.shared.core.middleware import RequestIDMiddleware
from chainsync.shared.db.session import dispose_db_runtime, health_check

setup_logging()
settings = get_settings()
logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    global settings
    settings = reload_settings_from_environment()
    logger.info("app_starting", app_name=settings.APP_NAME, environment=settings.ENVIRONMENT)

    await init_http_client()
    yield

    logger.info("app_shutting_down")
    await close_http_client()
    await dispose_db_runtime()


app = FastAPI(
    title=settings.APP_NAME,
    version=settings.VERSION,
    lifespan=lifespan,
)
app.state.replay_guard = ReplayGuard(build_idempotency_store())
app.add_middleware(RequestIDMiddleware)


@app.exception_handler(ChainSyncException)
async def chainsync_exception_handler(
    request: Request, exc: ChainSyncException
) -> JSONResponse:
    """Handle custom application exceptions."""
    logger.warning(
        "application_error",
        path=request.url.path,
        code=exc.code,
        status_code=exc.status_code,
        error=exc.message,
    )
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.code, "code": exc.code, "message": exc.message},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handle FastAPI HTTP exceptions with standardized format."""
    detail_text = str(exc.detail) if isinstance(exc.detail, str) else "Request failed"
    if settings.is_production and exc.status_code >= 500:
        detail_text = "An unexpected internal error occurred"
    return JSONResponse(
        status_code=exc.status_code,
        content={"error": detail_text, "code": "http_error", "message": detail_text},
    )


@app.get("/health")
async def health() -> dict[str, Any]:
    database = await health_check()
    return {"status": "ok" if database["status"] == "up" else "degraded", "database": database}


app.include_router(webhooks_router)
