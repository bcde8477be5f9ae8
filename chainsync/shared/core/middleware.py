import time
import uuid
from collections.abc import Awaitable, Callable

import structlog
from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

REQUEST_ID_HEADER = "X-Request-ID"
DELIVERY_ID_HEADER = "x-event-id"

logger = structlog.get_logger()


class RequestIDMiddleware(BaseHTTPMiddleware):
    """
    Binds the request id and, for webhook deliveries, the provider delivery
    id into structlog contextvars so every log line of a request correlates.

    A client-supplied X-Request-ID is echoed for correlation only.
    """

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or uuid.uuid4().hex
        request.state.request_id = request_id

        structlog.contextvars.clear_contextvars()
        bound: dict[str, str] = {"request_id": request_id, "path": request.url.path}
        delivery_id = request.headers.get(DELIVERY_ID_HEADER)
        if delivery_id:
            bound["delivery_id"] = delivery_id
        structlog.contextvars.bind_contextvars(**bound)

        started = time.perf_counter()
        response = await call_next(request)
        response.headers[REQUEST_ID_HEADER] = request_id
        logger.debug(
            "http_request_completed",
            method=request.method,
            status_code=response.status_code,
            duration_ms=round((time.perf_counter() - started) * 1000, 2),
        )
        return response
