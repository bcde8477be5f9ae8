import asyncio
import inspect
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Coroutine, cast

import structlog
from celery import shared_task
from sqlalchemy.ext.asyncio import AsyncSession

from chainsync.modules.billing.domain.billing.billing_sweep import BillingSweep
from chainsync.modules.billing.domain.billing.replay_guard import (
    DatabaseIdempotencyStore,
)
from chainsync.shared.core.http import close_http_client
from chainsync.shared.db.session import async_session_maker, dispose_db_runtime

logger = structlog.get_logger()


@asynccontextmanager
async def _open_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Open a DB session using the production async session context manager."""
    async with async_session_maker() as session:
        yield session


def run_async(task_or_coro: Any, *args: Any, **kwargs: Any) -> Any:
    """
    Run an async callable/coroutine from sync code.

    Supported call patterns:
    - run_async(coroutine)
    - run_async(callable, *args, **kwargs)
    """
    if asyncio.iscoroutine(task_or_coro) or inspect.isawaitable(task_or_coro):
        return asyncio.run(cast(Coroutine[Any, Any, Any], task_or_coro))

    if callable(task_or_coro):
        return asyncio.run(task_or_coro(*args, **kwargs))

    raise TypeError("run_async expects an awaitable or a callable async function")


async def _run_billing_sweep() -> dict[str, Any]:
    try:
        async with _open_db_session() as db:
            report = await BillingSweep(db).run()
            return report.as_dict()
    finally:
        # Each asyncio.run gets a fresh loop; pooled connections must not outlive it.
        await close_http_client()
        await dispose_db_runtime()


async def _purge_idempotency_keys() -> int:
    try:
        return await DatabaseIdempotencyStore().purge_expired()
    finally:
        await dispose_db_runtime()


@shared_task(
    name="billing.run_sweep",
    autoretry_for=(ConnectionError, TimeoutError),
    retry_kwargs={"max_retries": 3, "countdown": 30},
    retry_backoff=True,
)  # type: ignore[untyped-decorator]
def run_billing_sweep() -> dict[str, Any]:
    """Periodic off-session renewal of due subscriptions."""
    summary = cast(dict[str, Any], run_async(_run_billing_sweep))
    logger.info("billing_sweep_task_completed", **summary)
    return summary


@shared_task(name="billing.purge_idempotency_keys")  # type: ignore[untyped-decorator]
def purge_idempotency_keys() -> int:
    purged = cast(int, run_async(_purge_idempotency_keys))
    logger.info("webhook_idempotency_keys_purged", purged=purged)
    return purged
