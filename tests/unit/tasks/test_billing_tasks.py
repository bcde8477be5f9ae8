import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from chainsync.modules.billing.domain.billing.billing_sweep import SweepReport
from chainsync.shared.core.celery_app import celery_app
from chainsync.tasks.billing_tasks import (
    _open_db_session,
    _purge_idempotency_keys,
    _run_billing_sweep,
    purge_idempotency_keys,
    run_async,
    run_billing_sweep,
)


class DummyAsyncCM:
    def __init__(self, session):
        self._session = session

    async def __aenter__(self):
        return self._session

    async def __aexit__(self, exc_type, exc, tb):
        return None


def test_beat_schedule_registers_billing_jobs():
    schedule = celery_app.conf.beat_schedule
    assert schedule["billing-sweep-daily"]["task"] == "billing.run_sweep"
    assert schedule["webhook-idempotency-purge-hourly"]["task"] == "billing.purge_idempotency_keys"


def test_run_async_rejects_non_callables():
    with pytest.raises(TypeError):
        run_async(42)


@pytest.mark.asyncio
async def test_open_db_session_yields_session():
    session = MagicMock()
    with patch("chainsync.tasks.billing_tasks.async_session_maker", return_value=DummyAsyncCM(session)):
        async with _open_db_session() as got:
            assert got is session


@pytest.mark.asyncio
async def test_run_billing_sweep_returns_report_and_releases_resources():
    session = MagicMock()
    sweep = MagicMock()
    sweep.run = AsyncMock(return_value=SweepReport(selected=2, charged=1, failed=1))

    with patch("chainsync.tasks.billing_tasks.async_session_maker", return_value=DummyAsyncCM(session)), \
         patch("chainsync.tasks.billing_tasks.BillingSweep", return_value=sweep) as sweep_cls, \
         patch("chainsync.tasks.billing_tasks.close_http_client", new_callable=AsyncMock) as close_http, \
         patch("chainsync.tasks.billing_tasks.dispose_db_runtime", new_callable=AsyncMock) as dispose:
        summary = await _run_billing_sweep()

    sweep_cls.assert_called_once_with(session)
    assert summary == {"selected": 2, "charged": 1, "failed": 1, "skipped": 0, "errors": 0}
    close_http.assert_awaited_once()
    dispose.assert_awaited_once()


@pytest.mark.asyncio
async def test_run_billing_sweep_releases_resources_on_error():
    sweep = MagicMock()
    sweep.run = AsyncMock(side_effect=ConnectionError("db down"))

    with patch("chainsync.tasks.billing_tasks.async_session_maker", return_value=DummyAsyncCM(MagicMock())), \
         patch("chainsync.tasks.billing_tasks.BillingSweep", return_value=sweep), \
         patch("chainsync.tasks.billing_tasks.close_http_client", new_callable=AsyncMock) as close_http, \
         patch("chainsync.tasks.billing_tasks.dispose_db_runtime", new_callable=AsyncMock) as dispose:
        with pytest.raises(ConnectionError):
            await _run_billing_sweep()

    close_http.assert_awaited_once()
    dispose.assert_awaited_once()


@pytest.mark.asyncio
async def test_purge_idempotency_keys_uses_database_store():
    store = MagicMock()
    store.purge_expired = AsyncMock(return_value=7)

    with patch("chainsync.tasks.billing_tasks.DatabaseIdempotencyStore", return_value=store), \
         patch("chainsync.tasks.billing_tasks.dispose_db_runtime", new_callable=AsyncMock):
        assert await _purge_idempotency_keys() == 7


def test_run_billing_sweep_task():
    with patch("chainsync.tasks.billing_tasks.run_async", return_value={"selected": 0}) as mock_run_async:
        assert run_billing_sweep() == {"selected": 0}
    mock_run_async.assert_called_once()


def test_purge_idempotency_keys_task():
    with patch("chainsync.tasks.billing_tasks.run_async", return_value=3):
        assert purge_idempotency_keys() == 3
