from celery import Celery
from celery.schedules import crontab

from chainsync.shared.core.config import get_settings

settings = get_settings()

# Use Redis URL from settings, default to localhost if not set (development)
broker_url = settings.REDIS_URL or "redis://localhost:6379/0"
backend_url = settings.REDIS_URL or "redis://localhost:6379/0"

celery_app = Celery(
    "chainsync_worker",
    broker=broker_url,
    backend=backend_url,
    include=["chainsync.tasks.billing_tasks"],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    worker_prefetch_multiplier=1,
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    broker_connection_timeout=5,
    broker_connection_retry=True,
    broker_connection_max_retries=3,
    broker_connection_retry_on_startup=True,
)

if settings.BILLING_SWEEP_ENABLED:
    celery_app.conf.beat_schedule = {
        "billing-sweep-daily": {
            "task": "billing.run_sweep",
            "schedule": crontab(minute=0, hour=settings.BILLING_SWEEP_HOUR_UTC),
        },
        "webhook-idempotency-purge-hourly": {
            "task": "billing.purge_idempotency_keys",
            "schedule": crontab(minute=15),
        },
    }

# Eager execution for unit tests without Redis
if settings.TESTING:
    celery_app.conf.update(
        task_always_eager=True,
        task_eager_propagates=True,
        broker_url="memory://",
        result_backend="rpc://",
        broker_connection_retry_on_startup=False,
    )

if __name__ == "__main__":
    celery_app.start()
