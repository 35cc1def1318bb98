from celery import Celery

from app.shared.core.config import get_settings

settings = get_settings()

# Use Redis URL from settings, default to localhost if not set (development)
broker_url = settings.REDIS_URL or "redis://localhost:6379/0"
backend_url = settings.REDIS_URL or "redis://localhost:6379/0"

# Initialize Celery app
celery_app = Celery(
    "storefront_billing_worker",
    broker=broker_url,
    backend=backend_url,
    include=["app.tasks.billing_tasks"],
)

# Configuration
celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,
    # Worker settings
    worker_prefetch_multiplier=1,  # Fair dispatch
    task_acks_late=True,  # Retry if worker crashes mid-task
    task_reject_on_worker_lost=True,
    # Connection settings: never block indefinitely on startup
    broker_connection_timeout=5,
    broker_connection_retry=True,
    broker_connection_max_retries=3,
    broker_connection_retry_on_startup=True,
)

# Reconciliation is the safety net for missed webhooks; it runs sequentially.
celery_app.conf.beat_schedule = {
    "billing-sync-active-subscriptions": {
        "task": "billing.sync_active_subscriptions",
        "schedule": float(settings.SUBSCRIPTION_SYNC_CRON_MINUTES * 60),
    },
    "billing-sync-preapproval-plans": {
        "task": "billing.sync_preapproval_plans",
        "schedule": 24 * 60 * 60.0,
    },
}

# Eager execution for unit tests without Redis
if settings.TESTING:
    celery_app.conf.update(
        task_always_eager=True,
        task_eager_propagates=True,
        broker_url="memory://",
        result_backend="rpc://",
        broker_connection_retry_on_startup=False,  # Never block in tests
    )

if __name__ == "__main__":
    celery_app.start()
