from celery import Celery
from celery.schedules import crontab
from app.core.config import settings

celery_app = Celery(
    "mlfor",
    broker=settings.CELERY_BROKER_URL,
    backend=settings.CELERY_RESULT_BACKEND,
    include=["app.tasks.payments", "app.tasks.notifications"],
)

celery_app.conf.update(
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    broker_connection_retry_on_startup=True,
    broker_transport_options={"visibility_timeout": 3600},
    redis_backend_health_check_interval=30,
    broker_pool_limit=5,
)

celery_app.conf.beat_schedule = {
    "sweep-abandoned-payments": {
        "task": "app.tasks.payments.sweep_abandoned_payments",
        "schedule": crontab(minute="*/15"),
    },
    "repair-paid-orders": {
        "task": "app.tasks.payments.repair_paid_orders",
        "schedule": crontab(minute="*/10"),
    },
    "release-cancelled-stock": {
        "task": "app.tasks.payments.release_cancelled_stock",
        "schedule": crontab(minute="*/30"),
    },
}
