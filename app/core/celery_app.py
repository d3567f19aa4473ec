"""
Celery application: broker and result backend from settings.
Tasks are in app.workers.tasks (payment worker, lease janitor).
"""
from celery import Celery
from celery.schedules import crontab
from celery.signals import setup_logging

from app.core.config import settings
from app.core.logging import configure_logging

celery_app = Celery(
    "app",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=[
        "app.workers.tasks.payment_worker",
    ],
)

celery_app.conf.update(
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    task_track_started=True,
    task_time_limit=600,
    result_expires=86400,
    beat_schedule={
        "process-payments": {
            "task": "app.workers.tasks.payment_worker.process_payments",
            "schedule": crontab(minute=f"*/{settings.payment_worker_interval_minutes}"),
        },
        "retry-failed-payments": {
            "task": "app.workers.tasks.payment_worker.retry_failed_payments",
            "schedule": crontab(hour=settings.payment_worker_retry_hour, minute=0),
        },
        "requeue-orphaned-payments": {
            "task": "app.workers.tasks.payment_worker.requeue_orphaned_payments",
            "schedule": crontab(minute="*/5"),
        },
        "cleanup-worker-locks": {
            "task": "app.workers.tasks.payment_worker.expire_stale_locks",
            "schedule": crontab(minute=0),
        },
    },
)

celery_app.conf.task_routes = {
    "app.workers.tasks.payment_worker.*": {"queue": "payments"},
}


@setup_logging.connect
def _configure_worker_logging(**kwargs) -> None:
    configure_logging()
