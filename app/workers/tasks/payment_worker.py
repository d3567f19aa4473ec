"""
Celery beat tasks for payment settlement:
- process_payments: one worker run under the payment_worker lease (every few minutes)
- retry_failed_payments: re-admit API_RETRY rows (daily)
- requeue_orphaned_payments: put PROCESSING rows of crashed runs back in the queue
- expire_stale_locks: lease janitor (hourly), independent of the processor
"""
import logging
from datetime import timedelta

from app.core.celery_app import celery_app
from app.db.session import SessionLocal
from app.services.locks.service import WorkerLockService
from app.services.payment_worker.service import PaymentWorkerService
from app.services.reconnection.client import ReconnectionClient

logger = logging.getLogger(__name__)


@celery_app.task(
    name="app.workers.tasks.payment_worker.process_payments",
    time_limit=300,
    soft_time_limit=280,
)
def process_payments() -> dict:
    """Run the settlement worker once. ran=False means another instance holds the lease."""
    db = SessionLocal()
    reconnection = ReconnectionClient()
    try:
        svc = PaymentWorkerService(db, reconnection=reconnection)
        stats_before = svc.stats()
        result = svc.run_once()
        if not result.ran:
            return {"ok": True, **result.to_dict()}
        stats_after = svc.stats()
        logger.info(
            "process_payments_done",
            extra={
                "processed": result.processed,
                "succeeded": result.succeeded,
                "retried": result.retried,
                "failed": result.failed,
            },
        )
        if stats_before["processing"] and stats_after["processing"] >= stats_before["processing"]:
            # Same or more rows stuck in PROCESSING across runs: likely orphans from a crash
            logger.warning("payments_processing_stalled", extra={"count": stats_after["processing"]})
        return {"ok": True, **result.to_dict(), "stats": stats_after}
    except Exception:
        logger.exception("process_payments_error")
        db.rollback()
        return {"ok": False}
    finally:
        reconnection.close()
        db.close()


@celery_app.task(name="app.workers.tasks.payment_worker.retry_failed_payments")
def retry_failed_payments() -> dict:
    db = SessionLocal()
    try:
        count = PaymentWorkerService(db).retry_failed()
        return {"ok": True, "readmitted": count}
    except Exception:
        logger.exception("retry_failed_payments_error")
        db.rollback()
        return {"ok": False}
    finally:
        db.close()


@celery_app.task(name="app.workers.tasks.payment_worker.requeue_orphaned_payments")
def requeue_orphaned_payments() -> dict:
    db = SessionLocal()
    try:
        count = PaymentWorkerService(db).requeue_orphaned()
        if count is None:
            return {"ok": True, "skipped": "locked"}
        return {"ok": True, "requeued": count}
    except Exception:
        logger.exception("requeue_orphaned_payments_error")
        db.rollback()
        return {"ok": False}
    finally:
        db.close()


@celery_app.task(name="app.workers.tasks.payment_worker.expire_stale_locks")
def expire_stale_locks(max_age_minutes: int | None = None) -> dict:
    """Lease janitor: drop worker locks older than the staleness window."""
    db = SessionLocal()
    try:
        max_age = timedelta(minutes=max_age_minutes) if max_age_minutes else None
        count = WorkerLockService(db).expire_stale(max_age=max_age)
        return {"ok": True, "expired": count}
    except Exception:
        logger.exception("expire_stale_locks_error")
        db.rollback()
        return {"ok": False}
    finally:
        db.close()
