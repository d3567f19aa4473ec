"""
Operator API for the payment settlement worker.
Same operations as the Celery beat tasks, for manual runs and dashboards.
"""
from datetime import timedelta

from fastapi import APIRouter, Depends, Header, HTTPException, Query
from sqlalchemy.orm import Session

from app.core.config import settings
from app.db.session import get_db
from app.schemas.payment_worker import (
    ExpireLocksOut,
    RequeueOrphanedOut,
    RetryFailedOut,
    RunResultOut,
    WorkerStatsOut,
)
from app.services.locks.service import WorkerLockService
from app.services.payment_worker.service import PaymentWorkerService


def require_admin(x_admin_key: str | None = Header(default=None)) -> None:
    if settings.admin_api_key and x_admin_key != settings.admin_api_key:
        raise HTTPException(status_code=401, detail="unauthorized")


router = APIRouter(
    prefix="/payments/worker",
    tags=["payment-worker"],
    dependencies=[Depends(require_admin)],
)


@router.post("/run", response_model=RunResultOut)
def run_worker(db: Session = Depends(get_db)) -> dict:
    """Run one batch. ran=false: another worker holds the lease."""
    svc = PaymentWorkerService(db)
    try:
        return svc.run_once().to_dict()
    finally:
        svc.reconnection.close()


@router.post("/retry-failed", response_model=RetryFailedOut)
def retry_failed(db: Session = Depends(get_db)) -> dict:
    return {"readmitted": PaymentWorkerService(db).retry_failed()}


@router.get("/stats", response_model=WorkerStatsOut)
def worker_stats(db: Session = Depends(get_db)) -> dict:
    return PaymentWorkerService(db).stats()


@router.post("/locks/expire", response_model=ExpireLocksOut)
def expire_locks(
    db: Session = Depends(get_db),
    max_age_minutes: int = Query(default=settings.payment_worker_lock_max_age_minutes, ge=1),
) -> dict:
    expired = WorkerLockService(db).expire_stale(max_age=timedelta(minutes=max_age_minutes))
    return {"expired": expired, "max_age_minutes": max_age_minutes}


@router.post("/requeue-orphaned", response_model=RequeueOrphanedOut)
def requeue_orphaned(
    db: Session = Depends(get_db),
    max_age_minutes: int = Query(default=settings.payment_worker_orphan_minutes, ge=1),
) -> dict:
    count = PaymentWorkerService(db).requeue_orphaned(timedelta(minutes=max_age_minutes))
    if count is None:
        return {"ran": False, "requeued": 0}
    return {"ran": True, "requeued": count}
