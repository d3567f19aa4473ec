"""
WorkerLockService — named leases on the worker_locks table.

acquire is a single INSERT guarded by the lock_name primary key, so two callers
racing for the same lease cannot both win. Contention is reported as False,
never raised; only storage failures propagate.
"""
import logging
import os
import socket
from datetime import datetime, timedelta, timezone
from uuid import uuid4

from sqlalchemy import delete, insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from app.core.config import settings
from app.models.worker_lock import WorkerLock
from app.utils.metrics import lock_acquire_total, stale_locks_expired_total

logger = logging.getLogger(__name__)


def make_holder_id() -> str:
    """hostname:pid:nonce, unique per worker invocation."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:8]}"


class WorkerLockService:
    def __init__(self, db: DBSession):
        self.db = db

    def acquire(self, lock_name: str, holder: str) -> bool:
        try:
            self.db.execute(
                insert(WorkerLock).values(
                    lock_name=lock_name,
                    holder=holder,
                    acquired_at=datetime.now(timezone.utc),
                )
            )
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            lock_acquire_total.labels(lock_name=lock_name, result="contended").inc()
            logger.info("worker_lock_contended", extra={"lock_name": lock_name, "holder": holder})
            return False
        lock_acquire_total.labels(lock_name=lock_name, result="acquired").inc()
        logger.info("worker_lock_acquired", extra={"lock_name": lock_name, "holder": holder})
        return True

    def release(self, lock_name: str, holder: str) -> bool:
        """Delete the lease only if we still hold it. Returns False when it was gone or taken over."""
        result = self.db.execute(
            delete(WorkerLock).where(
                WorkerLock.lock_name == lock_name,
                WorkerLock.holder == holder,
            )
        )
        self.db.commit()
        released = result.rowcount > 0
        if released:
            logger.info("worker_lock_released", extra={"lock_name": lock_name, "holder": holder})
        else:
            logger.warning("worker_lock_release_noop", extra={"lock_name": lock_name, "holder": holder})
        return released

    def expire_stale(self, lock_name: str | None = None, max_age: timedelta | None = None) -> int:
        """Drop leases older than max_age regardless of holder. lock_name=None covers every lock."""
        if max_age is None:
            max_age = timedelta(minutes=settings.payment_worker_lock_max_age_minutes)
        cutoff = datetime.now(timezone.utc) - max_age
        stmt = delete(WorkerLock).where(WorkerLock.acquired_at < cutoff)
        if lock_name is not None:
            stmt = stmt.where(WorkerLock.lock_name == lock_name)
        result = self.db.execute(stmt)
        self.db.commit()
        count = result.rowcount or 0
        if count:
            stale_locks_expired_total.inc(count)
            logger.warning("worker_locks_expired", extra={"count": count, "lock_name": lock_name})
        return count

    def current(self, lock_name: str) -> WorkerLock | None:
        return self.db.execute(
            select(WorkerLock).where(WorkerLock.lock_name == lock_name)
        ).scalar_one_or_none()
