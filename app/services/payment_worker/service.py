"""
PaymentWorkerService — settles queued gateway payments.

One run (run_once):
1. take the "payment_worker" lease; if someone else holds it, report ran=False
2. claim up to batch_size QUEUED rows oldest-first (compare-and-set to PROCESSING)
3. per row: idempotency check, validation, ledger credit + PAID in one commit;
   transient ledger errors -> API_RETRY, permanent ones -> FAILED
4. best-effort reconnection after a successful credit, recorded in reconnect_status
5. release the lease in finally

State machine:
    PENDING -> QUEUED -> PROCESSING -> PAID | API_RETRY | FAILED
    API_RETRY -> QUEUED (retry_failed)
    PROCESSING -> QUEUED (requeue_orphaned, stale rows left by a crashed run)
"""
import logging
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import func, or_, select, update
from sqlalchemy.exc import DBAPIError, SQLAlchemyError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session as DBSession

from app.core.config import settings
from app.models.payment import PaymentStatus, PendingPayment, ReconnectStatus
from app.services.ledger.service import CreditOutcome, CreditResult, LedgerService, is_transient, parse_amount
from app.services.locks.service import WorkerLockService, make_holder_id
from app.services.reconnection.client import ReconnectionClient, ReconnectResult
from app.utils.metrics import (
    payment_reconnect_total,
    payment_records_by_status,
    payment_worker_run_duration_seconds,
    payment_worker_runs_total,
    payments_orphans_requeued_total,
    payments_readmitted_total,
    payments_settled_total,
)

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    ran: bool
    processed: int = 0
    succeeded: int = 0
    retried: int = 0
    failed: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def local_day_bounds(now: datetime | None = None) -> tuple[datetime, datetime]:
    """Server-local calendar day as a [start, end) pair in UTC."""
    local_now = (now or _utcnow()).astimezone()
    start = local_now.replace(hour=0, minute=0, second=0, microsecond=0)
    end = start + timedelta(days=1)
    return start.astimezone(timezone.utc), end.astimezone(timezone.utc)


class PaymentWorkerService:
    def __init__(
        self,
        db: DBSession,
        ledger: LedgerService | None = None,
        reconnection: ReconnectionClient | None = None,
        lock_service: WorkerLockService | None = None,
        holder_id: str | None = None,
        batch_size: int | None = None,
        lock_name: str | None = None,
        max_attempts: int | None = None,
    ):
        self.db = db
        self.ledger = ledger or LedgerService(db)
        self.reconnection = reconnection or ReconnectionClient()
        self.locks = lock_service or WorkerLockService(db)
        self.holder_id = holder_id or make_holder_id()
        self.batch_size = batch_size or settings.payment_worker_batch_size
        self.lock_name = lock_name or settings.payment_worker_lock_name
        self.max_attempts = settings.payment_worker_max_attempts if max_attempts is None else max_attempts

    # ------------------------------------------------------------------
    # Processor
    # ------------------------------------------------------------------

    def run_once(self) -> RunResult:
        if not self.locks.acquire(self.lock_name, self.holder_id):
            payment_worker_runs_total.labels(result="locked").inc()
            logger.info("payment_worker_already_running", extra={"lock_name": self.lock_name})
            return RunResult(ran=False)

        payment_worker_runs_total.labels(result="ran").inc()
        result = RunResult(ran=True)
        start = time.time()
        try:
            for payment_id in self._claim_batch():
                outcome = self._process_one(payment_id)
                if outcome is None:
                    continue
                result.processed += 1
                if outcome == PaymentStatus.PAID:
                    result.succeeded += 1
                elif outcome == PaymentStatus.API_RETRY:
                    result.retried += 1
                else:
                    result.failed += 1
        finally:
            self._release_lease()
            payment_worker_run_duration_seconds.observe(time.time() - start)

        logger.info(
            "payment_worker_run_done",
            extra={
                "processed": result.processed,
                "succeeded": result.succeeded,
                "retried": result.retried,
                "failed": result.failed,
            },
        )
        return result

    def _release_lease(self) -> None:
        try:
            # Drop whatever a failed record left half-written before touching the lock row
            self.db.rollback()
            self.locks.release(self.lock_name, self.holder_id)
        except SQLAlchemyError:
            # Storage is gone; the janitor expires the lease
            logger.exception(
                "worker_lock_release_failed",
                extra={"lock_name": self.lock_name, "holder": self.holder_id},
            )

    def _claim_batch(self) -> list[str]:
        candidate_ids = (
            self.db.execute(
                select(PendingPayment.id)
                .where(PendingPayment.status == PaymentStatus.QUEUED.value)
                .order_by(PendingPayment.created_at.asc(), PendingPayment.id.asc())
                .limit(self.batch_size)
            )
            .scalars()
            .all()
        )
        if not candidate_ids:
            logger.info("payment_worker_nothing_queued")
            return []

        now = _utcnow()
        claimed: list[str] = []
        for payment_id in candidate_ids:
            res = self.db.execute(
                update(PendingPayment)
                .where(
                    PendingPayment.id == payment_id,
                    PendingPayment.status == PaymentStatus.QUEUED.value,
                )
                .values(
                    status=PaymentStatus.PROCESSING.value,
                    last_attempt_at=now,
                    attempts=PendingPayment.attempts + 1,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            if res.rowcount == 1:
                claimed.append(payment_id)
            else:
                logger.info("payment_claim_skipped", extra={"payment_id": payment_id})
        self.db.commit()
        return claimed

    def _process_one(self, payment_id: str) -> PaymentStatus | None:
        payment = self.db.get(PendingPayment, payment_id, populate_existing=True)
        if payment is None or payment.status != PaymentStatus.PROCESSING:
            return None
        reference_no = payment.reference_no
        account_no = payment.account_no
        amount = payment.amount

        credit = self._settle(payment_id, reference_no, account_no, amount)

        if credit.ok:
            # PAID commits together with the credit and its transactions-log row
            self._transition(payment_id, PaymentStatus.PAID, None)
            self.db.commit()
            payments_settled_total.labels(outcome=credit.outcome.value).inc()
            logger.info(
                "payment_paid",
                extra={
                    "payment_id": payment_id,
                    "reference_no": reference_no,
                    "account_no": account_no,
                    "amount": str(amount),
                    "reason": credit.distribution_summary,
                },
            )
            self._reconnect(payment_id, account_no)
            return PaymentStatus.PAID

        self.db.rollback()
        if credit.outcome == CreditOutcome.TRANSIENT_ERROR:
            status = PaymentStatus.API_RETRY
            payments_settled_total.labels(outcome="api_retry").inc()
            logger.warning(
                "payment_api_retry",
                extra={"payment_id": payment_id, "reference_no": reference_no, "reason": credit.reason},
            )
        else:
            status = PaymentStatus.FAILED
            payments_settled_total.labels(outcome="failed").inc()
            logger.error(
                "payment_failed",
                extra={"payment_id": payment_id, "reference_no": reference_no, "reason": credit.reason},
            )
        self._transition(payment_id, status, credit.reason)
        self.db.commit()
        return status

    def _settle(self, payment_id: str, reference_no: str, account_no: str, amount) -> CreditResult:
        try:
            applied = self.ledger.has_applied(reference_no)
        except (DBAPIError, PoolTimeoutError) as e:
            if not is_transient(e):
                raise
            logger.warning(
                "payment_lookup_transient",
                extra={"payment_id": payment_id, "reference_no": reference_no, "error": type(e).__name__},
            )
            return CreditResult(CreditOutcome.TRANSIENT_ERROR, reason=type(e).__name__)

        if applied:
            logger.info("payment_already_applied", extra={"payment_id": payment_id, "reference_no": reference_no})
            return CreditResult(CreditOutcome.ALREADY_APPLIED)
        if parse_amount(amount) is None:
            return CreditResult(CreditOutcome.PERMANENT_ERROR, reason="invalid_amount")
        return self.ledger.credit(account_no, amount, reference_no)

    def _transition(self, payment_id: str, status: PaymentStatus, error: str | None) -> None:
        self.db.execute(
            update(PendingPayment)
            .where(
                PendingPayment.id == payment_id,
                PendingPayment.status == PaymentStatus.PROCESSING.value,
            )
            .values(status=status.value, last_error=error, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )

    def _reconnect(self, payment_id: str, account_no: str) -> ReconnectStatus:
        if not self.reconnection.enabled:
            return ReconnectStatus.NOT_ATTEMPTED
        if settings.payment_worker_reconnect_requires_settled_balance and not self.ledger.is_settled(account_no):
            self.db.commit()
            logger.info("reconnect_skipped_balance_remaining", extra={"payment_id": payment_id, "account_no": account_no})
            return ReconnectStatus.NOT_ATTEMPTED

        try:
            outcome = self.reconnection.reconnect(account_no)
        except Exception:
            logger.exception("reconnect_error", extra={"payment_id": payment_id, "account_no": account_no})
            outcome = ReconnectResult(ok=False, detail="exception")

        status = ReconnectStatus.SUCCESS if outcome.ok else ReconnectStatus.FAILED
        self.db.execute(
            update(PendingPayment)
            .where(PendingPayment.id == payment_id)
            .values(reconnect_status=status.value, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        payment_reconnect_total.labels(status=status.value).inc()
        logger.info(
            "payment_reconnect_done",
            extra={"payment_id": payment_id, "account_no": account_no, "reconnect_status": status.value},
        )
        return status

    # ------------------------------------------------------------------
    # Retry admitter / reconciliation
    # ------------------------------------------------------------------

    def retry_failed(self) -> int:
        """Move every API_RETRY row back to QUEUED. Returns rows affected."""
        stmt = update(PendingPayment).where(PendingPayment.status == PaymentStatus.API_RETRY.value)
        if self.max_attempts > 0:
            stmt = stmt.where(PendingPayment.attempts < self.max_attempts)
        res = self.db.execute(
            stmt.values(status=PaymentStatus.QUEUED.value, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        count = res.rowcount or 0
        payments_readmitted_total.inc(count)
        logger.info("payments_readmitted", extra={"count": count})
        return count

    def requeue_orphaned(self, max_age: timedelta | None = None) -> int | None:
        """Requeue PROCESSING rows abandoned by a crashed run. None when the lease is busy."""
        if max_age is None:
            max_age = timedelta(minutes=settings.payment_worker_orphan_minutes)
        if not self.locks.acquire(self.lock_name, self.holder_id):
            return None
        try:
            cutoff = _utcnow() - max_age
            res = self.db.execute(
                update(PendingPayment)
                .where(
                    PendingPayment.status == PaymentStatus.PROCESSING.value,
                    or_(
                        PendingPayment.last_attempt_at.is_(None),
                        PendingPayment.last_attempt_at < cutoff,
                    ),
                )
                .values(
                    status=PaymentStatus.QUEUED.value,
                    last_error="orphaned_processing_requeued",
                    updated_at=_utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
            count = res.rowcount or 0
        finally:
            self._release_lease()

        if count:
            payments_orphans_requeued_total.inc(count)
            logger.warning("orphaned_processing_requeued", extra={"count": count})
        return count

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def stats(self) -> dict[str, int]:
        totals = dict(
            self.db.execute(
                select(PendingPayment.status, func.count())
                .where(
                    PendingPayment.status.in_([
                        PaymentStatus.PENDING.value,
                        PaymentStatus.QUEUED.value,
                        PaymentStatus.PROCESSING.value,
                        PaymentStatus.API_RETRY.value,
                    ])
                )
                .group_by(PendingPayment.status)
            ).all()
        )
        day_start, day_end = local_day_bounds()
        today = dict(
            self.db.execute(
                select(PendingPayment.status, func.count())
                .where(
                    PendingPayment.status.in_([PaymentStatus.PAID.value, PaymentStatus.FAILED.value]),
                    PendingPayment.last_attempt_at >= day_start,
                    PendingPayment.last_attempt_at < day_end,
                )
                .group_by(PendingPayment.status)
            ).all()
        )
        self.db.commit()

        result = {
            "pending": totals.get(PaymentStatus.PENDING.value, 0),
            "queued": totals.get(PaymentStatus.QUEUED.value, 0),
            "processing": totals.get(PaymentStatus.PROCESSING.value, 0),
            "paid_today": today.get(PaymentStatus.PAID.value, 0),
            "failed_today": today.get(PaymentStatus.FAILED.value, 0),
            "api_retry": totals.get(PaymentStatus.API_RETRY.value, 0),
        }
        for key, value in result.items():
            payment_records_by_status.labels(status=key).set(value)
        return result
