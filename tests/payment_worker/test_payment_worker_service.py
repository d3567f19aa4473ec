"""
Tests for PaymentWorkerService.
Covers: single-run lease, oldest-first batching, exactly-once credit, transient vs permanent
failures, best-effort reconnection, retry admitter, orphan requeue, stats.
"""
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import patch

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from app.core.config import settings
from app.models.billing_account import BillingAccount
from app.models.payment import PaymentStatus, PendingPayment, ReconnectStatus
from app.models.transaction import Transaction
from app.services.ledger.service import LedgerService
from app.services.locks.service import WorkerLockService
from app.services.payment_worker.service import PaymentWorkerService, local_day_bounds

LOCK = "payment_worker"


def _worker(db, reconnection, **kwargs) -> PaymentWorkerService:
    return PaymentWorkerService(db, reconnection=reconnection, holder_id="test-holder", **kwargs)


def _balance(db, account_no: str = "A-100") -> Decimal:
    return db.execute(
        select(BillingAccount.balance).where(BillingAccount.account_no == account_no)
    ).scalar_one()


def _transactions(db, reference_no: str | None = None) -> int:
    stmt = select(func.count()).select_from(Transaction)
    if reference_no is not None:
        stmt = stmt.where(Transaction.idempotency_key == reference_no)
    return db.execute(stmt).scalar_one()


def _lock_free(db) -> bool:
    return WorkerLockService(db).current(LOCK) is None


def _transient_error() -> OperationalError:
    return OperationalError("UPDATE billing_accounts", {}, Exception("database is locked"))


class TestRunOnce:
    def test_queued_payment_is_credited_and_paid(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        payment = make_payment(account_no="A-100", amount="500.00")
        before = _worker(db, reconnection).stats()

        result = _worker(db, reconnection).run_once()

        assert result.ran is True
        assert (result.processed, result.succeeded, result.retried, result.failed) == (1, 1, 0, 0)
        db.refresh(payment)
        assert payment.status == PaymentStatus.PAID.value
        assert payment.attempts == 1
        assert payment.last_error is None
        assert _balance(db) == Decimal("500.00")
        assert _transactions(db, payment.reference_no) == 1
        after = _worker(db, reconnection).stats()
        assert after["paid_today"] == before["paid_today"] + 1
        assert after["queued"] == before["queued"] - 1
        assert _lock_free(db)

    def test_batch_takes_oldest_first(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        payments = [make_payment(amount="10.00") for _ in range(5)]

        result = _worker(db, reconnection, batch_size=2).run_once()

        assert result.processed == 2
        statuses = []
        for payment in payments:
            db.refresh(payment)
            statuses.append(payment.status)
        assert statuses == ["PAID", "PAID", "QUEUED", "QUEUED", "QUEUED"]

    def test_only_queued_rows_are_processed(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        pending = make_payment(status="PENDING")
        retry = make_payment(status="API_RETRY")

        result = _worker(db, reconnection).run_once()

        assert result.ran is True
        assert result.processed == 0
        db.refresh(pending)
        db.refresh(retry)
        assert pending.status == "PENDING"
        assert retry.status == "API_RETRY"

    def test_nothing_queued_still_counts_as_a_run(self, db, reconnection):
        result = _worker(db, reconnection).run_once()
        assert result.ran is True
        assert result.processed == 0
        assert _lock_free(db)

    def test_held_lease_means_no_work(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        payment = make_payment()
        WorkerLockService(db).acquire(LOCK, "other-host:1:abcd")

        result = _worker(db, reconnection).run_once()

        assert result.ran is False
        assert result.processed == 0
        db.refresh(payment)
        assert payment.status == "QUEUED"
        assert WorkerLockService(db).current(LOCK).holder == "other-host:1:abcd"

    def test_two_sessions_only_one_runs(self, session_factory, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        make_payment()
        first, second = session_factory(), session_factory()
        try:
            WorkerLockService(first).acquire(LOCK, "first")
            assert _worker(second, reconnection).run_once().ran is False
            WorkerLockService(first).release(LOCK, "first")
            assert _worker(second, reconnection).run_once().processed == 1
        finally:
            first.close()
            second.close()

    def test_unexpected_error_releases_lease(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        payment = make_payment()

        with patch.object(LedgerService, "credit", side_effect=RuntimeError("boom")):
            with pytest.raises(RuntimeError):
                _worker(db, reconnection).run_once()

        assert _lock_free(db)
        db.refresh(payment)
        # Left for the orphan sweep
        assert payment.status == "PROCESSING"


class TestExactlyOnce:
    def test_requeued_paid_reference_is_not_credited_twice(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        payment = make_payment(amount="500.00")
        _worker(db, reconnection).run_once()

        db.refresh(payment)
        payment.status = "QUEUED"
        db.commit()
        result = _worker(db, reconnection).run_once()

        assert result.succeeded == 1
        db.refresh(payment)
        assert payment.status == "PAID"
        assert _balance(db) == Decimal("500.00")
        assert _transactions(db, payment.reference_no) == 1

    def test_reference_already_in_ledger_is_marked_paid(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        db.add(Transaction(
            idempotency_key="REF-PRE",
            account_no="A-100",
            transaction_type="Recurring Fee",
            received_payment=Decimal("500.00"),
            status="Approved",
        ))
        db.commit()
        payment = make_payment(reference_no="REF-PRE")

        result = _worker(db, reconnection).run_once()

        assert result.succeeded == 1
        db.refresh(payment)
        assert payment.status == "PAID"
        assert _balance(db) == Decimal("0.00")
        assert _transactions(db, "REF-PRE") == 1

    def test_rejected_reference_fails(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        db.add(Transaction(
            idempotency_key="REF-REJ",
            account_no="A-100",
            transaction_type="Recurring Fee",
            received_payment=Decimal("500.00"),
            status="Rejected",
        ))
        db.commit()
        payment = make_payment(reference_no="REF-REJ")

        result = _worker(db, reconnection).run_once()

        assert result.failed == 1
        db.refresh(payment)
        assert payment.status == "FAILED"
        assert payment.last_error == "reference_rejected"
        assert reconnection.calls == []


class TestFailures:
    def test_transient_error_then_recovery(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        payment = make_payment(amount="500.00")

        with patch.object(LedgerService, "_distribute", side_effect=_transient_error()):
            first = _worker(db, reconnection).run_once()

        assert first.retried == 1
        db.refresh(payment)
        assert payment.status == "API_RETRY"
        assert payment.last_error == "OperationalError"
        assert _balance(db) == Decimal("0.00")
        assert _transactions(db) == 0

        assert _worker(db, reconnection).retry_failed() == 1
        db.refresh(payment)
        assert payment.status == "QUEUED"

        second = _worker(db, reconnection).run_once()

        assert second.succeeded == 1
        db.refresh(payment)
        assert payment.status == "PAID"
        assert payment.attempts == 2
        assert _balance(db) == Decimal("500.00")
        assert _transactions(db, payment.reference_no) == 1

    def test_unknown_account_fails(self, db, make_payment, reconnection):
        payment = make_payment(account_no="GHOST")

        result = _worker(db, reconnection).run_once()

        assert result.failed == 1
        db.refresh(payment)
        assert payment.status == "FAILED"
        assert payment.last_error == "unknown_account"
        assert reconnection.calls == []

    @pytest.mark.parametrize("amount", ["0.00", "-5.00"])
    def test_invalid_amount_fails(self, db, make_account, make_payment, reconnection, amount):
        make_account("A-100", "0.00")
        payment = make_payment(amount=amount)

        result = _worker(db, reconnection).run_once()

        assert result.failed == 1
        db.refresh(payment)
        assert payment.status == "FAILED"
        assert payment.last_error == "invalid_amount"
        assert _balance(db) == Decimal("0.00")

    def test_one_bad_row_does_not_stop_the_batch(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        bad = make_payment(account_no="GHOST")
        good = make_payment(account_no="A-100", amount="20.00")

        result = _worker(db, reconnection).run_once()

        assert (result.processed, result.succeeded, result.failed) == (2, 1, 1)
        db.refresh(bad)
        db.refresh(good)
        assert bad.status == "FAILED"
        assert good.status == "PAID"


    def test_transient_lookup_error_only_retries_that_row(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        payments = [make_payment(amount="10.00") for _ in range(3)]
        real_has_applied = LedgerService.has_applied
        calls = []

        def _flaky_once(self, reference_no):
            calls.append(reference_no)
            if len(calls) == 1:
                raise _transient_error()
            return real_has_applied(self, reference_no)

        with patch.object(LedgerService, "has_applied", _flaky_once):
            result = _worker(db, reconnection).run_once()

        assert (result.processed, result.retried, result.succeeded) == (3, 1, 2)
        statuses = []
        for payment in payments:
            db.refresh(payment)
            statuses.append(payment.status)
        assert statuses == ["API_RETRY", "PAID", "PAID"]
        assert payments[0].last_error == "OperationalError"
        assert _balance(db) == Decimal("20.00")
        assert _lock_free(db)

    def test_reference_rejected_while_crediting_fails(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        db.add(Transaction(
            idempotency_key="REF-RACE",
            account_no="A-100",
            transaction_type="Recurring Fee",
            received_payment=Decimal("500.00"),
            status="Rejected",
        ))
        db.commit()
        payment = make_payment(reference_no="REF-RACE")
        real_entry = LedgerService._approved_entry
        calls = []

        # Both lookups before the insert miss the row written by the other path
        def _unseen_twice(self, idempotency_key):
            calls.append(idempotency_key)
            return None if len(calls) <= 2 else real_entry(self, idempotency_key)

        with patch.object(LedgerService, "_approved_entry", _unseen_twice):
            result = _worker(db, reconnection).run_once()

        assert (result.succeeded, result.failed) == (0, 1)
        db.refresh(payment)
        assert payment.status == "FAILED"
        assert payment.last_error == "reference_rejected"
        assert _balance(db) == Decimal("0.00")
        assert _transactions(db, "REF-RACE") == 1
        assert reconnection.calls == []

class TestReconnection:
    def test_success_is_recorded(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        payment = make_payment()

        _worker(db, reconnection).run_once()

        assert reconnection.calls == ["A-100"]
        db.refresh(payment)
        assert payment.reconnect_status == ReconnectStatus.SUCCESS.value

    def test_failure_keeps_payment_paid(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        payment = make_payment()
        reconnection.ok = False

        result = _worker(db, reconnection).run_once()

        assert result.succeeded == 1
        db.refresh(payment)
        assert payment.status == "PAID"
        assert payment.reconnect_status == ReconnectStatus.FAILED.value
        assert _balance(db) == Decimal("500.00")

    def test_exception_from_client_keeps_payment_paid(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        payment = make_payment()
        def _explode(account_no):
            raise ConnectionError("down")

        reconnection.reconnect = _explode

        result = _worker(db, reconnection).run_once()

        assert result.succeeded == 1
        db.refresh(payment)
        assert payment.status == "PAID"
        assert payment.reconnect_status == ReconnectStatus.FAILED.value

    def test_skipped_while_balance_still_owed(self, db, make_account, make_invoice, make_payment, reconnection):
        make_account("A-100", "-900.00")
        make_invoice("A-100", "900.00", date(2026, 8, 1))
        payment = make_payment(amount="500.00")

        _worker(db, reconnection).run_once()

        assert reconnection.calls == []
        db.refresh(payment)
        assert payment.status == "PAID"
        assert payment.reconnect_status == ReconnectStatus.NOT_ATTEMPTED.value

    def test_balance_gate_can_be_disabled(self, db, make_account, make_payment, reconnection, monkeypatch):
        monkeypatch.setattr(settings, "payment_worker_reconnect_requires_settled_balance", False)
        make_account("A-100", "-900.00")
        make_payment(amount="500.00")

        _worker(db, reconnection).run_once()

        assert reconnection.calls == ["A-100"]

    def test_disabled_client_is_not_called(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        payment = make_payment()
        reconnection.enabled = False

        _worker(db, reconnection).run_once()

        assert reconnection.calls == []
        db.refresh(payment)
        assert payment.reconnect_status == ReconnectStatus.NOT_ATTEMPTED.value


class TestRetryFailed:
    def test_only_api_retry_rows_are_readmitted(self, db, make_payment, reconnection):
        retry_a = make_payment(status="API_RETRY")
        retry_b = make_payment(status="API_RETRY")
        failed = make_payment(status="FAILED")
        paid = make_payment(status="PAID")
        pending = make_payment(status="PENDING")

        assert _worker(db, reconnection).retry_failed() == 2

        for payment, expected in [
            (retry_a, "QUEUED"), (retry_b, "QUEUED"), (failed, "FAILED"), (paid, "PAID"), (pending, "PENDING"),
        ]:
            db.refresh(payment)
            assert payment.status == expected

    def test_nothing_to_readmit(self, db, reconnection):
        assert _worker(db, reconnection).retry_failed() == 0

    def test_attempts_cap(self, db, make_payment, reconnection):
        young = make_payment(status="API_RETRY", attempts=1)
        exhausted = make_payment(status="API_RETRY", attempts=3)

        assert _worker(db, reconnection, max_attempts=3).retry_failed() == 1

        db.refresh(young)
        db.refresh(exhausted)
        assert young.status == "QUEUED"
        assert exhausted.status == "API_RETRY"


class TestRequeueOrphaned:
    def test_stale_processing_rows_go_back_to_queue(self, db, make_payment, reconnection):
        now = datetime.now(timezone.utc)
        stale = make_payment(status="PROCESSING", last_attempt_at=now - timedelta(hours=1))
        fresh = make_payment(status="PROCESSING", last_attempt_at=now)

        assert _worker(db, reconnection).requeue_orphaned() == 1

        db.refresh(stale)
        db.refresh(fresh)
        assert stale.status == "QUEUED"
        assert stale.last_error == "orphaned_processing_requeued"
        assert fresh.status == "PROCESSING"
        assert _lock_free(db)

    def test_skipped_while_worker_runs(self, db, make_payment, reconnection):
        stale = make_payment(status="PROCESSING", last_attempt_at=datetime.now(timezone.utc) - timedelta(hours=1))
        WorkerLockService(db).acquire(LOCK, "running-worker")

        assert _worker(db, reconnection).requeue_orphaned() is None

        db.refresh(stale)
        assert stale.status == "PROCESSING"

    def test_requeued_orphan_is_settled_once(self, db, make_account, make_payment, reconnection):
        make_account("A-100", "0.00")
        payment = make_payment()

        # Crash after the credit committed but before the worker saw the result
        with patch.object(PaymentWorkerService, "_transition"):
            _worker(db, reconnection).run_once()
        db.refresh(payment)
        assert payment.status == "PROCESSING"

        _worker(db, reconnection).requeue_orphaned(max_age=timedelta(0))
        _worker(db, reconnection).run_once()

        db.refresh(payment)
        assert payment.status == "PAID"
        assert _balance(db) == Decimal("500.00")
        assert _transactions(db, payment.reference_no) == 1


class TestStats:
    def test_counts_by_status(self, db, make_payment, reconnection):
        now = datetime.now(timezone.utc)
        make_payment(status="PENDING")
        make_payment(status="QUEUED")
        make_payment(status="QUEUED")
        make_payment(status="PROCESSING", last_attempt_at=now)
        make_payment(status="API_RETRY")
        make_payment(status="PAID", last_attempt_at=now)
        make_payment(status="PAID", last_attempt_at=now - timedelta(days=2))
        make_payment(status="FAILED", last_attempt_at=now)

        stats = _worker(db, reconnection).stats()

        assert stats == {
            "pending": 1,
            "queued": 2,
            "processing": 1,
            "paid_today": 1,
            "failed_today": 1,
            "api_retry": 1,
        }

    def test_empty_table(self, db, reconnection):
        assert set(_worker(db, reconnection).stats().values()) == {0}


def test_local_day_bounds_span_one_day():
    start, end = local_day_bounds(datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc))
    assert end - start == timedelta(days=1)
    assert start <= datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc) < end
    assert start.tzinfo == timezone.utc
