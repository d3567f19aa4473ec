"""
LedgerService — applies gateway payments to billing accounts.

Responsibilities:
- Idempotency lookup by reference (transactions.idempotency_key)
- Credit: distribute over unpaid invoices oldest-first, raise account balance,
  append the immutable transactions-log row, all inside one savepoint
- Classify storage failures as transient (retry later) or permanent

The caller owns the outer transaction: nothing here commits.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from enum import Enum

from sqlalchemy import select
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError, TimeoutError as PoolTimeoutError
from sqlalchemy.orm import Session as DBSession

from app.models.billing_account import BillingAccount
from app.models.invoice import Invoice
from app.models.transaction import Transaction

logger = logging.getLogger(__name__)

WORKER_USER = "Payment Worker"
PAID_TOLERANCE = Decimal("0.01")
CENTS = Decimal("0.01")


class CreditOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    TRANSIENT_ERROR = "transient_error"
    PERMANENT_ERROR = "permanent_error"


@dataclass
class CreditResult:
    outcome: CreditOutcome
    reason: str | None = None
    distribution_summary: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome in (CreditOutcome.APPLIED, CreditOutcome.ALREADY_APPLIED)


def parse_amount(value) -> Decimal | None:
    """Positive, finite, fixed-point amount or None when malformed."""
    if value is None or isinstance(value, bool):
        return None
    try:
        amount = value if isinstance(value, Decimal) else Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None
    if not amount.is_finite() or amount <= 0:
        return None
    return amount


def is_transient(exc: Exception) -> bool:
    """Timeouts, dropped connections, lock waits: safe to retry later."""
    if isinstance(exc, (OperationalError, PoolTimeoutError)):
        return True
    if isinstance(exc, DBAPIError) and exc.connection_invalidated:
        return True
    return False


class LedgerService:
    def __init__(self, db: DBSession):
        self.db = db

    def _approved_entry(self, idempotency_key: str) -> Transaction | None:
        return self.db.execute(
            select(Transaction).where(Transaction.idempotency_key == idempotency_key)
        ).scalar_one_or_none()

    def has_applied(self, idempotency_key: str) -> bool:
        entry = self._approved_entry(idempotency_key)
        return entry is not None and entry.status == "Approved"

    def is_rejected(self, idempotency_key: str) -> bool:
        entry = self._approved_entry(idempotency_key)
        return entry is not None and entry.status == "Rejected"

    def get_balance(self, account_no: str) -> Decimal | None:
        return self.db.execute(
            select(BillingAccount.balance).where(BillingAccount.account_no == account_no)
        ).scalar_one_or_none()

    def is_settled(self, account_no: str) -> bool:
        balance = self.get_balance(account_no)
        return balance is not None and balance >= 0

    def credit(
        self,
        account_no: str,
        amount,
        idempotency_key: str,
        payment_method: str = "Online - Payment Gateway",
    ) -> CreditResult:
        """Credit the account exactly once per idempotency_key."""
        parsed = parse_amount(amount)
        if parsed is None:
            return CreditResult(CreditOutcome.PERMANENT_ERROR, reason="invalid_amount")

        try:
            with self.db.begin_nested():
                existing = self._approved_entry(idempotency_key)
                if existing is not None:
                    if existing.status == "Rejected":
                        return CreditResult(CreditOutcome.PERMANENT_ERROR, reason="reference_rejected")
                    return CreditResult(CreditOutcome.ALREADY_APPLIED)

                account = self.db.execute(
                    select(BillingAccount)
                    .where(BillingAccount.account_no == account_no)
                    .with_for_update()
                ).scalar_one_or_none()
                if account is None:
                    return CreditResult(CreditOutcome.PERMANENT_ERROR, reason="unknown_account")

                summary = self._distribute(account_no, parsed, idempotency_key)
                account.balance = (account.balance or Decimal("0")) + parsed
                self.db.add(account)
                self.db.add(
                    Transaction(
                        idempotency_key=idempotency_key,
                        account_no=account_no,
                        transaction_type="Recurring Fee",
                        received_payment=parsed,
                        payment_method=payment_method,
                        remarks=f"Payment ref {idempotency_key} - {summary}",
                        status="Approved",
                        created_by_user=WORKER_USER,
                    )
                )
                self.db.flush()
        except IntegrityError:
            # Unique idempotency_key: another path logged this reference first
            existing = self._approved_entry(idempotency_key)
            if existing is None:
                raise
            logger.info(
                "ledger_credit_duplicate",
                extra={"reference_no": idempotency_key, "status": existing.status},
            )
            if existing.status == "Rejected":
                return CreditResult(CreditOutcome.PERMANENT_ERROR, reason="reference_rejected")
            return CreditResult(CreditOutcome.ALREADY_APPLIED)
        except DBAPIError as e:
            if is_transient(e):
                logger.warning(
                    "ledger_credit_transient",
                    extra={"reference_no": idempotency_key, "error": type(e).__name__},
                )
                return CreditResult(CreditOutcome.TRANSIENT_ERROR, reason=type(e).__name__)
            raise
        except PoolTimeoutError as e:
            logger.warning(
                "ledger_credit_transient",
                extra={"reference_no": idempotency_key, "error": type(e).__name__},
            )
            return CreditResult(CreditOutcome.TRANSIENT_ERROR, reason=type(e).__name__)

        logger.info(
            "ledger_credit_applied",
            extra={"reference_no": idempotency_key, "account_no": account_no, "amount": str(parsed)},
        )
        return CreditResult(CreditOutcome.APPLIED, distribution_summary=summary)

    def _distribute(self, account_no: str, amount: Decimal, reference_no: str) -> str:
        """Spread amount over open invoices, oldest first. Leftover stays as account credit."""
        invoices = (
            self.db.execute(
                select(Invoice)
                .where(Invoice.account_no == account_no, Invoice.status != "Paid")
                .order_by(Invoice.invoice_date.asc(), Invoice.id.asc())
                .with_for_update()
            )
            .scalars()
            .all()
        )
        if not invoices:
            return "Applied as credit (no unpaid invoices)"

        remaining = amount
        parts: list[str] = []
        for invoice in invoices:
            if remaining <= 0:
                break
            received = invoice.received_payment or Decimal("0")
            open_balance = invoice.total_amount - received
            if open_balance <= 0:
                continue

            applied = min(remaining, open_balance)
            received += applied
            invoice.received_payment = received
            invoice.status = "Paid" if invoice.total_amount - received <= PAID_TOLERANCE else "Partial"
            invoice.transaction_id = reference_no
            invoice.updated_by = WORKER_USER
            self.db.add(invoice)

            remaining -= applied
            parts.append(f"Invoice #{invoice.id}: {applied.quantize(CENTS)} ({invoice.status})")

        summary = ", ".join(parts) or "Applied as credit"
        if remaining > PAID_TOLERANCE:
            summary += f" | Credit: {remaining.quantize(CENTS)}"
        return summary
