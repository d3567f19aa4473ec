from app.models.billing_account import BillingAccount
from app.models.invoice import Invoice
from app.models.payment import PaymentStatus, PendingPayment, ReconnectStatus
from app.models.transaction import Transaction
from app.models.worker_lock import WorkerLock

__all__ = [
    "BillingAccount",
    "Invoice",
    "PaymentStatus",
    "PendingPayment",
    "ReconnectStatus",
    "Transaction",
    "WorkerLock",
]
