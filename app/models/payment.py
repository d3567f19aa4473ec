"""
PendingPayment — one row per gateway payment awaiting settlement.
reference_no is unique and is the idempotency key for ledger credits.
"""
from datetime import datetime, timezone
from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Index, Integer, Numeric, String, Text

from app.db.base import Base
from app.db.types import JSONType


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    API_RETRY = "API_RETRY"
    FAILED = "FAILED"


class ReconnectStatus(str, Enum):
    NOT_ATTEMPTED = "not_attempted"
    SUCCESS = "success"
    FAILED = "failed"


class PendingPayment(Base):
    __tablename__ = "pending_payments"
    __table_args__ = (
        Index("ix_pending_payments_status_created", "status", "created_at"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    reference_no = Column(String, unique=True, nullable=False)
    account_no = Column(String, nullable=False, index=True)
    amount = Column(Numeric(12, 2), nullable=False)
    status = Column(String, nullable=False, default=PaymentStatus.PENDING.value)
    reconnect_status = Column(String, nullable=False, default=ReconnectStatus.NOT_ATTEMPTED.value)
    provider_metadata = Column(JSONType, nullable=True)  # gateway payloads, passed through as-is
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    last_attempt_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
