"""
Transaction — immutable log of money applied to billing accounts.
idempotency_key is unique when set; worker credits always set it to the payment reference_no.
"""
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Numeric, String, Text

from app.db.base import Base


class Transaction(Base):
    __tablename__ = "transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    idempotency_key = Column(String, unique=True, nullable=True)
    account_no = Column(String, nullable=False, index=True)
    transaction_type = Column(String, nullable=False)     # "Recurring Fee" / manual types
    received_payment = Column(Numeric(12, 2), nullable=False)
    payment_method = Column(String, nullable=True)
    remarks = Column(Text, nullable=True)
    status = Column(String, nullable=False, default="Approved")  # Approved / Rejected
    created_by_user = Column(String, nullable=True)
    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
