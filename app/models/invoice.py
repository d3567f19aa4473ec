from datetime import date, datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, Date, DateTime, Numeric, String

from app.db.base import Base


class Invoice(Base):
    __tablename__ = "invoices"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    account_no = Column(String, nullable=False, index=True)
    invoice_date = Column(Date, nullable=False, default=date.today)
    total_amount = Column(Numeric(12, 2), nullable=False)
    received_payment = Column(Numeric(12, 2), nullable=False, default=0)
    status = Column(String, nullable=False, default="Unpaid")  # Unpaid / Partial / Paid
    transaction_id = Column(String, nullable=True)  # reference_no of the last applied payment
    updated_by = Column(String, nullable=True)
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
