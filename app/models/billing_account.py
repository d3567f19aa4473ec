from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, Numeric, String

from app.db.base import Base


class BillingAccount(Base):
    __tablename__ = "billing_accounts"

    id = Column(String, primary_key=True, default=lambda: str(uuid4()))
    account_no = Column(String, unique=True, nullable=False)
    # Credits raise the balance; balance >= 0 means nothing is owed
    balance = Column(Numeric(12, 2), nullable=False, default=0)
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
