from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, String

from app.db.base import Base


class WorkerLock(Base):
    """Named lease. The row existing is the lock; lock_name uniqueness is the guard."""

    __tablename__ = "worker_locks"

    lock_name = Column(String, primary_key=True)
    holder = Column(String, nullable=False)
    acquired_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
    )
