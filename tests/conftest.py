"""Shared fixtures: env for Settings, a throwaway SQLite database per test, row factories."""
import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")
os.environ.setdefault("CELERY_BROKER_URL", "memory://")
os.environ.setdefault("CELERY_RESULT_BACKEND", "cache+memory://")
os.environ.setdefault("CB_STORAGE", "memory")
os.environ.setdefault("RECONNECT_API_BASE", "")

from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import app.models  # noqa: F401  (registers tables on Base.metadata)
from app.db.base import Base
from app.db.session import enable_sqlite_savepoints
from app.models.billing_account import BillingAccount
from app.models.invoice import Invoice
from app.models.payment import PendingPayment
from app.services.reconnection.client import ReconnectResult


@pytest.fixture
def engine(tmp_path):
    eng = create_engine(
        f"sqlite:///{tmp_path / 'billing.db'}",
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_savepoints(eng)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def make_account(db):
    def _make(account_no: str = "A-100", balance: str = "0.00") -> BillingAccount:
        account = BillingAccount(account_no=account_no, balance=Decimal(balance))
        db.add(account)
        db.commit()
        return account

    return _make


@pytest.fixture
def make_invoice(db):
    def _make(account_no: str, total: str, invoice_date, received: str = "0.00") -> Invoice:
        invoice = Invoice(
            account_no=account_no,
            total_amount=Decimal(total),
            received_payment=Decimal(received),
            invoice_date=invoice_date,
        )
        db.add(invoice)
        db.commit()
        return invoice

    return _make


@pytest.fixture
def make_payment(db):
    counter = {"n": 0}

    def _make(
        account_no: str = "A-100",
        amount: str = "500.00",
        status: str = "QUEUED",
        reference_no: str | None = None,
        created_at: datetime | None = None,
        last_attempt_at: datetime | None = None,
        attempts: int = 0,
    ) -> PendingPayment:
        counter["n"] += 1
        payment = PendingPayment(
            reference_no=reference_no or f"REF-{uuid4().hex[:10]}",
            account_no=account_no,
            amount=Decimal(amount),
            status=status,
            provider_metadata={"channel": "GCASH", "plan": "Fiber 50"},
            attempts=attempts,
            last_attempt_at=last_attempt_at,
            # strictly increasing intake time keeps oldest-first ordering deterministic
            created_at=created_at or datetime.now(timezone.utc) - timedelta(hours=1) + timedelta(seconds=counter["n"]),
        )
        db.add(payment)
        db.commit()
        return payment

    return _make


class FakeReconnection:
    """Stands in for ReconnectionClient; records the accounts it was asked to reconnect."""

    def __init__(self, ok: bool = True, enabled: bool = True) -> None:
        self.ok = ok
        self.enabled = enabled
        self.calls: list[str] = []

    def reconnect(self, account_no: str) -> ReconnectResult:
        self.calls.append(account_no)
        return ReconnectResult(ok=self.ok, detail=None if self.ok else "status_502")

    def close(self) -> None:
        pass


@pytest.fixture
def reconnection():
    return FakeReconnection()
