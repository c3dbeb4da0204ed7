"""Shared fixtures: a throwaway SQLite store per test and the three services on top of it."""

import itertools
import os

os.environ.setdefault("SERVICE_NAME", "test")
os.environ.setdefault("DATABASE_URL", "sqlite+pysqlite://")
os.environ.setdefault("ADMIN_API_KEY", "test-admin-key")
os.environ.setdefault("TRACING_ENABLED", "false")
os.environ.setdefault("BANK_TRANSFER_WEBHOOK_SECRET", "bank-secret-0123456789")
os.environ.setdefault("CARD_WEBHOOK_SECRET", "card-secret-0123456789")

import pytest
from sqlalchemy.orm import sessionmaker

from nunaa.common.db import Base, make_engine
from nunaa.common.outbox import OutboxEvent  # noqa: F401
from nunaa.services.billing.models import LegacyVerification  # noqa: F401
from nunaa.services.billing.service import BillingService
from nunaa.services.referral.models import Referral  # noqa: F401
from nunaa.services.referral.service import ReferralService
from nunaa.services.wallet.service import LedgerService


@pytest.fixture
def session_factory(tmp_path):
    """File-backed database so worker threads share it."""

    engine = make_engine(f"sqlite+pysqlite:///{tmp_path / 'nunaa.db'}")
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def ledger(session_factory):
    return LedgerService(session_factory)


@pytest.fixture
def billing(session_factory, ledger):
    return BillingService(session_factory, ledger)


@pytest.fixture
def referrals(session_factory, ledger):
    return ReferralService(session_factory, ledger)


@pytest.fixture
def make_account(ledger):
    """Open an account with an optional opening balance; returns its id."""

    counter = itertools.count()

    def _make(balance: int = 0, role: str = "user") -> str:
        account = ledger.open_account(f"member{next(counter)}@example.com", role=role)
        if balance:
            ledger.credit(account.account_id, balance, "opening balance")
        return account.account_id

    return _make
