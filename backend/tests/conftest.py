"""
Shared fixtures for reconciliation tests.

Service-level tests run against an in-memory SQLite database with the
ledger schema created fresh for every test.
"""

from datetime import date

import pytest
import pytest_asyncio

from database import Base, build_engine, build_session_factory
from reconciliation.models import BankTransaction, TransactionState
from utils.parsing import week_ending_sunday

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture
async def db_engine():
    engine = build_engine(TEST_DATABASE_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    factory = build_session_factory(db_engine)
    async with factory() as session:
        yield session


@pytest.fixture
def make_tx():
    """Factory for in-memory BankTransaction snapshots."""

    def _make(
        tx_id: str = "BANK-TEST-1",
        deposit: int = 0,
        withdrawal: int = 0,
        description: str = "",
        detail: str = "",
        memo: str = "",
        day: date = date(2025, 3, 4),
        state: TransactionState = TransactionState.PENDING,
        balance=None,
    ) -> BankTransaction:
        return BankTransaction(
            id=tx_id,
            transaction_date=day,
            value_date=week_ending_sunday(day),
            withdrawal=withdrawal,
            deposit=deposit,
            balance=balance,
            description=description,
            detail=detail,
            memo=memo,
            state=state,
        )

    return _make


def statement_row(day: str = "2025-03-04", withdrawal=None, deposit=None, balance=None,
                  description: str = "", detail: str = "", memo: str = "") -> dict:
    """A parsed statement row as the import endpoint receives it."""
    return {
        "transaction_date": day,
        "withdrawal": withdrawal,
        "deposit": deposit,
        "balance": balance,
        "description": description,
        "detail": detail,
        "memo": memo,
    }


@pytest.fixture
def row():
    return statement_row
