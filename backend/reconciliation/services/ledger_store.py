"""
Permanent income and expense ledgers.

Each post writes exactly one record and commits it. The ledgers carry the
source bank transaction id but no uniqueness guarantee; callers must claim
the transaction before posting.
"""

import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple, Union

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from database.ledger_models import ExpenseRecordDB, IncomeRecordDB
from reconciliation.models import ExpenseDraft, IncomeDraft, TargetType

logger = logging.getLogger(__name__)

AUTO_MATCHER = "auto_matcher"
MANUAL_MATCHER = "manual_matcher"


def generate_record_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:16].upper()}"


class LedgerStore:
    """Writes and reads the permanent ledgers."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def post(self, draft: Union[IncomeDraft, ExpenseDraft]) -> str:
        if isinstance(draft, IncomeDraft):
            return await self.post_income(draft)
        return await self.post_expense(draft)

    async def post_income(self, draft: IncomeDraft) -> str:
        record = IncomeRecordDB(
            id=generate_record_id("INC"),
            date=draft.date,
            transaction_date=draft.transaction_date,
            source=draft.source,
            offering_code=draft.code,
            donor_name=draft.donor_name,
            representative=draft.donor_name,
            amount=draft.amount,
            note=draft.note,
            input_method="수동매칭" if draft.manual else "은행원장",
            source_transaction_id=draft.transaction_id,
            created_by=MANUAL_MATCHER if draft.manual else AUTO_MATCHER,
        )
        return await self._write(record)

    async def post_expense(self, draft: ExpenseDraft) -> str:
        record = ExpenseRecordDB(
            id=generate_record_id("EXP"),
            date=draft.date,
            transaction_date=draft.transaction_date,
            payment_method=draft.payment_method,
            vendor=draft.vendor,
            description=draft.description,
            amount=draft.amount,
            account_code=draft.account_code,
            category_code=draft.category_code,
            note=draft.note,
            source_transaction_id=draft.transaction_id,
            created_by=MANUAL_MATCHER if draft.manual else AUTO_MATCHER,
        )
        return await self._write(record)

    async def _write(self, record) -> str:
        self.db.add(record)
        try:
            await self.db.commit()
        except Exception:
            await self.db.rollback()
            raise
        return record.id

    async def find_for_transaction(self, transaction_id: str) -> Optional[Tuple[TargetType, str]]:
        """(ledger, record id) of a record posted for the transaction, if any."""
        for target, model in ((TargetType.INCOME, IncomeRecordDB), (TargetType.EXPENSE, ExpenseRecordDB)):
            result = await self.db.execute(
                select(model.id).where(model.source_transaction_id == transaction_id).limit(1)
            )
            record_id = result.scalar_one_or_none()
            if record_id:
                return target, record_id
        return None

    async def count_for_transaction(self, transaction_id: str) -> int:
        total = 0
        for model in (IncomeRecordDB, ExpenseRecordDB):
            result = await self.db.execute(
                select(func.count()).select_from(model).where(model.source_transaction_id == transaction_id)
            )
            total += result.scalar_one()
        return total

    async def list_income(self, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        result = await self.db.execute(
            select(IncomeRecordDB).order_by(IncomeRecordDB.date.desc(), IncomeRecordDB.id).limit(limit).offset(offset)
        )
        return [
            {
                "id": r.id,
                "date": r.date.isoformat(),
                "transaction_date": r.transaction_date.isoformat() if r.transaction_date else None,
                "source": r.source,
                "offering_code": r.offering_code,
                "donor_name": r.donor_name,
                "amount": r.amount,
                "note": r.note,
                "input_method": r.input_method,
                "source_transaction_id": r.source_transaction_id,
                "created_by": r.created_by,
            }
            for r in result.scalars().all()
        ]

    async def list_expense(self, limit: int = 100, offset: int = 0) -> List[Dict[str, Any]]:
        result = await self.db.execute(
            select(ExpenseRecordDB).order_by(ExpenseRecordDB.date.desc(), ExpenseRecordDB.id).limit(limit).offset(offset)
        )
        return [
            {
                "id": r.id,
                "date": r.date.isoformat(),
                "transaction_date": r.transaction_date.isoformat() if r.transaction_date else None,
                "payment_method": r.payment_method,
                "vendor": r.vendor,
                "description": r.description,
                "amount": r.amount,
                "account_code": r.account_code,
                "category_code": r.category_code,
                "note": r.note,
                "source_transaction_id": r.source_transaction_id,
                "created_by": r.created_by,
            }
            for r in result.scalars().all()
        ]

    async def totals(self) -> Dict[str, int]:
        income = await self.db.execute(select(func.count(), func.coalesce(func.sum(IncomeRecordDB.amount), 0)))
        expense = await self.db.execute(select(func.count(), func.coalesce(func.sum(ExpenseRecordDB.amount), 0)))
        income_count, income_total = income.one()
        expense_count, expense_total = expense.one()
        return {
            "income_count": income_count,
            "income_total": int(income_total),
            "expense_count": expense_count,
            "expense_total": int(expense_total),
        }
