"""
Integration Tests for the reconciliation service

Runs the full pipeline against an in-memory database:
import -> matching run -> review/classify -> commit

Run with: pytest backend/tests/test_reconciliation_service.py -v
"""

from unittest.mock import AsyncMock

import pytest
from sqlalchemy import select

from config import Settings
from database.ledger_models import ReconciliationAuditLogDB
from reconciliation.errors import ConflictError, FatalConfigError, ValidationError
from reconciliation.models import TargetType, TransactionState
from reconciliation.services.draft_builder import ManualClassification
from reconciliation.services.reconciliation_service import ReconciliationAuditEvent, ReconciliationService
from conftest import statement_row


@pytest.fixture
def service(db_session):
    return ReconciliationService(db_session, settings=Settings(RECON_INTERNAL_TRANSFER_PATTERNS="적금이체"))


class TestMatchAndCommit:
    """Test the import -> match -> commit path."""

    @pytest.mark.asyncio
    async def test_electricity_bill_end_to_end(self, service):
        await service.rules.create_rule("전기료", "expense", 62, target_name="전기료", priority=1)
        imported = await service.import_statement([statement_row(withdrawal=50000, description="전기료")])
        tx_id = imported.inserted_ids[0]

        run = await service.run_matching()

        assert len(run.expense_drafts) == 1
        draft = run.expense_drafts[0]
        assert draft.account_code == 62
        assert draft.amount == 50000
        assert draft.transaction_id == tx_id
        assert (await service.transactions.get(tx_id)).state == TransactionState.MATCHED

        result = await service.commit_drafts(run.income_drafts, run.expense_drafts)

        assert result.expense_count == 1
        assert (await service.transactions.get(tx_id)).state == TransactionState.CONFIRMED
        records = await service.ledger.list_expense()
        assert len(records) == 1
        assert records[0]["account_code"] == 62
        assert records[0]["amount"] == 50000
        assert records[0]["source_transaction_id"] == tx_id

    @pytest.mark.asyncio
    async def test_rule_usage_is_counted(self, service):
        rule = await service.rules.create_rule("수도", "expense", 63)
        await service.import_statement([
            statement_row(withdrawal=20000, balance=1, description="수도요금"),
            statement_row(withdrawal=21000, balance=2, description="수도요금"),
        ])

        await service.run_matching()

        assert (await service.rules.get_rule(rule.id)).usage_count == 2

    @pytest.mark.asyncio
    async def test_suppression_candidates_are_held_as_matched(self, service):
        imported = await service.import_statement([
            statement_row(deposit=320000, description="헌금함 입금"),
            statement_row(withdrawal=100000, memo="적금이체"),
        ])

        run = await service.run_matching()

        reasons = sorted(c.reason for c in run.suppressed)
        assert reasons == ["cash_offering_deposit", "internal_transfer"]
        assert run.income_drafts == []

        result = await service.commit([], [], suppressed_ids=imported.inserted_ids)

        assert result.suppressed_count == 2
        assert result.income_count == 0
        assert (await service.ledger.totals())["income_count"] == 0
        for tx_id in imported.inserted_ids:
            assert (await service.transactions.get(tx_id)).state == TransactionState.SUPPRESSED

    @pytest.mark.asyncio
    async def test_copy_of_confirmed_donation_is_suppressed(self, service):
        first = await service.import_statement([statement_row(deposit=50000, balance=150000, description="홍길동")])
        await service.run_matching()
        await service.commit([{"transaction_id": first.inserted_ids[0], "code": 11}], [], [])

        # Same date, amount and description; only the running balance differs
        second = await service.import_statement([statement_row(deposit=50000, balance=200000, description="홍길동")])
        assert second.inserted_count == 1

        run = await service.run_matching()

        assert [(c.transaction.id, c.reason) for c in run.suppressed] == \
            [(second.inserted_ids[0], "duplicate_of_confirmed")]
        assert run.income_drafts == []

    @pytest.mark.asyncio
    async def test_commit_items_apply_edits(self, service):
        imported = await service.import_statement([statement_row(deposit=100000, detail="김성도", description="감사")])
        tx_id = imported.inserted_ids[0]
        await service.run_matching()

        result = await service.commit(
            income_items=[{"transaction_id": tx_id, "code": 13, "donor_name": "김성도 권사", "note": "추수감사"}],
            expense_items=[],
            suppressed_ids=[],
        )

        assert result.income_count == 1
        [record] = await service.ledger.list_income()
        assert record["donor_name"] == "김성도 권사"
        assert record["offering_code"] == 13
        assert record["note"] == "추수감사"

    @pytest.mark.asyncio
    async def test_commit_rejects_wrong_ledger(self, service):
        imported = await service.import_statement([statement_row(deposit=100000, description="감사")])
        tx_id = imported.inserted_ids[0]
        await service.run_matching()

        result = await service.commit([], [{"transaction_id": tx_id, "account_code": 64}], [])

        assert result.expense_count == 0
        assert result.rejected[0]["transaction_id"] == tx_id
        assert (await service.transactions.get(tx_id)).state == TransactionState.MATCHED

    @pytest.mark.asyncio
    async def test_amount_heuristic_strategy(self, db_session):
        service = ReconciliationService(db_session, settings=Settings(RECON_DEFAULT_INCOME_STRATEGY="amount_heuristic"))
        await service.import_statement([statement_row(deposit=123000, description="홍길동")])

        run = await service.run_matching()

        assert run.income_drafts[0].code == 12


class TestRuleStoreFailure:
    """Test that an unreachable rule store aborts the run untouched."""

    @pytest.mark.asyncio
    async def test_fatal_config_error_touches_nothing(self, service):
        imported = await service.import_statement([statement_row(withdrawal=50000, description="전기료")])
        service.rules.load_snapshot = AsyncMock(side_effect=FatalConfigError("Rule store unavailable"))

        with pytest.raises(FatalConfigError):
            await service.run_matching()

        tx = await service.transactions.get(imported.inserted_ids[0])
        assert tx.state == TransactionState.PENDING


class TestReviewAndLearning:
    """Test manual classification of review items."""

    @pytest.mark.asyncio
    async def test_classify_learns_rule(self, service):
        imported = await service.import_statement([statement_row(withdrawal=41000, description="NH콕송금 코원에너지 123")])
        tx_id = imported.inserted_ids[0]

        run = await service.run_matching()
        assert [i.transaction.id for i in run.review_items] == [tx_id]
        assert (await service.transactions.get(tx_id)).state == TransactionState.PENDING
        assert [i.transaction.id for i in await service.list_review_queue()] == [tx_id]

        draft = await service.classify_review_item(
            tx_id, ManualClassification(target_type=TargetType.EXPENSE, code=62, name="가스비"),
        )

        assert draft.manual is True
        assert draft.account_code == 62
        assert (await service.transactions.get(tx_id)).state == TransactionState.MATCHED

        [learned] = await service.rules.list_rules(target_type="expense")
        assert learned.pattern == "코원에너지"
        assert learned.learned is True
        assert learned.priority == service.settings.RECON_LEARNED_RULE_PRIORITY

        # The next statement is matched automatically
        await service.import_statement([statement_row(day="2025-04-03", withdrawal=39000, description="코원에너지 4월")])
        next_run = await service.run_matching()
        assert [d.account_code for d in next_run.expense_drafts] == [62]

    @pytest.mark.asyncio
    async def test_learning_reinforces_existing_rule(self, service):
        await service.import_statement([
            statement_row(withdrawal=15000, balance=1, description="다이소"),
            statement_row(withdrawal=16000, balance=2, description="다이소"),
        ])
        classification = ManualClassification(target_type=TargetType.EXPENSE, code=64)

        for tx in await service.transactions.list_by_state(TransactionState.PENDING):
            await service.classify_review_item(tx.id, classification)

        [rule] = await service.rules.list_rules()
        assert rule.pattern == "다이소"
        assert rule.usage_count == 1

    @pytest.mark.asyncio
    async def test_classify_twice_conflicts(self, service):
        imported = await service.import_statement([statement_row(withdrawal=15000, description="문구점")])
        tx_id = imported.inserted_ids[0]
        classification = ManualClassification(target_type=TargetType.EXPENSE, code=42)

        await service.classify_review_item(tx_id, classification, learn=False)
        with pytest.raises(ConflictError):
            await service.classify_review_item(tx_id, classification, learn=False)

    @pytest.mark.asyncio
    async def test_classify_unknown_transaction(self, service):
        with pytest.raises(ValidationError):
            await service.classify_review_item(
                "BANK-MISSING", ManualClassification(target_type=TargetType.EXPENSE, code=42),
            )

    @pytest.mark.asyncio
    async def test_reopen(self, service):
        imported = await service.import_statement([statement_row(withdrawal=15000, description="문구점")])
        tx_id = imported.inserted_ids[0]
        await service.classify_review_item(tx_id, ManualClassification(target_type=TargetType.EXPENSE, code=42), learn=False)

        await service.reopen(tx_id)

        assert (await service.transactions.get(tx_id)).state == TransactionState.PENDING


class TestStatsAndAudit:
    """Test statistics and the audit trail."""

    @pytest.mark.asyncio
    async def test_stats(self, service):
        imported = await service.import_statement([
            statement_row(deposit=10000, balance=1, description="주일"),
            statement_row(withdrawal=5000, balance=2, description="문구점"),
        ])
        await service.run_matching()
        await service.commit([{"transaction_id": imported.inserted_ids[0], "code": 11}], [], [])

        stats = await service.get_stats()

        assert stats["total_transactions"] == 2
        assert stats["transactions_by_state"]["confirmed"] == 1
        assert stats["transactions_by_state"]["pending"] == 1
        assert stats["reconciliation_rate"] == 0.5
        assert stats["ledgers"]["income_total"] == 10000

    @pytest.mark.asyncio
    async def test_audit_log_written(self, service, db_session):
        await service.import_statement([statement_row(withdrawal=5000, description="문구점")])
        await service.run_matching()

        result = await db_session.execute(select(ReconciliationAuditLogDB.action))
        actions = set(result.scalars().all())

        assert ReconciliationAuditEvent.STATEMENT_IMPORTED in actions
        assert ReconciliationAuditEvent.RUN_COMPLETED in actions
