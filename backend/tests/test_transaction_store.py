"""
Unit Tests for the transaction store

Tests:
- Idempotent statement import
- Row validation
- Compare-and-set state transitions

Run with: pytest backend/tests/test_transaction_store.py -v
"""

from datetime import date

import pytest

from reconciliation.errors import ConflictError, StatementImportError
from reconciliation.models import TransactionState
from reconciliation.services.transaction_store import TransactionStore, natural_key
from conftest import statement_row


def statement(count: int = 10):
    return [
        statement_row(day=f"2025-03-{i + 1:02d}", deposit=f"{(i + 1) * 10000:,}",
                      balance=1000000 + (i + 1) * 10000, description=f"헌금자{i}")
        for i in range(count)
    ]


class TestImport:
    """Test statement import."""

    @pytest.mark.asyncio
    async def test_reimport_inserts_nothing(self, db_session):
        store = TransactionStore(db_session)

        first = await store.import_rows(statement())
        second = await store.import_rows(statement())

        assert first.inserted_count == 10
        assert first.duplicate_count == 0
        assert second.inserted_count == 0
        assert second.duplicate_count == 10
        assert sorted(second.duplicate_ids) == sorted(first.inserted_ids)
        assert len(await store.list_by_state()) == 10

    @pytest.mark.asyncio
    async def test_reimport_never_overwrites(self, db_session):
        store = TransactionStore(db_session)
        result = await store.import_rows(statement(1))
        tx_id = result.inserted_ids[0]
        await store.transition_state(tx_id, TransactionState.PENDING, TransactionState.SAVED)

        await store.import_rows(statement(1))

        assert (await store.get(tx_id)).state == TransactionState.SAVED

    @pytest.mark.asyncio
    async def test_identical_donations_with_different_balance_are_kept(self, db_session):
        store = TransactionStore(db_session)
        rows = [
            statement_row(deposit=50000, balance=150000, description="홍길동"),
            statement_row(deposit=50000, balance=200000, description="홍길동"),
        ]
        result = await store.import_rows(rows)
        assert result.inserted_count == 2

    @pytest.mark.asyncio
    async def test_duplicate_within_one_file(self, db_session):
        store = TransactionStore(db_session)
        rows = [statement_row(deposit=50000, balance=150000, description="홍길동")] * 2
        result = await store.import_rows(rows)
        assert result.inserted_count == 1
        assert result.duplicate_count == 1

    @pytest.mark.asyncio
    async def test_value_date_defaults_to_sunday(self, db_session):
        store = TransactionStore(db_session)
        result = await store.import_rows([statement_row(day="2025.03.04", withdrawal="50,000원", description="전기료")])
        tx = await store.get(result.inserted_ids[0])
        assert tx.value_date == date(2025, 3, 9)
        assert tx.withdrawal == 50000
        assert tx.deposit == 0
        assert tx.state == TransactionState.PENDING

    @pytest.mark.asyncio
    async def test_import_as_saved(self, db_session):
        store = TransactionStore(db_session)
        await store.import_rows(statement(2), initial_state=TransactionState.SAVED)
        counts = await store.count_by_state()
        assert counts["saved"] == 2
        assert counts["pending"] == 0

    @pytest.mark.asyncio
    async def test_cannot_import_as_matched(self, db_session):
        with pytest.raises(ValueError):
            await TransactionStore(db_session).import_rows(statement(1), initial_state=TransactionState.MATCHED)

    @pytest.mark.asyncio
    async def test_dry_run_writes_nothing(self, db_session):
        store = TransactionStore(db_session)
        result = await store.import_rows(statement(3), dry_run=True)
        assert result.inserted_count == 3
        assert result.dry_run is True
        assert await store.list_by_state() == []

    def test_natural_key_ignores_spacing_and_case(self):
        assert natural_key(date(2025, 3, 2), 0, 1000, None, "NH 카드", "") == \
            natural_key(date(2025, 3, 2), 0, 1000, None, " nh  카드 ", "")


class TestImportValidation:
    """Test row rejection."""

    @pytest.mark.asyncio
    async def test_missing_date(self, db_session):
        store = TransactionStore(db_session)
        rows = statement(2) + [statement_row(day="", deposit=1000)]
        with pytest.raises(StatementImportError) as exc_info:
            await store.import_rows(rows)
        assert exc_info.value.row_index == 2
        # The batch is validated before anything is written
        assert await store.list_by_state() == []

    @pytest.mark.asyncio
    async def test_no_amount(self, db_session):
        with pytest.raises(StatementImportError):
            await TransactionStore(db_session).import_rows([statement_row(description="잔액조회")])

    @pytest.mark.asyncio
    async def test_both_amounts(self, db_session):
        with pytest.raises(StatementImportError):
            await TransactionStore(db_session).import_rows([statement_row(deposit=1000, withdrawal=1000)])

    @pytest.mark.asyncio
    async def test_bad_amount(self, db_session):
        with pytest.raises(StatementImportError) as exc_info:
            await TransactionStore(db_session).import_rows([statement_row(deposit="12.5")])
        assert exc_info.value.to_dict()["error"] == "invalid_statement_row"


class TestStateTransitions:
    """Test compare-and-set state changes."""

    @pytest.fixture
    def store(self, db_session):
        return TransactionStore(db_session)

    async def _one(self, store):
        return (await store.import_rows(statement(1))).inserted_ids[0]

    @pytest.mark.asyncio
    async def test_transition(self, store):
        tx_id = await self._one(store)
        await store.transition_state(tx_id, TransactionState.PENDING, TransactionState.MATCHED, suppressed_reason="x")
        tx = await store.get(tx_id)
        assert tx.state == TransactionState.MATCHED
        assert tx.suppressed_reason == "x"

    @pytest.mark.asyncio
    async def test_second_caller_gets_conflict(self, store):
        tx_id = await self._one(store)
        await store.transition_state(tx_id, TransactionState.PENDING, TransactionState.MATCHED)
        await store.transition_state(tx_id, TransactionState.MATCHED, TransactionState.COMMITTING)

        with pytest.raises(ConflictError) as exc_info:
            await store.transition_state(tx_id, TransactionState.MATCHED, TransactionState.COMMITTING)
        assert exc_info.value.current_state == "committing"

    @pytest.mark.asyncio
    async def test_missing_row_conflicts(self, store):
        with pytest.raises(ConflictError) as exc_info:
            await store.transition_state("BANK-MISSING", TransactionState.PENDING, TransactionState.SAVED)
        assert exc_info.value.current_state is None

    @pytest.mark.asyncio
    async def test_illegal_transition(self, store):
        tx_id = await self._one(store)
        with pytest.raises(ValueError):
            await store.transition_state(tx_id, TransactionState.PENDING, TransactionState.CONFIRMED)
        with pytest.raises(ValueError):
            await store.transition_state(tx_id, TransactionState.CONFIRMED, TransactionState.PENDING)

    @pytest.mark.asyncio
    async def test_unknown_field(self, store):
        tx_id = await self._one(store)
        with pytest.raises(ValueError):
            await store.transition_state(tx_id, TransactionState.PENDING, TransactionState.SAVED, deposit=1)

    @pytest.mark.asyncio
    async def test_mark_saved_reports_conflicts(self, store):
        tx_id = await self._one(store)
        saved, conflicts = await store.mark_saved([tx_id, tx_id, "BANK-MISSING"])
        assert saved == [tx_id]
        assert [c["details"]["transaction_id"] for c in conflicts] == ["BANK-MISSING"]

        saved, conflicts = await store.mark_saved([tx_id])
        assert saved == []
        assert conflicts[0]["details"]["current_state"] == "saved"
