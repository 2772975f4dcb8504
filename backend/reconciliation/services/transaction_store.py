"""
Transaction Store

Persistence for bank-statement rows and the only place their state changes.

- Import is idempotent: each row's id is a natural key over its content,
  existing keys are skipped and never overwritten.
- State changes are compare-and-set: UPDATE ... WHERE id = :id AND state IN (...).
  A row that is not in the expected state raises ConflictError, which makes
  every transition at-most-once even under concurrent callers.
"""

import hashlib
import logging
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from database.ledger_models import BankTransactionDB, utc_now
from reconciliation.errors import ConflictError, StatementImportError
from reconciliation.models import (
    BankTransaction,
    ImportResult,
    TransactionState,
    is_transition_allowed,
)
from reconciliation.matching_rules.normalization import normalize_text
from reconciliation.matching_rules.suppression import transaction_fingerprint
from utils.parsing import parse_amount, parse_date, week_ending_sunday

logger = logging.getLogger(__name__)

StateArg = Union[TransactionState, str, Sequence[Union[TransactionState, str]]]

UPDATABLE_FIELDS = {"suppressed_reason", "matched_type", "matched_record_id", "claimed_at"}
IMPORT_STATES = {TransactionState.PENDING, TransactionState.SAVED}
KEY_PREFIX = "BANK-"
LOOKUP_CHUNK = 500


def natural_key(
    transaction_date: date,
    withdrawal: int,
    deposit: int,
    balance: Optional[int],
    description: str,
    detail: str,
) -> str:
    """
    Content-derived id of a statement row.

    The running balance is part of the key, so two identical same-day
    donations (which differ only in the balance after each) stay distinct.
    """
    parts = [
        transaction_date.isoformat(),
        str(withdrawal),
        str(deposit),
        "" if balance is None else str(balance),
        normalize_text(description),
        normalize_text(detail),
    ]
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return f"{KEY_PREFIX}{digest[:24]}"


def _as_states(states: StateArg) -> Tuple[TransactionState, ...]:
    if isinstance(states, (TransactionState, str)):
        return (TransactionState(states),)
    return tuple(TransactionState(s) for s in states)


def _text(value: Any) -> str:
    return "" if value is None else str(value).strip()


def prepare_row(index: int, raw: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Validate one parsed statement row and compute its natural key.

    Raises:
        StatementImportError: missing date, no amount, both amounts, bad value
    """
    try:
        transaction_date = parse_date(raw.get("transaction_date"))
        value_date = parse_date(raw.get("value_date"))
        withdrawal = parse_amount(raw.get("withdrawal"))
        deposit = parse_amount(raw.get("deposit"))
        balance = parse_amount(raw.get("balance"))
    except ValueError as e:
        raise StatementImportError(f"Row {index}: {e}", row_index=index)

    if transaction_date is None:
        raise StatementImportError(f"Row {index}: transaction_date is required", row_index=index, parameter="transaction_date")

    if withdrawal is None and deposit is None:
        raise StatementImportError(
            f"Row {index}: either withdrawal or deposit is required",
            row_index=index,
            parameter="withdrawal",
        )

    withdrawal = withdrawal or 0
    deposit = deposit or 0
    if withdrawal and deposit:
        raise StatementImportError(
            f"Row {index}: a row cannot carry both a withdrawal and a deposit",
            row_index=index,
            parameter="deposit",
        )

    description = _text(raw.get("description"))
    detail = _text(raw.get("detail"))

    return {
        "id": natural_key(transaction_date, withdrawal, deposit, balance, description, detail),
        "transaction_date": transaction_date,
        "value_date": value_date or week_ending_sunday(transaction_date),
        "transaction_time": _text(raw.get("transaction_time")) or None,
        "withdrawal": withdrawal,
        "deposit": deposit,
        "balance": balance,
        "description": description,
        "detail": detail,
        "memo": _text(raw.get("memo")),
        "branch": _text(raw.get("branch")) or None,
    }


class TransactionStore:
    """Bank transaction repository."""

    def __init__(self, db: AsyncSession):
        self.db = db

    # ==================== IMPORT ====================

    async def import_rows(
        self,
        rows: Iterable[Mapping[str, Any]],
        initial_state: TransactionState = TransactionState.PENDING,
        dry_run: bool = False,
    ) -> ImportResult:
        """
        Insert new statement rows; skip rows whose natural key already exists.

        The whole batch is validated before anything is written.
        """
        initial_state = TransactionState(initial_state)
        if initial_state not in IMPORT_STATES:
            raise ValueError(f"Rows cannot be imported as '{initial_state.value}'")

        prepared = [prepare_row(i, raw) for i, raw in enumerate(rows)]

        # One retry covers a concurrent import of the same statement
        for attempt in range(2):
            existing = await self._existing_ids([p["id"] for p in prepared])
            result = ImportResult(dry_run=dry_run)
            new_rows = []
            seen: Set[str] = set()

            for row in prepared:
                if row["id"] in existing or row["id"] in seen:
                    result.duplicate_ids.append(row["id"])
                    continue
                seen.add(row["id"])
                new_rows.append(row)
                result.inserted_ids.append(row["id"])

            result.inserted_count = len(result.inserted_ids)
            result.duplicate_count = len(result.duplicate_ids)

            if dry_run or not new_rows:
                return result

            self.db.add_all([
                BankTransactionDB(**row, state=initial_state.value) for row in new_rows
            ])
            try:
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                if attempt:
                    raise
                logger.warning("Concurrent import detected, recomputing duplicates")
                continue

            logger.info(
                f"Imported {result.inserted_count} bank transactions, skipped {result.duplicate_count} duplicates",
                extra={"inserted": result.inserted_count, "duplicates": result.duplicate_count}
            )
            return result

        return result

    async def _existing_ids(self, ids: List[str]) -> Set[str]:
        found: Set[str] = set()
        for start in range(0, len(ids), LOOKUP_CHUNK):
            chunk = ids[start:start + LOOKUP_CHUNK]
            rows = await self.db.execute(select(BankTransactionDB.id).where(BankTransactionDB.id.in_(chunk)))
            found.update(rows.scalars().all())
        return found

    # ==================== QUERIES ====================

    async def get(self, transaction_id: str) -> Optional[BankTransaction]:
        row = await self.db.get(BankTransactionDB, transaction_id, populate_existing=True)
        return BankTransaction.from_row(row) if row else None

    async def get_many(self, transaction_ids: Iterable[str]) -> Dict[str, BankTransaction]:
        ids = list(dict.fromkeys(transaction_ids))
        found: Dict[str, BankTransaction] = {}
        for start in range(0, len(ids), LOOKUP_CHUNK):
            chunk = ids[start:start + LOOKUP_CHUNK]
            result = await self.db.execute(
                select(BankTransactionDB)
                .where(BankTransactionDB.id.in_(chunk))
                .execution_options(populate_existing=True)
            )
            for row in result.scalars().all():
                found[row.id] = BankTransaction.from_row(row)
        return found

    async def list_by_state(self, *states: Union[TransactionState, str], limit: Optional[int] = None) -> List[BankTransaction]:
        query = select(BankTransactionDB).execution_options(populate_existing=True)
        if states:
            query = query.where(BankTransactionDB.state.in_([s.value for s in _as_states(states)]))
        query = query.order_by(BankTransactionDB.transaction_date, BankTransactionDB.id)
        if limit:
            query = query.limit(limit)
        result = await self.db.execute(query)
        return [BankTransaction.from_row(row) for row in result.scalars().all()]

    async def count_by_state(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(BankTransactionDB.state, func.count()).group_by(BankTransactionDB.state)
        )
        counts = {state.value: 0 for state in TransactionState}
        counts.update({state: count for state, count in result.all()})
        return counts

    async def confirmed_fingerprints(self) -> Set[Tuple]:
        """Fingerprints of confirmed rows, for duplicate suppression."""
        confirmed = await self.list_by_state(TransactionState.CONFIRMED)
        return {transaction_fingerprint(tx) for tx in confirmed}

    # ==================== STATE TRANSITIONS ====================

    async def transition_state(
        self,
        transaction_id: str,
        from_states: StateArg,
        to_state: Union[TransactionState, str],
        **updates,
    ) -> None:
        """
        Compare-and-set the state of one row, committing on success.

        Raises:
            ValueError: a transition outside the legal table, or an unknown field
            ConflictError: the row is missing or not in ``from_states``
        """
        from_states = _as_states(from_states)
        to_state = TransactionState(to_state)

        for state in from_states:
            if not is_transition_allowed(state, to_state):
                raise ValueError(f"Illegal transition {state.value} -> {to_state.value}")

        await self._guarded_update(transaction_id, from_states, state=to_state.value, **updates)

        logger.debug(
            f"Transaction {transaction_id}: {'|'.join(s.value for s in from_states)} -> {to_state.value}"
        )

    async def annotate(self, transaction_id: str, expected_state: StateArg, **updates) -> None:
        """Update reconciliation fields without changing state (guarded like a transition)."""
        await self._guarded_update(transaction_id, _as_states(expected_state), **updates)

    async def _guarded_update(self, transaction_id: str, from_states: Tuple[TransactionState, ...], **values) -> None:
        unknown = set(values) - UPDATABLE_FIELDS - {"state"}
        if unknown:
            raise ValueError(f"Fields cannot be updated: {sorted(unknown)}")

        values["updated_at"] = utc_now()
        stmt = (
            update(BankTransactionDB)
            .where(
                BankTransactionDB.id == transaction_id,
                BankTransactionDB.state.in_([s.value for s in from_states]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        try:
            result = await self.db.execute(stmt)
            if result.rowcount != 1:
                await self.db.rollback()
                current = await self._current_state(transaction_id)
                raise ConflictError(
                    f"Transaction {transaction_id} is {current or 'missing'}, "
                    f"expected {'|'.join(s.value for s in from_states)}",
                    transaction_id=transaction_id,
                    current_state=current,
                )
            await self.db.commit()
        except ConflictError:
            raise
        except Exception:
            await self.db.rollback()
            raise

    async def _current_state(self, transaction_id: str) -> Optional[str]:
        result = await self.db.execute(
            select(BankTransactionDB.state).where(BankTransactionDB.id == transaction_id)
        )
        return result.scalar_one_or_none()

    async def mark_saved(self, transaction_ids: Iterable[str]) -> Tuple[List[str], List[Dict[str, Any]]]:
        """pending -> saved for each id. Returns (saved_ids, conflicts)."""
        saved, conflicts = [], []
        for transaction_id in dict.fromkeys(transaction_ids):
            try:
                await self.transition_state(transaction_id, TransactionState.PENDING, TransactionState.SAVED)
                saved.append(transaction_id)
            except ConflictError as e:
                conflicts.append(e.to_dict())
        return saved, conflicts

    async def list_claimed_before(self, cutoff: datetime) -> List[BankTransaction]:
        """Rows stuck in ``committing`` since before ``cutoff``."""
        result = await self.db.execute(
            select(BankTransactionDB)
            .where(BankTransactionDB.state == TransactionState.COMMITTING.value)
            .execution_options(populate_existing=True)
        )
        stale = []
        for row in result.scalars().all():
            claimed_at = row.claimed_at
            if claimed_at is not None and claimed_at.tzinfo is None:
                claimed_at = claimed_at.replace(tzinfo=timezone.utc)
            if claimed_at is None or claimed_at <= cutoff:
                stale.append(BankTransaction.from_row(row))
        return stale
