"""
Reconciliation Service

Orchestrates the bank reconciliation workflow for one request:
- Importing statement rows (idempotent)
- Matching runs: suppression, rules, drafts, review queue
- Manual classification of review items (with rule learning)
- Commit of approved drafts and suppressions
- Recovery of interrupted commits
- Audit logging

Rules are loaded once per run as a snapshot. If the rule store cannot be
read the run aborts with FatalConfigError before any transaction is touched.
"""

import uuid
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import Settings, get_settings
from database.ledger_models import ReconciliationAuditLogDB
from logging_config import set_run_context
from sentry_integration import capture_exception
from reconciliation.errors import ConflictError, PartialWriteError, ValidationError
from reconciliation.models import (
    BankTransaction,
    CommitResult,
    ExpenseDraft,
    ImportResult,
    IncomeDraft,
    MatchRunResult,
    ReviewItem,
    TargetType,
    TransactionState,
)
from reconciliation.matching_rules.rule_set import RuleSet
from reconciliation.matching_rules.suppression import SuppressionFilter
from reconciliation.services.commit_coordinator import CommitCoordinator
from reconciliation.services.draft_builder import DraftBuilder, ManualClassification, apply_edits
from reconciliation.services.ledger_store import LedgerStore
from reconciliation.services.matching_engine import MatchingEngine
from reconciliation.services.rule_store import RuleSnapshot, RuleStore
from reconciliation.services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)


class ReconciliationAuditEvent:
    """Audit event types for reconciliation operations."""
    STATEMENT_IMPORTED = "reconciliation.statement_imported"
    RUN_STARTED = "reconciliation.run_started"
    RUN_COMPLETED = "reconciliation.run_completed"
    ITEM_CLASSIFIED = "reconciliation.item_classified"
    DRAFT_REOPENED = "reconciliation.draft_reopened"
    COMMIT_COMPLETED = "reconciliation.commit_completed"
    COMMIT_PARTIAL = "reconciliation.commit_partial"
    CLAIMS_RECOVERED = "reconciliation.claims_recovered"


def log_reconciliation_event(
    event_type: str,
    details: Dict[str, Any],
    run_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
    actor: str = "system"
):
    """Log reconciliation event for audit trail."""
    log_entry = {
        "event": event_type,
        "run_id": run_id,
        "transaction_id": transaction_id,
        "details": details,
        "actor": actor,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
    logger.info(f"Reconciliation event: {event_type}", extra=log_entry)


class ReconciliationService:
    """
    Service wiring the transaction store, rule set, matching engine and
    commit coordinator for one database session.
    """

    def __init__(self, db: AsyncSession, settings: Optional[Settings] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.transactions = TransactionStore(db)
        self.rules = RuleStore(db)
        self.ledger = LedgerStore(db)

    # ==================== IMPORT ====================

    async def import_statement(
        self,
        rows: List[Dict[str, Any]],
        initial_state: TransactionState = TransactionState.PENDING,
        dry_run: bool = False,
        actor: str = "system",
    ) -> ImportResult:
        result = await self.transactions.import_rows(rows, initial_state=initial_state, dry_run=dry_run)

        if not dry_run:
            details = {
                "rows": len(rows),
                "inserted": result.inserted_count,
                "duplicates": result.duplicate_count,
            }
            log_reconciliation_event(ReconciliationAuditEvent.STATEMENT_IMPORTED, details, actor=actor)
            await self._store_audit_log(ReconciliationAuditEvent.STATEMENT_IMPORTED, details, actor=actor)

        return result

    async def save_transactions(self, transaction_ids: Iterable[str]) -> Dict[str, Any]:
        saved, conflicts = await self.transactions.mark_saved(transaction_ids)
        return {"saved_ids": saved, "conflicts": conflicts}

    # ==================== MATCHING ====================

    async def load_snapshot(self) -> RuleSnapshot:
        """Raises FatalConfigError when the rule store is unreachable."""
        return await self.rules.load_snapshot()

    async def build_engine(self, snapshot: RuleSnapshot) -> MatchingEngine:
        settings = self.settings
        rule_set = RuleSet(
            snapshot.rules,
            errors=snapshot.errors,
            suggestion_min_overlap=settings.RECON_SUGGESTION_MIN_OVERLAP,
        )
        suppression_filter = SuppressionFilter(
            internal_transfer_patterns=settings.internal_transfer_patterns,
            cash_deposit_patterns=settings.cash_deposit_patterns,
            card_settlement_patterns=settings.card_settlement_patterns,
            confirmed_fingerprints=await self.transactions.confirmed_fingerprints(),
            rules=snapshot.suppression_rules,
        )
        return MatchingEngine(
            rule_set=rule_set,
            suppression_filter=suppression_filter,
            draft_builder=DraftBuilder(snapshot.codes),
            suggestion_limit=settings.RECON_SUGGESTION_LIMIT,
            default_income_strategy=settings.RECON_DEFAULT_INCOME_STRATEGY,
            uncategorized_income=(
                settings.RECON_UNCATEGORIZED_INCOME_CODE,
                settings.RECON_UNCATEGORIZED_INCOME_NAME,
            ),
        )

    async def run_matching(
        self,
        transaction_ids: Optional[List[str]] = None,
        include_matched: bool = False,
        actor: str = "system",
    ) -> MatchRunResult:
        """
        Run one matching pass and persist the resulting state changes.

        pending/saved rows that produced a draft or a suppression candidate
        move to ``matched`` (the proposed suppression reason is stored).
        Review items stay pending. With ``include_matched`` previously matched
        rows are re-evaluated too.
        """
        run_id = str(uuid.uuid4())
        set_run_context(run_id)
        try:
            # Snapshot first: a dead rule store must not touch any transaction
            snapshot = await self.load_snapshot()
            engine = await self.build_engine(snapshot)

            if transaction_ids:
                transactions = list((await self.transactions.get_many(transaction_ids)).values())
            else:
                states = [TransactionState.PENDING, TransactionState.SAVED]
                if include_matched:
                    states.append(TransactionState.MATCHED)
                transactions = await self.transactions.list_by_state(*states)

            log_reconciliation_event(
                ReconciliationAuditEvent.RUN_STARTED,
                {"transactions": len(transactions), "rules": len(snapshot.rules), "include_matched": include_matched},
                run_id=run_id,
                actor=actor,
            )

            result = engine.run(transactions, run_id=run_id, include_matched=include_matched)
            await self._persist_run(result, {tx.id: tx for tx in transactions})
            await self.rules.increment_usage(
                d.rule_id for d in [*result.income_drafts, *result.expense_drafts]
            )

            log_reconciliation_event(ReconciliationAuditEvent.RUN_COMPLETED, result.summary, run_id=run_id, actor=actor)
            await self._store_audit_log(
                ReconciliationAuditEvent.RUN_COMPLETED,
                {"summary": result.summary, "rule_errors": result.rule_errors},
                run_id=run_id,
                actor=actor,
            )
            return result
        finally:
            set_run_context(None)

    async def _persist_run(self, result: MatchRunResult, by_id: Dict[str, BankTransaction]) -> None:
        conflicted = set()

        async def mark_matched(tx: BankTransaction, reason: Optional[str]):
            try:
                if tx.state == TransactionState.MATCHED:
                    await self.transactions.annotate(tx.id, TransactionState.MATCHED, suppressed_reason=reason)
                else:
                    await self.transactions.transition_state(
                        tx.id, (TransactionState.PENDING, TransactionState.SAVED),
                        TransactionState.MATCHED, suppressed_reason=reason,
                    )
            except ConflictError as e:
                logger.warning(f"Transaction changed during run: {e.message}")
                conflicted.add(tx.id)

        for candidate in result.suppressed:
            await mark_matched(candidate.transaction, candidate.reason)

        for draft in [*result.income_drafts, *result.expense_drafts]:
            await mark_matched(by_id[draft.transaction_id], None)

        # A re-matched row that no longer has a rule goes back to the review queue
        for item in result.review_items:
            if item.transaction.state == TransactionState.MATCHED:
                try:
                    await self.transactions.transition_state(
                        item.transaction.id, TransactionState.MATCHED, TransactionState.PENDING,
                        suppressed_reason=None,
                    )
                except ConflictError:
                    conflicted.add(item.transaction.id)

        if conflicted:
            result.income_drafts = [d for d in result.income_drafts if d.transaction_id not in conflicted]
            result.expense_drafts = [d for d in result.expense_drafts if d.transaction_id not in conflicted]
            result.suppressed = [s for s in result.suppressed if s.transaction.id not in conflicted]
            result.review_items = [r for r in result.review_items if r.transaction.id not in conflicted]
            result.skipped_ids.extend(sorted(conflicted))

    async def list_review_queue(self) -> List[ReviewItem]:
        """Unmatched withdrawals with suggestions, computed on the current rules."""
        snapshot = await self.load_snapshot()
        engine = await self.build_engine(snapshot)
        pending = await self.transactions.list_by_state(TransactionState.PENDING, TransactionState.SAVED)
        return engine.run(pending).review_items

    async def classify_review_item(
        self,
        transaction_id: str,
        classification: ManualClassification,
        learn: bool = True,
        actor: str = "system",
    ):
        """
        Turn a human classification into a draft and move the row to ``matched``.

        When ``learn`` is set the classification also becomes (or reinforces)
        a low-priority rule so the next run matches it automatically.
        """
        tx = await self.transactions.get(transaction_id)
        if tx is None:
            raise ValidationError(f"Transaction {transaction_id} not found", transaction_id=transaction_id)

        snapshot = await self.load_snapshot()
        draft = DraftBuilder(snapshot.codes).draft_from_review(tx, classification)

        await self.transactions.transition_state(
            transaction_id,
            (TransactionState.PENDING, TransactionState.SAVED),
            TransactionState.MATCHED,
            suppressed_reason=None,
        )

        learned_rule = None
        if learn:
            learned_rule = await self.rules.learn_from_classification(
                tx,
                classification.target_type,
                classification.code,
                name=draft.code_name,
                priority=self.settings.RECON_LEARNED_RULE_PRIORITY,
            )

        details = {
            "target_type": TargetType(classification.target_type).value,
            "code": classification.code,
            "learned_rule_id": learned_rule.id if learned_rule else None,
        }
        log_reconciliation_event(ReconciliationAuditEvent.ITEM_CLASSIFIED, details, transaction_id=transaction_id, actor=actor)
        await self._store_audit_log(ReconciliationAuditEvent.ITEM_CLASSIFIED, details, transaction_id=transaction_id, actor=actor)

        return draft

    async def reopen(self, transaction_id: str, actor: str = "system") -> None:
        """Send a matched row back to pending so it can be matched again."""
        await self.transactions.transition_state(
            transaction_id, TransactionState.MATCHED, TransactionState.PENDING, suppressed_reason=None,
        )
        await self._store_audit_log(ReconciliationAuditEvent.DRAFT_REOPENED, {}, transaction_id=transaction_id, actor=actor)

    # ==================== COMMIT ====================

    async def prepare_drafts(
        self,
        income_items: List[Dict[str, Any]],
        expense_items: List[Dict[str, Any]],
    ) -> Tuple[List[IncomeDraft], List[ExpenseDraft], List[Dict[str, Any]]]:
        """
        Rebuild drafts from submitted commit items.

        Dates, direction and the source transaction come from the store; the
        submitted fields (donor, vendor, amount, code, note) are applied as edits.
        Items that cannot become a valid draft are returned as rejected.
        """
        snapshot = await self.load_snapshot()
        builder = DraftBuilder(snapshot.codes)
        ids = [i.get("transaction_id") for i in [*income_items, *expense_items] if i.get("transaction_id")]
        known = await self.transactions.get_many(ids)

        income_drafts, expense_drafts, rejected = [], [], []

        for target, items in ((TargetType.INCOME, income_items), (TargetType.EXPENSE, expense_items)):
            for item in items:
                transaction_id = item.get("transaction_id")
                tx = known.get(transaction_id)
                try:
                    if tx is None:
                        raise ValidationError(f"Transaction {transaction_id} not found", transaction_id=transaction_id)
                    draft = self._draft_from_item(builder, tx, target, item)
                except ValidationError as e:
                    rejected.append({"transaction_id": transaction_id, **e.to_dict()})
                    continue
                (income_drafts if target == TargetType.INCOME else expense_drafts).append(draft)

        return income_drafts, expense_drafts, rejected

    @staticmethod
    def _draft_from_item(builder: DraftBuilder, tx: BankTransaction, target: TargetType, item: Dict[str, Any]):
        code = item.get("code") if target == TargetType.INCOME else item.get("account_code") or item.get("code")
        if code is None:
            raise ValidationError("code is required", transaction_id=tx.id, parameter="code")

        draft = builder.draft_for_target(tx, target, code, code_name=item.get("name"))
        draft.manual = bool(item.get("manual", False))
        draft.rule_id = item.get("rule_id")

        editable = (
            ("donor_name", "amount", "note") if target == TargetType.INCOME
            else ("vendor", "description", "amount", "note", "category_code")
        )
        edits = {k: item[k] for k in editable if item.get(k) is not None}
        return apply_edits(draft, **edits)

    async def commit(
        self,
        income_items: List[Dict[str, Any]],
        expense_items: List[Dict[str, Any]],
        suppressed_ids: List[str],
        suppressed_reasons: Optional[Dict[str, str]] = None,
        actor: str = "system",
    ) -> CommitResult:
        """
        Commit submitted drafts and suppressions.

        Raises:
            PartialWriteError: some posts failed; ``.result`` has the exact ids
        """
        income_drafts, expense_drafts, rejected = await self.prepare_drafts(income_items, expense_items)
        coordinator = CommitCoordinator(self.transactions, self.ledger, self.settings.RECON_CLAIM_STALE_SECONDS)

        try:
            result = await coordinator.commit(income_drafts, expense_drafts, suppressed_ids, suppressed_reasons)
        except PartialWriteError as e:
            e.result.rejected[:0] = rejected
            self._capture_partial_write(e)
            await self._record_commit(ReconciliationAuditEvent.COMMIT_PARTIAL, e.result, actor)
            raise

        result.rejected[:0] = rejected
        await self._record_commit(ReconciliationAuditEvent.COMMIT_COMPLETED, result, actor)
        return result

    async def commit_drafts(
        self,
        income_drafts: List[IncomeDraft],
        expense_drafts: List[ExpenseDraft],
        suppressed_ids: Iterable[str] = (),
        actor: str = "system",
    ) -> CommitResult:
        """Commit drafts produced in-process (e.g. by run_matching)."""
        coordinator = CommitCoordinator(self.transactions, self.ledger, self.settings.RECON_CLAIM_STALE_SECONDS)
        try:
            result = await coordinator.commit(income_drafts, expense_drafts, suppressed_ids)
        except PartialWriteError as e:
            self._capture_partial_write(e)
            await self._record_commit(ReconciliationAuditEvent.COMMIT_PARTIAL, e.result, actor)
            raise
        await self._record_commit(ReconciliationAuditEvent.COMMIT_COMPLETED, result, actor)
        return result

    @staticmethod
    def _capture_partial_write(error: PartialWriteError) -> None:
        capture_exception(error, failed_transaction_ids=error.failed_ids)

    async def _record_commit(self, event: str, result: CommitResult, actor: str) -> None:
        details = result.to_dict()
        log_reconciliation_event(event, {k: v for k, v in details.items() if k != "failed"}, actor=actor)
        await self._store_audit_log(event, details, actor=actor)

    async def recover_stale_claims(self, older_than_seconds: Optional[int] = None, actor: str = "system") -> Dict[str, List[str]]:
        coordinator = CommitCoordinator(self.transactions, self.ledger, self.settings.RECON_CLAIM_STALE_SECONDS)
        recovered = await coordinator.recover_stale_claims(older_than_seconds)
        if any(recovered.values()):
            await self._store_audit_log(ReconciliationAuditEvent.CLAIMS_RECOVERED, recovered, actor=actor)
        return recovered

    # ==================== STATS ====================

    async def get_stats(self) -> Dict[str, Any]:
        by_state = await self.transactions.count_by_state()
        total = sum(by_state.values())
        resolved = by_state.get(TransactionState.CONFIRMED.value, 0) + by_state.get(TransactionState.SUPPRESSED.value, 0)
        return {
            "transactions_by_state": by_state,
            "total_transactions": total,
            "reconciliation_rate": round(resolved / total, 4) if total else 0.0,
            "ledgers": await self.ledger.totals(),
            "active_rules": len(await self.rules.list_rules()),
        }

    # ==================== AUDIT ====================

    async def _store_audit_log(
        self,
        action: str,
        details: Dict[str, Any],
        run_id: Optional[str] = None,
        transaction_id: Optional[str] = None,
        actor: str = "system",
    ):
        """Store audit log entry in the database."""
        try:
            self.db.add(ReconciliationAuditLogDB(
                run_id=run_id,
                action=action,
                actor=actor,
                transaction_id=transaction_id,
                details=details,
            ))
            await self.db.commit()
        except SQLAlchemyError as e:
            await self.db.rollback()
            logger.warning(f"Failed to store audit log: {e}")
