"""
Matching Engine

Classifies eligible bank transactions for one run:

    suppression check -> direction split -> rule evaluation -> draft
                                                   |
                                         no match: deposit  -> default income draft
                                                   withdrawal -> review item + suggestions

The engine is pure: it reads a snapshot and returns a MatchRunResult.
Persisting state changes is the orchestration service's job. Results do
not depend on input order.
"""

import logging
import uuid
from typing import Iterable, Optional, Tuple

from reconciliation.models import (
    BankTransaction,
    Direction,
    MatchRunResult,
    MATCHABLE_STATES,
    ReviewItem,
    SuppressionCandidate,
    TransactionState,
)
from reconciliation.matching_rules.rule_set import RuleSet
from reconciliation.matching_rules.suppression import SuppressionFilter
from reconciliation.services.draft_builder import DraftBuilder

logger = logging.getLogger(__name__)


class MatchingEngine:
    """Applies suppression, rules and fallbacks to a batch of transactions."""

    def __init__(
        self,
        rule_set: RuleSet,
        suppression_filter: SuppressionFilter,
        draft_builder: Optional[DraftBuilder] = None,
        suggestion_limit: int = 3,
        default_income_strategy: str = "uncategorized",
        uncategorized_income: Tuple[int, str] = (19, "기타헌금"),
    ):
        self.rule_set = rule_set
        self.suppression_filter = suppression_filter
        self.draft_builder = draft_builder or DraftBuilder()
        self.suggestion_limit = suggestion_limit
        self.default_income_strategy = default_income_strategy
        self.uncategorized_income = uncategorized_income

    def run(
        self,
        transactions: Iterable[BankTransaction],
        run_id: Optional[str] = None,
        include_matched: bool = False,
    ) -> MatchRunResult:
        eligible = set(MATCHABLE_STATES)
        if include_matched:
            eligible.add(TransactionState.MATCHED)

        result = MatchRunResult(run_id=run_id or str(uuid.uuid4()))
        result.rule_errors = self.rule_set.error_dicts() + [e.to_dict() for e in self.suppression_filter.errors]

        for tx in sorted(transactions, key=lambda t: (t.transaction_date, t.id)):
            if tx.state not in eligible:
                result.skipped_ids.append(tx.id)
                continue

            result.total_processed += 1
            self._classify(tx, result)

        logger.info(
            f"Matching run {result.run_id}: {result.summary}",
            extra={"run_id": result.run_id, "summary": result.summary}
        )
        return result

    def _classify(self, tx: BankTransaction, result: MatchRunResult):
        suppressed, reason = self.suppression_filter.evaluate(tx)
        if suppressed:
            result.suppressed.append(SuppressionCandidate(transaction=tx, reason=reason))
            return

        outcome = self.rule_set.match(tx)
        if outcome.matched:
            draft = self.draft_builder.build(tx, outcome)
            if tx.direction == Direction.DEPOSIT:
                result.income_drafts.append(draft)
            else:
                result.expense_drafts.append(draft)
            return

        if tx.direction == Direction.DEPOSIT:
            result.income_drafts.append(self.draft_builder.default_income_draft(
                tx,
                strategy=self.default_income_strategy,
                uncategorized=self.uncategorized_income,
            ))
            return

        # Withdrawals without a rule, and rows carrying both amounts, need a person
        suggestions = self.rule_set.suggest(tx, self.suggestion_limit)
        result.review_items.append(ReviewItem(transaction=tx, suggestions=suggestions))
