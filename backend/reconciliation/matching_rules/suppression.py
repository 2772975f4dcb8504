"""
Suppression Filter

Decides whether a bank transaction is non-substantive and must never reach
a ledger. Predicates run in a fixed order and the first hit wins:

1. zero_amount            - neither a deposit nor a withdrawal
2. internal transfers     - configured transfer memos (any direction),
                            cash offering box deposits (recorded by the cash
                            offering sync), card settlements (recorded by the
                            card ledger)
3. duplicate_of_confirmed - same date, amounts and description as a
                            confirmed transaction
4. configured suppression rules, by priority then insertion order
"""

import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Set, Tuple

from reconciliation.errors import RuleError
from reconciliation.models import BankTransaction, Direction, SuppressionReason, SuppressionRule
from reconciliation.matching_rules.normalization import normalize_text, searchable_fields
from reconciliation.matching_rules.rule_set import Predicate, compile_pattern

logger = logging.getLogger(__name__)

CASH_OFFERING_DEPOSIT = "cash_offering_deposit"
CARD_SETTLEMENT = "card_settlement"

Fingerprint = Tuple


def transaction_fingerprint(tx: BankTransaction) -> Fingerprint:
    """Identity used to detect a re-posted copy of a confirmed row."""
    return (tx.transaction_date, tx.deposit, tx.withdrawal, normalize_text(tx.description))


@dataclass(frozen=True)
class _CompiledSuppression:
    rule: SuppressionRule
    predicate: Predicate

    def applies_to(self, direction: Direction) -> bool:
        return self.rule.direction in ("any", direction.value)


class SuppressionFilter:
    """
    Built-in and configured suppression predicates for one run.

    ``confirmed_fingerprints`` is the set of transaction_fingerprint()
    values of already-confirmed transactions.
    """

    def __init__(
        self,
        internal_transfer_patterns: Iterable[str] = (),
        cash_deposit_patterns: Iterable[str] = (),
        card_settlement_patterns: Iterable[str] = (),
        confirmed_fingerprints: Iterable[Fingerprint] = (),
        rules: Iterable[SuppressionRule] = (),
    ):
        self.internal_transfer_patterns = self._normalize_all(internal_transfer_patterns)
        self.cash_deposit_patterns = self._normalize_all(cash_deposit_patterns)
        self.card_settlement_patterns = self._normalize_all(card_settlement_patterns)
        self.confirmed_fingerprints: Set[Fingerprint] = set(confirmed_fingerprints)
        self.errors: List[RuleError] = []
        self._rules: List[_CompiledSuppression] = []

        for rule in sorted(rules, key=lambda r: (r.priority, r.id)):
            if not rule.active:
                continue
            try:
                predicate = compile_pattern(rule.pattern_type, rule.pattern, rule_id=rule.id)
            except RuleError as e:
                logger.warning(f"Disabling suppression rule {rule.id}: {e.message}")
                self.errors.append(e)
                continue
            self._rules.append(_CompiledSuppression(rule, predicate))

    @staticmethod
    def _normalize_all(patterns: Iterable[str]) -> List[str]:
        return [p for p in (normalize_text(p) for p in patterns) if p]

    def evaluate(self, tx: BankTransaction) -> Tuple[bool, Optional[str]]:
        """Return (suppressed, reason). Reason is None when not suppressed."""
        if tx.deposit == 0 and tx.withdrawal == 0:
            return True, SuppressionReason.ZERO_AMOUNT

        fields = searchable_fields(tx)
        text = " ".join(f for f in fields if f)
        direction = tx.direction

        if any(p in text for p in self.internal_transfer_patterns):
            return True, SuppressionReason.INTERNAL_TRANSFER

        if direction == Direction.DEPOSIT and any(p in text for p in self.cash_deposit_patterns):
            return True, CASH_OFFERING_DEPOSIT

        if direction == Direction.WITHDRAWAL and any(p in text for p in self.card_settlement_patterns):
            return True, CARD_SETTLEMENT

        if transaction_fingerprint(tx) in self.confirmed_fingerprints:
            return True, SuppressionReason.DUPLICATE_OF_CONFIRMED

        for compiled in self._rules:
            if compiled.applies_to(direction) and compiled.predicate(fields, text):
                return True, compiled.rule.reason

        return False, None
