"""
Rule Set

Evaluates a point-in-time snapshot of matching rules against bank
transactions.

Pattern types:
- exact:    normalized pattern equals one normalized field (description, detail or memo)
- contains: normalized pattern is a substring of the joined searchable text
- regex:    re.search over the joined searchable text, case-insensitive

Ordering:
- ascending priority, first match wins
- equal priority keeps insertion order (rule id); sorted() is stable

Direction isolation:
- deposits are only evaluated against income rules
- withdrawals are only evaluated against expense rules

A rule that fails to compile is disabled for the run and reported as a
RuleError; it never aborts evaluation of the remaining rules.
"""

import logging
import re
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Callable, Dict, Iterable, List, Optional

from reconciliation.errors import RuleError
from reconciliation.models import (
    BankTransaction,
    MatchingRule,
    MatchOutcome,
    PatternType,
    RuleSuggestion,
    TargetType,
    TARGET_FOR_DIRECTION,
)
from reconciliation.matching_rules.normalization import (
    normalize_text,
    searchable_fields,
    strip_regex_meta,
)

logger = logging.getLogger(__name__)

Predicate = Callable[[List[str], str], bool]

CONFIDENCE_BY_PATTERN = {
    PatternType.EXACT: 1.0,
    PatternType.CONTAINS: 0.9,
    PatternType.REGEX: 0.85,
}


def compile_pattern(pattern_type: PatternType, pattern: str, rule_id: Optional[int] = None) -> Predicate:
    """
    Compile a rule pattern into a predicate over (fields, joined_text).

    Raises:
        RuleError: empty pattern, unknown type or invalid regular expression
    """
    if not pattern or not str(pattern).strip():
        raise RuleError("Rule pattern is empty", rule_id=rule_id, pattern=pattern)

    try:
        pattern_type = PatternType(pattern_type)
    except ValueError:
        raise RuleError(f"Unknown pattern type '{pattern_type}'", rule_id=rule_id, pattern=pattern)

    if pattern_type == PatternType.REGEX:
        try:
            compiled = re.compile(pattern, re.IGNORECASE)
        except re.error as e:
            raise RuleError(f"Invalid regular expression: {e}", rule_id=rule_id, pattern=pattern)
        return lambda fields, text: compiled.search(text) is not None

    needle = normalize_text(pattern)
    if pattern_type == PatternType.EXACT:
        return lambda fields, text: needle in fields
    return lambda fields, text: needle in text


@dataclass(frozen=True)
class CompiledRule:
    rule: MatchingRule
    predicate: Predicate

    def matches(self, fields: List[str], text: str) -> bool:
        return self.predicate(fields, text)


class RuleSet:
    """
    Ordered, immutable collection of active rules for one run.

    Args:
        rules: rule snapshot, in any order
        errors: rule errors already found while loading the snapshot
        suggestion_min_overlap: shortest common substring that counts as a suggestion
    """

    def __init__(
        self,
        rules: Iterable[MatchingRule],
        errors: Optional[Iterable[RuleError]] = None,
        suggestion_min_overlap: int = 2,
    ):
        self.errors: List[RuleError] = list(errors or [])
        self.suggestion_min_overlap = suggestion_min_overlap
        self._by_target: Dict[TargetType, List[CompiledRule]] = {
            TargetType.INCOME: [],
            TargetType.EXPENSE: [],
        }

        for rule in sorted(rules, key=lambda r: (r.priority, r.id)):
            if not rule.active:
                continue
            try:
                predicate = compile_pattern(rule.pattern_type, rule.pattern, rule_id=rule.id)
            except RuleError as e:
                logger.warning(
                    f"Disabling rule {rule.id} for this run: {e.message}",
                    extra={"rule_id": rule.id, "pattern": rule.pattern}
                )
                self.errors.append(e)
                continue
            self._by_target[rule.target_type].append(CompiledRule(rule, predicate))

    def rules_for(self, target_type: TargetType) -> List[MatchingRule]:
        """Active, valid rules for one ledger, in evaluation order."""
        return [c.rule for c in self._by_target[TargetType(target_type)]]

    @property
    def rule_count(self) -> int:
        return sum(len(v) for v in self._by_target.values())

    def match(self, tx: BankTransaction) -> MatchOutcome:
        """Return the first matching rule of the transaction's direction."""
        target = TARGET_FOR_DIRECTION.get(tx.direction)
        if target is None:
            return MatchOutcome()

        fields = searchable_fields(tx)
        text = " ".join(f for f in fields if f)

        for compiled in self._by_target[target]:
            if compiled.matches(fields, text):
                return MatchOutcome(
                    rule=compiled.rule,
                    confidence=CONFIDENCE_BY_PATTERN[compiled.rule.pattern_type],
                )
        return MatchOutcome()

    def suggest(self, tx: BankTransaction, limit: int = 3) -> List[RuleSuggestion]:
        """
        Rank same-direction rules by textual overlap with the transaction.

        Score is the longest common substring between the rule pattern
        (regex metacharacters removed) and the searchable text. Ties are
        broken by priority, then insertion order.
        """
        target = TARGET_FOR_DIRECTION.get(tx.direction)
        if target is None or limit <= 0:
            return []

        text = " ".join(f for f in searchable_fields(tx) if f)
        if not text:
            return []

        scored = []
        for compiled in self._by_target[target]:
            needle = normalize_text(strip_regex_meta(compiled.rule.pattern))
            if not needle:
                continue
            overlap = SequenceMatcher(None, needle, text, autojunk=False).find_longest_match(
                0, len(needle), 0, len(text)
            ).size
            if overlap >= self.suggestion_min_overlap:
                scored.append(RuleSuggestion(rule=compiled.rule, overlap=overlap))

        scored.sort(key=lambda s: (-s.overlap, s.rule.priority, s.rule.id))
        return scored[:limit]

    def error_dicts(self) -> List[Dict]:
        return [e.to_dict() for e in self.errors]
