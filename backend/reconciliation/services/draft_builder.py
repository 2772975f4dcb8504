"""
Draft Builder

Pure conversion of (BankTransaction, MatchOutcome) into an IncomeDraft or
ExpenseDraft. Drafts post on the transaction's value date (기준일), carry the
source transaction id, and never mutate the transaction.

Labels come from the code catalog, then the rule's target name, then a
generic "코드 {code}".
"""

from dataclasses import dataclass, fields
from typing import Dict, Iterable, Optional, Tuple, Union

from reconciliation.errors import ValidationError
from reconciliation.models import (
    BankTransaction,
    ClassificationCode,
    Direction,
    ExpenseDraft,
    IncomeDraft,
    MatchingRule,
    MatchOutcome,
    TargetType,
)

Draft = Union[IncomeDraft, ExpenseDraft]

DEFAULT_VENDOR = "기타"
DEFAULT_CLASSIFICATION_SUFFIX = " (기본분류)"

# Amount heuristic used by the ledger before rules existed
SUNDAY_OFFERING = (11, "주일헌금")
TITHE = (12, "십일조")
THANKSGIVING_OFFERING = (13, "감사헌금")


def category_for(account_code: int) -> int:
    """Expense category is the account code rounded down to the tens."""
    return account_code // 10 * 10


def default_income_code(
    amount: int,
    strategy: str = "uncategorized",
    uncategorized: Tuple[int, str] = (19, "기타헌금"),
) -> Tuple[int, str]:
    """
    Code for a deposit no rule matched.

    ``amount_heuristic``: under 50,000 is a Sunday offering, amounts not
    rounded to 10,000 are tithes, everything else a thanksgiving offering.
    """
    if strategy != "amount_heuristic":
        return uncategorized
    if amount < 50000:
        return SUNDAY_OFFERING
    if amount % 10000 != 0:
        return TITHE
    return THANKSGIVING_OFFERING


def _join_note(*parts: str) -> str:
    return " | ".join(p for p in parts if p)


@dataclass
class ManualClassification:
    """A human classification of a review item."""
    target_type: TargetType
    code: int
    name: Optional[str] = None
    donor_name: Optional[str] = None
    vendor: Optional[str] = None
    description: Optional[str] = None
    note: Optional[str] = None
    category_code: Optional[int] = None
    amount: Optional[int] = None


class DraftBuilder:
    """Builds drafts; holds the code catalog for labels."""

    def __init__(self, codes: Iterable[ClassificationCode] = ()):
        self._catalog: Dict[Tuple[TargetType, int], ClassificationCode] = {
            (TargetType(c.code_type), c.code): c for c in codes
        }

    def label(self, target_type: TargetType, code: int, fallback: Optional[str] = None) -> str:
        entry = self._catalog.get((TargetType(target_type), code))
        if entry:
            return entry.name
        return fallback or f"코드 {code}"

    def category(self, account_code: int) -> int:
        entry = self._catalog.get((TargetType.EXPENSE, account_code))
        if entry and entry.category_code is not None:
            return entry.category_code
        return category_for(account_code)

    # ==================== RULE MATCHES ====================

    def build(self, tx: BankTransaction, outcome: MatchOutcome) -> Draft:
        """Draft for a transaction the rule set matched."""
        rule = outcome.rule
        if rule is None:
            raise ValueError(f"No rule matched transaction {tx.id}")

        if rule.target_type == TargetType.INCOME:
            return self.income_draft(tx, rule.target_code, rule=rule, confidence=outcome.confidence)
        return self.expense_draft(tx, rule.target_code, rule=rule, confidence=outcome.confidence)

    def income_draft(
        self,
        tx: BankTransaction,
        code: int,
        code_name: Optional[str] = None,
        rule: Optional[MatchingRule] = None,
        confidence: float = 0.0,
        note_suffix: str = "",
    ) -> IncomeDraft:
        label = self.label(TargetType.INCOME, code, code_name or (rule.target_name if rule else None))
        return IncomeDraft(
            transaction_id=tx.id,
            amount=tx.deposit,
            code=code,
            code_name=label,
            donor_name=tx.detail or tx.memo or label,
            date=tx.value_date,
            transaction_date=tx.transaction_date,
            note=_join_note(tx.description, tx.detail) + note_suffix,
            rule_id=rule.id if rule else None,
            confidence=confidence,
        )

    def expense_draft(
        self,
        tx: BankTransaction,
        code: int,
        code_name: Optional[str] = None,
        rule: Optional[MatchingRule] = None,
        confidence: float = 0.0,
    ) -> ExpenseDraft:
        label = self.label(TargetType.EXPENSE, code, code_name or (rule.target_name if rule else None))
        return ExpenseDraft(
            transaction_id=tx.id,
            amount=tx.withdrawal,
            account_code=code,
            category_code=self.category(code),
            code_name=label,
            vendor=tx.memo or tx.detail or tx.description or DEFAULT_VENDOR,
            description=tx.detail or tx.description,
            date=tx.value_date,
            transaction_date=tx.transaction_date,
            note=tx.description,
            rule_id=rule.id if rule else None,
            confidence=confidence,
        )

    def default_income_draft(
        self,
        tx: BankTransaction,
        strategy: str = "uncategorized",
        uncategorized: Tuple[int, str] = (19, "기타헌금"),
    ) -> IncomeDraft:
        """Deposits are never dropped: an unmatched one gets the default code."""
        code, name = default_income_code(tx.deposit, strategy, uncategorized)
        return self.income_draft(tx, code, code_name=name, note_suffix=DEFAULT_CLASSIFICATION_SUFFIX)

    # ==================== HUMAN CLASSIFICATION ====================

    def draft_for_target(
        self,
        tx: BankTransaction,
        target_type: TargetType,
        code: int,
        code_name: Optional[str] = None,
    ) -> Draft:
        """
        Default draft for an explicit ledger and code.

        Raises:
            ValidationError: direction does not fit the ledger, or bad code
        """
        target = TargetType(target_type)
        expected = Direction.DEPOSIT if target == TargetType.INCOME else Direction.WITHDRAWAL
        if tx.direction != expected:
            raise ValidationError(
                f"A {tx.direction.value} cannot be classified as {target.value}",
                transaction_id=tx.id,
                parameter="type",
            )
        if not isinstance(code, int) or isinstance(code, bool) or code <= 0:
            raise ValidationError("Classification code must be a positive integer", transaction_id=tx.id, parameter="code")

        if target == TargetType.INCOME:
            return self.income_draft(tx, code, code_name=code_name)
        return self.expense_draft(tx, code, code_name=code_name)

    def draft_from_review(self, tx: BankTransaction, classification: ManualClassification) -> Draft:
        """Draft for a review item a person classified."""
        target = TargetType(classification.target_type)
        draft = self.draft_for_target(tx, target, classification.code, code_name=classification.name)

        if target == TargetType.INCOME:
            draft.donor_name = classification.donor_name or tx.detail or draft.donor_name
            if classification.note:
                draft.note = classification.note
        else:
            draft.vendor = classification.vendor or tx.detail or tx.description or DEFAULT_VENDOR
            draft.description = classification.description or tx.description
            draft.note = classification.note or ""
            if classification.category_code:
                draft.category_code = classification.category_code

        if classification.amount is not None:
            draft.amount = classification.amount
        draft.confidence = 1.0
        draft.manual = True
        return draft


_EDITABLE = {
    IncomeDraft: {"donor_name", "amount", "code", "code_name", "note", "date"},
    ExpenseDraft: {"vendor", "description", "amount", "account_code", "category_code", "code_name", "note", "date"},
}


def apply_edits(draft: Draft, **changes) -> Draft:
    """
    Apply human edits to a draft in place.

    Raises:
        FrozenDraftError: the draft was already handed to a commit
        ValidationError: unknown or read-only field
    """
    allowed = _EDITABLE[type(draft)]
    known = {f.name for f in fields(draft)}
    for name, value in changes.items():
        if name not in known or name not in allowed:
            raise ValidationError(f"Field '{name}' cannot be edited", transaction_id=draft.transaction_id, parameter=name)
        setattr(draft, name, value)
    return draft
