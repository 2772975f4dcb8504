"""
Reconciliation domain types.

BankTransaction and MatchingRule are immutable snapshots of stored rows.
Drafts are mutable until frozen by the commit coordinator.
"""

from dataclasses import dataclass, field, asdict
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from reconciliation.errors import FrozenDraftError


# ==================== ENUMS ====================

class TransactionState(str, Enum):
    """Reconciliation state of a bank transaction."""
    PENDING = "pending"
    SAVED = "saved"
    MATCHED = "matched"
    COMMITTING = "committing"   # claimed by a commit, ledger post in flight
    CONFIRMED = "confirmed"
    SUPPRESSED = "suppressed"


ALLOWED_TRANSITIONS = {
    TransactionState.PENDING: {TransactionState.SAVED, TransactionState.MATCHED, TransactionState.SUPPRESSED},
    TransactionState.SAVED: {TransactionState.MATCHED, TransactionState.SUPPRESSED},
    TransactionState.MATCHED: {TransactionState.COMMITTING, TransactionState.SUPPRESSED, TransactionState.PENDING},
    TransactionState.COMMITTING: {TransactionState.CONFIRMED, TransactionState.MATCHED},
    TransactionState.CONFIRMED: set(),
    TransactionState.SUPPRESSED: set(),
}

TERMINAL_STATES = frozenset({TransactionState.CONFIRMED, TransactionState.SUPPRESSED})
MATCHABLE_STATES = (TransactionState.PENDING, TransactionState.SAVED)


def is_transition_allowed(from_state: TransactionState, to_state: TransactionState) -> bool:
    return to_state in ALLOWED_TRANSITIONS.get(TransactionState(from_state), set())


class Direction(str, Enum):
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    NONE = "none"


class TargetType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class PatternType(str, Enum):
    EXACT = "exact"
    CONTAINS = "contains"
    REGEX = "regex"


class SuppressionReason:
    """Built-in suppression reasons, in evaluation order."""
    ZERO_AMOUNT = "zero_amount"
    INTERNAL_TRANSFER = "internal_transfer"
    DUPLICATE_OF_CONFIRMED = "duplicate_of_confirmed"
    MANUAL = "manual"


TARGET_FOR_DIRECTION = {
    Direction.DEPOSIT: TargetType.INCOME,
    Direction.WITHDRAWAL: TargetType.EXPENSE,
}


# ==================== SNAPSHOTS ====================

@dataclass(frozen=True)
class BankTransaction:
    """A stored bank-statement row."""
    id: str
    transaction_date: date
    value_date: date
    withdrawal: int = 0
    deposit: int = 0
    balance: Optional[int] = None
    description: str = ""
    detail: str = ""
    memo: str = ""
    branch: Optional[str] = None
    transaction_time: Optional[str] = None
    state: TransactionState = TransactionState.PENDING
    suppressed_reason: Optional[str] = None
    matched_type: Optional[str] = None
    matched_record_id: Optional[str] = None
    uploaded_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def direction(self) -> Direction:
        if self.deposit > 0 and self.withdrawal == 0:
            return Direction.DEPOSIT
        if self.withdrawal > 0 and self.deposit == 0:
            return Direction.WITHDRAWAL
        return Direction.NONE

    @property
    def amount(self) -> int:
        return self.deposit if self.direction == Direction.DEPOSIT else self.withdrawal

    @classmethod
    def from_row(cls, row) -> "BankTransaction":
        return cls(
            id=row.id,
            transaction_date=row.transaction_date,
            value_date=row.value_date,
            withdrawal=row.withdrawal or 0,
            deposit=row.deposit or 0,
            balance=row.balance,
            description=row.description or "",
            detail=row.detail or "",
            memo=row.memo or "",
            branch=row.branch,
            transaction_time=row.transaction_time,
            state=TransactionState(row.state),
            suppressed_reason=row.suppressed_reason,
            matched_type=row.matched_type,
            matched_record_id=row.matched_record_id,
            uploaded_at=row.uploaded_at,
            updated_at=row.updated_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_date": self.transaction_date.isoformat(),
            "value_date": self.value_date.isoformat(),
            "withdrawal": self.withdrawal,
            "deposit": self.deposit,
            "balance": self.balance,
            "description": self.description,
            "detail": self.detail,
            "memo": self.memo,
            "branch": self.branch,
            "time": self.transaction_time,
            "state": self.state.value,
            "direction": self.direction.value,
            "suppressed_reason": self.suppressed_reason,
            "matched_type": self.matched_type,
            "matched_record_id": self.matched_record_id,
        }


@dataclass(frozen=True)
class MatchingRule:
    """A classification rule as loaded into a run snapshot."""
    id: int
    pattern_type: PatternType
    pattern: str
    target_type: TargetType
    target_code: int
    target_name: Optional[str] = None
    priority: int = 100
    active: bool = True
    usage_count: int = 0
    learned: bool = False
    created_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "MatchingRule":
        return cls(
            id=row.id,
            pattern_type=PatternType(row.pattern_type),
            pattern=row.pattern,
            target_type=TargetType(row.target_type),
            target_code=row.target_code,
            target_name=row.target_name,
            priority=row.priority,
            active=row.active,
            usage_count=row.usage_count or 0,
            learned=row.learned,
            created_at=row.created_at,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pattern_type": self.pattern_type.value,
            "pattern": self.pattern,
            "target_type": self.target_type.value,
            "target_code": self.target_code,
            "target_name": self.target_name,
            "priority": self.priority,
            "active": self.active,
            "usage_count": self.usage_count,
            "learned": self.learned,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class SuppressionRule:
    id: int
    pattern_type: PatternType
    pattern: str
    reason: str
    direction: str = "any"
    priority: int = 100
    active: bool = True

    @classmethod
    def from_row(cls, row) -> "SuppressionRule":
        return cls(
            id=row.id,
            pattern_type=PatternType(row.pattern_type),
            pattern=row.pattern,
            reason=row.reason,
            direction=row.direction,
            priority=row.priority,
            active=row.active,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "pattern_type": self.pattern_type.value,
            "pattern": self.pattern,
            "reason": self.reason,
            "direction": self.direction,
            "priority": self.priority,
            "active": self.active,
        }


@dataclass(frozen=True)
class ClassificationCode:
    code_type: TargetType
    code: int
    name: str
    category_code: Optional[int] = None
    category_name: Optional[str] = None


@dataclass(frozen=True)
class MatchOutcome:
    """Result of evaluating the rule set. ``rule`` is None for no match."""
    rule: Optional[MatchingRule] = None
    confidence: float = 0.0

    @property
    def matched(self) -> bool:
        return self.rule is not None


@dataclass(frozen=True)
class RuleSuggestion:
    rule: MatchingRule
    overlap: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rule_id": self.rule.id,
            "pattern": self.rule.pattern,
            "target_type": self.rule.target_type.value,
            "code": self.rule.target_code,
            "name": self.rule.target_name,
            "overlap": self.overlap,
        }


# ==================== DRAFTS ====================

class _FreezableDraft:
    """Mutable until ``freeze()``; afterwards every assignment raises."""

    def freeze(self):
        object.__setattr__(self, "_frozen", True)

    @property
    def frozen(self) -> bool:
        return getattr(self, "_frozen", False)

    def __setattr__(self, name, value):
        if getattr(self, "_frozen", False):
            raise FrozenDraftError(
                f"Draft for {self.transaction_id} is frozen and cannot be edited",
                transaction_id=self.transaction_id,
                parameter=name,
            )
        super().__setattr__(name, value)


@dataclass
class IncomeDraft(_FreezableDraft):
    """Proposed income (offering) record. Never persisted as a draft."""
    transaction_id: str
    amount: int
    code: int
    code_name: str
    donor_name: str
    date: date
    transaction_date: Optional[date] = None
    note: str = ""
    rule_id: Optional[int] = None
    confidence: float = 0.0
    manual: bool = False
    source: str = "계좌이체"

    @property
    def target_type(self) -> TargetType:
        return TargetType.INCOME

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["date"] = self.date.isoformat()
        data["transaction_date"] = self.transaction_date.isoformat() if self.transaction_date else None
        data["target_type"] = self.target_type.value
        return data


@dataclass
class ExpenseDraft(_FreezableDraft):
    """Proposed expense record. Never persisted as a draft."""
    transaction_id: str
    amount: int
    account_code: int
    category_code: int
    code_name: str
    vendor: str
    description: str
    date: date
    transaction_date: Optional[date] = None
    note: str = ""
    rule_id: Optional[int] = None
    confidence: float = 0.0
    manual: bool = False
    payment_method: str = "계좌이체"

    @property
    def target_type(self) -> TargetType:
        return TargetType.EXPENSE

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["date"] = self.date.isoformat()
        data["transaction_date"] = self.transaction_date.isoformat() if self.transaction_date else None
        data["target_type"] = self.target_type.value
        return data


# ==================== RUN RESULTS ====================

@dataclass
class SuppressionCandidate:
    transaction: BankTransaction
    reason: str

    def to_dict(self) -> Dict[str, Any]:
        data = self.transaction.to_dict()
        data["suppressed_reason"] = self.reason
        return data


@dataclass
class ReviewItem:
    """A withdrawal no active rule matched, with ranked suggestions."""
    transaction: BankTransaction
    suggestions: List[RuleSuggestion] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction": self.transaction.to_dict(),
            "suggestions": [s.to_dict() for s in self.suggestions],
        }


@dataclass
class ImportResult:
    inserted_count: int = 0
    duplicate_count: int = 0
    inserted_ids: List[str] = field(default_factory=list)
    duplicate_ids: List[str] = field(default_factory=list)
    dry_run: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MatchRunResult:
    """Output of one matching pass."""
    run_id: str
    income_drafts: List[IncomeDraft] = field(default_factory=list)
    expense_drafts: List[ExpenseDraft] = field(default_factory=list)
    suppressed: List[SuppressionCandidate] = field(default_factory=list)
    review_items: List[ReviewItem] = field(default_factory=list)
    rule_errors: List[Dict[str, Any]] = field(default_factory=list)
    skipped_ids: List[str] = field(default_factory=list)
    total_processed: int = 0

    @property
    def summary(self) -> Dict[str, int]:
        return {
            "total": self.total_processed,
            "income": len(self.income_drafts),
            "expense": len(self.expense_drafts),
            "suppressed": len(self.suppressed),
            "needs_review": len(self.review_items),
            "rule_errors": len(self.rule_errors),
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "income": [d.to_dict() for d in self.income_drafts],
            "expense": [d.to_dict() for d in self.expense_drafts],
            "suppressed": [s.to_dict() for s in self.suppressed],
            "needs_review": [r.to_dict() for r in self.review_items],
            "rule_errors": self.rule_errors,
            "summary": self.summary,
        }


@dataclass
class CommitResult:
    """Outcome of one commit batch. Income and expense succeed independently."""
    income_count: int = 0
    expense_count: int = 0
    suppressed_count: int = 0
    income_total: int = 0
    expense_total: int = 0
    succeeded_ids: List[str] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    already_processed_ids: List[str] = field(default_factory=list)
    already_processed: List[Dict[str, Any]] = field(default_factory=list)
    rejected: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def failed_ids(self) -> List[str]:
        return [f["transaction_id"] for f in self.failed]

    @property
    def income_success(self) -> bool:
        return not any(f["ledger"] == TargetType.INCOME.value for f in self.failed)

    @property
    def expense_success(self) -> bool:
        return not any(f["ledger"] == TargetType.EXPENSE.value for f in self.failed)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "income_success": self.income_success,
            "income_count": self.income_count,
            "expense_success": self.expense_success,
            "expense_count": self.expense_count,
            "suppressed_count": self.suppressed_count,
            "income_total": self.income_total,
            "expense_total": self.expense_total,
            "succeeded_transaction_ids": list(self.succeeded_ids),
            "failed_transaction_ids": self.failed_ids,
            "failed": list(self.failed),
            "already_processed_ids": list(self.already_processed_ids),
            "already_processed": list(self.already_processed),
            "rejected": list(self.rejected),
        }
