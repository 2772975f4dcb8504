"""
Bank Reconciliation Module

Turns raw bank-statement rows into income and expense ledger records:
- Idempotent statement import
- Suppression of non-substantive rows
- Rule-based classification with a manual review queue
- Exactly-once commit into the permanent ledgers
- Audit trail for all operations
"""

from reconciliation.errors import (
    ReconciliationError,
    ValidationError,
    StatementImportError,
    FrozenDraftError,
    ConflictError,
    AlreadyConfirmedError,
    RuleError,
    PartialWriteError,
    FatalConfigError,
)
from reconciliation.models import (
    TransactionState,
    TargetType,
    PatternType,
    BankTransaction,
    MatchingRule,
    IncomeDraft,
    ExpenseDraft,
    ReviewItem,
    CommitResult,
)
from reconciliation.matching_rules import RuleSet, SuppressionFilter
from reconciliation.services.matching_engine import MatchingEngine
from reconciliation.services.commit_coordinator import CommitCoordinator
from reconciliation.services.reconciliation_service import ReconciliationService
from reconciliation.endpoints.reconciliation_api import router as reconciliation_router

__all__ = [
    # Errors
    'ReconciliationError',
    'ValidationError',
    'StatementImportError',
    'FrozenDraftError',
    'ConflictError',
    'AlreadyConfirmedError',
    'RuleError',
    'PartialWriteError',
    'FatalConfigError',
    # Models
    'TransactionState',
    'TargetType',
    'PatternType',
    'BankTransaction',
    'MatchingRule',
    'IncomeDraft',
    'ExpenseDraft',
    'ReviewItem',
    'CommitResult',
    # Engine
    'RuleSet',
    'SuppressionFilter',
    'MatchingEngine',
    'CommitCoordinator',
    # Service
    'ReconciliationService',
    # Router
    'reconciliation_router'
]
