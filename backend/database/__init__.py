from .connection import get_db, engine, AsyncSessionLocal, init_db, Base, build_engine, build_session_factory

# Import ledger models to ensure they are registered with Base
from .ledger_models import (
    BankTransactionDB, MatchingRuleDB, SuppressionRuleDB, ClassificationCodeDB,
    IncomeRecordDB, ExpenseRecordDB, ReconciliationAuditLogDB,
    generate_uuid, utc_now
)

__all__ = [
    'get_db', 'engine', 'AsyncSessionLocal', 'init_db', 'Base',
    'build_engine', 'build_session_factory',
    # Ledger models
    'BankTransactionDB', 'MatchingRuleDB', 'SuppressionRuleDB', 'ClassificationCodeDB',
    'IncomeRecordDB', 'ExpenseRecordDB', 'ReconciliationAuditLogDB',
    'generate_uuid', 'utc_now',
]
