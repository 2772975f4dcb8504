"""
Church Finance Core - Ledger Database Models

Tables:
- bank_transactions: Imported bank-statement rows and their reconciliation state
- matching_rules: Classification rules (data, evaluated in priority order)
- suppression_rules: Configured suppression predicates
- classification_codes: Income/expense code catalog
- income_records / expense_records: Permanent ledgers
- reconciliation_audit_log: Append-only trail of runs, commits and classifications

No unique constraint guards the ledgers against double posting;
the reconciliation pipeline enforces exactly-once through state transitions.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Column, String, Text, Integer, BigInteger, Boolean, Date, DateTime,
    Index, JSON, UniqueConstraint
)

from database.connection import Base


def generate_uuid() -> str:
    return str(uuid.uuid4())


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ==================== BANK STATEMENT ====================

class BankTransactionDB(Base):
    """
    One bank-statement row.

    The primary key is the natural key derived from the row content, so
    re-importing a statement never creates a second row.
    """
    __tablename__ = "bank_transactions"

    id = Column(String(64), primary_key=True)

    transaction_date = Column(Date, nullable=False, index=True)
    value_date = Column(Date, nullable=False)
    transaction_time = Column(String(16), nullable=True)

    # Won amounts; exactly one of withdrawal/deposit is non-zero for a real row
    withdrawal = Column(BigInteger, nullable=False, default=0)
    deposit = Column(BigInteger, nullable=False, default=0)
    balance = Column(BigInteger, nullable=True)

    description = Column(Text, nullable=False, default="")
    detail = Column(Text, nullable=False, default="")
    memo = Column(Text, nullable=False, default="")
    branch = Column(String(100), nullable=True)

    # Reconciliation workflow
    state = Column(String(20), nullable=False, default="pending", index=True)
    suppressed_reason = Column(String(100), nullable=True)
    matched_type = Column(String(20), nullable=True)
    matched_record_id = Column(String(64), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)

    uploaded_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('idx_bank_tx_state_date', 'state', 'transaction_date'),
    )


# ==================== RULES ====================

class MatchingRuleDB(Base):
    """
    Classification rule. Evaluated by ascending priority; equal priorities
    keep insertion order (the auto-increment id).
    """
    __tablename__ = "matching_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pattern_type = Column(String(16), nullable=False, default="contains")
    pattern = Column(Text, nullable=False)
    target_type = Column(String(16), nullable=False)
    target_code = Column(Integer, nullable=False)
    target_name = Column(String(100), nullable=True)
    priority = Column(Integer, nullable=False, default=100)
    active = Column(Boolean, nullable=False, default=True)
    usage_count = Column(Integer, nullable=False, default=0)
    learned = Column(Boolean, nullable=False, default=False)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    updated_at = Column(DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    __table_args__ = (
        Index('idx_matching_rules_type_priority', 'target_type', 'priority'),
    )


class SuppressionRuleDB(Base):
    """Configured suppression predicate, evaluated after the built-in ones."""
    __tablename__ = "suppression_rules"

    id = Column(Integer, primary_key=True, autoincrement=True)
    pattern_type = Column(String(16), nullable=False, default="contains")
    pattern = Column(Text, nullable=False)
    reason = Column(String(100), nullable=False)
    direction = Column(String(16), nullable=False, default="any")
    priority = Column(Integer, nullable=False, default=100)
    active = Column(Boolean, nullable=False, default=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)


class ClassificationCodeDB(Base):
    """Income (offering) and expense (account) code catalog."""
    __tablename__ = "classification_codes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    code_type = Column(String(16), nullable=False)
    code = Column(Integer, nullable=False)
    name = Column(String(100), nullable=False)
    category_code = Column(Integer, nullable=True)
    category_name = Column(String(100), nullable=True)
    active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint('code_type', 'code', name='uq_classification_code'),
    )


# ==================== LEDGERS ====================

class IncomeRecordDB(Base):
    """Permanent income (offering) ledger row."""
    __tablename__ = "income_records"

    id = Column(String(40), primary_key=True)
    date = Column(Date, nullable=False, index=True)
    transaction_date = Column(Date, nullable=True)
    source = Column(String(32), nullable=False, default="계좌이체")
    offering_code = Column(Integer, nullable=False, index=True)
    donor_name = Column(String(200), nullable=False, default="")
    representative = Column(String(200), nullable=False, default="")
    amount = Column(BigInteger, nullable=False)
    note = Column(Text, nullable=False, default="")
    input_method = Column(String(32), nullable=False, default="은행원장")
    source_transaction_id = Column(String(64), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    created_by = Column(String(64), nullable=False, default="auto_matcher")


class ExpenseRecordDB(Base):
    """Permanent expense ledger row."""
    __tablename__ = "expense_records"

    id = Column(String(40), primary_key=True)
    date = Column(Date, nullable=False, index=True)
    transaction_date = Column(Date, nullable=True)
    payment_method = Column(String(32), nullable=False, default="계좌이체")
    vendor = Column(String(200), nullable=False, default="")
    description = Column(Text, nullable=False, default="")
    amount = Column(BigInteger, nullable=False)
    account_code = Column(Integer, nullable=False, index=True)
    category_code = Column(Integer, nullable=False)
    note = Column(Text, nullable=False, default="")
    source_transaction_id = Column(String(64), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=utc_now)
    created_by = Column(String(64), nullable=False, default="auto_matcher")


# ==================== AUDIT ====================

class ReconciliationAuditLogDB(Base):
    """Append-only audit trail for reconciliation actions."""
    __tablename__ = "reconciliation_audit_log"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    run_id = Column(String(36), nullable=True, index=True)
    action = Column(String(64), nullable=False, index=True)
    actor = Column(String(64), nullable=False, default="system")
    transaction_id = Column(String(64), nullable=True, index=True)
    details = Column(JSON, nullable=True)

    created_at = Column(DateTime(timezone=True), default=utc_now, index=True)
