"""
Reconciliation error taxonomy.

Every error carries a machine-readable ``error_code`` and renders to the
same structured body as the API's validation errors:

    {"error": "<code>", "message": "...", "details": {...}}

HTTP mapping (see server.py):
- ValidationError    -> 422
- ConflictError      -> 409
- PartialWriteError  -> 207
- FatalConfigError   -> 503
"""

from typing import Any, Dict, List, Optional


class ReconciliationError(Exception):
    """Base class for reconciliation failures."""
    error_code = "reconciliation_error"
    status_code = 400

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        body = {"error": self.error_code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


# ==================== VALIDATION ====================

class ValidationError(ReconciliationError):
    """Malformed row or draft. Rejected before it enters the pipeline."""
    error_code = "validation_error"
    status_code = 422

    def __init__(
        self,
        message: str,
        transaction_id: Optional[str] = None,
        parameter: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = dict(details or {})
        if transaction_id is not None:
            details["transaction_id"] = transaction_id
        if parameter is not None:
            details["parameter"] = parameter
        super().__init__(message, details)
        self.transaction_id = transaction_id
        self.parameter = parameter


class StatementImportError(ValidationError):
    """A statement row that cannot be imported (missing date, no amount)."""
    error_code = "invalid_statement_row"

    def __init__(self, message: str, row_index: Optional[int] = None, parameter: Optional[str] = None):
        super().__init__(message, parameter=parameter, details={"row_index": row_index})
        self.row_index = row_index


class FrozenDraftError(ValidationError):
    """A draft was edited after being handed to the commit coordinator."""
    error_code = "draft_frozen"


# ==================== CONFLICTS ====================

class ConflictError(ReconciliationError):
    """Compare-and-set failed: the row is not in the expected state."""
    error_code = "state_conflict"
    status_code = 409

    def __init__(
        self,
        message: str,
        transaction_id: Optional[str] = None,
        current_state: Optional[str] = None
    ):
        super().__init__(message, {
            "transaction_id": transaction_id,
            "current_state": current_state,
        })
        self.transaction_id = transaction_id
        self.current_state = current_state


class AlreadyConfirmedError(ConflictError):
    """The row was already claimed or confirmed by another commit."""
    error_code = "already_processed"


# ==================== RULES ====================

class RuleError(ReconciliationError):
    """A single rule is invalid. It is disabled for the run, not fatal."""
    error_code = "invalid_rule"
    status_code = 422

    def __init__(self, message: str, rule_id: Optional[int] = None, pattern: Optional[str] = None):
        super().__init__(message, {"rule_id": rule_id, "pattern": pattern})
        self.rule_id = rule_id
        self.pattern = pattern


# ==================== COMMIT ====================

class PartialWriteError(ReconciliationError):
    """
    Some ledger posts failed mid-commit.

    ``result`` is the CommitResult of the batch; its succeeded and failed
    transaction ids are exact, so the caller can retry the failed ones.
    """
    error_code = "partial_write"
    status_code = 207

    def __init__(self, message: str, result: Any = None):
        self.result = result
        self.failed_ids: List[str] = list(getattr(result, "failed_ids", []))
        self.succeeded_ids: List[str] = list(getattr(result, "succeeded_ids", []))
        super().__init__(message, {
            "failed_transaction_ids": self.failed_ids,
            "succeeded_transaction_ids": self.succeeded_ids,
        })


class FatalConfigError(ReconciliationError):
    """Rule or configuration store unreachable; the run aborts untouched."""
    error_code = "rule_store_unavailable"
    status_code = 503
