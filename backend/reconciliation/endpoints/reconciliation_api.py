"""
Reconciliation API Endpoints

REST API for the bank reconciliation pipeline:
- POST /api/reconciliation/bank/import - Import parsed statement rows (idempotent)
- POST /api/reconciliation/bank/save - Mark pending rows as saved
- GET /api/reconciliation/bank/transactions - List bank transactions by state
- POST /api/reconciliation/match/auto - Run matching, return drafts / suppressed / review queue
- GET /api/reconciliation/match/review - Current review queue with suggestions
- POST /api/reconciliation/match/review/{transaction_id}/classify - Classify a review item
- POST /api/reconciliation/match/{transaction_id}/reopen - Send a matched row back to pending
- POST /api/reconciliation/match/confirm - Commit drafts and suppressions
- POST /api/reconciliation/match/recover - Resolve interrupted commits
- GET/POST/PATCH/DELETE /api/reconciliation/rules - Matching rule administration
- GET/POST/DELETE /api/reconciliation/suppression-rules - Suppression rule administration
- GET /api/reconciliation/codes - Income/expense code catalog
- GET /api/reconciliation/ledger/{income|expense} - Posted ledger records
- GET /api/reconciliation/stats - Reconciliation statistics
- GET /api/reconciliation/status - Module status

Payloads use camelCase keys. Reconciliation errors are rendered by the
exception handlers registered in server.py.
"""

import logging
from typing import Any, Dict, List, Literal, Optional, Union
from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.ext.asyncio import AsyncSession

from database.connection import get_db
from reconciliation.errors import PartialWriteError
from reconciliation.models import TransactionState
from reconciliation.services.draft_builder import ManualClassification
from reconciliation.services.reconciliation_service import ReconciliationService
from utils.validation_errors import ValidationErrorResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["Reconciliation"])


def camelize(value: Any) -> Any:
    """Recursively convert dict keys to camelCase for responses."""
    if isinstance(value, dict):
        return {to_camel(k) if isinstance(k, str) else k: camelize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [camelize(v) for v in value]
    return value


def get_reconciliation_service(db: AsyncSession = Depends(get_db)) -> ReconciliationService:
    return ReconciliationService(db)


# ==================== Request/Response Models ====================

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class StatementRowIn(CamelModel):
    """One parsed bank-statement row."""
    transaction_date: Optional[str] = Field(default=None, description="거래일 (YYYY-MM-DD, YYYY.MM.DD, ...)")
    value_date: Optional[str] = Field(default=None, description="기준일; defaults to the week-ending Sunday")
    withdrawal: Optional[Union[int, str]] = None
    deposit: Optional[Union[int, str]] = None
    balance: Optional[Union[int, str]] = None
    description: Optional[str] = ""
    detail: Optional[str] = ""
    memo: Optional[str] = ""
    branch: Optional[str] = None
    transaction_time: Optional[str] = Field(default=None, alias="time")


class ImportStatementRequest(CamelModel):
    rows: List[StatementRowIn]
    state: Literal["pending", "saved"] = "pending"
    dry_run: bool = False


class SaveTransactionsRequest(CamelModel):
    transaction_ids: List[str] = Field(..., min_length=1)


class RunMatchingRequest(CamelModel):
    transaction_ids: Optional[List[str]] = Field(default=None, description="Limit the run to these transactions")
    include_matched: bool = Field(default=False, description="Re-evaluate rows already matched")


class ClassifyRequest(CamelModel):
    type: Literal["income", "expense"]
    code: int = Field(..., gt=0)
    name: Optional[str] = None
    donor_name: Optional[str] = None
    vendor: Optional[str] = None
    description: Optional[str] = None
    note: Optional[str] = None
    category_code: Optional[int] = None
    amount: Optional[int] = Field(default=None, gt=0)
    learn: bool = True


class IncomeCommitItem(CamelModel):
    transaction_id: str
    code: int
    name: Optional[str] = None
    donor_name: Optional[str] = None
    amount: Optional[int] = None
    note: Optional[str] = None
    rule_id: Optional[int] = None
    manual: bool = False


class ExpenseCommitItem(CamelModel):
    transaction_id: str
    account_code: int
    category_code: Optional[int] = None
    name: Optional[str] = None
    vendor: Optional[str] = None
    description: Optional[str] = None
    amount: Optional[int] = None
    note: Optional[str] = None
    rule_id: Optional[int] = None
    manual: bool = False


class ConfirmRequest(CamelModel):
    income: List[IncomeCommitItem] = Field(default_factory=list)
    expense: List[ExpenseCommitItem] = Field(default_factory=list)
    suppressed: List[str] = Field(default_factory=list)
    suppressed_reasons: Dict[str, str] = Field(default_factory=dict)


class RecoverRequest(CamelModel):
    older_than_seconds: Optional[int] = Field(default=None, ge=0)


class RuleCreateRequest(CamelModel):
    pattern_type: Literal["exact", "contains", "regex"] = "contains"
    pattern: str = Field(..., min_length=1)
    target_type: Literal["income", "expense"]
    target_code: int = Field(..., gt=0)
    target_name: Optional[str] = None
    priority: int = 100


class RuleUpdateRequest(CamelModel):
    pattern_type: Optional[Literal["exact", "contains", "regex"]] = None
    pattern: Optional[str] = None
    target_type: Optional[Literal["income", "expense"]] = None
    target_code: Optional[int] = Field(default=None, gt=0)
    target_name: Optional[str] = None
    priority: Optional[int] = None
    active: Optional[bool] = None


class SuppressionRuleCreateRequest(CamelModel):
    pattern_type: Literal["exact", "contains", "regex"] = "contains"
    pattern: str = Field(..., min_length=1)
    reason: str = Field(..., min_length=1)
    direction: Literal["any", "deposit", "withdrawal"] = "any"
    priority: int = 100


# ==================== Bank Statement ====================

@router.post("/bank/import")
async def import_statement(
    request: ImportStatementRequest,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """
    Import parsed statement rows.

    Rows whose natural key already exists are skipped, so importing the same
    file twice inserts nothing the second time.
    """
    rows = [row.model_dump() for row in request.rows]
    result = await service.import_statement(
        rows,
        initial_state=TransactionState(request.state),
        dry_run=request.dry_run,
    )
    return camelize({"success": True, **result.to_dict()})


@router.post("/bank/save")
async def save_transactions(
    request: SaveTransactionsRequest,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Mark pending transactions as saved."""
    result = await service.save_transactions(request.transaction_ids)
    return camelize({"success": True, **result})


@router.get("/bank/transactions")
async def list_transactions(
    state: Optional[str] = Query(default=None, description="Filter by state"),
    limit: int = Query(default=500, ge=1, le=5000),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """List bank transactions, optionally by state."""
    states = []
    if state:
        try:
            states = [TransactionState(s.strip()) for s in state.split(",") if s.strip()]
        except ValueError:
            raise HTTPException(
                status_code=422,
                detail=ValidationErrorResponse.invalid_parameter(
                    "state",
                    f"Must be one of: {', '.join(s.value for s in TransactionState)}",
                    state
                )
            )

    transactions = await service.transactions.list_by_state(*states, limit=limit)
    return camelize({
        "transactions": [tx.to_dict() for tx in transactions],
        "count": len(transactions),
    })


# ==================== Matching ====================

@router.post("/match/auto")
async def run_matching(
    request: Optional[RunMatchingRequest] = None,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """
    Run the matching engine.

    Returns income/expense drafts, suppression candidates, the review queue
    and any rules disabled for the run.
    """
    request = request or RunMatchingRequest()
    result = await service.run_matching(
        transaction_ids=request.transaction_ids,
        include_matched=request.include_matched,
    )
    summary = result.summary
    return camelize({
        "success": True,
        "data": result.to_dict(),
        "message": (
            f"수입 {summary['income']}건, 지출 {summary['expense']}건, "
            f"말소 {summary['suppressed']}건, 검토필요 {summary['needs_review']}건"
        ),
    })


@router.get("/match/review")
async def get_review_queue(
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Unmatched withdrawals with up to N suggested rules each."""
    items = await service.list_review_queue()
    return camelize({"items": [i.to_dict() for i in items], "count": len(items)})


@router.post("/match/review/{transaction_id}/classify")
async def classify_review_item(
    transaction_id: str,
    request: ClassifyRequest,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Classify a review item; the row becomes matched and a draft is returned."""
    classification = ManualClassification(
        target_type=request.type,
        code=request.code,
        name=request.name,
        donor_name=request.donor_name,
        vendor=request.vendor,
        description=request.description,
        note=request.note,
        category_code=request.category_code,
        amount=request.amount,
    )
    draft = await service.classify_review_item(transaction_id, classification, learn=request.learn)
    return camelize({"success": True, "draft": draft.to_dict()})


@router.post("/match/{transaction_id}/reopen")
async def reopen_transaction(
    transaction_id: str,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Send a matched transaction back to pending."""
    await service.reopen(transaction_id)
    return camelize({"success": True, "transaction_id": transaction_id, "state": TransactionState.PENDING.value})


@router.post("/match/confirm")
async def confirm_matches(
    request: ConfirmRequest,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """
    Commit approved drafts and suppressions.

    Returns 200 when every post succeeded and 207 when some failed; the body
    lists the exact failed and succeeded transaction ids either way.
    Income and expense succeed independently.
    """
    try:
        result = await service.commit(
            income_items=[i.model_dump() for i in request.income],
            expense_items=[e.model_dump() for e in request.expense],
            suppressed_ids=request.suppressed,
            suppressed_reasons=request.suppressed_reasons,
        )
    except PartialWriteError as e:
        logger.warning(f"Partial commit: {e.message}")
        return JSONResponse(
            status_code=207,
            content=camelize({"success": False, "error": e.error_code, "message": e.message, **e.result.to_dict()}),
        )

    return camelize({"success": True, **result.to_dict()})


@router.post("/match/recover")
async def recover_stale_claims(
    request: Optional[RecoverRequest] = None,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Resolve rows left in the committing state by an interrupted commit."""
    request = request or RecoverRequest()
    recovered = await service.recover_stale_claims(request.older_than_seconds)
    return camelize({"success": True, **recovered})


# ==================== Rules ====================

@router.get("/rules")
async def list_rules(
    target_type: Optional[Literal["income", "expense"]] = Query(default=None, alias="targetType"),
    include_inactive: bool = Query(default=False, alias="includeInactive"),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """List matching rules in evaluation order."""
    rules = await service.rules.list_rules(target_type=target_type, include_inactive=include_inactive)
    return camelize({"rules": [r.to_dict() for r in rules], "count": len(rules)})


@router.post("/rules", status_code=201)
async def create_rule(
    request: RuleCreateRequest,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Create a matching rule. Invalid regular expressions are rejected."""
    rule = await service.rules.create_rule(
        pattern=request.pattern,
        target_type=request.target_type,
        target_code=request.target_code,
        pattern_type=request.pattern_type,
        target_name=request.target_name,
        priority=request.priority,
    )
    return camelize(rule.to_dict())


@router.patch("/rules/{rule_id}")
async def update_rule(
    rule_id: int,
    request: RuleUpdateRequest,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    changes = request.model_dump(exclude_unset=True)
    if not changes:
        raise HTTPException(
            status_code=422,
            detail=ValidationErrorResponse.validation_error("No fields to update")
        )
    rule = await service.rules.update_rule(rule_id, **changes)
    return camelize(rule.to_dict())


@router.delete("/rules/{rule_id}")
async def deactivate_rule(
    rule_id: int,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Deactivate a rule. Rules are never deleted so past drafts stay traceable."""
    if not await service.rules.deactivate_rule(rule_id):
        raise HTTPException(status_code=404, detail=f"Rule {rule_id} not found")
    return {"success": True, "ruleId": rule_id, "active": False}


@router.get("/suppression-rules")
async def list_suppression_rules(
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    rules = await service.rules.list_suppression_rules()
    return camelize({"rules": [r.to_dict() for r in rules], "count": len(rules)})


@router.post("/suppression-rules", status_code=201)
async def create_suppression_rule(
    request: SuppressionRuleCreateRequest,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    rule = await service.rules.create_suppression_rule(
        pattern=request.pattern,
        reason=request.reason,
        pattern_type=request.pattern_type,
        direction=request.direction,
        priority=request.priority,
    )
    return camelize(rule.to_dict())


@router.delete("/suppression-rules/{rule_id}")
async def deactivate_suppression_rule(
    rule_id: int,
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    if not await service.rules.deactivate_suppression_rule(rule_id):
        raise HTTPException(status_code=404, detail=f"Suppression rule {rule_id} not found")
    return {"success": True, "ruleId": rule_id, "active": False}


@router.get("/codes")
async def list_codes(
    code_type: Optional[Literal["income", "expense"]] = Query(default=None, alias="codeType"),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    codes = await service.rules.list_codes(code_type)
    return camelize({"codes": codes, "count": len(codes)})


# ==================== Ledgers & Stats ====================

@router.get("/ledger/{ledger}")
async def list_ledger(
    ledger: Literal["income", "expense"],
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Posted ledger records, newest first."""
    if ledger == "income":
        records = await service.ledger.list_income(limit=limit, offset=offset)
    else:
        records = await service.ledger.list_expense(limit=limit, offset=offset)
    return camelize({"records": records, "count": len(records)})


@router.get("/stats")
async def get_stats(
    service: ReconciliationService = Depends(get_reconciliation_service)
):
    """Transactions by state, ledger totals and reconciliation rate."""
    return camelize(await service.get_stats())


@router.get("/status")
async def get_module_status():
    """Get reconciliation module status."""
    return {
        "module": "reconciliation",
        "status": "operational",
        "version": "1.0.0",
        "features": {
            "idempotent_import": True,
            "rule_matching": True,
            "suppression": True,
            "review_queue": True,
            "rule_learning": True,
            "exactly_once_commit": True,
            "claim_recovery": True,
        },
        "states": [s.value for s in TransactionState],
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
