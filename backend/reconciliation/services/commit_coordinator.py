"""
Commit Coordinator

Posts approved drafts to the permanent ledgers exactly once.

The ledgers have no multi-row transactions and no uniqueness guarantee, so
every draft goes through its own claim/post/finalize sequence on the bank
transaction's state:

    matched --claim--> committing --post ledger record--> --finalize--> confirmed
                            |
                       post failed --release--> matched (retryable)

A failed claim means another commit got there first: the draft is dropped
and reported as already processed, never posted twice. A crash between the
post and finalize leaves the row in ``committing``; recover_stale_claims()
resolves it by checking the ledger. A claim always checks the ledger before
posting, so a record left behind by an earlier attempt is confirmed rather
than posted a second time.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional, Union

from database.ledger_models import utc_now
from reconciliation.errors import (
    AlreadyConfirmedError,
    ConflictError,
    PartialWriteError,
    ValidationError,
)
from reconciliation.models import (
    CommitResult,
    ExpenseDraft,
    IncomeDraft,
    SuppressionReason,
    TargetType,
    TransactionState,
)
from reconciliation.services.ledger_store import LedgerStore
from reconciliation.services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)

Draft = Union[IncomeDraft, ExpenseDraft]

SUPPRESSIBLE_STATES = (TransactionState.PENDING, TransactionState.SAVED, TransactionState.MATCHED)
NOT_YET_MATCHED = {TransactionState.PENDING.value, TransactionState.SAVED.value}


def validate_draft(draft: Draft) -> None:
    """
    Raises:
        ValidationError: the draft cannot be posted
    """
    if not draft.transaction_id:
        raise ValidationError("Draft has no source transaction", parameter="transaction_id")
    if not isinstance(draft.amount, int) or draft.amount <= 0:
        raise ValidationError("Amount must be a positive whole number of won",
                              transaction_id=draft.transaction_id, parameter="amount")
    code = draft.code if isinstance(draft, IncomeDraft) else draft.account_code
    if not isinstance(code, int) or code <= 0:
        raise ValidationError("Classification code must be positive",
                              transaction_id=draft.transaction_id, parameter="code")
    if draft.date is None:
        raise ValidationError("Draft has no posting date", transaction_id=draft.transaction_id, parameter="date")


class CommitCoordinator:
    """Exactly-once posting of drafts and finalisation of suppressions."""

    def __init__(self, transactions: TransactionStore, ledger: LedgerStore, stale_claim_seconds: int = 300):
        self.transactions = transactions
        self.ledger = ledger
        self.stale_claim_seconds = stale_claim_seconds

    async def commit(
        self,
        income_drafts: Iterable[IncomeDraft] = (),
        expense_drafts: Iterable[ExpenseDraft] = (),
        suppressed_ids: Iterable[str] = (),
        suppressed_reasons: Optional[Dict[str, str]] = None,
    ) -> CommitResult:
        """
        Commit one batch.

        Raises:
            PartialWriteError: at least one ledger post failed; carries the CommitResult
        """
        drafts: List[Draft] = [*income_drafts, *expense_drafts]
        for draft in drafts:
            draft.freeze()

        result = CommitResult()

        for draft in drafts:
            await self._commit_draft(draft, result)

        for transaction_id in dict.fromkeys(suppressed_ids):
            await self._suppress(transaction_id, (suppressed_reasons or {}).get(transaction_id), result)

        logger.info(
            f"Commit finished: income {result.income_count}, expense {result.expense_count}, "
            f"suppressed {result.suppressed_count}, failed {len(result.failed)}, "
            f"already processed {len(result.already_processed_ids)}",
            extra={"commit": {k: v for k, v in result.to_dict().items() if k != "failed"}}
        )

        if result.failed:
            raise PartialWriteError(
                f"{len(result.failed)} of {len(drafts)} drafts could not be posted",
                result=result,
            )
        return result

    async def _commit_draft(self, draft: Draft, result: CommitResult) -> None:
        transaction_id = draft.transaction_id
        ledger = draft.target_type.value

        try:
            validate_draft(draft)
        except ValidationError as e:
            logger.warning(f"Rejected draft for {transaction_id}: {e.message}")
            result.rejected.append({"transaction_id": transaction_id, **e.to_dict()})
            return

        # Claim
        try:
            await self.transactions.transition_state(
                transaction_id,
                TransactionState.MATCHED,
                TransactionState.COMMITTING,
                claimed_at=utc_now(),
            )
        except ConflictError as e:
            if e.current_state in NOT_YET_MATCHED or e.current_state is None:
                result.rejected.append({"transaction_id": transaction_id, **e.to_dict()})
                return
            self._already_processed(transaction_id, e.current_state, result)
            return

        # A record posted by an earlier, unfinished commit is confirmed, not posted again
        posted = await self.ledger.find_for_transaction(transaction_id)
        if posted:
            posted_ledger, posted_record_id = posted
            logger.warning(f"Transaction {transaction_id} already has {posted_ledger.value} record {posted_record_id}")
            try:
                await self._finalize(transaction_id, posted_ledger.value, posted_record_id)
            except ConflictError as e:
                logger.warning(f"Transaction {transaction_id} was resolved concurrently ({e.current_state})")
            self._already_processed(transaction_id, TransactionState.CONFIRMED.value, result)
            return

        # Post
        try:
            record_id = await self.ledger.post(draft)
        except Exception as e:
            logger.error(f"Posting {ledger} record for {transaction_id} failed: {e}")
            result.failed.append({"transaction_id": transaction_id, "ledger": ledger, "error": str(e)})
            await self._release(transaction_id)
            return

        # Finalize
        try:
            await self._finalize(transaction_id, ledger, record_id)
        except ConflictError as e:
            if not await self._reclaim_posted(transaction_id, ledger, record_id, e.current_state):
                result.failed.append({
                    "transaction_id": transaction_id,
                    "ledger": ledger,
                    "error": f"posted as {record_id} but the row moved to {e.current_state}",
                })
                return
        except Exception as e:
            # Posted but not finalized: the claim stays so recovery confirms it
            logger.error(f"Finalizing {transaction_id} failed after posting {record_id}: {e}")
            result.failed.append({
                "transaction_id": transaction_id,
                "ledger": ledger,
                "error": f"posted as {record_id} but not confirmed: {e}",
            })
            return

        result.succeeded_ids.append(transaction_id)
        if draft.target_type == TargetType.INCOME:
            result.income_count += 1
            result.income_total += draft.amount
        else:
            result.expense_count += 1
            result.expense_total += draft.amount

    async def _finalize(self, transaction_id: str, ledger: str, record_id: str) -> None:
        await self.transactions.transition_state(
            transaction_id,
            TransactionState.COMMITTING,
            TransactionState.CONFIRMED,
            matched_type=ledger,
            matched_record_id=record_id,
            claimed_at=None,
        )

    async def _reclaim_posted(self, transaction_id: str, ledger: str, record_id: str, current_state: Optional[str]) -> bool:
        """
        Confirm a posted record whose claim was taken away before finalize.

        A row released back to ``matched`` is claimed again and confirmed
        with the record just posted. A row already confirmed with that
        record needs nothing more. Anything else is left for an operator.
        """
        logger.warning(f"Transaction {transaction_id} was resolved concurrently ({current_state}) after posting {record_id}")

        if current_state == TransactionState.CONFIRMED.value:
            tx = await self.transactions.get(transaction_id)
            return tx is not None and tx.matched_record_id == record_id

        if current_state != TransactionState.MATCHED.value:
            return False

        try:
            await self.transactions.transition_state(
                transaction_id,
                TransactionState.MATCHED,
                TransactionState.COMMITTING,
                claimed_at=utc_now(),
            )
            await self._finalize(transaction_id, ledger, record_id)
        except ConflictError as e:
            logger.error(f"Could not confirm {transaction_id} with posted record {record_id}: {e.message}")
            return False
        return True

    @staticmethod
    def _already_processed(transaction_id: str, current_state: Optional[str], result: CommitResult) -> None:
        duplicate = AlreadyConfirmedError(
            f"Transaction {transaction_id} was already processed ({current_state})",
            transaction_id=transaction_id,
            current_state=current_state,
        )
        logger.info(duplicate.message, extra={"conflict": duplicate.to_dict()})
        result.already_processed_ids.append(transaction_id)
        result.already_processed.append(duplicate.to_dict())

    async def _release(self, transaction_id: str) -> None:
        try:
            await self.transactions.transition_state(
                transaction_id,
                TransactionState.COMMITTING,
                TransactionState.MATCHED,
                claimed_at=None,
            )
        except Exception as e:
            logger.error(f"Could not release claim on {transaction_id}, left for recovery: {e}")

    async def _suppress(self, transaction_id: str, reason: Optional[str], result: CommitResult) -> None:
        tx = await self.transactions.get(transaction_id)
        if tx is None:
            result.rejected.append({
                "transaction_id": transaction_id,
                "error": "not_found",
                "message": f"Transaction {transaction_id} not found",
            })
            return

        try:
            await self.transactions.transition_state(
                transaction_id,
                SUPPRESSIBLE_STATES,
                TransactionState.SUPPRESSED,
                suppressed_reason=reason or tx.suppressed_reason or SuppressionReason.MANUAL,
            )
        except ConflictError as e:
            logger.info(f"Suppression of {transaction_id} skipped: {e.message}")
            self._already_processed(transaction_id, e.current_state, result)
            return
        except Exception as e:
            logger.error(f"Suppressing {transaction_id} failed: {e}")
            result.failed.append({"transaction_id": transaction_id, "ledger": "suppression", "error": str(e)})
            return

        result.suppressed_count += 1
        result.succeeded_ids.append(transaction_id)

    async def recover_stale_claims(self, older_than_seconds: Optional[int] = None) -> Dict[str, List[str]]:
        """
        Resolve rows left in ``committing`` by an interrupted commit.

        Posted rows are confirmed; unposted rows are released to ``matched``.
        Claims younger than ``stale_claim_seconds`` belong to a commit that may
        still be posting and are never touched, whatever age is requested.
        """
        age = max(older_than_seconds or 0, self.stale_claim_seconds)
        if older_than_seconds is not None and older_than_seconds < self.stale_claim_seconds:
            logger.info(f"Recovery age {older_than_seconds}s raised to {self.stale_claim_seconds}s")
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=age)
        recovered = {"confirmed": [], "released": [], "conflicts": []}

        for tx in await self.transactions.list_claimed_before(cutoff):
            posted = await self.ledger.find_for_transaction(tx.id)
            try:
                if posted:
                    ledger, record_id = posted
                    await self.transactions.transition_state(
                        tx.id,
                        TransactionState.COMMITTING,
                        TransactionState.CONFIRMED,
                        matched_type=ledger.value,
                        matched_record_id=record_id,
                        claimed_at=None,
                    )
                    recovered["confirmed"].append(tx.id)
                else:
                    await self.transactions.transition_state(
                        tx.id,
                        TransactionState.COMMITTING,
                        TransactionState.MATCHED,
                        claimed_at=None,
                    )
                    recovered["released"].append(tx.id)
            except ConflictError:
                recovered["conflicts"].append(tx.id)

        if any(recovered.values()):
            logger.warning(f"Recovered stale claims: {recovered}")
        return recovered
