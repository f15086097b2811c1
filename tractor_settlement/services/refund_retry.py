"""Out-of-band sweep over refunds the provider refused or timed out on"""

import logging
import uuid
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from tractor_settlement.domain.exceptions import ConflictError, DomainException
from tractor_settlement.domain.models import DepositStatus, EscrowStatus, RefundOutcome, RetryReport
from tractor_settlement.domain.ports import PaymentProvider
from tractor_settlement.infrastructure.database.repositories import (
    RETRYABLE_REFUND_MARKERS,
    DepositRepository,
    EscrowRepository,
)
from tractor_settlement.infrastructure.observability.logging import log_transition
from tractor_settlement.services.deposits import DepositLedger
from tractor_settlement.services.escrow import EscrowEngine
from tractor_settlement.services.refunds import attempt_values, refund_under_claim

RETRY_ACTOR = "refund-retry"


class RefundRetrier:
    """
    Two kinds of stuck refund:

    - RETRY_NEEDED: the provider timed out, the record never left its status.
      The full transition is rerun through the owning ledger.
    - REFUND_FAILED: the record is already REFUNDED but the money did not move.
      Only the provider call is repeated.
    """

    def __init__(
        self,
        db: Session,
        provider: PaymentProvider,
        deposits: DepositLedger,
        escrow: EscrowEngine,
    ):
        self.db = db
        self.provider = provider
        self.deposits = deposits
        self.escrow = escrow
        self.deposit_rows = DepositRepository(db)
        self.escrow_rows = EscrowRepository(db)

    async def retry_failed_refunds(self) -> RetryReport:
        """
        Rows claimed by an overlapping sweep (or a live refund call) are
        skipped; each stuck refund reaches the provider at most once per round.
        """
        report = RetryReport()

        for deposit_id in [d.id for d in self.deposit_rows.list_needing_refund_retry()]:
            try:
                ok = await self._retry_deposit(deposit_id)
            except ConflictError as e:
                logging.info(f"Deposit refund retry skipped: {e}", extra={"deposit_id": str(deposit_id)})
                continue
            except DomainException as e:
                logging.error(f"Deposit refund retry failed: {e}", extra={"deposit_id": str(deposit_id)})
                ok = False
            (report.refunded if ok else report.still_failing).append(deposit_id)

        for escrow_id in [e.id for e in self.escrow_rows.list_needing_refund_retry()]:
            try:
                ok = await self._retry_escrow(escrow_id)
            except ConflictError as e:
                logging.info(f"Escrow refund retry skipped: {e}", extra={"escrow_id": str(escrow_id)})
                continue
            except DomainException as e:
                logging.error(f"Escrow refund retry failed: {e}", extra={"escrow_id": str(escrow_id)})
                ok = False
            (report.refunded if ok else report.still_failing).append(escrow_id)

        log_transition("refund_retry", refunded=len(report.refunded), still_failing=len(report.still_failing))
        return report

    async def _retry_deposit(self, deposit_id: uuid.UUID) -> bool:
        deposit = self.deposit_rows.get(deposit_id, for_update=True)
        if deposit.status != DepositStatus.REFUNDED.value:
            result = await self.deposits.refund_deposit(deposit_id, deposit.refund_reason or "Refund retry")
            return result.outcome.value not in RETRYABLE_REFUND_MARKERS

        return await self._repeat_provider_refund(
            deposit,
            claim=lambda: self.deposit_rows.claim_refund(deposit_id, DepositStatus.REFUNDED.value, RETRYABLE_REFUND_MARKERS),
            settle=lambda values: self.deposit_rows.settle_refund(deposit_id, values),
            amount=deposit.amount,
            notes={"emd_id": str(deposit.id), "auction_id": str(deposit.auction_id), "reason": "Refund retry"},
        )

    async def _retry_escrow(self, escrow_id: uuid.UUID) -> bool:
        escrow = self.escrow_rows.get(escrow_id, for_update=True)
        if escrow.status != EscrowStatus.REFUNDED.value:
            escrow = await self.escrow.refund(escrow_id, escrow.refund_reason, escrow.resolved_by or RETRY_ACTOR)
            return escrow.refund_status not in RETRYABLE_REFUND_MARKERS

        refunded = EscrowStatus.REFUNDED.value
        return await self._repeat_provider_refund(
            escrow,
            claim=lambda: self.escrow_rows.claim_refund(escrow_id, refunded, RETRYABLE_REFUND_MARKERS),
            settle=lambda values: self.escrow_rows.settle_refund(escrow_id, refunded, values),
            amount=escrow.payment_amount,
            notes={"escrow_id": str(escrow.id), "purchase_id": str(escrow.purchase_id), "reason": "Refund retry"},
        )

    async def _repeat_provider_refund(
        self,
        row,
        claim: Callable[[], bool],
        settle: Callable[[Dict[str, Any]], bool],
        amount: Optional[int],
        notes: Dict[str, str],
    ) -> bool:
        """
        Status already reads REFUNDED; only the money movement is outstanding.
        The row's marker is re-checked by the claim after the lock is taken.

        Raises:
            ConflictError: another sweep claimed the row first
        """
        try:
            if not claim():
                raise ConflictError("Refund is already being retried")
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        attempt = await refund_under_claim(self.db, settle, self.provider, row.payment_id, amount or 0, notes)
        try:
            settle(attempt_values(row, attempt))
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return attempt.outcome in (RefundOutcome.REFUNDED, RefundOutcome.SKIPPED)
