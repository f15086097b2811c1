"""Provider refunds classified into outcomes instead of exceptions"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from tractor_settlement.domain.exceptions import ExternalGatewayError, GatewayTimeoutError
from tractor_settlement.domain.models import RefundOutcome
from tractor_settlement.domain.ports import PaymentProvider


@dataclass
class RefundAttempt:
    outcome: RefundOutcome
    refund_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def advances_status(self) -> bool:
        """Everything except a timeout lets the deposit/escrow move to REFUNDED"""
        return self.outcome != RefundOutcome.RETRY_NEEDED


async def attempt_refund(
    provider: PaymentProvider,
    payment_id: Optional[str],
    amount: int,
    notes: Optional[Dict[str, str]] = None,
) -> RefundAttempt:
    """
    Ask the provider to return funds.

    - no payment reference  -> SKIPPED (nothing was ever captured)
    - provider refused      -> REFUND_FAILED (status advances, retried later)
    - provider timed out    -> RETRY_NEEDED (outcome unknown, status stays)
    """
    if not payment_id:
        return RefundAttempt(outcome=RefundOutcome.SKIPPED)

    try:
        refund_id = await provider.refund(payment_id, amount, notes)
        return RefundAttempt(outcome=RefundOutcome.REFUNDED, refund_id=refund_id)
    except GatewayTimeoutError as e:
        logging.warning(f"Refund timed out: {e}", extra={"payment_id": payment_id})
        return RefundAttempt(outcome=RefundOutcome.RETRY_NEEDED, error=str(e))
    except ExternalGatewayError as e:
        logging.warning(f"Refund failed: {e}", extra={"payment_id": payment_id})
        return RefundAttempt(outcome=RefundOutcome.REFUND_FAILED, error=str(e))


async def refund_under_claim(
    db: Session,
    settle: Callable[[Dict[str, Any]], bool],
    provider: PaymentProvider,
    payment_id: Optional[str],
    amount: int,
    notes: Optional[Dict[str, str]] = None,
) -> RefundAttempt:
    """
    Provider refund for a row whose refund claim is already committed.

    Any error other than the classified provider ones leaves the row marked
    RETRY_NEEDED before it propagates: the money may or may not have moved.
    """
    try:
        return await attempt_refund(provider, payment_id, amount, notes)
    except Exception as e:
        try:
            settle({"refund_status": RefundOutcome.RETRY_NEEDED.value, "refund_error": str(e)})
            db.commit()
        except Exception:
            db.rollback()
            raise
        raise


def attempt_values(row, attempt: RefundAttempt) -> Dict[str, Any]:
    """Refund bookkeeping shared by deposits and escrows"""
    values: Dict[str, Any] = {
        "refund_attempts": (row.refund_attempts or 0) + 1,
        "refund_status": attempt.outcome.value,
        "refund_error": attempt.error,
    }
    if attempt.refund_id:
        values["refund_id"] = attempt.refund_id
    return values
