"""Escrow engine - holds buyer funds until release to the seller or refund to the buyer"""

import uuid
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tractor_settlement.config import Settings, settings as default_settings
from tractor_settlement.domain.exceptions import AuthorizationError, ConflictError, ValidationError
from tractor_settlement.domain.fees import calculate_escrow_fee
from tractor_settlement.domain.models import EscrowStatus, PurchaseStatus, RefundOutcome, VehicleStatus
from tractor_settlement.domain.ports import Notifier, PaymentProvider, VehicleService
from tractor_settlement.domain.transitions import ensure_transition
from tractor_settlement.infrastructure.clients.notifier import notify_quietly
from tractor_settlement.infrastructure.database.models import Escrow, Purchase
from tractor_settlement.infrastructure.database.repositories import (
    REFUND_CLAIM,
    EscrowRepository,
    PurchaseRepository,
)
from tractor_settlement.infrastructure.observability.logging import log_transition
from tractor_settlement.infrastructure.observability.metrics import escrow_transition_counter
from tractor_settlement.services.audit_chain import AuditChain, purchase_stream, vehicle_stream
from tractor_settlement.services.deposits import DepositLedger
from tractor_settlement.services.refunds import attempt_values, refund_under_claim
from tractor_settlement.utils.date_utils import utcnow

# Release is refused while a refund is in flight or its outcome is unknown
REFUND_OUTSTANDING = (REFUND_CLAIM, RefundOutcome.RETRY_NEEDED.value)


class EscrowEngine:
    """
    HELD -> {RELEASED, REFUNDED, DISPUTE}; DISPUTE -> {RELEASED, REFUNDED}.

    Every transition is a compare-and-set on the status read (under a row
    lock) at the start of the call, so of two conflicting calls the first to
    commit wins and the other gets a ConflictError. A refund commits its
    claim before the provider call and only then settles the status.
    """

    def __init__(
        self,
        db: Session,
        provider: PaymentProvider,
        vehicles: VehicleService,
        audit: AuditChain,
        notifier: Notifier,
        deposits: DepositLedger,
        config: Settings | None = None,
    ):
        self.db = db
        self.provider = provider
        self.vehicles = vehicles
        self.audit = audit
        self.notifier = notifier
        self.deposits = deposits
        self.config = config or default_settings
        self.escrows = EscrowRepository(db)
        self.purchases = PurchaseRepository(db)

    def get_escrow(self, escrow_id: uuid.UUID) -> Escrow:
        return self.escrows.get(escrow_id)

    def open_escrow(
        self,
        purchase: Purchase,
        amount: int,
        payment_id: Optional[str],
        payment_method: Optional[str],
        payment_amount: Optional[int],
        now: datetime,
    ) -> Escrow:
        """Create the hold inside the caller's transaction; one per purchase"""
        if amount <= 0:
            raise ValidationError("Escrow amount must be greater than 0")
        if purchase.status == PurchaseStatus.CANCELLED.value:
            raise ValidationError("Purchase is cancelled")
        if self.escrows.find_by_purchase(purchase.id) is not None:
            raise ConflictError("Escrow already exists for this purchase")

        fee = calculate_escrow_fee(
            amount,
            rate=self.config.escrow_fee_rate,
            minimum=self.config.escrow_fee_min,
            maximum=self.config.escrow_fee_max,
        )
        try:
            escrow = self.escrows.create_escrow(
                purchase_id=purchase.id,
                amount=amount,
                escrow_fee=fee,
                status=EscrowStatus.HELD.value,
                payment_id=payment_id,
                payment_method=payment_method or "Razorpay",
                payment_amount=payment_amount if payment_amount is not None else amount,
                held_at=now,
            )
        except IntegrityError as e:
            raise ConflictError("Escrow already exists for this purchase") from e

        self.audit.append(
            purchase_stream(purchase.id),
            "escrow_created",
            escrow.id,
            {"escrow_id": escrow.id, "amount": amount, "escrow_fee": fee, "payment_id": payment_id},
        )
        escrow_transition_counter.labels(status=EscrowStatus.HELD.value).inc()
        return escrow

    async def create_escrow(
        self,
        purchase_id: uuid.UUID,
        amount: int,
        payment_id: Optional[str] = None,
        payment_method: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Escrow:
        """
        Hold `amount` for a purchase. Fee = clamp(2% of amount, 500, 5000).

        Raises:
            NotFoundError: unknown purchase
            ConflictError: the purchase already has an escrow
            ValidationError: non-positive amount or cancelled purchase
        """
        now = now or utcnow()
        try:
            purchase = self.purchases.get(purchase_id, for_update=True)
            escrow = self.open_escrow(purchase, amount, payment_id, payment_method, None, now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        log_transition("escrow_created", escrow_id=escrow.id, purchase_id=purchase_id, amount=amount)
        return escrow

    def _swap(
        self,
        escrow: Escrow,
        expected: EscrowStatus,
        values: Dict[str, Any],
        blocking_markers: Tuple[str, ...] = (REFUND_CLAIM,),
    ) -> None:
        if not self.escrows.compare_and_set(escrow.id, expected.value, values, blocking_markers):
            raise ConflictError("Escrow was modified concurrently; reload and retry")

    def _settle_refund(self, escrow: Escrow, expected: EscrowStatus, values: Dict[str, Any]) -> None:
        if not self.escrows.settle_refund(escrow.id, expected.value, values):
            raise ConflictError("Escrow refund claim was lost")

    async def release(
        self,
        escrow_id: uuid.UUID,
        reason: Optional[str],
        resolved_by: str,
        now: Optional[datetime] = None,
    ) -> Escrow:
        """
        Pay the held funds out to the seller.

        Raises:
            ConflictError: already RELEASED or REFUNDED, a refund is in flight or
                timed out with an unknown outcome, or a concurrent transition won
        """
        now = now or utcnow()
        try:
            escrow = self.escrows.get(escrow_id, for_update=True)
            current = EscrowStatus(escrow.status)
            ensure_transition(current, EscrowStatus.RELEASED, "Escrow")
            if escrow.refund_status in REFUND_OUTSTANDING:
                raise ConflictError(f"Escrow has an outstanding refund ({escrow.refund_status})")

            reason = reason or "Funds released by admin"
            values: Dict[str, Any] = {
                "status": EscrowStatus.RELEASED.value,
                "released_at": now,
                "release_reason": reason,
                "resolved_by": resolved_by,
            }
            if escrow.dispute_raised:
                values["dispute_resolved"] = True
                values["dispute_resolution"] = reason or "Dispute resolved: Funds released"
            self._swap(escrow, current, values, REFUND_OUTSTANDING)

            purchase = self.purchases.get(escrow.purchase_id, for_update=True)
            if purchase.status in (PurchaseStatus.PAYMENT_PENDING.value, PurchaseStatus.PENDING.value):
                purchase.status = PurchaseStatus.COMPLETED.value
            if self.vehicles.get_vehicle(purchase.vehicle_id).status != VehicleStatus.SOLD:
                self.vehicles.set_vehicle_status(purchase.vehicle_id, VehicleStatus.SOLD)
                self.audit.append(vehicle_stream(purchase.vehicle_id), "vehicle_sold", purchase.vehicle_id, {"purchase_id": purchase.id})

            self.audit.append(
                purchase_stream(purchase.id),
                "escrow_released",
                escrow.id,
                {"escrow_id": escrow.id, "from": current.value, "reason": reason, "resolved_by": resolved_by},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        escrow_transition_counter.labels(status=EscrowStatus.RELEASED.value).inc()
        log_transition("escrow_released", escrow_id=escrow_id, resolved_by=resolved_by)
        return escrow

    async def refund(
        self,
        escrow_id: uuid.UUID,
        reason: Optional[str],
        resolved_by: str,
        now: Optional[datetime] = None,
    ) -> Escrow:
        """
        Return the held funds to the buyer, cancel the purchase and put the
        vehicle back on sale. A provider timeout leaves the escrow where it
        was with a RETRY_NEEDED marker.

        The refund is claimed (committed IN_PROGRESS marker) before the
        provider is called. While the claim stands, release, dispute and
        any second refund fail with ConflictError.

        Raises:
            ConflictError: already REFUNDED or RELEASED, or a concurrent transition won
        """
        now = now or utcnow()
        try:
            escrow = self.escrows.get(escrow_id, for_update=True)
            current = EscrowStatus(escrow.status)
            ensure_transition(current, EscrowStatus.REFUNDED, "Escrow")
            if not self.escrows.claim_refund(escrow.id, current.value):
                raise ConflictError("A refund for this escrow is already in progress")
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        reason = reason or "Funds refunded by admin"
        attempt = await refund_under_claim(
            self.db,
            lambda values: self.escrows.settle_refund(escrow_id, current.value, values),
            self.provider,
            escrow.payment_id,
            escrow.payment_amount,
            {"escrow_id": str(escrow.id), "purchase_id": str(escrow.purchase_id), "reason": reason},
        )

        try:
            purchase = self.purchases.get(escrow.purchase_id, for_update=True)
            values = attempt_values(escrow, attempt)
            values["refund_reason"] = reason

            if not attempt.advances_status:
                self._settle_refund(escrow, current, values)
                self.audit.append(
                    purchase_stream(purchase.id),
                    "escrow_refund_pending",
                    escrow.id,
                    {"escrow_id": escrow.id, "outcome": attempt.outcome.value, "reason": reason},
                )
                self.db.commit()
                log_transition("escrow_refund_pending", escrow_id=escrow_id, outcome=attempt.outcome.value)
                return escrow

            values.update(
                {
                    "status": EscrowStatus.REFUNDED.value,
                    "refunded_at": now,
                    "resolved_by": resolved_by,
                }
            )
            if escrow.dispute_raised:
                values["dispute_resolved"] = True
                values["dispute_resolution"] = reason or "Dispute resolved: Funds refunded"
            self._settle_refund(escrow, current, values)

            ensure_transition(PurchaseStatus(purchase.status), PurchaseStatus.CANCELLED, "Purchase")
            purchase.status = PurchaseStatus.CANCELLED.value
            self.vehicles.set_vehicle_status(purchase.vehicle_id, VehicleStatus.APPROVED)

            self.audit.append(
                purchase_stream(purchase.id),
                "escrow_refunded",
                escrow.id,
                {"escrow_id": escrow.id, "from": current.value, "outcome": attempt.outcome.value, "reason": reason, "resolved_by": resolved_by},
            )
            self.audit.append(vehicle_stream(purchase.vehicle_id), "vehicle_relisted", purchase.vehicle_id, {"purchase_id": purchase.id})
            auction_id, buyer_id, emd_applied = purchase.auction_id, purchase.buyer_id, purchase.emd_applied
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        escrow_transition_counter.labels(status=EscrowStatus.REFUNDED.value).inc()
        log_transition("escrow_refunded", escrow_id=escrow_id, outcome=attempt.outcome.value, resolved_by=resolved_by)

        if emd_applied and auction_id is not None:
            await self.deposits.refund_applied_deposit(auction_id, buyer_id, f"Purchase cancelled: {reason}", now=now)
        return escrow

    async def raise_dispute(
        self,
        escrow_id: uuid.UUID,
        raised_by: str,
        description: str,
        now: Optional[datetime] = None,
    ) -> Escrow:
        """
        Freeze a HELD escrow pending admin resolution.

        Raises:
            ValidationError: escrow is not HELD, or empty description
            AuthorizationError: caller is neither the buyer nor the seller
        """
        now = now or utcnow()
        try:
            if not description or not description.strip():
                raise ValidationError("Dispute description is required")

            escrow = self.escrows.get(escrow_id, for_update=True)
            if escrow.status != EscrowStatus.HELD.value:
                raise ValidationError(f"Dispute cannot be raised. Current status: {escrow.status}")

            purchase = self.purchases.get(escrow.purchase_id)
            seller_id = self.vehicles.get_vehicle(purchase.vehicle_id).seller_id
            if raised_by not in (purchase.buyer_id, seller_id):
                raise AuthorizationError("Only buyer or seller can raise disputes")

            self._swap(
                escrow,
                EscrowStatus.HELD,
                {
                    "status": EscrowStatus.DISPUTE.value,
                    "dispute_raised": True,
                    "dispute_raised_by": raised_by,
                    "dispute_description": description,
                    "dispute_raised_at": now,
                },
            )
            self.audit.append(
                purchase_stream(purchase.id),
                "escrow_disputed",
                escrow.id,
                {"escrow_id": escrow.id, "raised_by": raised_by, "description": description},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        escrow_transition_counter.labels(status=EscrowStatus.DISPUTE.value).inc()
        log_transition("escrow_disputed", escrow_id=escrow_id, raised_by=raised_by)
        await notify_quietly(
            self.notifier,
            "escrow.disputed",
            {"escrow_id": str(escrow_id), "purchase_id": str(purchase.id), "raised_by": raised_by},
        )
        return escrow
