"""Deposit ledger - earnest-money deposits that gate bidding"""

import uuid
from datetime import datetime
from typing import List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from tractor_settlement.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    DomainException,
    ValidationError,
)
from tractor_settlement.domain.models import (
    AuctionStatus,
    DepositRefundResult,
    DepositStatus,
    GatewayOrder,
    PaymentCallback,
    PaymentPurpose,
    RefundBatchResult,
    RefundOutcome,
)
from tractor_settlement.domain.ports import Notifier, PaymentProvider, VehicleService
from tractor_settlement.domain.transitions import ensure_transition
from tractor_settlement.infrastructure.clients.notifier import notify_quietly
from tractor_settlement.infrastructure.database.models import Auction, EarnestMoneyDeposit
from tractor_settlement.infrastructure.database.repositories import AuctionRepository, DepositRepository
from tractor_settlement.infrastructure.observability.logging import log_transition
from tractor_settlement.infrastructure.observability.metrics import deposit_refund_counter
from tractor_settlement.services.audit_chain import AuditChain, auction_stream
from tractor_settlement.services.reconciliation import PaymentReconciler
from tractor_settlement.services.refunds import attempt_values, refund_under_claim
from tractor_settlement.utils.date_utils import utcnow


class DepositLedger:
    """Per-bidder, per-auction EMD lifecycle: PENDING -> PAID -> REFUNDED"""

    def __init__(
        self,
        db: Session,
        reconciler: PaymentReconciler,
        provider: PaymentProvider,
        vehicles: VehicleService,
        audit: AuditChain,
        notifier: Notifier,
    ):
        self.db = db
        self.reconciler = reconciler
        self.provider = provider
        self.vehicles = vehicles
        self.audit = audit
        self.notifier = notifier
        self.auctions = AuctionRepository(db)
        self.deposits = DepositRepository(db)

    def get_deposit(self, auction_id: uuid.UUID, bidder_id: str) -> Optional[EarnestMoneyDeposit]:
        return self.deposits.find_for_bidder(auction_id, bidder_id)

    def has_paid_deposit(self, auction_id: uuid.UUID, bidder_id: str) -> bool:
        deposit = self.deposits.find_for_bidder(auction_id, bidder_id)
        return deposit is not None and deposit.status == DepositStatus.PAID.value

    async def request_deposit(
        self,
        auction_id: uuid.UUID,
        bidder_id: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> Tuple[EarnestMoneyDeposit, GatewayOrder]:
        """
        Create (or reopen) a PENDING deposit and open a provider order for it.

        When the provider settles the order on the spot (test mode) the deposit
        is PAID before this returns.

        Raises:
            NotFoundError: unknown auction
            ValidationError: auction ended or amount differs from the auction's EMD
            AuthorizationError: the seller tried to join their own auction
            ConflictError: deposit already paid or already refunded
            ExternalGatewayError: the provider could not open the order
        """
        now = now or utcnow()
        try:
            auction = self.auctions.get(auction_id)
            if auction.status == AuctionStatus.ENDED.value:
                raise ValidationError("Auction has already ended")
            if amount <= 0 or amount != auction.emd_amount:
                raise ValidationError(f"Deposit for this auction must be exactly {auction.emd_amount}")
            if self.vehicles.get_vehicle(auction.vehicle_id).seller_id == bidder_id:
                raise AuthorizationError("Sellers cannot bid on their own vehicle")

            deposit = self.deposits.find_for_bidder(auction_id, bidder_id)
            if deposit is None:
                deposit = self.deposits.create_deposit(auction_id, bidder_id, amount)
            elif deposit.status == DepositStatus.PAID.value:
                raise ConflictError("EMD already paid")
            elif deposit.status == DepositStatus.REFUNDED.value:
                raise ConflictError("EMD was refunded and cannot be reopened")
            else:
                deposit.amount = amount

            order, order_row = await self.reconciler.open_order(
                PaymentPurpose.DEPOSIT,
                deposit.id,
                amount,
                receipt=f"EMD-{bidder_id[:8]}-{deposit.id.hex[:6]}",
                notes={"emd_id": str(deposit.id), "auction_id": str(auction_id), "bidder_id": bidder_id, "type": "EMD"},
            )
            deposit.order_id = order.order_id
            self.audit.append(
                auction_stream(auction_id),
                "deposit_requested",
                deposit.id,
                {"deposit_id": deposit.id, "bidder_id": bidder_id, "amount": amount, "order_id": order.order_id},
            )

            if order.payment_id:
                self._mark_paid(deposit, order.payment_id, "Test Mode", now)
                self.reconciler.mark_settled(order_row, order.payment_id, now)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        log_transition("deposit_requested", deposit_id=deposit.id, auction_id=auction_id, order_id=order.order_id)
        return deposit, order

    async def confirm_deposit(
        self,
        deposit_id: uuid.UUID,
        callback: PaymentCallback,
        now: Optional[datetime] = None,
    ) -> Tuple[EarnestMoneyDeposit, bool]:
        """
        Apply a provider callback to a deposit, exactly once.

        Any order opened for the deposit may settle it, including one
        superseded by a later request. A replay for an already-PAID deposit
        returns the deposit untouched and makes no provider call.
        Returns (deposit, was_duplicate).

        Raises:
            ExternalGatewayError: bad signature or payment not captured (no state change)
            ConflictError: deposit already refunded or settled by another payment
            ValidationError: callback is for an order not opened for this deposit
        """
        now = now or utcnow()
        late_for_auction = False
        try:
            deposit = self.deposits.get(deposit_id, for_update=True)
            self.reconciler.check_signature(callback)

            if deposit.status == DepositStatus.PAID.value:
                if deposit.payment_id != callback.payment_id:
                    raise ConflictError("EMD already paid by another payment")
                self.reconciler.record_duplicate()
                self.db.rollback()
                return deposit, True
            if deposit.status == DepositStatus.REFUNDED.value:
                raise ConflictError("EMD already refunded")

            order, duplicate = await self.reconciler.verify_callback(callback, PaymentPurpose.DEPOSIT, deposit.id)
            if duplicate:
                self.db.rollback()
                return deposit, True

            deposit.order_id = order.order_id
            self._mark_paid(deposit, callback.payment_id, "Razorpay", now)
            self.reconciler.mark_settled(order, callback.payment_id, now)
            late_for_auction = self.auctions.get(deposit.auction_id).status == AuctionStatus.ENDED.value
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        if late_for_auction:
            # Money arrived after the hammer fell; hand it straight back
            await self.refund_deposit(deposit.id, "Auction ended before deposit was confirmed", now=now)
        return deposit, False

    def _mark_paid(self, deposit: EarnestMoneyDeposit, payment_id: str, method: str, now: datetime) -> None:
        ensure_transition(DepositStatus(deposit.status), DepositStatus.PAID, "Deposit")
        deposit.status = DepositStatus.PAID.value
        deposit.payment_id = payment_id
        deposit.payment_method = method
        deposit.paid_at = now
        self.audit.append(
            auction_stream(deposit.auction_id),
            "deposit_paid",
            deposit.id,
            {"deposit_id": deposit.id, "bidder_id": deposit.bidder_id, "amount": deposit.amount, "payment_id": payment_id},
        )
        log_transition("deposit_paid", deposit_id=deposit.id, auction_id=deposit.auction_id, payment_id=payment_id)

    async def refund_deposit(
        self,
        deposit_id: uuid.UUID,
        reason: str,
        now: Optional[datetime] = None,
    ) -> DepositRefundResult:
        """
        Return a PAID deposit to its bidder. Idempotent: an already-REFUNDED
        deposit is a successful no-op.

        The refund is claimed (committed IN_PROGRESS marker) before the
        provider is called; a concurrent caller gets a ConflictError.
        A provider refusal still moves the deposit to REFUNDED with a
        REFUND_FAILED marker; a provider timeout leaves it PAID with a
        RETRY_NEEDED marker. Both are picked up by the retry sweep.

        Raises:
            ValidationError: deposit was never paid
            ConflictError: deposit was applied to the winner's purchase, or
                another refund of it is in flight
        """
        now = now or utcnow()
        try:
            deposit = self.deposits.get(deposit_id, for_update=True)

            if deposit.status == DepositStatus.REFUNDED.value:
                self.db.rollback()
                outcome = RefundOutcome(deposit.refund_status) if deposit.refund_status else RefundOutcome.REFUNDED
                return DepositRefundResult(deposit.id, deposit.bidder_id, outcome, deposit.refund_error, already_refunded=True)
            if deposit.applied_to_balance:
                raise ConflictError("EMD was applied to the purchase balance and cannot be refunded")
            ensure_transition(DepositStatus(deposit.status), DepositStatus.REFUNDED, "Deposit")
            if not self.deposits.claim_refund(deposit.id, deposit.status):
                raise ConflictError("A refund for this EMD is already in progress")
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        attempt = await refund_under_claim(
            self.db,
            lambda values: self.deposits.settle_refund(deposit_id, values),
            self.provider,
            deposit.payment_id,
            deposit.amount,
            {
                "emd_id": str(deposit.id),
                "auction_id": str(deposit.auction_id),
                "bidder_id": deposit.bidder_id,
                "reason": reason,
            },
        )

        try:
            values = attempt_values(deposit, attempt)
            values["refund_reason"] = reason
            if attempt.advances_status:
                values["status"] = DepositStatus.REFUNDED.value
                values["refunded_at"] = now
            if not self.deposits.settle_refund(deposit.id, values):
                raise ConflictError("EMD refund claim was lost")

            self.audit.append(
                auction_stream(deposit.auction_id),
                "deposit_refunded" if attempt.advances_status else "deposit_refund_pending",
                deposit.id,
                {
                    "deposit_id": deposit.id,
                    "bidder_id": deposit.bidder_id,
                    "amount": deposit.amount,
                    "outcome": attempt.outcome.value,
                    "reason": reason,
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        deposit_refund_counter.labels(outcome=attempt.outcome.value).inc()
        log_transition("deposit_refunded", deposit_id=deposit.id, outcome=attempt.outcome.value, reason=reason)
        if attempt.advances_status:
            await notify_quietly(
                self.notifier,
                "deposit.refunded",
                {"deposit_id": str(deposit.id), "auction_id": str(deposit.auction_id), "bidder_id": deposit.bidder_id, "amount": deposit.amount},
            )
        return DepositRefundResult(deposit.id, deposit.bidder_id, attempt.outcome, attempt.error)

    async def refund_all_except(
        self,
        auction_id: uuid.UUID,
        exclude_bidder_id: Optional[str],
        reason: str,
        now: Optional[datetime] = None,
    ) -> RefundBatchResult:
        """Refund every PAID deposit of the auction except the excluded bidder's; never aborts midway"""
        self.auctions.get(auction_id)
        targets: List[Tuple[uuid.UUID, str]] = [
            (d.id, d.bidder_id) for d in self.deposits.list_paid(auction_id, exclude_bidder_id)
        ]
        batch = RefundBatchResult(auction_id=auction_id)

        for deposit_id, bidder_id in targets:
            try:
                batch.results.append(await self.refund_deposit(deposit_id, reason, now=now))
            except ConflictError as e:
                # Another caller holds the refund claim
                batch.results.append(DepositRefundResult(deposit_id, bidder_id, RefundOutcome.IN_PROGRESS, str(e)))
            except DomainException as e:
                batch.results.append(DepositRefundResult(deposit_id, bidder_id, RefundOutcome.REFUND_FAILED, str(e)))

        return batch

    def paid_bidder_ids(self, auction_id: uuid.UUID) -> Set[str]:
        return self.deposits.paid_bidder_ids(auction_id)

    async def refund_applied_deposit(
        self,
        auction_id: uuid.UUID,
        bidder_id: str,
        reason: str,
        now: Optional[datetime] = None,
    ) -> Optional[DepositRefundResult]:
        """Hand back a winner's absorbed deposit once their purchase is cancelled"""
        try:
            deposit = self.deposits.find_for_bidder(auction_id, bidder_id)
            if deposit is None or not deposit.applied_to_balance:
                self.db.rollback()
                return None
            deposit.applied_to_balance = False
            self.audit.append(
                auction_stream(auction_id),
                "deposit_unapplied",
                deposit.id,
                {"deposit_id": deposit.id, "bidder_id": bidder_id, "reason": reason},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return await self.refund_deposit(deposit.id, reason, now=now)

    def apply_to_balance(self, auction: Auction, bidder_id: str) -> Optional[EarnestMoneyDeposit]:
        """
        Absorb the winner's PAID deposit into their purchase; it is never refunded afterwards.
        A deposit with a refund in flight or of unknown outcome is not absorbed.
        """
        deposit = self.deposits.find_for_bidder(auction.id, bidder_id)
        if deposit is None or deposit.status != DepositStatus.PAID.value or deposit.applied_to_balance:
            return None
        if deposit.refund_status in (RefundOutcome.IN_PROGRESS.value, RefundOutcome.RETRY_NEEDED.value):
            return None
        deposit.applied_to_balance = True
        self.audit.append(
            auction_stream(auction.id),
            "deposit_applied",
            deposit.id,
            {"deposit_id": deposit.id, "bidder_id": bidder_id, "amount": deposit.amount},
        )
        return deposit
