"""Purchase book - auction wins and direct sales through to secured funds"""

import uuid
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from tractor_settlement.config import Settings, settings as default_settings
from tractor_settlement.domain.bidding import BidCandidate
from tractor_settlement.domain.exceptions import AuthorizationError, ConflictError, ValidationError
from tractor_settlement.domain.fees import calculate_balance, calculate_transaction_fee
from tractor_settlement.domain.models import (
    GatewayOrder,
    PaymentCallback,
    PaymentPurpose,
    PurchaseStatus,
    PurchaseType,
    VehicleStatus,
)
from tractor_settlement.domain.ports import VehicleService
from tractor_settlement.domain.transitions import ensure_transition
from tractor_settlement.infrastructure.database.models import Auction, EarnestMoneyDeposit, PaymentOrder, Purchase
from tractor_settlement.infrastructure.database.repositories import AuctionRepository, PurchaseRepository
from tractor_settlement.infrastructure.observability.logging import log_transition
from tractor_settlement.services.audit_chain import AuditChain, purchase_stream, vehicle_stream
from tractor_settlement.services.escrow import EscrowEngine
from tractor_settlement.services.reconciliation import PaymentReconciler
from tractor_settlement.utils.date_utils import as_utc, utcnow


class PurchaseBook:
    """
    payment_pending -> pending -> completed, with cancelled reachable until completion.

    The vehicle is marked SOLD, and the escrow hold opened, at the moment a
    purchase reaches `pending`: that is when the buyer's funds are secured.
    """

    def __init__(
        self,
        db: Session,
        reconciler: PaymentReconciler,
        escrow: EscrowEngine,
        vehicles: VehicleService,
        audit: AuditChain,
        config: Settings | None = None,
    ):
        self.db = db
        self.reconciler = reconciler
        self.escrow = escrow
        self.vehicles = vehicles
        self.audit = audit
        self.config = config or default_settings
        self.auctions = AuctionRepository(db)
        self.purchases = PurchaseRepository(db)

    def get_purchase(self, purchase_id: uuid.UUID) -> Purchase:
        return self.purchases.get(purchase_id)

    def open_auction_purchase(
        self,
        auction: Auction,
        winner: BidCandidate,
        deposit: Optional[EarnestMoneyDeposit],
        now: datetime,
    ) -> Purchase:
        """
        Record the winner's purchase inside the auction-ending transaction.

        The absorbed deposit reduces the balance; the transaction fee uses the
        promotional rate until the offer window closes.
        """
        emd_amount = deposit.amount if deposit is not None else 0
        balance = calculate_balance(winner.amount, emd_amount)
        fee = calculate_transaction_fee(
            winner.amount,
            now,
            as_utc(self.config.transaction_fee_offer_ends_at),
            offer_rate=self.config.transaction_fee_offer_rate,
            standard_rate=self.config.transaction_fee_standard_rate,
        )
        nothing_due = balance + fee == 0
        purchase = self.purchases.create_purchase(
            vehicle_id=auction.vehicle_id,
            auction_id=auction.id,
            buyer_id=winner.bidder_id,
            purchase_type=PurchaseType.AUCTION.value,
            purchase_price=winner.amount,
            status=PurchaseStatus.PAYMENT_PENDING.value,
            balance_amount=balance,
            emd_applied=deposit is not None,
            emd_amount=emd_amount if deposit is not None else None,
            transaction_fee=fee,
            transaction_fee_paid=nothing_due,
        )
        self.audit.append(
            purchase_stream(purchase.id),
            "purchase_created",
            purchase.id,
            {
                "purchase_id": purchase.id,
                "auction_id": auction.id,
                "buyer_id": winner.bidder_id,
                "purchase_price": winner.amount,
                "emd_applied": emd_amount,
                "balance_amount": balance,
                "transaction_fee": fee,
            },
        )

        if nothing_due:
            # The deposit already covers the price; it is returned through the deposit ledger if cancelled
            self._secure_funds(purchase, None, "EMD", 0, now)
        return purchase

    async def create_direct_purchase(
        self,
        vehicle_id: uuid.UUID,
        buyer_id: str,
        now: Optional[datetime] = None,
    ) -> Purchase:
        """
        Buy a listed vehicle at its fixed sale amount.

        Raises:
            ValidationError: vehicle not on sale or has no sale amount
            AuthorizationError: buyer is the seller
            ConflictError: the vehicle is in an open auction
        """
        now = now or utcnow()
        try:
            vehicle = self.vehicles.get_vehicle(vehicle_id)
            if vehicle.status != VehicleStatus.APPROVED:
                raise ValidationError(f"Vehicle is not available for purchase (status {vehicle.status.value})")
            if not vehicle.sale_amount or vehicle.sale_amount <= 0:
                raise ValidationError("Vehicle has no sale amount")
            if vehicle.seller_id == buyer_id:
                raise AuthorizationError("You cannot buy your own vehicle")
            if self.auctions.find_open_for_vehicle(vehicle_id) is not None:
                raise ConflictError("Vehicle is listed in an open auction")

            purchase = self.purchases.create_purchase(
                vehicle_id=vehicle_id,
                buyer_id=buyer_id,
                purchase_type=PurchaseType.DIRECT.value,
                purchase_price=vehicle.sale_amount,
                status=PurchaseStatus.PAYMENT_PENDING.value,
                balance_amount=vehicle.sale_amount,
                transaction_fee=0,
            )
            self.audit.append(
                purchase_stream(purchase.id),
                "purchase_created",
                purchase.id,
                {"purchase_id": purchase.id, "vehicle_id": vehicle_id, "buyer_id": buyer_id, "purchase_price": vehicle.sale_amount},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        log_transition("purchase_created", purchase_id=purchase.id, vehicle_id=vehicle_id, purchase_type=PurchaseType.DIRECT.value)
        return purchase

    def amount_due(self, purchase: Purchase) -> int:
        return purchase.balance_amount + (0 if purchase.transaction_fee_paid else purchase.transaction_fee)

    async def request_payment(
        self,
        purchase_id: uuid.UUID,
        buyer_id: str,
        now: Optional[datetime] = None,
    ) -> Tuple[Purchase, GatewayOrder]:
        """
        Open a provider order for the balance plus any unpaid transaction fee.

        Raises:
            AuthorizationError: caller is not the buyer
            ValidationError: purchase is not awaiting payment
            ExternalGatewayError: the provider could not open the order
        """
        now = now or utcnow()
        try:
            purchase = self.purchases.get(purchase_id, for_update=True)
            if purchase.buyer_id != buyer_id:
                raise AuthorizationError("Only the buyer can pay for this purchase")
            if purchase.status != PurchaseStatus.PAYMENT_PENDING.value:
                raise ValidationError(f"Purchase is not awaiting payment (status {purchase.status})")

            amount = self.amount_due(purchase)
            order, order_row = await self.reconciler.open_order(
                PaymentPurpose.PURCHASE,
                purchase.id,
                amount,
                receipt=f"PUR-{purchase.id.hex[:12]}",
                notes={"purchase_id": str(purchase.id), "buyer_id": buyer_id, "type": purchase.purchase_type},
            )
            purchase.order_id = order.order_id

            if order.payment_id:
                self._apply_payment(purchase, order_row, order.payment_id, "Test Mode", now)

            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        log_transition("purchase_payment_requested", purchase_id=purchase_id, order_id=order.order_id, amount=amount)
        return purchase, order

    async def confirm_payment(
        self,
        purchase_id: uuid.UUID,
        callback: PaymentCallback,
        now: Optional[datetime] = None,
    ) -> Tuple[Purchase, bool]:
        """
        Apply the provider callback for a purchase payment, exactly once.
        Any order opened for the purchase may settle it, not only the latest.

        Returns: (purchase, was_duplicate)

        Raises:
            ExternalGatewayError: bad signature or payment not captured
            ConflictError: purchase already paid by another payment or vehicle sold elsewhere
            ValidationError: callback is for an order not opened for this purchase, or
                purchase not awaiting payment
        """
        now = now or utcnow()
        try:
            purchase = self.purchases.get(purchase_id, for_update=True)
            self.reconciler.check_signature(callback)

            if purchase.payment_id is not None:
                if purchase.payment_id != callback.payment_id:
                    raise ConflictError("Purchase already paid by another payment")
                self.reconciler.record_duplicate()
                self.db.rollback()
                return purchase, True
            if purchase.status != PurchaseStatus.PAYMENT_PENDING.value:
                raise ValidationError(f"Purchase is not awaiting payment (status {purchase.status})")
            if purchase.purchase_type == PurchaseType.DIRECT.value:
                if self.vehicles.get_vehicle(purchase.vehicle_id).status == VehicleStatus.SOLD:
                    raise ConflictError("Vehicle has already been sold")

            order, duplicate = await self.reconciler.verify_callback(callback, PaymentPurpose.PURCHASE, purchase.id)
            if duplicate:
                self.db.rollback()
                return purchase, True

            self._apply_payment(purchase, order, callback.payment_id, "Razorpay", now)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        log_transition("purchase_paid", purchase_id=purchase_id, payment_id=callback.payment_id)
        return purchase, False

    def _apply_payment(
        self,
        purchase: Purchase,
        order: PaymentOrder,
        payment_id: str,
        method: str,
        now: datetime,
    ) -> None:
        purchase.order_id = order.order_id
        purchase.payment_id = payment_id
        purchase.paid_at = now
        purchase.transaction_fee_paid = True
        self.reconciler.mark_settled(order, payment_id, now)
        self._secure_funds(purchase, payment_id, method, order.amount, now)

    def _secure_funds(
        self,
        purchase: Purchase,
        payment_id: Optional[str],
        method: Optional[str],
        payment_amount: int,
        now: datetime,
    ) -> None:
        ensure_transition(PurchaseStatus(purchase.status), PurchaseStatus.PENDING, "Purchase")
        purchase.status = PurchaseStatus.PENDING.value

        self.vehicles.set_vehicle_status(purchase.vehicle_id, VehicleStatus.SOLD)
        self.audit.append(vehicle_stream(purchase.vehicle_id), "vehicle_sold", purchase.vehicle_id, {"purchase_id": purchase.id})
        self.audit.append(
            purchase_stream(purchase.id),
            "purchase_paid",
            purchase.id,
            {"purchase_id": purchase.id, "payment_id": payment_id, "amount": payment_amount},
        )
        self.escrow.open_escrow(purchase, purchase.purchase_price, payment_id, method, payment_amount, now)
