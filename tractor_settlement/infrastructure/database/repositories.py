"""Data access layer for settlement entities"""

import uuid
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import or_
from sqlalchemy.orm import Session

from tractor_settlement.domain.exceptions import NotFoundError
from tractor_settlement.domain.models import (
    AuctionStatus,
    DepositStatus,
    RefundOutcome,
    VehicleInfo,
    VehicleStatus,
)
from tractor_settlement.infrastructure.database.models import (
    Auction,
    AuditRecord,
    Bid,
    EarnestMoneyDeposit,
    Escrow,
    PaymentOrder,
    Purchase,
    Vehicle,
)

RETRYABLE_REFUND_MARKERS = (RefundOutcome.REFUND_FAILED.value, RefundOutcome.RETRY_NEEDED.value)
REFUND_CLAIM = RefundOutcome.IN_PROGRESS.value


def _refund_unclaimed(model):
    return or_(model.refund_status.is_(None), model.refund_status != REFUND_CLAIM)


class VehicleRepository:
    """Table-backed VehicleService; status changes commit with the core transition"""

    def __init__(self, db: Session):
        self.db = db

    def create_vehicle(
        self,
        seller_id: str,
        status: VehicleStatus = VehicleStatus.APPROVED,
        sale_amount: Optional[int] = None,
        title: Optional[str] = None,
    ) -> Vehicle:
        vehicle = Vehicle(seller_id=seller_id, status=status.value, sale_amount=sale_amount, title=title)
        self.db.add(vehicle)
        self.db.flush()
        return vehicle

    def get_vehicle(self, vehicle_id: uuid.UUID) -> VehicleInfo:
        vehicle = self.db.query(Vehicle).filter(Vehicle.id == vehicle_id).first()
        if vehicle is None:
            raise NotFoundError(f"Vehicle {vehicle_id} not found")
        return VehicleInfo(
            id=vehicle.id,
            seller_id=vehicle.seller_id,
            status=VehicleStatus(vehicle.status),
            sale_amount=vehicle.sale_amount,
        )

    def set_vehicle_status(self, vehicle_id: uuid.UUID, status: VehicleStatus) -> None:
        updated = (
            self.db.query(Vehicle)
            .filter(Vehicle.id == vehicle_id)
            .update({Vehicle.status: status.value}, synchronize_session="fetch")
        )
        if not updated:
            raise NotFoundError(f"Vehicle {vehicle_id} not found")


class AuctionRepository:
    """Repository for auctions"""

    def __init__(self, db: Session):
        self.db = db

    def create_auction(self, **fields: Any) -> Auction:
        auction = Auction(**fields)
        self.db.add(auction)
        self.db.flush()
        return auction

    def get(self, auction_id: uuid.UUID, for_update: bool = False) -> Auction:
        """Fetch an auction; `for_update` takes the row lock shared by bidding and ending"""
        query = self.db.query(Auction).filter(Auction.id == auction_id)
        if for_update:
            query = query.with_for_update()
        auction = query.first()
        if auction is None:
            raise NotFoundError(f"Auction {auction_id} not found")
        return auction

    def compare_and_set_status(
        self,
        auction_id: uuid.UUID,
        expected: Iterable[AuctionStatus],
        values: Dict[str, Any],
    ) -> bool:
        """Apply `values` only if the auction is still in one of the expected statuses"""
        updated = (
            self.db.query(Auction)
            .filter(Auction.id == auction_id, Auction.status.in_([s.value for s in expected]))
            .update(values, synchronize_session="fetch")
        )
        return updated == 1

    def find_open_for_vehicle(self, vehicle_id: uuid.UUID) -> Optional[Auction]:
        return (
            self.db.query(Auction)
            .filter(
                Auction.vehicle_id == vehicle_id,
                Auction.status.in_([AuctionStatus.SCHEDULED.value, AuctionStatus.LIVE.value]),
            )
            .first()
        )

    def list_due_to_start(self, now: datetime) -> List[Auction]:
        return (
            self.db.query(Auction)
            .filter(
                Auction.status == AuctionStatus.SCHEDULED.value,
                Auction.start_time <= now,
                Auction.end_time > now,
            )
            .all()
        )

    def list_due_to_end(self, now: datetime) -> List[Auction]:
        return (
            self.db.query(Auction)
            .filter(
                Auction.status.in_([AuctionStatus.SCHEDULED.value, AuctionStatus.LIVE.value]),
                Auction.end_time <= now,
            )
            .all()
        )


class BidRepository:
    """Repository for bids"""

    def __init__(self, db: Session):
        self.db = db

    def create_bid(self, auction_id: uuid.UUID, bidder_id: str, amount: int, bid_time: datetime) -> Bid:
        bid = Bid(
            auction_id=auction_id,
            bidder_id=bidder_id,
            amount=amount,
            bid_time=bid_time,
            is_winning_bid=True,
        )
        self.db.add(bid)
        self.db.flush()
        return bid

    def leading_bid(self, auction_id: uuid.UUID) -> Optional[Bid]:
        return (
            self.db.query(Bid)
            .filter(Bid.auction_id == auction_id, Bid.is_winning_bid.is_(True))
            .first()
        )

    def clear_winning_flags(self, auction_id: uuid.UUID) -> None:
        (
            self.db.query(Bid)
            .filter(Bid.auction_id == auction_id, Bid.is_winning_bid.is_(True))
            .update({Bid.is_winning_bid: False}, synchronize_session="fetch")
        )

    def list_for_auction(self, auction_id: uuid.UUID) -> List[Bid]:
        """Bids from highest to lowest"""
        return (
            self.db.query(Bid)
            .filter(Bid.auction_id == auction_id)
            .order_by(Bid.amount.desc())
            .all()
        )


class DepositRepository:
    """Repository for earnest-money deposits"""

    def __init__(self, db: Session):
        self.db = db

    def get(self, deposit_id: uuid.UUID, for_update: bool = False) -> EarnestMoneyDeposit:
        query = self.db.query(EarnestMoneyDeposit).filter(EarnestMoneyDeposit.id == deposit_id)
        if for_update:
            query = query.with_for_update()
        deposit = query.first()
        if deposit is None:
            raise NotFoundError(f"Deposit {deposit_id} not found")
        return deposit

    def find_for_bidder(self, auction_id: uuid.UUID, bidder_id: str) -> Optional[EarnestMoneyDeposit]:
        return (
            self.db.query(EarnestMoneyDeposit)
            .filter(EarnestMoneyDeposit.auction_id == auction_id, EarnestMoneyDeposit.bidder_id == bidder_id)
            .first()
        )

    def create_deposit(self, auction_id: uuid.UUID, bidder_id: str, amount: int) -> EarnestMoneyDeposit:
        deposit = EarnestMoneyDeposit(
            auction_id=auction_id,
            bidder_id=bidder_id,
            amount=amount,
            status=DepositStatus.PENDING.value,
        )
        self.db.add(deposit)
        self.db.flush()
        return deposit

    def list_paid(self, auction_id: uuid.UUID, exclude_bidder_id: Optional[str] = None) -> List[EarnestMoneyDeposit]:
        query = self.db.query(EarnestMoneyDeposit).filter(
            EarnestMoneyDeposit.auction_id == auction_id,
            EarnestMoneyDeposit.status == DepositStatus.PAID.value,
            EarnestMoneyDeposit.applied_to_balance.is_(False),
        )
        if exclude_bidder_id is not None:
            query = query.filter(EarnestMoneyDeposit.bidder_id != exclude_bidder_id)
        return query.order_by(EarnestMoneyDeposit.created_at).all()

    def paid_bidder_ids(self, auction_id: uuid.UUID) -> Set[str]:
        rows = (
            self.db.query(EarnestMoneyDeposit.bidder_id)
            .filter(
                EarnestMoneyDeposit.auction_id == auction_id,
                EarnestMoneyDeposit.status == DepositStatus.PAID.value,
            )
            .all()
        )
        return {row.bidder_id for row in rows}

    def list_needing_refund_retry(self) -> List[EarnestMoneyDeposit]:
        return (
            self.db.query(EarnestMoneyDeposit)
            .filter(EarnestMoneyDeposit.refund_status.in_(RETRYABLE_REFUND_MARKERS))
            .all()
        )

    def claim_refund(
        self,
        deposit_id: uuid.UUID,
        expected_status: str,
        markers: Optional[Iterable[str]] = None,
    ) -> bool:
        """
        Mark a refund as in flight. Exactly one caller gets True.

        With `markers` the claim only succeeds from one of those refund
        markers; without, from any marker except an existing claim.
        """
        query = self.db.query(EarnestMoneyDeposit).filter(
            EarnestMoneyDeposit.id == deposit_id,
            EarnestMoneyDeposit.status == expected_status,
            EarnestMoneyDeposit.applied_to_balance.is_(False),
        )
        if markers is None:
            query = query.filter(_refund_unclaimed(EarnestMoneyDeposit))
        else:
            query = query.filter(EarnestMoneyDeposit.refund_status.in_(list(markers)))
        return query.update({"refund_status": REFUND_CLAIM}, synchronize_session="fetch") == 1

    def settle_refund(self, deposit_id: uuid.UUID, values: Dict[str, Any]) -> bool:
        """Write the refund result over our own claim"""
        updated = (
            self.db.query(EarnestMoneyDeposit)
            .filter(EarnestMoneyDeposit.id == deposit_id, EarnestMoneyDeposit.refund_status == REFUND_CLAIM)
            .update(values, synchronize_session="fetch")
        )
        return updated == 1


class PurchaseRepository:
    """Repository for purchases"""

    def __init__(self, db: Session):
        self.db = db

    def create_purchase(self, **fields: Any) -> Purchase:
        purchase = Purchase(**fields)
        self.db.add(purchase)
        self.db.flush()
        return purchase

    def get(self, purchase_id: uuid.UUID, for_update: bool = False) -> Purchase:
        query = self.db.query(Purchase).filter(Purchase.id == purchase_id)
        if for_update:
            query = query.with_for_update()
        purchase = query.first()
        if purchase is None:
            raise NotFoundError(f"Purchase {purchase_id} not found")
        return purchase


class EscrowRepository:
    """Repository for escrow holds"""

    def __init__(self, db: Session):
        self.db = db

    def create_escrow(self, **fields: Any) -> Escrow:
        escrow = Escrow(**fields)
        self.db.add(escrow)
        self.db.flush()
        return escrow

    def get(self, escrow_id: uuid.UUID, for_update: bool = False) -> Escrow:
        query = self.db.query(Escrow).filter(Escrow.id == escrow_id)
        if for_update:
            query = query.with_for_update()
        escrow = query.first()
        if escrow is None:
            raise NotFoundError(f"Escrow {escrow_id} not found")
        return escrow

    def find_by_purchase(self, purchase_id: uuid.UUID) -> Optional[Escrow]:
        return self.db.query(Escrow).filter(Escrow.purchase_id == purchase_id).first()

    def compare_and_set(
        self,
        escrow_id: uuid.UUID,
        expected_status: str,
        values: Dict[str, Any],
        blocking_markers: Iterable[str] = (REFUND_CLAIM,),
    ) -> bool:
        """Apply `values` only if the escrow still holds `expected_status` and no blocking refund marker"""
        updated = (
            self.db.query(Escrow)
            .filter(
                Escrow.id == escrow_id,
                Escrow.status == expected_status,
                or_(Escrow.refund_status.is_(None), Escrow.refund_status.notin_(list(blocking_markers))),
            )
            .update(values, synchronize_session="fetch")
        )
        return updated == 1

    def claim_refund(
        self,
        escrow_id: uuid.UUID,
        expected_status: str,
        markers: Optional[Iterable[str]] = None,
    ) -> bool:
        """Mark a refund as in flight; same contract as DepositRepository.claim_refund"""
        query = self.db.query(Escrow).filter(Escrow.id == escrow_id, Escrow.status == expected_status)
        if markers is None:
            query = query.filter(_refund_unclaimed(Escrow))
        else:
            query = query.filter(Escrow.refund_status.in_(list(markers)))
        return query.update({"refund_status": REFUND_CLAIM}, synchronize_session="fetch") == 1

    def settle_refund(self, escrow_id: uuid.UUID, expected_status: str, values: Dict[str, Any]) -> bool:
        """Write the refund result over our own claim"""
        updated = (
            self.db.query(Escrow)
            .filter(
                Escrow.id == escrow_id,
                Escrow.status == expected_status,
                Escrow.refund_status == REFUND_CLAIM,
            )
            .update(values, synchronize_session="fetch")
        )
        return updated == 1

    def list_needing_refund_retry(self) -> List[Escrow]:
        return self.db.query(Escrow).filter(Escrow.refund_status.in_(RETRYABLE_REFUND_MARKERS)).all()


class PaymentOrderRepository:
    """Repository for provider orders"""

    def __init__(self, db: Session):
        self.db = db

    def create_order(self, **fields: Any) -> PaymentOrder:
        order = PaymentOrder(**fields)
        self.db.add(order)
        self.db.flush()
        return order

    def find(self, order_id: str, for_update: bool = False) -> Optional[PaymentOrder]:
        query = self.db.query(PaymentOrder).filter(PaymentOrder.order_id == order_id)
        if for_update:
            query = query.with_for_update()
        return query.first()


class AuditRepository:
    """Append-only access to audit streams"""

    def __init__(self, db: Session):
        self.db = db

    def latest(self, stream_key: str) -> Optional[AuditRecord]:
        return (
            self.db.query(AuditRecord)
            .filter(AuditRecord.stream_key == stream_key)
            .order_by(AuditRecord.sequence.desc())
            .with_for_update()
            .first()
        )

    def add(self, record: AuditRecord) -> AuditRecord:
        self.db.add(record)
        self.db.flush()
        return record

    def list_stream(self, stream_key: str) -> List[AuditRecord]:
        return (
            self.db.query(AuditRecord)
            .filter(AuditRecord.stream_key == stream_key)
            .order_by(AuditRecord.sequence.asc())
            .all()
        )
