"""Auction state machine - SCHEDULED -> LIVE -> ENDED and everything that hangs off the end"""

import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from tractor_settlement.config import Settings, settings as default_settings
from tractor_settlement.domain.bidding import BidCandidate, default_duration, default_minimum_increment, determine_winner
from tractor_settlement.domain.exceptions import AuthorizationError, ConflictError, DomainException, ValidationError
from tractor_settlement.domain.models import AuctionEndResult, AuctionStatus, SchedulerReport, VehicleStatus
from tractor_settlement.domain.ports import Notifier, VehicleService
from tractor_settlement.infrastructure.clients.notifier import notify_quietly
from tractor_settlement.infrastructure.database.models import Auction
from tractor_settlement.infrastructure.database.repositories import AuctionRepository, BidRepository
from tractor_settlement.infrastructure.observability.logging import log_transition
from tractor_settlement.infrastructure.observability.metrics import auction_end_counter
from tractor_settlement.services.audit_chain import AuditChain, auction_stream, vehicle_stream
from tractor_settlement.services.deposits import DepositLedger
from tractor_settlement.services.purchases import PurchaseBook
from tractor_settlement.utils.date_utils import as_utc, utcnow

RESERVE_NOT_MET = "Reserve price not met"
NO_ELIGIBLE_BIDS = "No eligible bids"


class AuctionStateMachine:
    """
    Owns the auction lifecycle.

    Ending takes the same row lock as bid acceptance, then flips the status
    with a compare-and-set from {SCHEDULED, LIVE}; of two concurrent end
    calls exactly one does the work and the other sees `already_ended`.
    """

    def __init__(
        self,
        db: Session,
        deposits: DepositLedger,
        purchases: PurchaseBook,
        vehicles: VehicleService,
        audit: AuditChain,
        notifier: Notifier,
        config: Settings | None = None,
    ):
        self.db = db
        self.deposits = deposits
        self.purchases = purchases
        self.vehicles = vehicles
        self.audit = audit
        self.notifier = notifier
        self.config = config or default_settings
        self.auctions = AuctionRepository(db)
        self.bids = BidRepository(db)

    def get_auction(self, auction_id: uuid.UUID) -> Auction:
        return self.auctions.get(auction_id)

    def create_auction(
        self,
        vehicle_id: uuid.UUID,
        start_time: datetime,
        reserve_price: int,
        emd_amount: int,
        end_time: Optional[datetime] = None,
        minimum_increment: Optional[int] = None,
        opening_bid: int = 0,
        seller_id: Optional[str] = None,
        auto_extend_enabled: Optional[bool] = None,
        auto_extend_minutes: Optional[int] = None,
        auto_extend_threshold_minutes: Optional[int] = None,
        max_extensions: Optional[int] = None,
    ) -> Auction:
        """
        Schedule an auction for an approved vehicle.

        Missing increment and end time fall back to the reserve-price slabs.
        `seller_id`, when given, must own the vehicle.

        Raises:
            NotFoundError: unknown vehicle
            ValidationError: bad amounts, end not after start, vehicle not approved
            AuthorizationError: seller does not own the vehicle
            ConflictError: the vehicle already has an open auction
        """
        start_time = as_utc(start_time)
        end_time = as_utc(end_time) if end_time else start_time + default_duration(reserve_price)
        increment = minimum_increment if minimum_increment is not None else default_minimum_increment(reserve_price)

        if reserve_price <= 0:
            raise ValidationError("Reserve price must be greater than 0")
        if emd_amount <= 0:
            raise ValidationError("EMD amount must be greater than 0")
        if increment <= 0:
            raise ValidationError("Minimum increment must be greater than 0")
        if opening_bid < 0:
            raise ValidationError("Opening bid cannot be negative")
        if end_time <= start_time:
            raise ValidationError("End time must be after start time")

        try:
            vehicle = self.vehicles.get_vehicle(vehicle_id)
            if seller_id is not None and vehicle.seller_id != seller_id:
                raise AuthorizationError("Only the vehicle's seller can auction it")
            if vehicle.status != VehicleStatus.APPROVED:
                raise ValidationError(f"Vehicle must be APPROVED for auction (status {vehicle.status.value})")
            if self.auctions.find_open_for_vehicle(vehicle_id) is not None:
                raise ConflictError("Vehicle already has an open auction")

            auction = self.auctions.create_auction(
                vehicle_id=vehicle_id,
                start_time=start_time,
                end_time=end_time,
                reserve_price=reserve_price,
                minimum_increment=increment,
                current_bid=opening_bid,
                emd_amount=emd_amount,
                status=AuctionStatus.SCHEDULED.value,
                auto_extend_enabled=self._pick(auto_extend_enabled, self.config.auto_extend_enabled),
                auto_extend_minutes=self._pick(auto_extend_minutes, self.config.auto_extend_minutes),
                auto_extend_threshold_minutes=self._pick(
                    auto_extend_threshold_minutes, self.config.auto_extend_threshold_minutes
                ),
                max_extensions=self._pick(max_extensions, self.config.auto_extend_max_extensions),
                extension_count=0,
            )
            self.audit.append(
                auction_stream(auction.id),
                "auction_created",
                auction.id,
                {
                    "auction_id": auction.id,
                    "vehicle_id": vehicle_id,
                    "start_time": start_time.isoformat(),
                    "end_time": end_time.isoformat(),
                    "reserve_price": reserve_price,
                    "minimum_increment": increment,
                    "emd_amount": emd_amount,
                    "opening_bid": opening_bid,
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        log_transition("auction_created", auction_id=auction.id, vehicle_id=vehicle_id)
        return auction

    @staticmethod
    def _pick(value, default):
        return default if value is None else value

    async def start_auction(self, auction_id: uuid.UUID, now: Optional[datetime] = None) -> bool:
        """
        SCHEDULED -> LIVE. Returns False when the auction was already LIVE.

        Raises:
            ValidationError: before start time, or after end time
            ConflictError: auction already ended
        """
        now = now or utcnow()
        try:
            auction = self.auctions.get(auction_id, for_update=True)
            if auction.status == AuctionStatus.LIVE.value:
                self.db.rollback()
                return False
            if auction.status == AuctionStatus.ENDED.value:
                raise ConflictError("Auction has already ended")
            if now < as_utc(auction.start_time):
                raise ValidationError("Auction cannot start before its start time")
            if now >= as_utc(auction.end_time):
                raise ValidationError("Auction end time has already passed")

            if not self.auctions.compare_and_set_status(
                auction_id, [AuctionStatus.SCHEDULED], {"status": AuctionStatus.LIVE.value}
            ):
                self.db.rollback()
                return False
            self.audit.append(
                auction_stream(auction_id),
                "auction_started",
                auction_id,
                {"auction_id": auction_id, "started_at": now.isoformat()},
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        log_transition("auction_started", auction_id=auction_id)
        return True

    async def end_auction(
        self,
        auction_id: uuid.UUID,
        now: Optional[datetime] = None,
        ended_by: str = "scheduler",
    ) -> AuctionEndResult:
        """
        Close the auction and settle it.

        1. Winner = highest bid from a bidder still holding a PAID deposit, if it meets reserve
        2. Winner: bid flagged, deposit absorbed, purchase opened, vehicle -> AUCTION
        3. No winner: vehicle -> APPROVED
        4. Audit record; commit
        5. Every other PAID deposit refunded; a refund failure never undoes the end
        """
        return await self._close(auction_id, now or utcnow(), ended_by, failure_reason=None)

    async def fail_auction(
        self,
        auction_id: uuid.UUID,
        reason: Optional[str],
        now: Optional[datetime] = None,
        ended_by: str = "admin",
    ) -> AuctionEndResult:
        """End with no winner regardless of bids; every PAID deposit is refunded"""
        return await self._close(auction_id, now or utcnow(), ended_by, failure_reason=reason or RESERVE_NOT_MET)

    async def _close(
        self,
        auction_id: uuid.UUID,
        now: datetime,
        ended_by: str,
        failure_reason: Optional[str],
    ) -> AuctionEndResult:
        try:
            auction = self.auctions.get(auction_id, for_update=True)
            if auction.status == AuctionStatus.ENDED.value:
                self.db.rollback()
                auction_end_counter.labels(outcome="already_ended").inc()
                return self._already_ended(auction)

            bids = self.bids.list_for_auction(auction_id)
            winner: Optional[BidCandidate] = None
            if failure_reason is None:
                winner = determine_winner(
                    [BidCandidate(b.id, b.bidder_id, b.amount) for b in bids],
                    auction.reserve_price,
                    self.deposits.paid_bidder_ids(auction_id),
                )
            rejection_reason = None
            if winner is None:
                rejection_reason = failure_reason or (RESERVE_NOT_MET if bids else NO_ELIGIBLE_BIDS)

            swapped = self.auctions.compare_and_set_status(
                auction_id,
                [AuctionStatus.SCHEDULED, AuctionStatus.LIVE],
                {
                    "status": AuctionStatus.ENDED.value,
                    "ended_at": now,
                    "winner_id": winner.bidder_id if winner else None,
                    "winning_bid_id": winner.bid_id if winner else None,
                    "rejection_reason": rejection_reason,
                },
            )
            if not swapped:
                self.db.rollback()
                auction_end_counter.labels(outcome="already_ended").inc()
                return self._already_ended(self.auctions.get(auction_id))

            self.bids.clear_winning_flags(auction_id)
            purchase_id = None
            if winner is not None:
                for bid in bids:
                    if bid.id == winner.bid_id:
                        bid.is_winning_bid = True
                self.vehicles.set_vehicle_status(auction.vehicle_id, VehicleStatus.AUCTION)
                deposit = self.deposits.apply_to_balance(auction, winner.bidder_id)
                purchase_id = self.purchases.open_auction_purchase(auction, winner, deposit, now).id
            else:
                self.vehicles.set_vehicle_status(auction.vehicle_id, VehicleStatus.APPROVED)

            self.audit.append(
                auction_stream(auction_id),
                "auction_ended",
                auction_id,
                {
                    "auction_id": auction_id,
                    "winner_id": winner.bidder_id if winner else None,
                    "winning_bid_id": winner.bid_id if winner else None,
                    "winning_amount": winner.amount if winner else None,
                    "reserve_price": auction.reserve_price,
                    "total_bids": len(bids),
                    "rejection_reason": rejection_reason,
                    "ended_by": ended_by,
                    "ended_at": now.isoformat(),
                },
            )
            self.audit.append(
                vehicle_stream(auction.vehicle_id),
                "vehicle_auction_closed",
                auction.vehicle_id,
                {
                    "auction_id": auction_id,
                    "status": (VehicleStatus.AUCTION if winner else VehicleStatus.APPROVED).value,
                    "purchase_id": purchase_id,
                },
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        outcome = "winner" if winner else ("failed" if failure_reason else "no_winner")
        auction_end_counter.labels(outcome=outcome).inc()
        log_transition(
            "auction_ended",
            auction_id=auction_id,
            winner_id=winner.bidder_id if winner else None,
            amount=winner.amount if winner else None,
            ended_by=ended_by,
        )

        reason = "Auction lost" if winner else f"Auction ended without a winner: {rejection_reason}"
        refunds = await self.deposits.refund_all_except(
            auction_id, winner.bidder_id if winner else None, reason, now=now
        )
        if refunds.failed:
            logging.warning(
                "Some deposit refunds need attention",
                extra={"auction_id": str(auction_id), "failed": [str(r.deposit_id) for r in refunds.failed]},
            )

        await notify_quietly(
            self.notifier,
            "auction.ended",
            {
                "auction_id": str(auction_id),
                "winner_id": winner.bidder_id if winner else None,
                "winning_amount": winner.amount if winner else None,
                "purchase_id": str(purchase_id) if purchase_id else None,
                "rejection_reason": rejection_reason,
            },
        )
        return AuctionEndResult(
            auction_id=auction_id,
            already_ended=False,
            winner_id=winner.bidder_id if winner else None,
            winning_bid_id=winner.bid_id if winner else None,
            winning_amount=winner.amount if winner else None,
            purchase_id=purchase_id,
            refunds=refunds,
        )

    @staticmethod
    def _already_ended(auction: Auction) -> AuctionEndResult:
        return AuctionEndResult(
            auction_id=auction.id,
            already_ended=True,
            winner_id=auction.winner_id,
            winning_bid_id=auction.winning_bid_id,
            winning_amount=auction.current_bid if auction.winner_id else None,
        )

    async def run_scheduler_tick(self, now: Optional[datetime] = None) -> SchedulerReport:
        """Start due auctions and end expired ones; one auction's failure never stops the sweep"""
        now = now or utcnow()
        report = SchedulerReport(ran_at=now)

        for auction_id in [a.id for a in self.auctions.list_due_to_start(now)]:
            try:
                if await self.start_auction(auction_id, now=now):
                    report.started.append(auction_id)
            except DomainException as e:
                report.errors.append(f"start {auction_id}: {e}")

        for auction_id in [a.id for a in self.auctions.list_due_to_end(now)]:
            try:
                result = await self.end_auction(auction_id, now=now)
                if not result.already_ended:
                    report.ended.append(auction_id)
            except DomainException as e:
                report.errors.append(f"end {auction_id}: {e}")

        logging.info(
            "Scheduler tick complete",
            extra={"started": len(report.started), "ended": len(report.ended), "errors": len(report.errors)},
        )
        return report
