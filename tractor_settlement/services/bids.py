"""Bid ledger - validates and records bids under the auction row lock"""

import uuid
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from tractor_settlement.domain.bidding import compute_extension, minimum_next_bid
from tractor_settlement.domain.exceptions import AuthorizationError, DomainException, ValidationError
from tractor_settlement.domain.models import AuctionStatus
from tractor_settlement.domain.ports import Notifier, VehicleService
from tractor_settlement.infrastructure.clients.notifier import notify_quietly
from tractor_settlement.infrastructure.database.models import Bid
from tractor_settlement.infrastructure.database.repositories import AuctionRepository, BidRepository
from tractor_settlement.infrastructure.observability.logging import log_transition
from tractor_settlement.infrastructure.observability.metrics import bid_counter
from tractor_settlement.services.audit_chain import AuditChain, auction_stream
from tractor_settlement.services.deposits import DepositLedger
from tractor_settlement.utils.date_utils import as_utc, utcnow


class BidLedger:
    """Bid acceptance; the only writer of `auction.current_bid` while an auction is LIVE"""

    def __init__(
        self,
        db: Session,
        deposits: DepositLedger,
        vehicles: VehicleService,
        audit: AuditChain,
        notifier: Notifier,
    ):
        self.db = db
        self.deposits = deposits
        self.vehicles = vehicles
        self.audit = audit
        self.notifier = notifier
        self.auctions = AuctionRepository(db)
        self.bids = BidRepository(db)

    def list_bids(self, auction_id: uuid.UUID) -> List[Bid]:
        self.auctions.get(auction_id)
        return self.bids.list_for_auction(auction_id)

    async def place_bid(
        self,
        auction_id: uuid.UUID,
        bidder_id: str,
        amount: int,
        now: Optional[datetime] = None,
    ) -> Bid:
        """
        Accept a bid, or reject it with no change at all.

        Inside one transaction holding the auction's row lock:
        1. Auction must be LIVE and not past its end time
        2. amount >= current_bid + minimum_increment
        3. Bidder is not the seller and holds a PAID deposit
        4. Previous leading bid loses its flag; the new bid leads
        5. current_bid moves to amount; a late bid may extend end_time

        Raises:
            NotFoundError: unknown auction
            ValidationError: auction not live, amount too low, no PAID deposit
            AuthorizationError: bidder is the vehicle's seller
        """
        now = now or utcnow()
        try:
            auction = self.auctions.get(auction_id, for_update=True)
            end_time = as_utc(auction.end_time)

            if auction.status != AuctionStatus.LIVE.value:
                raise ValidationError("Auction is not live")
            if now >= end_time:
                raise ValidationError("Auction has ended")

            minimum = minimum_next_bid(auction.current_bid, auction.minimum_increment)
            if amount < minimum:
                raise ValidationError(f"Bid must be at least {minimum} (current bid + minimum increment)")

            if self.vehicles.get_vehicle(auction.vehicle_id).seller_id == bidder_id:
                raise AuthorizationError("You cannot bid on your own vehicle")
            if not self.deposits.has_paid_deposit(auction_id, bidder_id):
                raise ValidationError(f"Earnest Money Deposit of {auction.emd_amount} is required to place bids")

            leader = self.bids.leading_bid(auction_id)
            previous_leader_id = leader.bidder_id if leader else None
            previous_bid = auction.current_bid

            self.bids.clear_winning_flags(auction_id)
            bid = self.bids.create_bid(auction_id, bidder_id, amount, now)

            new_end, extension_count, extended = compute_extension(
                now,
                end_time,
                enabled=auction.auto_extend_enabled,
                threshold_minutes=auction.auto_extend_threshold_minutes,
                extend_minutes=auction.auto_extend_minutes,
                extension_count=auction.extension_count,
                max_extensions=auction.max_extensions,
            )
            auction.current_bid = amount
            if extended:
                auction.end_time = new_end
                auction.extension_count = extension_count

            self.audit.append(
                auction_stream(auction_id),
                "bid_placed",
                bid.id,
                {
                    "bid_id": bid.id,
                    "bidder_id": bidder_id,
                    "amount": amount,
                    "previous_bid": previous_bid,
                    "bid_time": now.isoformat(),
                    "end_time": new_end.isoformat(),
                },
            )
            self.db.commit()

        except DomainException:
            self.db.rollback()
            bid_counter.labels(outcome="rejected").inc()
            raise
        except Exception:
            self.db.rollback()
            raise

        bid_counter.labels(outcome="accepted").inc()
        log_transition("bid_placed", auction_id=auction_id, bid_id=bid.id, amount=amount, extended=extended)

        if previous_leader_id and previous_leader_id != bidder_id:
            await notify_quietly(
                self.notifier,
                "bid.outbid",
                {"auction_id": str(auction_id), "bidder_id": previous_leader_id, "new_amount": amount},
            )
        return bid
