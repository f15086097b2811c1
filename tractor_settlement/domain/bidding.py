"""Bidding rules - increments, anti-sniping extensions and winner determination"""

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, Optional, Set, Tuple


@dataclass
class BidCandidate:
    """Minimal view of a bid needed to decide an auction"""

    bid_id: uuid.UUID
    bidder_id: str
    amount: int


def minimum_next_bid(current_bid: int, minimum_increment: int) -> int:
    """Lowest acceptable amount for the next bid"""
    return current_bid + minimum_increment


def default_minimum_increment(reserve_price: int) -> int:
    """
    Slab-based increment used when the operator does not choose one.

    Slabs:
    - reserve < 100,000: 2,000
    - reserve < 300,000: 5,000
    - reserve < 700,000: 10,000
    - otherwise:         20,000
    """
    if reserve_price < 100_000:
        return 2_000
    elif reserve_price < 300_000:
        return 5_000
    elif reserve_price < 700_000:
        return 10_000
    else:
        return 20_000


def default_duration(reserve_price: int) -> timedelta:
    """Auction length used when no end time is supplied: bigger tickets run longer"""
    if reserve_price < 200_000:
        return timedelta(days=1)
    elif reserve_price < 500_000:
        return timedelta(days=2)
    else:
        return timedelta(days=3)


def compute_extension(
    now: datetime,
    end_time: datetime,
    enabled: bool,
    threshold_minutes: int,
    extend_minutes: int,
    extension_count: int,
    max_extensions: int,
) -> Tuple[datetime, int, bool]:
    """
    Anti-sniping: push the end time back when a bid lands in the closing window.

    A bid extends the auction when auto-extension is enabled, the bid arrives
    within `threshold_minutes` of the end (but before it), and fewer than
    `max_extensions` extensions have been granted.

    Returns: (end_time, extension_count, extended)
    """
    remaining = end_time - now
    in_window = timedelta(0) < remaining <= timedelta(minutes=threshold_minutes)

    if enabled and in_window and extension_count < max_extensions:
        return end_time + timedelta(minutes=extend_minutes), extension_count + 1, True

    return end_time, extension_count, False


def determine_winner(
    bids: Iterable[BidCandidate],
    reserve_price: int,
    paid_bidders: Set[str],
) -> Optional[BidCandidate]:
    """
    Pick the auction winner.

    The highest bid placed by a bidder who still holds a PAID deposit is the
    candidate; it wins only if it meets the reserve (equal to reserve wins).
    Bids are strictly increasing by construction, so amounts never tie.
    """
    eligible = [b for b in bids if b.bidder_id in paid_bidders]
    if not eligible:
        return None

    best = max(eligible, key=lambda b: b.amount)
    if best.amount < reserve_price:
        return None
    return best
