"""Integration tests for the auction state machine"""

import asyncio
import pytest
from datetime import timedelta
from tractor_settlement.domain.exceptions import (
    AuthorizationError,
    ConflictError,
    GatewayTimeoutError,
    ValidationError,
)
from tractor_settlement.domain.models import (
    AuctionStatus,
    DepositStatus,
    PurchaseStatus,
    RefundOutcome,
    VehicleStatus,
)
from tractor_settlement.infrastructure.database.repositories import AuctionRepository, VehicleRepository
from tractor_settlement.services.auctions import NO_ELIGIBLE_BIDS, RESERVE_NOT_MET
from tractor_settlement.utils.date_utils import as_utc


async def open_auction(services, vehicle_id, now, **overrides):
    fields = dict(
        vehicle_id=vehicle_id,
        start_time=now - timedelta(hours=1),
        end_time=now + timedelta(hours=1),
        reserve_price=100000,
        emd_amount=10000,
        minimum_increment=5000,
        auto_extend_enabled=False,
    )
    fields.update(overrides)
    auction = services.auctions.create_auction(**fields)
    await services.auctions.start_auction(auction.id, now=now)
    return auction


async def test_winner_gets_purchase_and_losers_are_refunded(
    services, db, provider, notifier, vehicle, live_auction, pay_deposit, now
):
    await pay_deposit(live_auction.id, "buyer_a")
    await pay_deposit(live_auction.id, "buyer_b")
    await services.bids.place_bid(live_auction.id, "buyer_a", 105000, now=now)
    await services.bids.place_bid(live_auction.id, "buyer_b", 115000, now=now)

    result = await services.auctions.end_auction(live_auction.id, now=now)

    assert result.already_ended is False
    assert result.winner_id == "buyer_b"
    assert result.winning_amount == 115000

    auction = services.auctions.get_auction(live_auction.id)
    assert auction.status == AuctionStatus.ENDED.value
    assert auction.winner_id == "buyer_b"
    assert auction.rejection_reason is None

    purchase = services.purchases.get_purchase(result.purchase_id)
    assert purchase.buyer_id == "buyer_b"
    assert purchase.status == PurchaseStatus.PAYMENT_PENDING.value
    assert purchase.purchase_price == 115000
    assert purchase.emd_applied is True
    assert purchase.balance_amount == 105000
    # Standard 4% rate: the promotional window closed before this auction ended
    assert purchase.transaction_fee == 4600
    assert services.purchases.amount_due(purchase) == 109600

    assert VehicleRepository(db).get_vehicle(vehicle.id).status == VehicleStatus.AUCTION
    assert services.deposits.get_deposit(live_auction.id, "buyer_a").status == DepositStatus.REFUNDED.value
    winner_deposit = services.deposits.get_deposit(live_auction.id, "buyer_b")
    assert winner_deposit.status == DepositStatus.PAID.value
    assert winner_deposit.applied_to_balance is True
    assert provider.refunds == [("pay_buyer_a", 10000)]

    winning_bids = [b for b in services.bids.list_bids(live_auction.id) if b.is_winning_bid]
    assert [b.bidder_id for b in winning_bids] == ["buyer_b"]
    assert "auction.ended" in notifier.names()


async def test_below_reserve_ends_without_winner(services, db, provider, vehicle, pay_deposit, now):
    auction = await open_auction(services, vehicle.id, now)
    await pay_deposit(auction.id, "buyer_a")
    await services.bids.place_bid(auction.id, "buyer_a", 90000, now=now)

    result = await services.auctions.end_auction(auction.id, now=now)

    assert result.winner_id is None
    assert result.purchase_id is None
    auction = services.auctions.get_auction(auction.id)
    assert auction.status == AuctionStatus.ENDED.value
    assert auction.rejection_reason == RESERVE_NOT_MET
    assert VehicleRepository(db).get_vehicle(vehicle.id).status == VehicleStatus.APPROVED
    assert provider.refunds == [("pay_buyer_a", 10000)]


async def test_bid_equal_to_reserve_wins(services, vehicle, pay_deposit, now):
    auction = await open_auction(services, vehicle.id, now)
    await pay_deposit(auction.id, "buyer_a")
    await services.bids.place_bid(auction.id, "buyer_a", 100000, now=now)

    result = await services.auctions.end_auction(auction.id, now=now)

    assert result.winner_id == "buyer_a"
    assert result.winning_amount == 100000


async def test_no_bids_ends_without_winner(services, live_auction, now):
    result = await services.auctions.end_auction(live_auction.id, now=now)

    assert result.winner_id is None
    assert services.auctions.get_auction(live_auction.id).rejection_reason == NO_ELIGIBLE_BIDS


async def test_bidder_without_paid_deposit_cannot_win(services, live_auction, pay_deposit, now):
    deposit_a = await pay_deposit(live_auction.id, "buyer_a")
    await pay_deposit(live_auction.id, "buyer_b")
    await services.bids.place_bid(live_auction.id, "buyer_b", 105000, now=now)
    await services.bids.place_bid(live_auction.id, "buyer_a", 115000, now=now)
    await services.deposits.refund_deposit(deposit_a.id, "Withdrawn")

    result = await services.auctions.end_auction(live_auction.id, now=now)

    assert result.winner_id == "buyer_b"
    assert result.winning_amount == 105000


async def test_deposit_with_unsettled_refund_is_not_absorbed(services, provider, live_auction, pay_deposit, now):
    deposit = await pay_deposit(live_auction.id, "buyer_a")
    await services.bids.place_bid(live_auction.id, "buyer_a", 105000, now=now)
    provider.refund_error = GatewayTimeoutError("timeout")
    await services.deposits.refund_deposit(deposit.id, "Withdrawn")

    result = await services.auctions.end_auction(live_auction.id, now=now)

    purchase = services.purchases.get_purchase(result.purchase_id)
    assert result.winner_id == "buyer_a"
    assert purchase.emd_applied is False
    assert purchase.balance_amount == 105000
    assert services.deposits.get_deposit(live_auction.id, "buyer_a").applied_to_balance is False


async def test_end_is_idempotent(services, provider, live_auction, pay_deposit, now):
    await pay_deposit(live_auction.id, "buyer_a")
    await services.bids.place_bid(live_auction.id, "buyer_a", 105000, now=now)

    first = await services.auctions.end_auction(live_auction.id, now=now)
    second = await services.auctions.end_auction(live_auction.id, now=now + timedelta(minutes=1))

    assert first.already_ended is False
    assert second.already_ended is True
    assert second.winner_id == first.winner_id == "buyer_a"
    assert provider.refunds == []


async def test_concurrent_end_settles_once(services, db, notifier, live_auction, pay_deposit, now):
    await pay_deposit(live_auction.id, "buyer_a")
    await pay_deposit(live_auction.id, "buyer_b")
    await services.bids.place_bid(live_auction.id, "buyer_a", 105000, now=now)

    results = await asyncio.gather(
        services.auctions.end_auction(live_auction.id, now=now),
        services.auctions.end_auction(live_auction.id, now=now),
    )

    assert sorted(r.already_ended for r in results) == [False, True]
    assert notifier.names().count("auction.ended") == 1
    # The status swap itself refuses a second close
    assert not AuctionRepository(db).compare_and_set_status(
        live_auction.id,
        [AuctionStatus.SCHEDULED, AuctionStatus.LIVE],
        {"status": AuctionStatus.ENDED.value},
    )


async def test_fail_auction_refunds_everyone(services, db, provider, vehicle, live_auction, pay_deposit, now):
    await pay_deposit(live_auction.id, "buyer_a")
    await pay_deposit(live_auction.id, "buyer_b")
    await services.bids.place_bid(live_auction.id, "buyer_a", 115000, now=now)

    result = await services.auctions.fail_auction(live_auction.id, "Seller withdrew", now=now)

    assert result.winner_id is None
    assert services.auctions.get_auction(live_auction.id).rejection_reason == "Seller withdrew"
    assert sorted(provider.refunds) == [("pay_buyer_a", 10000), ("pay_buyer_b", 10000)]
    assert VehicleRepository(db).get_vehicle(vehicle.id).status == VehicleStatus.APPROVED


async def test_refund_failure_does_not_undo_end(services, provider, live_auction, pay_deposit, now):
    await pay_deposit(live_auction.id, "buyer_a")
    await pay_deposit(live_auction.id, "buyer_b")
    await services.bids.place_bid(live_auction.id, "buyer_b", 105000, now=now)
    provider.refund_error = GatewayTimeoutError("Payment provider timeout after 5.0s (refund)")

    result = await services.auctions.end_auction(live_auction.id, now=now)

    assert result.winner_id == "buyer_b"
    assert len(result.refunds.failed) == 1
    assert services.auctions.get_auction(live_auction.id).status == AuctionStatus.ENDED.value
    loser = services.deposits.get_deposit(live_auction.id, "buyer_a")
    assert loser.status == DepositStatus.PAID.value
    assert loser.refund_status == RefundOutcome.RETRY_NEEDED.value


async def test_start_before_start_time_rejected(services, vehicle, now):
    auction = services.auctions.create_auction(
        vehicle_id=vehicle.id,
        start_time=now + timedelta(hours=1),
        end_time=now + timedelta(hours=2),
        reserve_price=100000,
        emd_amount=10000,
    )
    with pytest.raises(ValidationError):
        await services.auctions.start_auction(auction.id, now=now)

    assert services.auctions.get_auction(auction.id).status == AuctionStatus.SCHEDULED.value


async def test_start_is_idempotent_and_refused_after_end(services, live_auction, now):
    assert await services.auctions.start_auction(live_auction.id, now=now) is False

    await services.auctions.end_auction(live_auction.id, now=now)
    with pytest.raises(ConflictError):
        await services.auctions.start_auction(live_auction.id, now=now)


async def test_scheduler_tick_starts_and_ends_due_auctions(services, db, vehicle, now):
    other = VehicleRepository(db).create_vehicle("seller_2", sale_amount=300000)
    db.commit()
    due_to_start = services.auctions.create_auction(
        vehicle_id=vehicle.id,
        start_time=now - timedelta(minutes=1),
        end_time=now + timedelta(hours=1),
        reserve_price=100000,
        emd_amount=10000,
    )
    due_to_end = services.auctions.create_auction(
        vehicle_id=other.id,
        start_time=now - timedelta(hours=2),
        end_time=now - timedelta(minutes=1),
        reserve_price=100000,
        emd_amount=10000,
    )

    report = await services.auctions.run_scheduler_tick(now=now)

    assert report.started == [due_to_start.id]
    assert report.ended == [due_to_end.id]
    assert report.errors == []
    assert services.auctions.get_auction(due_to_start.id).status == AuctionStatus.LIVE.value
    assert services.auctions.get_auction(due_to_end.id).status == AuctionStatus.ENDED.value

    # Nothing left to do on the next sweep
    again = await services.auctions.run_scheduler_tick(now=now)
    assert again.started == [] and again.ended == []


def test_create_auction_uses_slab_defaults(services, vehicle, now):
    auction = services.auctions.create_auction(
        vehicle_id=vehicle.id,
        start_time=now,
        reserve_price=250000,
        emd_amount=25000,
    )

    assert auction.minimum_increment == 5000
    assert as_utc(auction.end_time) == now + timedelta(days=2)
    assert auction.status == AuctionStatus.SCHEDULED.value
    assert auction.current_bid == 0


@pytest.mark.parametrize(
    "overrides",
    [
        {"reserve_price": 0},
        {"emd_amount": 0},
        {"minimum_increment": 0},
        {"opening_bid": -1},
        {"end_time_offset": timedelta(0)},
    ],
)
def test_create_auction_validation(services, vehicle, now, overrides):
    fields = dict(vehicle_id=vehicle.id, start_time=now, reserve_price=100000, emd_amount=10000)
    overrides = dict(overrides)
    offset = overrides.pop("end_time_offset", None)
    if offset is not None:
        fields["end_time"] = now + offset
    fields.update(overrides)

    with pytest.raises(ValidationError):
        services.auctions.create_auction(**fields)


def test_create_auction_checks_seller_and_vehicle(services, db, vehicle, now):
    with pytest.raises(AuthorizationError):
        services.auctions.create_auction(
            vehicle_id=vehicle.id, start_time=now, reserve_price=100000, emd_amount=10000, seller_id="someone_else"
        )

    pending = VehicleRepository(db).create_vehicle("seller_1", status=VehicleStatus.PENDING)
    db.commit()
    with pytest.raises(ValidationError):
        services.auctions.create_auction(vehicle_id=pending.id, start_time=now, reserve_price=100000, emd_amount=10000)


def test_one_open_auction_per_vehicle(services, vehicle, now):
    services.auctions.create_auction(vehicle_id=vehicle.id, start_time=now, reserve_price=100000, emd_amount=10000)

    with pytest.raises(ConflictError):
        services.auctions.create_auction(vehicle_id=vehicle.id, start_time=now, reserve_price=100000, emd_amount=10000)
