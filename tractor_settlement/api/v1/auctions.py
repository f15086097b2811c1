"""/v1/auctions - auction lifecycle and bidding"""

import uuid
from typing import List

from fastapi import APIRouter, Depends, HTTPException

from tractor_settlement.api.dependencies import Caller, get_caller, get_services, require_admin
from tractor_settlement.api.v1.schemas import (
    AuctionCreateRequest,
    AuctionEndResponse,
    AuctionFailRequest,
    AuctionResponse,
    BidRequest,
    BidResponse,
    StartAuctionResponse,
    refund_batch_response,
)
from tractor_settlement.domain.models import AuctionEndResult
from tractor_settlement.services.container import SettlementServices

router = APIRouter()


def _end_response(result: AuctionEndResult) -> AuctionEndResponse:
    return AuctionEndResponse(
        auction_id=result.auction_id,
        already_ended=result.already_ended,
        winner_id=result.winner_id,
        winning_bid_id=result.winning_bid_id,
        winning_amount=result.winning_amount,
        purchase_id=result.purchase_id,
        refunds=refund_batch_response(result.refunds) if result.refunds else None,
    )


@router.post("/auctions", response_model=AuctionResponse, status_code=201)
def create_auction(
    body: AuctionCreateRequest,
    caller: Caller = Depends(get_caller),
    services: SettlementServices = Depends(get_services),
):
    """Schedule an auction; sellers may only auction their own vehicles"""
    if caller.role not in ("seller", "admin"):
        raise HTTPException(status_code=403, detail="Only sellers or admins can create auctions")

    return services.auctions.create_auction(
        vehicle_id=body.vehicle_id,
        start_time=body.start_time,
        end_time=body.end_time,
        reserve_price=body.reserve_price,
        emd_amount=body.emd_amount,
        minimum_increment=body.minimum_increment,
        opening_bid=body.opening_bid,
        seller_id=None if caller.is_admin else caller.user_id,
        auto_extend_enabled=body.auto_extend_enabled,
        auto_extend_minutes=body.auto_extend_minutes,
        auto_extend_threshold_minutes=body.auto_extend_threshold_minutes,
        max_extensions=body.max_extensions,
    )


@router.get("/auctions/{auction_id}", response_model=AuctionResponse)
def get_auction(auction_id: uuid.UUID, services: SettlementServices = Depends(get_services)):
    return services.auctions.get_auction(auction_id)


@router.post("/auctions/{auction_id}/start", response_model=StartAuctionResponse)
async def start_auction(
    auction_id: uuid.UUID,
    _: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    changed = await services.auctions.start_auction(auction_id)
    return StartAuctionResponse(
        auction=AuctionResponse.model_validate(services.auctions.get_auction(auction_id)),
        changed=changed,
    )


@router.post("/auctions/{auction_id}/end", response_model=AuctionEndResponse)
async def end_auction(
    auction_id: uuid.UUID,
    caller: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    """
    End the auction now.

    Safe to call concurrently with the scheduler: exactly one caller ends it,
    the other receives `already_ended: true`.
    """
    result = await services.auctions.end_auction(auction_id, ended_by=caller.user_id)
    return _end_response(result)


@router.post("/auctions/{auction_id}/fail", response_model=AuctionEndResponse)
async def fail_auction(
    auction_id: uuid.UUID,
    body: AuctionFailRequest,
    caller: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    result = await services.auctions.fail_auction(auction_id, body.reason, ended_by=caller.user_id)
    return _end_response(result)


@router.get("/auctions/{auction_id}/bids", response_model=List[BidResponse])
def list_bids(auction_id: uuid.UUID, services: SettlementServices = Depends(get_services)):
    return services.bids.list_bids(auction_id)


@router.post("/auctions/{auction_id}/bids", response_model=BidResponse, status_code=201)
async def place_bid(
    auction_id: uuid.UUID,
    body: BidRequest,
    caller: Caller = Depends(get_caller),
    services: SettlementServices = Depends(get_services),
):
    return await services.bids.place_bid(auction_id, caller.user_id, body.amount)
