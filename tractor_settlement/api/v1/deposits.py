"""Earnest-money deposits, refunds and the scheduler hook"""

import uuid

from fastapi import APIRouter, Depends

from tractor_settlement.api.dependencies import Caller, get_caller, get_services, require_admin, verify_cron_secret
from tractor_settlement.api.v1.schemas import (
    DepositConfirmResponse,
    DepositOrderResponse,
    DepositRefundSchema,
    DepositRequest,
    DepositResponse,
    PaymentCallbackRequest,
    RefundBatchResponse,
    RefundRequest,
    RetryReportResponse,
    SchedulerReportResponse,
    order_response,
    refund_batch_response,
    refund_result_schema,
)
from tractor_settlement.domain.exceptions import NotFoundError
from tractor_settlement.domain.models import PaymentCallback
from tractor_settlement.services.container import SettlementServices

router = APIRouter()


@router.post("/auctions/{auction_id}/emd", response_model=DepositOrderResponse, status_code=201)
async def request_deposit(
    auction_id: uuid.UUID,
    body: DepositRequest,
    caller: Caller = Depends(get_caller),
    services: SettlementServices = Depends(get_services),
):
    """Open a payment order for the caller's EMD; test mode settles it immediately"""
    deposit, order = await services.deposits.request_deposit(auction_id, caller.user_id, body.amount)
    return DepositOrderResponse(deposit=DepositResponse.model_validate(deposit), order=order_response(order))


@router.post("/auctions/{auction_id}/emd/callback", response_model=DepositConfirmResponse)
async def confirm_deposit(
    auction_id: uuid.UUID,
    body: PaymentCallbackRequest,
    caller: Caller = Depends(get_caller),
    services: SettlementServices = Depends(get_services),
):
    """Apply the provider's signed callback; replays return the settled deposit unchanged"""
    deposit = services.deposits.get_deposit(auction_id, caller.user_id)
    if deposit is None:
        raise NotFoundError("EMD not found for this auction")

    callback = PaymentCallback(order_id=body.order_id, payment_id=body.payment_id, signature=body.signature)
    deposit, duplicate = await services.deposits.confirm_deposit(deposit.id, callback)
    return DepositConfirmResponse(deposit=DepositResponse.model_validate(deposit), duplicate=duplicate)


@router.post("/auctions/{auction_id}/emd/refund-all", response_model=RefundBatchResponse)
async def refund_all_deposits(
    auction_id: uuid.UUID,
    body: RefundRequest,
    _: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    """Refund every losing bidder; the winner's deposit stays with their purchase"""
    auction = services.auctions.get_auction(auction_id)
    batch = await services.deposits.refund_all_except(
        auction_id, auction.winner_id, body.reason or "Auction lost"
    )
    return refund_batch_response(batch)


@router.post("/deposits/{deposit_id}/refund", response_model=DepositRefundSchema)
async def refund_deposit(
    deposit_id: uuid.UUID,
    body: RefundRequest,
    _: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    result = await services.deposits.refund_deposit(deposit_id, body.reason or "Refunded by admin")
    return refund_result_schema(result)


@router.post("/refunds/retry", response_model=RetryReportResponse)
async def retry_refunds(
    _: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    report = await services.refunds.retry_failed_refunds()
    return RetryReportResponse(refunded=report.refunded, still_failing=report.still_failing)


@router.post("/cron/auction-status", response_model=SchedulerReportResponse, dependencies=[Depends(verify_cron_secret)])
async def run_scheduler_tick(services: SettlementServices = Depends(get_services)):
    """Called by an external scheduler: start due auctions, end expired ones"""
    report = await services.auctions.run_scheduler_tick()
    return SchedulerReportResponse(
        ran_at=report.ran_at,
        started=report.started,
        ended=report.ended,
        errors=report.errors,
    )
