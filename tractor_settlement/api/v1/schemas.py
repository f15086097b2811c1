"""Pydantic schemas for API request/response validation"""

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


# Auctions


class AuctionCreateRequest(BaseModel):
    """Request body for POST /v1/auctions"""

    vehicle_id: uuid.UUID
    start_time: datetime
    end_time: Optional[datetime] = Field(None, description="Defaults to a duration slab on the reserve price")
    reserve_price: int = Field(..., gt=0, description="Reserve price in minor currency units")
    emd_amount: int = Field(..., gt=0, description="Earnest money deposit required to bid")
    minimum_increment: Optional[int] = Field(None, gt=0, description="Defaults to an increment slab on the reserve price")
    opening_bid: int = Field(0, ge=0)
    auto_extend_enabled: Optional[bool] = None
    auto_extend_minutes: Optional[int] = Field(None, gt=0)
    auto_extend_threshold_minutes: Optional[int] = Field(None, gt=0)
    max_extensions: Optional[int] = Field(None, ge=0)


class AuctionResponse(ORMModel):
    id: uuid.UUID
    vehicle_id: uuid.UUID
    status: str
    start_time: datetime
    end_time: datetime
    reserve_price: int
    minimum_increment: int
    current_bid: int
    emd_amount: int
    winner_id: Optional[str] = None
    winning_bid_id: Optional[uuid.UUID] = None
    rejection_reason: Optional[str] = None
    ended_at: Optional[datetime] = None
    auto_extend_enabled: bool
    extension_count: int
    max_extensions: int


class AuctionFailRequest(BaseModel):
    reason: Optional[str] = None


class StartAuctionResponse(BaseModel):
    auction: AuctionResponse
    changed: bool


class BidRequest(BaseModel):
    """Request body for POST /v1/auctions/{id}/bids"""

    amount: int = Field(..., gt=0, description="Bid amount in minor currency units")


class BidResponse(ORMModel):
    id: uuid.UUID
    auction_id: uuid.UUID
    bidder_id: str
    amount: int
    bid_time: datetime
    is_winning_bid: bool


# Deposits and refunds


class DepositRequest(BaseModel):
    """Request body for POST /v1/auctions/{id}/emd"""

    amount: int = Field(..., gt=0)


class DepositResponse(ORMModel):
    id: uuid.UUID
    auction_id: uuid.UUID
    bidder_id: str
    amount: int
    status: str
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    applied_to_balance: bool
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_status: Optional[str] = None
    refund_error: Optional[str] = None


class GatewayOrderResponse(BaseModel):
    order_id: str
    amount: int
    currency: str
    receipt: str
    settled: bool = Field(..., description="True when the order was paid on creation (test mode)")


class DepositOrderResponse(BaseModel):
    deposit: DepositResponse
    order: GatewayOrderResponse


class PaymentCallbackRequest(BaseModel):
    """Signed payload the payment provider hands back after checkout"""

    order_id: str = Field(..., min_length=1)
    payment_id: str = Field(..., min_length=1)
    signature: str = Field(..., min_length=1)


class DepositConfirmResponse(BaseModel):
    deposit: DepositResponse
    duplicate: bool


class RefundRequest(BaseModel):
    reason: Optional[str] = None


class DepositRefundSchema(BaseModel):
    deposit_id: uuid.UUID
    bidder_id: str
    outcome: str
    error: Optional[str] = None
    already_refunded: bool = False


class RefundBatchResponse(BaseModel):
    auction_id: uuid.UUID
    refunded: List[DepositRefundSchema]
    failed: List[DepositRefundSchema]


class AuctionEndResponse(BaseModel):
    auction_id: uuid.UUID
    already_ended: bool
    winner_id: Optional[str] = None
    winning_bid_id: Optional[uuid.UUID] = None
    winning_amount: Optional[int] = None
    purchase_id: Optional[uuid.UUID] = None
    refunds: Optional[RefundBatchResponse] = None


class RetryReportResponse(BaseModel):
    refunded: List[uuid.UUID]
    still_failing: List[uuid.UUID]


class SchedulerReportResponse(BaseModel):
    ran_at: datetime
    started: List[uuid.UUID]
    ended: List[uuid.UUID]
    errors: List[str]


# Purchases


class PurchaseCreateRequest(BaseModel):
    """Request body for POST /v1/purchases (direct sale)"""

    vehicle_id: uuid.UUID


class PurchaseResponse(ORMModel):
    id: uuid.UUID
    vehicle_id: uuid.UUID
    auction_id: Optional[uuid.UUID] = None
    buyer_id: str
    purchase_type: str
    purchase_price: int
    status: str
    balance_amount: int
    emd_applied: bool
    emd_amount: Optional[int] = None
    transaction_fee: int
    transaction_fee_paid: bool
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    paid_at: Optional[datetime] = None


class PurchasePaymentResponse(BaseModel):
    purchase: PurchaseResponse
    order: GatewayOrderResponse


class PurchaseConfirmResponse(BaseModel):
    purchase: PurchaseResponse
    duplicate: bool


# Escrow


class EscrowCreateRequest(BaseModel):
    purchase_id: uuid.UUID
    amount: int = Field(..., gt=0)
    payment_id: Optional[str] = None
    payment_method: Optional[str] = None


class EscrowResolveRequest(BaseModel):
    reason: Optional[str] = None


class DisputeRequest(BaseModel):
    description: str = Field(..., min_length=1)


class EscrowResponse(ORMModel):
    id: uuid.UUID
    purchase_id: uuid.UUID
    amount: int
    escrow_fee: int
    status: str
    payment_id: Optional[str] = None
    held_at: datetime
    released_at: Optional[datetime] = None
    release_reason: Optional[str] = None
    refunded_at: Optional[datetime] = None
    refund_reason: Optional[str] = None
    dispute_raised: bool
    dispute_raised_by: Optional[str] = None
    dispute_description: Optional[str] = None
    dispute_resolved: bool
    dispute_resolution: Optional[str] = None
    resolved_by: Optional[str] = None
    refund_status: Optional[str] = None


# Audit


class AuditRecordSchema(BaseModel):
    sequence: int
    record_type: str
    subject_id: str
    payload: Dict[str, Any]
    data_hash: str
    previous_hash: str
    hash: str
    created_at: Optional[datetime] = None


class AuditStreamResponse(BaseModel):
    stream_key: str
    records: List[AuditRecordSchema]


class ChainVerificationResponse(BaseModel):
    stream_key: str
    valid: bool
    records_checked: int
    first_invalid_sequence: Optional[int] = None
    invalid_sequences: List[int]


def order_response(order) -> GatewayOrderResponse:
    return GatewayOrderResponse(
        order_id=order.order_id,
        amount=order.amount,
        currency=order.currency,
        receipt=order.receipt,
        settled=order.payment_id is not None,
    )


def refund_result_schema(result) -> DepositRefundSchema:
    return DepositRefundSchema(
        deposit_id=result.deposit_id,
        bidder_id=result.bidder_id,
        outcome=result.outcome.value,
        error=result.error,
        already_refunded=result.already_refunded,
    )


def refund_batch_response(batch) -> RefundBatchResponse:
    return RefundBatchResponse(
        auction_id=batch.auction_id,
        refunded=[refund_result_schema(r) for r in batch.refunded],
        failed=[refund_result_schema(r) for r in batch.failed],
    )
