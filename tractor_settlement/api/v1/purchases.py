"""/v1/purchases - direct sales and balance payments"""

import uuid

from fastapi import APIRouter, Depends

from tractor_settlement.api.dependencies import Caller, get_caller, get_services
from tractor_settlement.api.v1.schemas import (
    PaymentCallbackRequest,
    PurchaseConfirmResponse,
    PurchaseCreateRequest,
    PurchasePaymentResponse,
    PurchaseResponse,
    order_response,
)
from tractor_settlement.domain.exceptions import AuthorizationError
from tractor_settlement.domain.models import PaymentCallback
from tractor_settlement.services.container import SettlementServices

router = APIRouter()


@router.post("/purchases", response_model=PurchaseResponse, status_code=201)
async def create_purchase(
    body: PurchaseCreateRequest,
    caller: Caller = Depends(get_caller),
    services: SettlementServices = Depends(get_services),
):
    return await services.purchases.create_direct_purchase(body.vehicle_id, caller.user_id)


@router.get("/purchases/{purchase_id}", response_model=PurchaseResponse)
def get_purchase(
    purchase_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    services: SettlementServices = Depends(get_services),
):
    purchase = services.purchases.get_purchase(purchase_id)
    if not caller.is_admin and purchase.buyer_id != caller.user_id:
        raise AuthorizationError("Not your purchase")
    return purchase


@router.post("/purchases/{purchase_id}/payment", response_model=PurchasePaymentResponse)
async def request_purchase_payment(
    purchase_id: uuid.UUID,
    caller: Caller = Depends(get_caller),
    services: SettlementServices = Depends(get_services),
):
    """Open an order for the outstanding balance plus transaction fee"""
    purchase, order = await services.purchases.request_payment(purchase_id, caller.user_id)
    return PurchasePaymentResponse(purchase=PurchaseResponse.model_validate(purchase), order=order_response(order))


@router.post("/purchases/{purchase_id}/payment/callback", response_model=PurchaseConfirmResponse)
async def confirm_purchase_payment(
    purchase_id: uuid.UUID,
    body: PaymentCallbackRequest,
    caller: Caller = Depends(get_caller),
    services: SettlementServices = Depends(get_services),
):
    purchase = services.purchases.get_purchase(purchase_id)
    if purchase.buyer_id != caller.user_id:
        raise AuthorizationError("Only the buyer can confirm this payment")

    callback = PaymentCallback(order_id=body.order_id, payment_id=body.payment_id, signature=body.signature)
    purchase, duplicate = await services.purchases.confirm_payment(purchase_id, callback)
    return PurchaseConfirmResponse(purchase=PurchaseResponse.model_validate(purchase), duplicate=duplicate)
