"""/v1/escrow - holds, releases, refunds and disputes"""

import uuid

from fastapi import APIRouter, Depends

from tractor_settlement.api.dependencies import Caller, get_caller, get_services, require_admin
from tractor_settlement.api.v1.schemas import (
    DisputeRequest,
    EscrowCreateRequest,
    EscrowResolveRequest,
    EscrowResponse,
)
from tractor_settlement.services.container import SettlementServices

router = APIRouter()


@router.post("/escrow", response_model=EscrowResponse, status_code=201)
async def create_escrow(
    body: EscrowCreateRequest,
    _: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    return await services.escrow.create_escrow(
        body.purchase_id, body.amount, payment_id=body.payment_id, payment_method=body.payment_method
    )


@router.get("/escrow/{escrow_id}", response_model=EscrowResponse)
def get_escrow(
    escrow_id: uuid.UUID,
    _: Caller = Depends(get_caller),
    services: SettlementServices = Depends(get_services),
):
    return services.escrow.get_escrow(escrow_id)


@router.post("/escrow/{escrow_id}/release", response_model=EscrowResponse)
async def release_escrow(
    escrow_id: uuid.UUID,
    body: EscrowResolveRequest,
    caller: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    return await services.escrow.release(escrow_id, body.reason, caller.user_id)


@router.post("/escrow/{escrow_id}/refund", response_model=EscrowResponse)
async def refund_escrow(
    escrow_id: uuid.UUID,
    body: EscrowResolveRequest,
    caller: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    return await services.escrow.refund(escrow_id, body.reason, caller.user_id)


@router.post("/escrow/{escrow_id}/dispute", response_model=EscrowResponse)
async def raise_dispute(
    escrow_id: uuid.UUID,
    body: DisputeRequest,
    caller: Caller = Depends(get_caller),
    services: SettlementServices = Depends(get_services),
):
    """Buyer or seller only; the core re-checks the caller against the purchase"""
    return await services.escrow.raise_dispute(escrow_id, caller.user_id, body.description)
