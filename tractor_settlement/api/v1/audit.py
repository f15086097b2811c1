"""GET /v1/audit - read and verify hash-linked history"""

import json

from fastapi import APIRouter, Depends

from tractor_settlement.api.dependencies import Caller, require_admin, get_services
from tractor_settlement.api.v1.schemas import AuditRecordSchema, AuditStreamResponse, ChainVerificationResponse
from tractor_settlement.services.container import SettlementServices

router = APIRouter()


@router.get("/audit/{stream_key}", response_model=AuditStreamResponse)
def get_audit_stream(
    stream_key: str,
    _: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    """Records of one stream (e.g. `auction:<id>`) from genesis"""
    records = [
        AuditRecordSchema(
            sequence=r.sequence,
            record_type=r.record_type,
            subject_id=r.subject_id,
            payload=json.loads(r.payload),
            data_hash=r.data_hash,
            previous_hash=r.previous_hash,
            hash=r.hash,
            created_at=r.created_at,
        )
        for r in services.audit.records(stream_key)
    ]
    return AuditStreamResponse(stream_key=stream_key, records=records)


@router.get("/audit/{stream_key}/verify", response_model=ChainVerificationResponse)
def verify_audit_stream(
    stream_key: str,
    _: Caller = Depends(require_admin),
    services: SettlementServices = Depends(get_services),
):
    result = services.audit.verify_chain(stream_key)
    return ChainVerificationResponse(
        stream_key=result.stream_key,
        valid=result.valid,
        records_checked=result.records_checked,
        first_invalid_sequence=result.first_invalid_sequence,
        invalid_sequences=result.invalid_sequences,
    )
