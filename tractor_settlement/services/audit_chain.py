"""Audit chain - append-only, hash-linked history per stream"""

import uuid
from typing import Any, Dict, List

from sqlalchemy.orm import Session

from tractor_settlement.domain.audit_hash import GENESIS_HASH, chain_hash, find_broken_links, serialize_payload, sha256_hex
from tractor_settlement.domain.models import ChainVerification
from tractor_settlement.infrastructure.database.models import AuditRecord
from tractor_settlement.infrastructure.database.repositories import AuditRepository


def auction_stream(auction_id: uuid.UUID) -> str:
    return f"auction:{auction_id}"


def purchase_stream(purchase_id: uuid.UUID) -> str:
    return f"purchase:{purchase_id}"


def vehicle_stream(vehicle_id: uuid.UUID) -> str:
    return f"vehicle:{vehicle_id}"


class AuditChain:
    """
    Tamper-evident record store.

    Appends join the caller's transaction: they are flushed, never committed
    here, so a rolled-back transition leaves no trace in the chain.
    """

    def __init__(self, db: Session):
        self.repo = AuditRepository(db)

    def append(self, stream_key: str, record_type: str, subject_id: Any, payload: Dict[str, Any]) -> AuditRecord:
        """Link a new record to the latest one in `stream_key` (genesis links to the empty hash)"""
        previous = self.repo.latest(stream_key)
        previous_hash = previous.hash if previous else GENESIS_HASH
        sequence = previous.sequence + 1 if previous else 1

        serialized = serialize_payload(payload)
        record = AuditRecord(
            stream_key=stream_key,
            sequence=sequence,
            record_type=record_type,
            subject_id=str(subject_id),
            payload=serialized,
            data_hash=sha256_hex(serialized),
            previous_hash=previous_hash,
            hash=chain_hash(serialized, previous_hash),
        )
        return self.repo.add(record)

    def records(self, stream_key: str) -> List[AuditRecord]:
        return self.repo.list_stream(stream_key)

    def verify_chain(self, stream_key: str) -> ChainVerification:
        """Recompute every hash from genesis forward; valid iff no record was altered"""
        records = self.repo.list_stream(stream_key)
        broken = find_broken_links(
            (r.sequence, r.payload, r.previous_hash, r.hash) for r in records
        )
        return ChainVerification(
            stream_key=stream_key,
            valid=not broken,
            records_checked=len(records),
            first_invalid_sequence=broken[0] if broken else None,
            invalid_sequences=broken,
        )
