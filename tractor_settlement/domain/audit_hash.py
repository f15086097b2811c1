"""Hash-chain primitives for the tamper-evident audit log"""

import hashlib
import json
from typing import Any, Dict, Iterable, List, Optional, Tuple

GENESIS_HASH = ""


def serialize_payload(payload: Dict[str, Any]) -> str:
    """Canonical JSON: sorted keys, compact separators, non-JSON values via str()"""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)


def sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def chain_hash(serialized: str, previous_hash: str) -> str:
    """hash = H(data || previousHash)"""
    return sha256_hex(serialized + previous_hash)


def find_broken_links(records: Iterable[Tuple[int, str, str, str]]) -> List[int]:
    """
    Walk a stream from genesis and return the sequences that fail verification.

    Each record is (sequence, serialized_payload, previous_hash, hash), ordered
    by sequence. Hashes are recomputed forward from our own recomputed values,
    not the stored ones, so an altered record breaks itself and everything
    appended after it.
    """
    broken: List[int] = []
    expected_previous: Optional[str] = GENESIS_HASH

    for sequence, serialized, previous_hash, stored_hash in records:
        recomputed = chain_hash(serialized, expected_previous)
        if previous_hash != expected_previous or stored_hash != recomputed:
            broken.append(sequence)
        expected_previous = recomputed

    return broken
