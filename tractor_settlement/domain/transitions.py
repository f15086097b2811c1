"""Allowed status transitions for every settlement entity"""

import enum
from typing import Dict, FrozenSet

from tractor_settlement.domain.exceptions import ConflictError, ValidationError
from tractor_settlement.domain.models import AuctionStatus, DepositStatus, EscrowStatus, PurchaseStatus

TransitionTable = Dict[enum.Enum, FrozenSet[enum.Enum]]

AUCTION_TRANSITIONS: TransitionTable = {
    AuctionStatus.SCHEDULED: frozenset({AuctionStatus.LIVE, AuctionStatus.ENDED}),
    AuctionStatus.LIVE: frozenset({AuctionStatus.ENDED}),
    AuctionStatus.ENDED: frozenset(),
}

DEPOSIT_TRANSITIONS: TransitionTable = {
    DepositStatus.PENDING: frozenset({DepositStatus.PAID}),
    DepositStatus.PAID: frozenset({DepositStatus.REFUNDED}),
    DepositStatus.REFUNDED: frozenset(),
}

PURCHASE_TRANSITIONS: TransitionTable = {
    PurchaseStatus.PAYMENT_PENDING: frozenset({PurchaseStatus.PENDING, PurchaseStatus.CANCELLED}),
    PurchaseStatus.PENDING: frozenset({PurchaseStatus.COMPLETED, PurchaseStatus.CANCELLED}),
    PurchaseStatus.COMPLETED: frozenset(),
    PurchaseStatus.CANCELLED: frozenset(),
}

ESCROW_TRANSITIONS: TransitionTable = {
    EscrowStatus.HELD: frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.DISPUTE}),
    EscrowStatus.DISPUTE: frozenset({EscrowStatus.RELEASED, EscrowStatus.REFUNDED}),
    EscrowStatus.RELEASED: frozenset(),
    EscrowStatus.REFUNDED: frozenset(),
}

_TABLES = {
    AuctionStatus: AUCTION_TRANSITIONS,
    DepositStatus: DEPOSIT_TRANSITIONS,
    PurchaseStatus: PURCHASE_TRANSITIONS,
    EscrowStatus: ESCROW_TRANSITIONS,
}


def can_transition(current: enum.Enum, target: enum.Enum) -> bool:
    return target in _TABLES[type(current)][current]


def is_terminal(status: enum.Enum) -> bool:
    return not _TABLES[type(status)][status]


def sources_for(target: enum.Enum) -> FrozenSet[enum.Enum]:
    """Every status from which `target` may be reached"""
    table = _TABLES[type(target)]
    return frozenset(source for source, targets in table.items() if target in targets)


def ensure_transition(current: enum.Enum, target: enum.Enum, entity: str) -> None:
    """
    Raise unless current -> target is in the entity's transition table.

    Raises:
        ConflictError: current status is terminal (the entity is already settled)
        ValidationError: current status is live but does not lead to target
    """
    if can_transition(current, target):
        return
    if is_terminal(current):
        raise ConflictError(f"{entity} is already {current.value}")
    raise ValidationError(f"{entity} cannot move from {current.value} to {target.value}")
