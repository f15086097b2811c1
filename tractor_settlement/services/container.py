"""Wires the settlement services onto one database session"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from tractor_settlement.config import Settings, settings as default_settings
from tractor_settlement.domain.ports import Notifier, PaymentProvider, VehicleService
from tractor_settlement.infrastructure.database.repositories import VehicleRepository
from tractor_settlement.services.auctions import AuctionStateMachine
from tractor_settlement.services.audit_chain import AuditChain
from tractor_settlement.services.bids import BidLedger
from tractor_settlement.services.deposits import DepositLedger
from tractor_settlement.services.escrow import EscrowEngine
from tractor_settlement.services.purchases import PurchaseBook
from tractor_settlement.services.reconciliation import PaymentReconciler
from tractor_settlement.services.refund_retry import RefundRetrier


@dataclass
class SettlementServices:
    audit: AuditChain
    reconciler: PaymentReconciler
    deposits: DepositLedger
    bids: BidLedger
    escrow: EscrowEngine
    purchases: PurchaseBook
    auctions: AuctionStateMachine
    refunds: RefundRetrier


def build_services(
    db: Session,
    provider: PaymentProvider,
    notifier: Notifier,
    vehicles: Optional[VehicleService] = None,
    config: Optional[Settings] = None,
) -> SettlementServices:
    """One request's worth of services; everything shares `db` so a transition commits as a unit"""
    config = config or default_settings
    vehicles = vehicles or VehicleRepository(db)

    audit = AuditChain(db)
    reconciler = PaymentReconciler(db, provider, config.currency)
    deposits = DepositLedger(db, reconciler, provider, vehicles, audit, notifier)
    bids = BidLedger(db, deposits, vehicles, audit, notifier)
    escrow = EscrowEngine(db, provider, vehicles, audit, notifier, deposits, config)
    purchases = PurchaseBook(db, reconciler, escrow, vehicles, audit, config)
    auctions = AuctionStateMachine(db, deposits, purchases, vehicles, audit, notifier, config)
    refunds = RefundRetrier(db, provider, deposits, escrow)

    return SettlementServices(
        audit=audit,
        reconciler=reconciler,
        deposits=deposits,
        bids=bids,
        escrow=escrow,
        purchases=purchases,
        auctions=auctions,
        refunds=refunds,
    )
