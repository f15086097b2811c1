"""SQLAlchemy ORM models for the settlement core"""

import uuid
from sqlalchemy import (
    Column,
    String,
    BigInteger,
    Boolean,
    DateTime,
    Integer,
    ForeignKey,
    Text,
    UniqueConstraint,
    Index,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class Vehicle(Base):
    """Local mirror of a listed vehicle; owned by the listing service"""

    __tablename__ = "vehicle"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    seller_id = Column(Text, nullable=False, index=True)
    title = Column(Text, nullable=True)
    status = Column(String(16), nullable=False, default="PENDING")
    sale_amount = Column(BigInteger, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class Auction(Base):
    """One auction of one vehicle; never deleted"""

    __tablename__ = "auction"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    vehicle_id = Column(UUID(as_uuid=True), ForeignKey("vehicle.id"), nullable=False, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    reserve_price = Column(BigInteger, nullable=False)
    minimum_increment = Column(BigInteger, nullable=False)
    current_bid = Column(BigInteger, nullable=False, default=0)
    emd_amount = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False, default="SCHEDULED", index=True)
    winner_id = Column(Text, nullable=True)
    winning_bid_id = Column(UUID(as_uuid=True), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    ended_at = Column(DateTime(timezone=True), nullable=True)

    # Anti-sniping
    auto_extend_enabled = Column(Boolean, nullable=False, default=True)
    auto_extend_minutes = Column(Integer, nullable=False, default=5)
    auto_extend_threshold_minutes = Column(Integer, nullable=False, default=2)
    max_extensions = Column(Integer, nullable=False, default=3)
    extension_count = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    bids = relationship("Bid", back_populates="auction", order_by="Bid.amount")
    deposits = relationship("EarnestMoneyDeposit", back_populates="auction")


class Bid(Base):
    """Accepted bid; immutable apart from the winning flag"""

    __tablename__ = "bid"
    __table_args__ = (Index("ix_bid_auction_amount", "auction_id", "amount"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    auction_id = Column(UUID(as_uuid=True), ForeignKey("auction.id"), nullable=False)
    bidder_id = Column(Text, nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    bid_time = Column(DateTime(timezone=True), nullable=False)
    is_winning_bid = Column(Boolean, nullable=False, default=False)

    auction = relationship("Auction", back_populates="bids")


class EarnestMoneyDeposit(Base):
    """EMD gating one bidder's participation in one auction"""

    __tablename__ = "earnest_money_deposit"
    __table_args__ = (UniqueConstraint("auction_id", "bidder_id", name="uq_emd_auction_bidder"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    auction_id = Column(UUID(as_uuid=True), ForeignKey("auction.id"), nullable=False)
    bidder_id = Column(Text, nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False, default="PENDING")
    order_id = Column(Text, nullable=True)
    payment_id = Column(Text, nullable=True)
    payment_method = Column(Text, nullable=True)
    applied_to_balance = Column(Boolean, nullable=False, default=False)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    refund_reason = Column(Text, nullable=True)
    refund_id = Column(Text, nullable=True)
    refund_status = Column(String(16), nullable=True, index=True)
    refund_error = Column(Text, nullable=True)
    refund_attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    auction = relationship("Auction", back_populates="deposits")


class Purchase(Base):
    """Buyer's claim on a vehicle, from an auction win or a direct sale"""

    __tablename__ = "purchase"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    vehicle_id = Column(UUID(as_uuid=True), ForeignKey("vehicle.id"), nullable=False, index=True)
    auction_id = Column(UUID(as_uuid=True), ForeignKey("auction.id"), nullable=True)
    buyer_id = Column(Text, nullable=False, index=True)
    purchase_type = Column(String(16), nullable=False)
    purchase_price = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False, default="payment_pending")
    balance_amount = Column(BigInteger, nullable=False, default=0)
    emd_applied = Column(Boolean, nullable=False, default=False)
    emd_amount = Column(BigInteger, nullable=True)
    transaction_fee = Column(BigInteger, nullable=False, default=0)
    transaction_fee_paid = Column(Boolean, nullable=False, default=False)
    order_id = Column(Text, nullable=True)
    payment_id = Column(Text, nullable=True)
    paid_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    escrow = relationship("Escrow", back_populates="purchase", uselist=False)


class Escrow(Base):
    """Platform hold of buyer funds; exactly one per purchase"""

    __tablename__ = "escrow"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    purchase_id = Column(UUID(as_uuid=True), ForeignKey("purchase.id"), nullable=False, unique=True)
    amount = Column(BigInteger, nullable=False)
    escrow_fee = Column(BigInteger, nullable=False)
    status = Column(String(16), nullable=False, default="HELD")
    payment_method = Column(Text, nullable=True)
    payment_id = Column(Text, nullable=True)
    # Amount captured under payment_id; what a refund can return
    payment_amount = Column(BigInteger, nullable=True)
    held_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    released_at = Column(DateTime(timezone=True), nullable=True)
    release_reason = Column(Text, nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)
    refund_reason = Column(Text, nullable=True)
    dispute_raised = Column(Boolean, nullable=False, default=False)
    dispute_raised_by = Column(Text, nullable=True)
    dispute_description = Column(Text, nullable=True)
    dispute_raised_at = Column(DateTime(timezone=True), nullable=True)
    dispute_resolved = Column(Boolean, nullable=False, default=False)
    dispute_resolution = Column(Text, nullable=True)
    resolved_by = Column(Text, nullable=True)
    refund_id = Column(Text, nullable=True)
    refund_status = Column(String(16), nullable=True, index=True)
    refund_error = Column(Text, nullable=True)
    refund_attempts = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    purchase = relationship("Purchase", back_populates="escrow")


class PaymentOrder(Base):
    """Every order opened with the provider; payment_id marks it settled exactly once"""

    __tablename__ = "payment_order"

    order_id = Column(Text, primary_key=True)
    purpose = Column(String(16), nullable=False)
    reference_id = Column(UUID(as_uuid=True), nullable=False, index=True)
    amount = Column(BigInteger, nullable=False)
    currency = Column(String(8), nullable=False)
    receipt = Column(Text, nullable=False)
    payment_id = Column(Text, nullable=True, unique=True)
    settled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditRecord(Base):
    """Append-only, hash-linked history. Never update or delete rows."""

    __tablename__ = "audit_record"
    __table_args__ = (UniqueConstraint("stream_key", "sequence", name="uq_audit_stream_sequence"),)

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    stream_key = Column(Text, nullable=False, index=True)
    sequence = Column(Integer, nullable=False)
    record_type = Column(Text, nullable=False)
    subject_id = Column(Text, nullable=False)
    payload = Column(Text, nullable=False)
    data_hash = Column(String(64), nullable=False)
    previous_hash = Column(String(64), nullable=False)
    hash = Column(String(64), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
