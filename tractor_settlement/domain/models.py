"""Domain models - pure Python enums and dataclasses representing settlement entities"""

import enum
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional


class VehicleStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    AUCTION = "AUCTION"
    SOLD = "SOLD"


class AuctionStatus(str, enum.Enum):
    SCHEDULED = "SCHEDULED"
    LIVE = "LIVE"
    ENDED = "ENDED"


class DepositStatus(str, enum.Enum):
    PENDING = "PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"


class PurchaseStatus(str, enum.Enum):
    PAYMENT_PENDING = "payment_pending"
    PENDING = "pending"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PurchaseType(str, enum.Enum):
    AUCTION = "AUCTION"
    DIRECT = "DIRECT"


class EscrowStatus(str, enum.Enum):
    HELD = "HELD"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    DISPUTE = "DISPUTE"


class RefundOutcome(str, enum.Enum):
    """Result of asking the provider to return funds"""

    REFUNDED = "refunded"
    REFUND_FAILED = "REFUND_FAILED"  # provider said no; status advanced anyway
    RETRY_NEEDED = "RETRY_NEEDED"  # provider timed out; status left untouched
    SKIPPED = "skipped"  # no real payment reference to refund
    IN_PROGRESS = "IN_PROGRESS"  # refund claimed, provider call in flight


class PaymentPurpose(str, enum.Enum):
    DEPOSIT = "deposit"
    PURCHASE = "purchase"


@dataclass
class VehicleInfo:
    """Vehicle as seen by the settlement core"""

    id: uuid.UUID
    seller_id: str
    status: VehicleStatus
    sale_amount: Optional[int] = None


@dataclass
class GatewayOrder:
    """Order opened with the payment provider"""

    order_id: str
    amount: int
    currency: str
    receipt: str
    # Pre-filled only by the test-mode provider: the order is already paid
    payment_id: Optional[str] = None


@dataclass
class PaymentCallback:
    """Callback payload delivered by the payment provider"""

    order_id: str
    payment_id: str
    signature: str


@dataclass
class DepositRefundResult:
    deposit_id: uuid.UUID
    bidder_id: str
    outcome: RefundOutcome
    error: Optional[str] = None
    already_refunded: bool = False

    @property
    def succeeded(self) -> bool:
        return self.outcome in (RefundOutcome.REFUNDED, RefundOutcome.SKIPPED)


@dataclass
class RefundBatchResult:
    """Per-deposit outcome of a bulk refund; partial failure does not abort the batch"""

    auction_id: uuid.UUID
    results: List[DepositRefundResult] = field(default_factory=list)

    @property
    def refunded(self) -> List[DepositRefundResult]:
        return [r for r in self.results if r.succeeded]

    @property
    def failed(self) -> List[DepositRefundResult]:
        return [r for r in self.results if not r.succeeded]


@dataclass
class AuctionEndResult:
    auction_id: uuid.UUID
    already_ended: bool
    winner_id: Optional[str] = None
    winning_bid_id: Optional[uuid.UUID] = None
    winning_amount: Optional[int] = None
    purchase_id: Optional[uuid.UUID] = None
    refunds: Optional[RefundBatchResult] = None


@dataclass
class SchedulerReport:
    """Outcome of one scheduler sweep"""

    ran_at: datetime
    started: List[uuid.UUID] = field(default_factory=list)
    ended: List[uuid.UUID] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class RetryReport:
    refunded: List[uuid.UUID] = field(default_factory=list)
    still_failing: List[uuid.UUID] = field(default_factory=list)


@dataclass
class ChainVerification:
    """Outcome of walking an audit stream from genesis"""

    stream_key: str
    valid: bool
    records_checked: int
    first_invalid_sequence: Optional[int] = None
    invalid_sequences: List[int] = field(default_factory=list)
