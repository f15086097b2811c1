"""Fee arithmetic for escrow holds and auction purchases"""

from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP


def apply_rate(amount: int, rate: float) -> int:
    """Multiply a minor-unit amount by a rate, rounding half-up to a whole minor unit"""
    product = Decimal(amount) * Decimal(str(rate))
    return int(product.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def calculate_escrow_fee(
    amount: int,
    rate: float = 0.02,
    minimum: int = 500,
    maximum: int = 5000,
) -> int:
    """
    Escrow fee charged on a held amount.

    Requirements:
    - 2% of the held amount by default
    - Clamped to [minimum, maximum] in the platform's minor currency unit

    Example:
        10_000    -> 2% = 200     -> clamped up to 500
        100_000   -> 2% = 2_000
        1_000_000 -> 2% = 20_000  -> clamped down to 5_000
    """
    if amount <= 0:
        return 0
    return min(max(apply_rate(amount, rate), minimum), maximum)


def calculate_transaction_fee(
    winning_bid: int,
    now: datetime,
    offer_ends_at: datetime,
    offer_rate: float = 0.025,
    standard_rate: float = 0.04,
) -> int:
    """
    Buyer transaction fee on an auction purchase.

    The promotional rate applies up to and including `offer_ends_at`; the
    standard rate applies afterwards.
    """
    rate = offer_rate if now <= offer_ends_at else standard_rate
    return apply_rate(winning_bid, rate)


def calculate_balance(purchase_price: int, deposit_amount: int) -> int:
    """Amount still owed once the winner's deposit is absorbed into the price"""
    return max(0, purchase_price - deposit_amount)
