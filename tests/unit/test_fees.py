"""Unit tests for escrow and transaction fee arithmetic"""

from datetime import datetime, timedelta, timezone
from tractor_settlement.domain.fees import (
    apply_rate,
    calculate_balance,
    calculate_escrow_fee,
    calculate_transaction_fee,
)


def test_escrow_fee_is_two_percent_inside_bounds():
    """100000 held -> 2% = 2000"""
    assert calculate_escrow_fee(100000) == 2000


def test_escrow_fee_clamped_to_minimum():
    """10000 held -> 2% = 200, clamped up to 500"""
    assert calculate_escrow_fee(10000) == 500


def test_escrow_fee_clamped_to_maximum():
    """1000000 held -> 2% = 20000, clamped down to 5000"""
    assert calculate_escrow_fee(1000000) == 5000


def test_escrow_fee_boundaries():
    # 25000 * 2% is exactly the minimum, 250000 * 2% exactly the maximum
    assert calculate_escrow_fee(25000) == 500
    assert calculate_escrow_fee(250000) == 5000
    assert calculate_escrow_fee(250050) == 5000


def test_escrow_fee_custom_bounds():
    assert calculate_escrow_fee(100000, rate=0.01, minimum=100, maximum=800) == 800


def test_escrow_fee_zero_amount():
    assert calculate_escrow_fee(0) == 0


def test_apply_rate_rounds_half_up():
    """Decimal arithmetic, no float drift: 12345 * 2.5% = 308.625 -> 309"""
    assert apply_rate(12345, 0.025) == 309
    assert apply_rate(100, 0.025) == 3  # 2.5 -> 3


def test_transaction_fee_promotional_rate():
    offer_ends = datetime(2026, 3, 31, 18, 29, 59, tzinfo=timezone.utc)
    fee = calculate_transaction_fee(115000, offer_ends - timedelta(days=1), offer_ends)
    assert fee == 2875  # 2.5%


def test_transaction_fee_promotional_rate_until_inclusive_end():
    offer_ends = datetime(2026, 3, 31, 18, 29, 59, tzinfo=timezone.utc)
    assert calculate_transaction_fee(100000, offer_ends, offer_ends) == 2500


def test_transaction_fee_standard_rate_after_offer():
    offer_ends = datetime(2026, 3, 31, 18, 29, 59, tzinfo=timezone.utc)
    fee = calculate_transaction_fee(115000, offer_ends + timedelta(seconds=1), offer_ends)
    assert fee == 4600  # 4%


def test_balance_after_deposit():
    assert calculate_balance(115000, 10000) == 105000


def test_balance_never_negative():
    assert calculate_balance(5000, 10000) == 0
