"""In-process payment provider for non-production environments"""

import logging
import uuid
from typing import Dict, List, Optional, Tuple

from tractor_settlement.config import Settings
from tractor_settlement.domain.exceptions import ConfigurationError, ExternalGatewayError
from tractor_settlement.domain.models import GatewayOrder
from tractor_settlement.domain.ports import PaymentProvider
from tractor_settlement.infrastructure.clients.razorpay import RazorpayClient, compute_signature, signature_matches

TEST_SIGNING_SECRET = "test-mode-signing-secret"


class FakePaymentProvider:
    """
    Payment provider that never leaves the process.

    With `instant_settlement` (the test-mode default) every order comes back
    already paid, so callers settle it without waiting for a callback. With it
    off, the provider behaves like the real one: callbacks must be signed with
    `sign()` and captures are answered from `captured`.
    """

    def __init__(self, instant_settlement: bool = True, secret: str = TEST_SIGNING_SECRET):
        self.instant_settlement = instant_settlement
        self.secret = secret
        self.captured: Dict[str, bool] = {}
        self.refund_error: Optional[Exception] = None
        self.orders: List[GatewayOrder] = []
        self.refunds: List[Tuple[str, int]] = []
        self.capture_checks: List[str] = []

    def sign(self, order_id: str, payment_id: str) -> str:
        return compute_signature(self.secret, order_id, payment_id)

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        if amount <= 0:
            raise ExternalGatewayError("Order amount must be greater than 0")

        order = GatewayOrder(
            order_id=f"order_test_{uuid.uuid4().hex[:14]}",
            amount=amount,
            currency=currency,
            receipt=receipt,
        )
        if self.instant_settlement:
            order.payment_id = f"pay_test_{uuid.uuid4().hex[:14]}"
        self.orders.append(order)
        return order

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return signature_matches(self.secret, order_id, payment_id, signature)

    async def is_captured(self, payment_id: str) -> bool:
        self.capture_checks.append(payment_id)
        return self.captured.get(payment_id, True)

    async def refund(
        self,
        payment_id: str,
        amount: int,
        notes: Optional[Dict[str, str]] = None,
    ) -> str:
        if self.refund_error is not None:
            raise self.refund_error
        self.refunds.append((payment_id, amount))
        return f"rfnd_test_{uuid.uuid4().hex[:14]}"


def build_payment_provider(config: Settings) -> PaymentProvider:
    """
    Select the provider strategy once at startup.

    Raises:
        ConfigurationError: test mode requested while real credentials are
            configured, or live mode requested without credentials
    """
    if config.payment_mode == "test":
        if config.has_provider_credentials:
            raise ConfigurationError("Test payment mode is not allowed while Razorpay credentials are configured")
        logging.warning("Payment provider running in TEST mode: orders settle without a real payment")
        return FakePaymentProvider()

    if not config.has_provider_credentials:
        raise ConfigurationError("Live payment mode requires RAZORPAY_KEY_ID and RAZORPAY_KEY_SECRET")
    return RazorpayClient(
        key_id=config.razorpay_key_id,
        key_secret=config.razorpay_key_secret,
        base_url=config.razorpay_api_base,
        timeout=config.http_timeout_seconds,
    )
