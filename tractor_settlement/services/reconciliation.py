"""Payment reconciliation - turns provider callbacks into exactly-once settlements"""

import logging
import uuid
from datetime import datetime
from typing import Dict, Optional, Tuple

from sqlalchemy.orm import Session

from tractor_settlement.config import settings
from tractor_settlement.domain.exceptions import ConflictError, ExternalGatewayError, ValidationError
from tractor_settlement.domain.models import GatewayOrder, PaymentCallback, PaymentPurpose
from tractor_settlement.domain.ports import PaymentProvider
from tractor_settlement.infrastructure.database.models import PaymentOrder
from tractor_settlement.infrastructure.database.repositories import PaymentOrderRepository
from tractor_settlement.infrastructure.observability.metrics import payment_callback_counter


class PaymentReconciler:
    """
    Verifies callbacks from the payment provider.

    The order book is the exactly-once record: an order carries at most one
    settled payment id, and a replayed callback for it is reported as a
    duplicate instead of being applied again.
    """

    def __init__(self, db: Session, provider: PaymentProvider, currency: str | None = None):
        self.orders = PaymentOrderRepository(db)
        self.provider = provider
        self.currency = currency or settings.currency

    async def open_order(
        self,
        purpose: PaymentPurpose,
        reference_id: uuid.UUID,
        amount: int,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> Tuple[GatewayOrder, PaymentOrder]:
        """Create the provider order and record it in the order book"""
        gateway_order = await self.provider.create_order(amount, self.currency, receipt, notes)
        row = self.orders.create_order(
            order_id=gateway_order.order_id,
            purpose=purpose.value,
            reference_id=reference_id,
            amount=amount,
            currency=gateway_order.currency,
            receipt=receipt,
        )
        return gateway_order, row

    def check_signature(self, callback: PaymentCallback) -> None:
        """
        Raises:
            ExternalGatewayError: the callback was not signed with our secret
        """
        if not self.provider.verify_signature(callback.order_id, callback.payment_id, callback.signature):
            payment_callback_counter.labels(outcome="rejected").inc()
            logging.warning(
                "Invalid payment signature",
                extra={"order_id": callback.order_id, "payment_id": callback.payment_id},
            )
            raise ExternalGatewayError("Invalid payment signature")

    async def verify_callback(
        self,
        callback: PaymentCallback,
        purpose: PaymentPurpose,
        reference_id: uuid.UUID,
    ) -> Tuple[PaymentOrder, bool]:
        """
        Verify a callback against the order book and the provider.

        Steps:
        1. Signature (HMAC over order_id|payment_id, constant-time)
        2. Order exists and belongs to this deposit/purchase; any order opened
           for it may settle it, not only the most recent one
        3. Replay of an already-settled order -> duplicate, no provider call
        4. Provider confirms the payment is captured

        Returns: (order row, is_duplicate)

        Raises:
            ExternalGatewayError: bad signature or payment not captured
            ValidationError: unknown order, or order belongs to another entity
            ConflictError: order already settled by a different payment
        """
        self.check_signature(callback)

        order = self.orders.find(callback.order_id, for_update=True)
        if order is None or order.purpose != purpose.value or order.reference_id != reference_id:
            payment_callback_counter.labels(outcome="rejected").inc()
            raise ValidationError(f"Order {callback.order_id} does not belong to this {purpose.value}")

        if order.payment_id is not None:
            if order.payment_id == callback.payment_id:
                self.record_duplicate()
                return order, True
            payment_callback_counter.labels(outcome="rejected").inc()
            raise ConflictError(f"Order {order.order_id} already settled by another payment")

        await self.confirm_capture(callback.payment_id)
        return order, False

    def record_duplicate(self) -> None:
        payment_callback_counter.labels(outcome="duplicate").inc()

    async def confirm_capture(self, payment_id: str) -> None:
        """
        Raises:
            ExternalGatewayError: provider does not report the payment as captured
        """
        if not await self.provider.is_captured(payment_id):
            payment_callback_counter.labels(outcome="rejected").inc()
            raise ExternalGatewayError(f"Payment {payment_id} not captured")

    def mark_settled(self, order: PaymentOrder, payment_id: str, now: datetime) -> None:
        order.payment_id = payment_id
        order.settled_at = now
        payment_callback_counter.labels(outcome="applied").inc()
