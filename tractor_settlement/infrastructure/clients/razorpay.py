"""Razorpay REST client implementing the payment provider contract"""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import httpx

from tractor_settlement.config import settings
from tractor_settlement.domain.exceptions import ExternalGatewayError, GatewayTimeoutError
from tractor_settlement.domain.models import GatewayOrder
from tractor_settlement.infrastructure.observability.metrics import gateway_latency_histogram


def compute_signature(secret: str, order_id: str, payment_id: str) -> str:
    """HMAC-SHA256 over `order_id|payment_id`, hex encoded"""
    message = f"{order_id}|{payment_id}".encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def signature_matches(secret: str, order_id: str, payment_id: str, signature: str) -> bool:
    """Constant-time comparison of a callback signature"""
    expected = compute_signature(secret, order_id, payment_id)
    return hmac.compare_digest(expected.encode("utf-8"), signature.encode("utf-8"))


class RazorpayClient:
    """Client for the Razorpay orders, payments and refunds API"""

    def __init__(
        self,
        key_id: str | None = None,
        key_secret: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.key_id = key_id or settings.razorpay_key_id
        self.key_secret = key_secret or settings.razorpay_key_secret
        self.base_url = base_url or settings.razorpay_api_base
        self.timeout = timeout or settings.http_timeout_seconds
        self.transport = transport

    async def _request(self, operation: str, method: str, path: str, json: Dict[str, Any] | None = None) -> Dict[str, Any]:
        """
        Issue one authenticated call with the configured timeout.

        Raises:
            GatewayTimeoutError: the provider did not answer in time
            ExternalGatewayError: HTTP error, network failure or unreadable body
        """
        async with httpx.AsyncClient(
            auth=(self.key_id, self.key_secret),
            timeout=self.timeout,
            transport=self.transport,
        ) as client:
            try:
                with gateway_latency_histogram.labels(operation=operation).time():
                    response = await client.request(method, f"{self.base_url}{path}", json=json)
                response.raise_for_status()
                return response.json()

            except httpx.TimeoutException as e:
                raise GatewayTimeoutError(f"Payment provider timeout after {self.timeout}s ({operation})") from e
            except httpx.HTTPStatusError as e:
                raise ExternalGatewayError(f"Payment provider error: {e.response.status_code} ({operation})") from e
            except httpx.RequestError as e:
                raise ExternalGatewayError(f"Payment provider unreachable ({operation}): {e}") from e
            except ValueError as e:
                raise ExternalGatewayError(f"Invalid response from payment provider ({operation}): {e}") from e

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        """Open an order; `amount` is already in the smallest currency unit"""
        if amount <= 0:
            raise ExternalGatewayError("Order amount must be greater than 0")

        data = await self._request(
            "create_order",
            "POST",
            "/orders",
            json={"amount": amount, "currency": currency, "receipt": receipt, "notes": notes or {}},
        )
        try:
            return GatewayOrder(order_id=data["id"], amount=amount, currency=currency, receipt=receipt)
        except KeyError as e:
            raise ExternalGatewayError(f"Order response missing field: {e}") from e

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        return signature_matches(self.key_secret, order_id, payment_id, signature)

    async def is_captured(self, payment_id: str) -> bool:
        data = await self._request("fetch_payment", "GET", f"/payments/{payment_id}")
        status = data.get("status")
        if status != "captured":
            logging.warning(
                "Payment not captured",
                extra={"payment_id": payment_id, "provider_status": status},
            )
        return status == "captured"

    async def refund(
        self,
        payment_id: str,
        amount: int,
        notes: Optional[Dict[str, str]] = None,
    ) -> str:
        data = await self._request(
            "refund",
            "POST",
            f"/payments/{payment_id}/refund",
            json={"amount": amount, "notes": notes or {}},
        )
        try:
            return data["id"]
        except KeyError as e:
            raise ExternalGatewayError(f"Refund response missing field: {e}") from e
