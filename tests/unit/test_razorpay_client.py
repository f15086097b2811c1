"""Unit tests for the Razorpay client against a mocked transport"""

import json
import pytest
import httpx
from tractor_settlement.domain.exceptions import ExternalGatewayError, GatewayTimeoutError
from tractor_settlement.infrastructure.clients.razorpay import RazorpayClient, compute_signature, signature_matches

SECRET = "rzp_secret"


def make_client(handler) -> RazorpayClient:
    return RazorpayClient(
        key_id="rzp_key",
        key_secret=SECRET,
        base_url="https://api.razorpay.test/v1",
        timeout=1.0,
        transport=httpx.MockTransport(handler),
    )


def test_signature_round_trip():
    signature = compute_signature(SECRET, "order_1", "pay_1")
    assert signature_matches(SECRET, "order_1", "pay_1", signature)
    assert not signature_matches(SECRET, "order_1", "pay_2", signature)
    assert not signature_matches("other", "order_1", "pay_1", signature)


def test_verify_signature_uses_key_secret():
    client = make_client(lambda request: httpx.Response(500))
    assert client.verify_signature("order_1", "pay_1", compute_signature(SECRET, "order_1", "pay_1"))


async def test_create_order_posts_amount_in_minor_units():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json={"id": "order_abc", "status": "created"})

    order = await make_client(handler).create_order(10000, "INR", "EMD-1", {"auction_id": "a1"})

    assert order.order_id == "order_abc"
    assert order.payment_id is None
    assert seen["path"] == "/v1/orders"
    assert seen["body"]["amount"] == 10000
    assert seen["body"]["notes"] == {"auction_id": "a1"}


async def test_is_captured():
    def handler(request: httpx.Request) -> httpx.Response:
        status = "captured" if request.url.path.endswith("pay_ok") else "authorized"
        return httpx.Response(200, json={"id": "x", "status": status})

    client = make_client(handler)
    assert await client.is_captured("pay_ok") is True
    assert await client.is_captured("pay_auth") is False


async def test_refund_returns_refund_id():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/payments/pay_1/refund"
        return httpx.Response(200, json={"id": "rfnd_1"})

    assert await make_client(handler).refund("pay_1", 10000) == "rfnd_1"


async def test_http_error_becomes_gateway_error():
    client = make_client(lambda request: httpx.Response(400, json={"error": "bad"}))
    with pytest.raises(ExternalGatewayError) as exc_info:
        await client.refund("pay_1", 10000)
    assert not isinstance(exc_info.value, GatewayTimeoutError)


async def test_timeout_becomes_gateway_timeout():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(GatewayTimeoutError):
        await make_client(handler).refund("pay_1", 10000)


async def test_unreadable_body_becomes_gateway_error():
    client = make_client(lambda request: httpx.Response(200, content=b"not json"))
    with pytest.raises(ExternalGatewayError):
        await client.is_captured("pay_1")


async def test_non_positive_order_amount_rejected_locally():
    calls = []
    client = make_client(lambda request: calls.append(request) or httpx.Response(200, json={"id": "o"}))
    with pytest.raises(ExternalGatewayError):
        await client.create_order(0, "INR", "r")
    assert calls == []
