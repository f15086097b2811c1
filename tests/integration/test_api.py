"""Integration tests for API endpoints"""

import uuid
import pytest
from datetime import timedelta
from fastapi.testclient import TestClient
from tractor_settlement.api.main import status_for
from tractor_settlement.config import settings
from tractor_settlement.domain.exceptions import (
    ConflictError,
    DomainException,
    ExternalGatewayError,
    GatewayTimeoutError,
    ValidationError,
)
from tractor_settlement.infrastructure.database.repositories import EscrowRepository
from tractor_settlement.utils.date_utils import utcnow


def as_user(user_id: str, role: str = "buyer") -> dict:
    return {"X-User-Id": user_id, "X-User-Role": role}


ADMIN = as_user("admin_1", "admin")
SELLER = as_user("seller_1", "seller")


def create_auction(client: TestClient, vehicle_id, start_offset=timedelta(minutes=-1), end_offset=timedelta(hours=1)):
    now = utcnow()
    return client.post(
        "/v1/auctions",
        json={
            "vehicle_id": str(vehicle_id),
            "start_time": (now + start_offset).isoformat(),
            "end_time": (now + end_offset).isoformat(),
            "reserve_price": 100000,
            "emd_amount": 10000,
            "minimum_increment": 5000,
            "opening_bid": 100000,
            "auto_extend_enabled": False,
        },
        headers=SELLER,
    )


def pay_emd(client: TestClient, provider, auction_id: str, bidder_id: str) -> dict:
    requested = client.post(f"/v1/auctions/{auction_id}/emd", json={"amount": 10000}, headers=as_user(bidder_id))
    assert requested.status_code == 201
    order_id = requested.json()["order"]["order_id"]
    payment_id = f"pay_{bidder_id}"
    confirmed = client.post(
        f"/v1/auctions/{auction_id}/emd/callback",
        json={"order_id": order_id, "payment_id": payment_id, "signature": provider.sign(order_id, payment_id)},
        headers=as_user(bidder_id),
    )
    assert confirmed.status_code == 200
    return confirmed.json()


def test_health_endpoint(client: TestClient):
    """Test health check endpoint"""
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "ok"


def test_metrics_endpoint(client: TestClient):
    """Test Prometheus metrics endpoint"""
    response = client.get("/metrics")
    assert response.status_code == 200
    assert "settlement_bids_total" in response.text


def test_request_id_is_propagated(client: TestClient):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["X-Request-ID"] == "req-123"


def test_auction_to_release_flow(client: TestClient, db, provider, vehicle):
    """Auction, deposits, bids, end, balance payment, escrow release"""
    created = create_auction(client, vehicle.id)
    assert created.status_code == 201
    auction_id = created.json()["id"]
    assert created.json()["status"] == "SCHEDULED"

    started = client.post(f"/v1/auctions/{auction_id}/start", headers=ADMIN)
    assert started.status_code == 200
    assert started.json()["changed"] is True
    assert started.json()["auction"]["status"] == "LIVE"

    deposit = pay_emd(client, provider, auction_id, "buyer_a")
    assert deposit["duplicate"] is False
    assert deposit["deposit"]["status"] == "PAID"
    pay_emd(client, provider, auction_id, "buyer_b")

    assert client.post(f"/v1/auctions/{auction_id}/bids", json={"amount": 105000}, headers=as_user("buyer_a")).status_code == 201
    assert client.post(f"/v1/auctions/{auction_id}/bids", json={"amount": 115000}, headers=as_user("buyer_b")).status_code == 201

    ended = client.post(f"/v1/auctions/{auction_id}/end", headers=ADMIN)
    assert ended.status_code == 200
    result = ended.json()
    assert result["winner_id"] == "buyer_b"
    assert result["winning_amount"] == 115000
    assert [r["bidder_id"] for r in result["refunds"]["refunded"]] == ["buyer_a"]

    purchase_id = result["purchase_id"]
    purchase = client.get(f"/v1/purchases/{purchase_id}", headers=as_user("buyer_b")).json()
    assert purchase["balance_amount"] == 105000
    assert purchase["emd_applied"] is True

    payment = client.post(f"/v1/purchases/{purchase_id}/payment", headers=as_user("buyer_b"))
    assert payment.status_code == 200
    order = payment.json()["order"]
    assert order["amount"] == 105000 + purchase["transaction_fee"]
    assert order["settled"] is False

    confirmed = client.post(
        f"/v1/purchases/{purchase_id}/payment/callback",
        json={"order_id": order["order_id"], "payment_id": "pay_balance", "signature": provider.sign(order["order_id"], "pay_balance")},
        headers=as_user("buyer_b"),
    )
    assert confirmed.status_code == 200
    assert confirmed.json()["purchase"]["status"] == "pending"

    escrow_id = EscrowRepository(db).find_by_purchase(uuid.UUID(purchase_id)).id
    released = client.post(f"/v1/escrow/{escrow_id}/release", json={"reason": "Delivered"}, headers=ADMIN)
    assert released.status_code == 200
    assert released.json()["status"] == "RELEASED"
    assert released.json()["resolved_by"] == "admin_1"

    purchase = client.get(f"/v1/purchases/{purchase_id}", headers=ADMIN).json()
    assert purchase["status"] == "completed"

    verification = client.get(f"/v1/audit/auction:{auction_id}/verify", headers=ADMIN)
    assert verification.status_code == 200
    assert verification.json()["valid"] is True

    stream = client.get(f"/v1/audit/auction:{auction_id}", headers=ADMIN).json()
    assert stream["records"][0]["record_type"] == "auction_created"
    assert stream["records"][0]["previous_hash"] == ""


def test_missing_identity_is_unauthorized(client: TestClient, vehicle):
    response = client.post("/v1/purchases", json={"vehicle_id": str(vehicle.id)})
    assert response.status_code == 401


def test_unknown_role_is_forbidden(client: TestClient, vehicle):
    response = client.post("/v1/purchases", json={"vehicle_id": str(vehicle.id)}, headers=as_user("x", "superuser"))
    assert response.status_code == 403


def test_admin_endpoints_reject_buyers(client: TestClient, vehicle):
    auction_id = create_auction(client, vehicle.id).json()["id"]

    response = client.post(f"/v1/auctions/{auction_id}/start", headers=as_user("buyer_a"))
    assert response.status_code == 403


def test_buyer_cannot_create_auction(client: TestClient, vehicle):
    response = client.post(
        "/v1/auctions",
        json={"vehicle_id": str(vehicle.id), "start_time": utcnow().isoformat(), "reserve_price": 100000, "emd_amount": 10000},
        headers=as_user("buyer_a"),
    )
    assert response.status_code == 403


def test_seller_cannot_auction_someone_elses_vehicle(client: TestClient, vehicle):
    response = client.post(
        "/v1/auctions",
        json={"vehicle_id": str(vehicle.id), "start_time": utcnow().isoformat(), "reserve_price": 100000, "emd_amount": 10000},
        headers=as_user("seller_2", "seller"),
    )
    assert response.status_code == 403
    assert response.json()["error"] == "AuthorizationError"


def test_unknown_auction_is_not_found(client: TestClient):
    response = client.get(f"/v1/auctions/{uuid.uuid4()}")
    assert response.status_code == 404


def test_second_open_auction_conflicts(client: TestClient, vehicle):
    assert create_auction(client, vehicle.id).status_code == 201

    response = create_auction(client, vehicle.id)
    assert response.status_code == 409
    assert response.json()["error"] == "ConflictError"


def test_low_bid_is_unprocessable(client: TestClient, provider, vehicle):
    auction_id = create_auction(client, vehicle.id).json()["id"]
    client.post(f"/v1/auctions/{auction_id}/start", headers=ADMIN)
    pay_emd(client, provider, auction_id, "buyer_a")

    response = client.post(f"/v1/auctions/{auction_id}/bids", json={"amount": 100000}, headers=as_user("buyer_a"))
    assert response.status_code == 422
    assert response.json()["error"] == "ValidationError"


def test_invalid_request_body(client: TestClient, vehicle):
    response = client.post(
        "/v1/auctions",
        json={"vehicle_id": str(vehicle.id), "start_time": utcnow().isoformat(), "reserve_price": 0, "emd_amount": 10000},
        headers=SELLER,
    )
    assert response.status_code == 422


def test_forged_callback_is_bad_gateway(client: TestClient, vehicle):
    auction_id = create_auction(client, vehicle.id).json()["id"]
    order_id = client.post(
        f"/v1/auctions/{auction_id}/emd", json={"amount": 10000}, headers=as_user("buyer_a")
    ).json()["order"]["order_id"]

    response = client.post(
        f"/v1/auctions/{auction_id}/emd/callback",
        json={"order_id": order_id, "payment_id": "pay_1", "signature": "forged"},
        headers=as_user("buyer_a"),
    )
    assert response.status_code == 502


def test_duplicate_emd_callback(client: TestClient, provider, vehicle):
    auction_id = create_auction(client, vehicle.id).json()["id"]
    order_id = client.post(
        f"/v1/auctions/{auction_id}/emd", json={"amount": 10000}, headers=as_user("buyer_a")
    ).json()["order"]["order_id"]
    body = {"order_id": order_id, "payment_id": "pay_1", "signature": provider.sign(order_id, "pay_1")}

    first = client.post(f"/v1/auctions/{auction_id}/emd/callback", json=body, headers=as_user("buyer_a"))
    second = client.post(f"/v1/auctions/{auction_id}/emd/callback", json=body, headers=as_user("buyer_a"))

    assert first.json()["duplicate"] is False
    assert second.json()["duplicate"] is True
    assert provider.capture_checks == ["pay_1"]


def test_stranger_cannot_see_or_dispute_purchase(client: TestClient, db, provider, vehicle):
    purchase_id = client.post("/v1/purchases", json={"vehicle_id": str(vehicle.id)}, headers=as_user("buyer_a")).json()["id"]
    assert client.get(f"/v1/purchases/{purchase_id}", headers=as_user("buyer_b")).status_code == 403

    order = client.post(f"/v1/purchases/{purchase_id}/payment", headers=as_user("buyer_a")).json()["order"]
    client.post(
        f"/v1/purchases/{purchase_id}/payment/callback",
        json={"order_id": order["order_id"], "payment_id": "pay_1", "signature": provider.sign(order["order_id"], "pay_1")},
        headers=as_user("buyer_a"),
    )
    escrow_id = EscrowRepository(db).find_by_purchase(uuid.UUID(purchase_id)).id

    response = client.post(f"/v1/escrow/{escrow_id}/dispute", json={"description": "Nope"}, headers=as_user("buyer_b"))
    assert response.status_code == 403

    response = client.post(f"/v1/escrow/{escrow_id}/dispute", json={"description": "Wrong model"}, headers=as_user("buyer_a"))
    assert response.status_code == 200
    assert response.json()["status"] == "DISPUTE"


def test_cron_endpoint_ends_expired_auctions(client: TestClient, vehicle, monkeypatch):
    monkeypatch.setattr(settings, "cron_secret", "s3cret")
    auction_id = create_auction(
        client, vehicle.id, start_offset=timedelta(hours=-2), end_offset=timedelta(hours=-1)
    ).json()["id"]

    assert client.post("/v1/cron/auction-status").status_code == 401

    response = client.post("/v1/cron/auction-status", headers={"Authorization": "Bearer s3cret"})
    assert response.status_code == 200
    assert response.json()["ended"] == [auction_id]
    assert client.get(f"/v1/auctions/{auction_id}").json()["rejection_reason"] == "No eligible bids"


@pytest.mark.parametrize(
    "error, status_code",
    [
        (ValidationError("x"), 422),
        (ConflictError("x"), 409),
        (GatewayTimeoutError("x"), 504),
        (ExternalGatewayError("x"), 502),
        (DomainException("x"), 500),
    ],
)
def test_status_for_domain_errors(error, status_code):
    assert status_for(error) == status_code
