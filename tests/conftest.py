"""Pytest fixtures for testing"""

import asyncio
import pytest
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Generator, List, Tuple
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from tractor_settlement.api.dependencies import get_notifier, get_payment_provider
from tractor_settlement.api.main import create_app
from tractor_settlement.domain.models import PaymentCallback, VehicleStatus
from tractor_settlement.infrastructure.clients.fake_provider import FakePaymentProvider
from tractor_settlement.infrastructure.database.models import Base, EarnestMoneyDeposit, Vehicle
from tractor_settlement.infrastructure.database.repositories import VehicleRepository
from tractor_settlement.infrastructure.database.session import get_db
from tractor_settlement.services.container import SettlementServices, build_services


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

NOW = datetime(2026, 5, 1, 10, 0, tzinfo=timezone.utc)
SELLER = "seller_1"
EMD = 10000


class RecordingNotifier:
    """Collects events instead of delivering them"""

    def __init__(self):
        self.events: List[Tuple[str, Dict[str, Any]]] = []

    async def notify(self, event: str, payload: Dict[str, Any]) -> None:
        self.events.append((event, payload))

    def names(self) -> List[str]:
        return [event for event, _ in self.events]


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def provider() -> FakePaymentProvider:
    """Provider that behaves like the live one: orders wait for a signed callback"""
    return FakePaymentProvider(instant_settlement=False)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def services(db: Session, provider: FakePaymentProvider, notifier: RecordingNotifier) -> SettlementServices:
    return build_services(db, provider, notifier)


@pytest.fixture
def vehicle(db: Session) -> Vehicle:
    """Approved vehicle listed by SELLER with a fixed direct-sale price"""
    vehicle = VehicleRepository(db).create_vehicle(
        SELLER, status=VehicleStatus.APPROVED, sale_amount=500000, title="Mahindra 575 DI"
    )
    db.commit()
    return vehicle


@pytest.fixture
async def live_auction(services: SettlementServices, vehicle: Vehicle):
    """LIVE auction: reserve 100000, increment 5000, EMD 10000, bidding opens at the reserve"""
    auction = services.auctions.create_auction(
        vehicle_id=vehicle.id,
        start_time=NOW - timedelta(hours=1),
        end_time=NOW + timedelta(hours=1),
        reserve_price=100000,
        emd_amount=EMD,
        minimum_increment=5000,
        opening_bid=100000,
        auto_extend_enabled=False,
    )
    await services.auctions.start_auction(auction.id, now=NOW)
    return auction


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def pay_deposit(services: SettlementServices, provider: FakePaymentProvider):
    """Request an EMD and deliver the provider's signed callback for it"""

    async def _pay(auction_id, bidder_id: str, amount: int = EMD) -> EarnestMoneyDeposit:
        deposit, order = await services.deposits.request_deposit(auction_id, bidder_id, amount, now=NOW)
        payment_id = f"pay_{bidder_id}"
        callback = PaymentCallback(order.order_id, payment_id, provider.sign(order.order_id, payment_id))
        deposit, _ = await services.deposits.confirm_deposit(deposit.id, callback, now=NOW)
        return deposit

    return _pay


@pytest.fixture
def client(db: Session, provider: FakePaymentProvider, notifier: RecordingNotifier) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app()

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_provider] = lambda: provider
    app.dependency_overrides[get_notifier] = lambda: notifier
    return TestClient(app)


@pytest.fixture
def open_session(db: Session):
    """Extra sessions on the test database for concurrent callers; closed before the tables drop"""
    sessions: List[Session] = []

    def _open() -> Session:
        session = TestingSessionLocal()
        sessions.append(session)
        return session

    yield _open
    for session in sessions:
        session.close()


class RefundGate:
    """Holds provider refunds until `open_after_yield` runs"""

    def __init__(self):
        self.event = asyncio.Event()

    async def open_after_yield(self) -> None:
        # Every gathered caller first runs up to its own suspension point
        await asyncio.sleep(0)
        self.event.set()


@pytest.fixture
def refund_gate(provider: FakePaymentProvider, monkeypatch) -> RefundGate:
    gate = RefundGate()
    refund = provider.refund

    async def _gated_refund(*args, **kwargs):
        await gate.event.wait()
        return await refund(*args, **kwargs)

    monkeypatch.setattr(provider, "refund", _gated_refund)
    return gate
