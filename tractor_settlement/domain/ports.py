"""Collaborator interfaces consumed by the settlement core"""

import uuid
from typing import Any, Dict, Optional, Protocol

from tractor_settlement.domain.models import GatewayOrder, VehicleInfo, VehicleStatus


class VehicleService(Protocol):
    """Listing service that owns vehicles; the core only reads them and moves their status"""

    def get_vehicle(self, vehicle_id: uuid.UUID) -> VehicleInfo:
        ...

    def set_vehicle_status(self, vehicle_id: uuid.UUID, status: VehicleStatus) -> None:
        ...


class PaymentProvider(Protocol):
    """External payment gateway contract"""

    async def create_order(
        self,
        amount: int,
        currency: str,
        receipt: str,
        notes: Optional[Dict[str, str]] = None,
    ) -> GatewayOrder:
        ...

    def verify_signature(self, order_id: str, payment_id: str, signature: str) -> bool:
        ...

    async def is_captured(self, payment_id: str) -> bool:
        ...

    async def refund(
        self,
        payment_id: str,
        amount: int,
        notes: Optional[Dict[str, str]] = None,
    ) -> str:
        ...


class Notifier(Protocol):
    """Fire-and-forget event sink (email, SMS, push live elsewhere)"""

    async def notify(self, event: str, payload: Dict[str, Any]) -> None:
        ...
