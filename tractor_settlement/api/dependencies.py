"""Dependency injection for FastAPI endpoints"""

from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.orm import Session

from tractor_settlement.config import settings
from tractor_settlement.domain.ports import Notifier, PaymentProvider
from tractor_settlement.infrastructure.clients.fake_provider import build_payment_provider
from tractor_settlement.infrastructure.clients.notifier import build_notifier
from tractor_settlement.infrastructure.database.session import get_db
from tractor_settlement.services.container import SettlementServices, build_services

ROLES = ("buyer", "seller", "admin")


@dataclass
class Caller:
    """Authenticated identity forwarded by the gateway in front of this service"""

    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


@lru_cache
def get_payment_provider() -> PaymentProvider:
    """Provider strategy, chosen once per process from settings"""
    return build_payment_provider(settings)


@lru_cache
def get_notifier() -> Notifier:
    return build_notifier()


def get_services(
    db: Session = Depends(get_db),
    provider: PaymentProvider = Depends(get_payment_provider),
    notifier: Notifier = Depends(get_notifier),
) -> SettlementServices:
    return build_services(db, provider, notifier)


def get_caller(
    x_user_id: Optional[str] = Header(None),
    x_user_role: Optional[str] = Header(None),
) -> Caller:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    role = (x_user_role or "buyer").lower()
    if role not in ROLES:
        raise HTTPException(status_code=403, detail=f"Unknown role: {role}")
    return Caller(user_id=x_user_id, role=role)


def require_admin(caller: Caller = Depends(get_caller)) -> Caller:
    if not caller.is_admin:
        raise HTTPException(status_code=403, detail="Admin access required")
    return caller


def verify_cron_secret(authorization: Optional[str] = Header(None)) -> None:
    """Scheduler endpoint guard; open when no secret is configured"""
    if settings.cron_secret and authorization != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")
