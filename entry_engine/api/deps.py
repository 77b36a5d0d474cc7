"""API dependencies for admin authentication and service wiring."""

import hmac
import uuid
from typing import Annotated

from fastapi import Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from entry_engine.config import Settings, get_settings
from entry_engine.services.gateway import PaymentGateway
from entry_engine.services.promotion import PromotionScheduler
from entry_engine.services.reconciliation import ReconciliationEngine
from entry_engine.services.reservation import ReservationService
from entry_engine.utils.clock import Clock, utcnow
from entry_engine.utils.db import get_db
from entry_engine.utils.errors import AdminAuthError
from entry_engine.utils.locks import TournamentLockManager


def get_trace_id(x_request_id: Annotated[str | None, Header()] = None) -> str:
    """Get or generate trace ID for request tracking."""
    return x_request_id or str(uuid.uuid4())


def get_lock_manager(request: Request) -> TournamentLockManager:
    """Lock manager created at startup."""
    return request.app.state.lock_manager


def get_gateway(request: Request) -> PaymentGateway:
    """Payment gateway created at startup."""
    return request.app.state.gateway


def get_clock() -> Clock:
    return utcnow


def require_admin(
    settings: Annotated[Settings, Depends(get_settings)],
    x_admin_key: Annotated[str | None, Header()] = None,
) -> None:
    """Check the admin credential header.

    Raises:
        AdminAuthError: If the header is missing or does not match
    """
    if not x_admin_key or not hmac.compare_digest(
        x_admin_key.encode("utf-8"),
        settings.admin_api_key.encode("utf-8"),
    ):
        raise AdminAuthError()


DbSession = Annotated[AsyncSession, Depends(get_db)]
AppSettings = Annotated[Settings, Depends(get_settings)]
Gateway = Annotated[PaymentGateway, Depends(get_gateway)]
LockManager = Annotated[TournamentLockManager, Depends(get_lock_manager)]
AppClock = Annotated[Clock, Depends(get_clock)]
TraceId = Annotated[str, Depends(get_trace_id)]


def get_reservation_service(
    db: DbSession,
    settings: AppSettings,
    gateway: Gateway,
    lock_manager: LockManager,
    clock: AppClock,
) -> ReservationService:
    return ReservationService(db, settings, gateway, lock_manager, clock)


def get_promotion_scheduler(
    db: DbSession,
    settings: AppSettings,
    gateway: Gateway,
    lock_manager: LockManager,
    clock: AppClock,
) -> PromotionScheduler:
    return PromotionScheduler(db, settings, gateway, lock_manager, clock)


def get_reconciliation_engine(
    db: DbSession,
    settings: AppSettings,
    gateway: Gateway,
    lock_manager: LockManager,
    clock: AppClock,
) -> ReconciliationEngine:
    return ReconciliationEngine(db, settings, gateway, lock_manager, clock)


Reservations = Annotated[ReservationService, Depends(get_reservation_service)]
Promotions = Annotated[PromotionScheduler, Depends(get_promotion_scheduler)]
Reconciliation = Annotated[ReconciliationEngine, Depends(get_reconciliation_engine)]
AdminKey = Depends(require_admin)
