"""Shared test fixtures.

Each test gets its own SQLite file database. The Redis lock runs against an
in-process MockRedis and the payment gateway is a recording fake.
"""

import hashlib
import hmac
import json
import time
from collections.abc import AsyncGenerator
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession

from entry_engine.api.deps import get_clock, get_gateway, get_lock_manager
from entry_engine.config import Settings, get_settings
from entry_engine.main import create_app
from entry_engine.models import Base, MembershipStatus, TournamentEntry
from entry_engine.services.gateway import (
    CheckoutSession,
    OneOffCheckout,
    PaymentGateway,
    SubscriptionCheckout,
)
from entry_engine.services.promotion import PromotionScheduler
from entry_engine.services.reconciliation import ReconciliationEngine
from entry_engine.services.reservation import ReservationService
from entry_engine.utils.clock import utcnow
from entry_engine.utils.db import build_engine, build_session_factory, get_db
from entry_engine.utils.errors import EntryEngineError
from entry_engine.utils.locks import TournamentLockManager

ADMIN_KEY = "test-admin-key-0123456789"
WEBHOOK_SECRET = "whsec_test_secret"


# =============================================================================
# Test Doubles
# =============================================================================


class MockRedis:
    """Mock Redis client: SET NX PX with expiry and the release script."""

    def __init__(self):
        self._data: dict[str, tuple[str, float | None]] = {}

    def _live(self, key):
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and time.monotonic() >= expires_at:
            del self._data[key]
            return None
        return value

    async def set(self, key, value, nx=False, px=None):
        if nx and self._live(key) is not None:
            return None
        expires_at = time.monotonic() + px / 1000 if px else None
        self._data[key] = (value, expires_at)
        return True

    async def get(self, key):
        return self._live(key)

    async def delete(self, *keys):
        removed = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                removed += 1
        return removed

    async def ping(self):
        return True

    def register_script(self, script):
        async def release_script(keys=None, args=None):
            if self._live(keys[0]) == args[0]:
                return await self.delete(keys[0])
            return 0

        return release_script


class FakeGateway(PaymentGateway):
    """Records every call; set `fail_with` to make calls raise."""

    def __init__(self):
        self.checkouts: list[OneOffCheckout] = []
        self.subscriptions: list[SubscriptionCheckout] = []
        self.portals: list[tuple[str, str]] = []
        self.refunds: list[dict[str, Any]] = []
        self.expired: list[str] = []
        self.fail_with: EntryEngineError | None = None

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def create_one_off_checkout(self, request: OneOffCheckout) -> CheckoutSession:
        self._maybe_fail()
        self.checkouts.append(request)
        session_id = f"cs_test_{uuid4().hex[:12]}"
        return CheckoutSession(session_id=session_id, url=f"https://checkout.test/pay/{session_id}")

    async def create_subscription_checkout(self, request: SubscriptionCheckout) -> CheckoutSession:
        self._maybe_fail()
        self.subscriptions.append(request)
        session_id = f"cs_sub_{uuid4().hex[:12]}"
        return CheckoutSession(session_id=session_id, url=f"https://checkout.test/sub/{session_id}")

    async def create_billing_portal_session(self, customer_ref: str, return_url: str) -> str:
        self._maybe_fail()
        self.portals.append((customer_ref, return_url))
        return f"https://billing.test/portal/{customer_ref}"

    async def create_refund(
        self,
        payment_reference: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        self._maybe_fail()
        self.refunds.append(
            {
                "payment_reference": payment_reference,
                "idempotency_key": idempotency_key,
                "metadata": metadata,
            }
        )
        return f"re_test_{len(self.refunds)}"

    async def expire_checkout(self, session_id: str) -> None:
        self._maybe_fail()
        self.expired.append(session_id)

    @property
    def last_checkout(self) -> OneOffCheckout:
        return self.checkouts[-1]


class MutableClock:
    """Clock the tests can move forward."""

    def __init__(self, now: datetime | None = None):
        self.now = now or utcnow()

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


# =============================================================================
# Helpers
# =============================================================================


async def set_membership(
    db: AsyncSession,
    user_id: str,
    role: str,
    email: str | None = None,
    customer_ref: str | None = None,
) -> None:
    db.add(
        MembershipStatus(
            user_id=user_id,
            role=role,
            status="active",
            email=email,
            customer_ref=customer_ref,
        )
    )
    await db.commit()


def sign_payload(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
    """Build a v1 signature header the way the gateway does."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload.decode('utf-8')}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def make_event(
    event_type: str,
    obj: dict[str, Any],
    event_id: str | None = None,
    created: int | None = None,
) -> bytes:
    return json.dumps(
        {
            "id": event_id or f"evt_{uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "created": created or int(time.time()),
            "data": {"object": obj},
        }
    ).encode("utf-8")


def entry_metadata(entry: TournamentEntry) -> dict[str, str]:
    metadata = {
        "type": "tournament_entry",
        "tournamentId": entry.tournament_id,
        "userId": entry.user_id,
        "entryId": entry.id,
        "amountCents": str(entry.amount_cents),
        "attempt": str(entry.attempt),
    }
    if entry.waitlist_row_id is not None:
        metadata["waitlistRowId"] = str(entry.waitlist_row_id)
    return metadata


def checkout_completed_event(
    entry: TournamentEntry,
    payment_intent: str = "pi_test_1",
    event_id: str | None = None,
    session_id: str | None = None,
) -> bytes:
    return make_event(
        "checkout.session.completed",
        {
            "id": session_id or entry.checkout_session_id,
            "object": "checkout.session",
            "mode": "payment",
            "payment_status": "paid",
            "payment_intent": payment_intent,
            "amount_total": entry.amount_cents,
            "metadata": entry_metadata(entry),
        },
        event_id=event_id,
    )


def checkout_expired_event(entry: TournamentEntry, event_id: str | None = None) -> bytes:
    return make_event(
        "checkout.session.expired",
        {
            "id": entry.checkout_session_id,
            "object": "checkout.session",
            "mode": "payment",
            "payment_status": "unpaid",
            "metadata": entry_metadata(entry),
        },
        event_id=event_id,
    )


def charge_refunded_event(payment_intent: str, event_id: str | None = None) -> bytes:
    return make_event(
        "charge.refunded",
        {
            "id": f"ch_{uuid4().hex[:12]}",
            "object": "charge",
            "refunded": True,
            "payment_intent": payment_intent,
        },
        event_id=event_id,
    )


def subscription_event(
    event_type: str,
    user_id: str,
    tier: str | None = "medium",
    status: str = "active",
    customer: str = "cus_test_1",
    subscription_id: str = "sub_test_1",
    created: int | None = None,
    event_id: str | None = None,
) -> bytes:
    metadata = {"userId": user_id}
    if tier is not None:
        metadata["tier"] = tier
    return make_event(
        event_type,
        {
            "id": subscription_id,
            "object": "subscription",
            "status": status,
            "customer": customer,
            "current_period_end": int(time.time()) + 30 * 24 * 3600,
            "metadata": metadata,
        },
        event_id=event_id,
        created=created,
    )


# =============================================================================
# Core Fixtures
# =============================================================================


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        app_env="test",
        app_debug=False,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'entries.db'}",
        redis_url="redis://localhost:6379/15",
        admin_api_key=ADMIN_KEY,
        stripe_secret_key="sk_test_dummy",
        stripe_webhook_secret=WEBHOOK_SECRET,
        app_url="https://app.test",
        membership_price_refs={"small": "price_small", "medium": "price_medium", "large": "price_large"},
        tournament_default_cap=32,
        tournament_basic_fee_cents=2500,
        tournament_nonmember_fee_cents=3000,
        checkout_hold_minutes=60,
        hold_grace_minutes=5,
        waitlist_offer_ttl_hours=12,
        waitlist_max_offers=2,
        lock_timeout_ms=10000,
        lock_acquire_timeout_ms=2000,
    )


@pytest_asyncio.fixture
async def test_engine(settings):
    """Fresh schema per test."""
    engine = build_engine(settings)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest_asyncio.fixture
async def db(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def mock_redis() -> MockRedis:
    return MockRedis()


@pytest.fixture
def lock_manager(mock_redis) -> TournamentLockManager:
    return TournamentLockManager(
        mock_redis,
        default_lock_timeout_ms=10000,
        default_acquire_timeout_ms=2000,
        retry_interval_ms=5,
    )


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


# =============================================================================
# Service Fixtures
# =============================================================================


@pytest.fixture
def reservations(db, settings, gateway, lock_manager, clock) -> ReservationService:
    return ReservationService(db, settings, gateway, lock_manager, clock)


@pytest.fixture
def promotions(db, settings, gateway, lock_manager, clock) -> PromotionScheduler:
    return PromotionScheduler(db, settings, gateway, lock_manager, clock)


@pytest.fixture
def reconciliation(db, settings, gateway, lock_manager, clock) -> ReconciliationEngine:
    return ReconciliationEngine(db, settings, gateway, lock_manager, clock)


# =============================================================================
# FastAPI App & Client Fixtures
# =============================================================================


@pytest.fixture
def app(settings, session_factory, lock_manager, gateway, clock):
    """Application wired to the test database and doubles; lifespan is not run."""
    application = create_app(settings)

    async def override_get_db():
        async with session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    application.dependency_overrides[get_db] = override_get_db
    application.dependency_overrides[get_settings] = lambda: settings
    application.dependency_overrides[get_lock_manager] = lambda: lock_manager
    application.dependency_overrides[get_gateway] = lambda: gateway
    application.dependency_overrides[get_clock] = lambda: clock
    return application


@pytest_asyncio.fixture
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    # Unhandled errors must come back as 500 responses, not raise in the test
    transport = ASGITransport(app=app, raise_app_exceptions=False)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Key": ADMIN_KEY}
