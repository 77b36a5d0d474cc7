"""Membership status service.

Roles gate the entry fee and comp eligibility. Subscription state is fed by
gateway events, which can arrive out of order: an event created before the
last applied one is ignored.
"""

from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from entry_engine.config import Settings
from entry_engine.logging_config import get_logger
from entry_engine.models.membership import MembershipRole, MembershipStatus
from entry_engine.services.fee_policy import normalize_role
from entry_engine.services.gateway import (
    PaymentGateway,
    billing_return_url,
    subscription_checkout_request,
)
from entry_engine.utils.clock import ensure_utc
from entry_engine.utils.errors import ValidationError

logger = get_logger(__name__)


@dataclass(frozen=True)
class MembershipView:
    """Read model returned for users with or without a stored row."""

    user_id: str
    role: str
    status: str
    email: str | None = None
    customer_ref: str | None = None
    subscription_ref: str | None = None
    period_end: datetime | None = None

    @classmethod
    def default(cls, user_id: str) -> "MembershipView":
        return cls(user_id=user_id, role=MembershipRole.NONMEMBER.value, status="none")

    @classmethod
    def from_model(cls, row: MembershipStatus) -> "MembershipView":
        return cls(
            user_id=row.user_id,
            role=row.role,
            status=row.status,
            email=row.email,
            customer_ref=row.customer_ref,
            subscription_ref=row.subscription_ref,
            period_end=ensure_utc(row.period_end),
        )


class MembershipService:
    """Service for membership lookups and subscription sync."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, user_id: str) -> MembershipStatus | None:
        return await self.db.get(MembershipStatus, user_id, populate_existing=True)

    async def get_by_customer(self, customer_ref: str) -> MembershipStatus | None:
        result = await self.db.execute(
            select(MembershipStatus).where(MembershipStatus.customer_ref == customer_ref)
        )
        return result.scalars().first()

    async def get_status(self, user_id: str) -> MembershipView:
        row = await self.get(user_id)
        if row is None:
            return MembershipView.default(user_id)
        return MembershipView.from_model(row)

    async def get_role(self, user_id: str) -> str:
        row = await self.get(user_id)
        return normalize_role(row.role if row else None)

    async def apply_subscription(
        self,
        user_id: str,
        role: str | None,
        status: str,
        event_at: datetime,
        customer_ref: str | None = None,
        subscription_ref: str | None = None,
        period_end: datetime | None = None,
        email: str | None = None,
    ) -> bool:
        """Upsert membership from a subscription event.

        Args:
            user_id: Member the subscription belongs to
            role: New tier, or None to keep the current one
            status: Gateway subscription status
            event_at: Creation time of the gateway event
            customer_ref: Gateway customer id
            subscription_ref: Gateway subscription id
            period_end: End of the current billing period
            email: Payer contact

        Returns:
            False if the event is older than the last applied one
        """
        event_at = ensure_utc(event_at)
        row = await self.get(user_id)
        if row is None:
            row = MembershipStatus(user_id=user_id, role=MembershipRole.NONMEMBER.value)
            self.db.add(row)
        else:
            last = ensure_utc(row.last_event_at)
            if last is not None and event_at < last:
                logger.info(
                    "membership_event_out_of_order",
                    user_id=user_id,
                    event_at=event_at.isoformat(),
                    last_event_at=last.isoformat(),
                )
                return False

        if role is not None:
            row.role = normalize_role(role)
        row.status = status
        row.last_event_at = event_at
        if customer_ref:
            row.customer_ref = customer_ref
        if subscription_ref:
            row.subscription_ref = subscription_ref
        if period_end is not None:
            row.period_end = period_end
        if email:
            row.email = email
        await self.db.flush()

        logger.info("membership_updated", user_id=user_id, role=row.role, status=status)
        return True

    async def mark_past_due(self, user_id: str, event_at: datetime) -> bool:
        """Invoice payment failed: keep the tier, flag the status."""
        return await self.apply_subscription(user_id, None, "past_due", event_at)


class MembershipBilling:
    """Subscription checkout and billing portal links for members."""

    def __init__(self, db: AsyncSession, settings: Settings, gateway: PaymentGateway):
        self.settings = settings
        self.gateway = gateway
        self.membership = MembershipService(db)

    async def start_checkout(
        self,
        user_id: str,
        tier: str,
        email: str | None = None,
        request_id: str = "",
    ) -> str:
        """Create a subscription checkout for a tier and return its URL.

        Raises:
            ValidationError: If the tier has no configured price
            GatewayCallFailure: If the checkout could not be created
        """
        tier = tier.lower()
        price_ref = self.settings.membership_price_refs.get(tier)
        if not price_ref:
            raise ValidationError(f"Unknown membership tier: {tier}", {"tier": tier})

        current = await self.membership.get_status(user_id)
        request = subscription_checkout_request(
            self.settings,
            price_ref,
            user_id,
            tier,
            payer_contact=email or current.email,
            customer_ref=current.customer_ref,
            request_id=request_id,
        )
        session = await self.gateway.create_subscription_checkout(request)
        logger.info("membership_checkout_created", user_id=user_id, tier=tier, session_id=session.session_id)
        return session.url

    async def portal_url(self, user_id: str, return_url: str | None = None) -> str:
        """Billing portal link for the member's stored customer.

        Raises:
            ValidationError: If the user has never subscribed
        """
        current = await self.membership.get_status(user_id)
        if not current.customer_ref:
            raise ValidationError("No billing account for user", {"userId": user_id})
        return await self.gateway.create_billing_portal_session(
            current.customer_ref,
            return_url or billing_return_url(self.settings),
        )
