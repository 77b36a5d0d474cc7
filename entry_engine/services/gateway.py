"""Payment gateway adapter.

Every call is a fallible, side-effecting remote call. Payment confirmation
is never synchronous: it arrives later as a webhook event handled by the
reconciliation engine.

Features:
- Typed request structs instead of free-form metadata bags
- Idempotency key per call so retries never create duplicate sessions
- Retry with exponential backoff on connection errors only
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

import stripe
from tenacity import (
    AsyncRetrying,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from entry_engine.config import Settings
from entry_engine.logging_config import get_logger
from entry_engine.utils.errors import GatewayCallFailure, GatewayNotConfiguredError

logger = get_logger(__name__)

ENTRY_METADATA_TYPE = "tournament_entry"


# ============================================================
# Request structs
# ============================================================


@dataclass(frozen=True)
class EntryCheckoutMetadata:
    """Identifiers the reconciliation engine needs back from the gateway."""

    tournament_id: str
    user_id: str
    entry_id: str
    amount_cents: int
    attempt: int = 1
    waitlist_row_id: int | None = None

    def __post_init__(self) -> None:
        if not self.tournament_id or not self.user_id or not self.entry_id:
            raise ValueError("tournament_id, user_id and entry_id are required")
        if self.amount_cents <= 0:
            raise ValueError("paid checkout requires a positive amount")

    def to_gateway(self) -> dict[str, str]:
        """Flatten to the string map the gateway stores with the session."""
        data = {
            "type": ENTRY_METADATA_TYPE,
            "tournamentId": self.tournament_id,
            "userId": self.user_id,
            "entryId": self.entry_id,
            "amountCents": str(self.amount_cents),
            "attempt": str(self.attempt),
        }
        if self.waitlist_row_id is not None:
            data["waitlistRowId"] = str(self.waitlist_row_id)
        return data


@dataclass(frozen=True)
class OneOffCheckout:
    amount_cents: int
    payer_contact: str | None
    success_url: str
    cancel_url: str
    product_name: str
    metadata: EntryCheckoutMetadata
    currency: str = "usd"
    expires_at: datetime | None = None

    def __post_init__(self) -> None:
        if self.amount_cents != self.metadata.amount_cents:
            raise ValueError("checkout amount does not match metadata amount")

    @property
    def idempotency_key(self) -> str:
        return f"entry-checkout:{self.metadata.entry_id}:{self.metadata.attempt}"


@dataclass(frozen=True)
class SubscriptionCheckout:
    price_ref: str
    user_id: str
    tier: str
    success_url: str
    cancel_url: str
    payer_contact: str | None = None
    customer_ref: str | None = None
    request_id: str = field(default="", compare=False)

    def __post_init__(self) -> None:
        if not self.price_ref or not self.user_id or not self.tier:
            raise ValueError("price_ref, user_id and tier are required")

    def metadata(self) -> dict[str, str]:
        return {"userId": self.user_id, "tier": self.tier}


@dataclass(frozen=True)
class CheckoutSession:
    session_id: str
    url: str


def entry_checkout_request(
    settings: Settings,
    metadata: EntryCheckoutMetadata,
    payer_contact: str | None,
    expires_at: datetime | None,
) -> OneOffCheckout:
    """Build the one-off checkout for a tournament entry or waitlist offer."""
    tournament_id = metadata.tournament_id
    base_url = settings.app_url.rstrip("/")
    label = "Tournament Entry (Offer)" if metadata.waitlist_row_id is not None else "Tournament Entry"
    return OneOffCheckout(
        amount_cents=metadata.amount_cents,
        payer_contact=payer_contact,
        success_url=f"{base_url}/tournaments/{tournament_id}/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base_url}/tournaments/{tournament_id}/cancel",
        product_name=f"{label} - {tournament_id}",
        metadata=metadata,
        currency=settings.entry_currency,
        expires_at=expires_at,
    )


def subscription_checkout_request(
    settings: Settings,
    price_ref: str,
    user_id: str,
    tier: str,
    payer_contact: str | None = None,
    customer_ref: str | None = None,
    request_id: str = "",
) -> SubscriptionCheckout:
    base_url = settings.app_url.rstrip("/")
    return SubscriptionCheckout(
        price_ref=price_ref,
        user_id=user_id,
        tier=tier,
        success_url=f"{base_url}/billing/success?session_id={{CHECKOUT_SESSION_ID}}",
        cancel_url=f"{base_url}/billing/cancel",
        payer_contact=payer_contact,
        customer_ref=customer_ref,
        request_id=request_id,
    )


def billing_return_url(settings: Settings) -> str:
    return f"{settings.app_url.rstrip('/')}/billing"


# ============================================================
# Interface
# ============================================================


class PaymentGateway(ABC):
    """Outbound calls to the payment provider."""

    @abstractmethod
    async def create_one_off_checkout(self, request: OneOffCheckout) -> CheckoutSession:
        """Create a one-off payment session; returns the redirect URL."""

    @abstractmethod
    async def create_subscription_checkout(self, request: SubscriptionCheckout) -> CheckoutSession:
        """Create a subscription checkout session."""

    @abstractmethod
    async def create_billing_portal_session(self, customer_ref: str, return_url: str) -> str:
        """Create a billing-portal link for an existing customer."""

    @abstractmethod
    async def create_refund(
        self,
        payment_reference: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        """Refund a captured payment; returns the refund id."""

    @abstractmethod
    async def expire_checkout(self, session_id: str) -> None:
        """Expire an open checkout session so it can no longer be paid."""


# ============================================================
# Stripe implementation
# ============================================================


class StripeGateway(PaymentGateway):
    """PaymentGateway backed by the Stripe SDK.

    The SDK is synchronous, so calls run in a worker thread.
    """

    def __init__(self, secret_key: str | None, max_retries: int = 3):
        self._secret_key = secret_key
        self._max_retries = max_retries

    @classmethod
    def from_settings(cls, settings: Settings) -> "StripeGateway":
        return cls(settings.stripe_secret_key, settings.gateway_max_retries)

    async def _call(self, operation: str, fn: Callable[..., Any], **params: Any) -> Any:
        if not self._secret_key:
            raise GatewayNotConfiguredError()

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._max_retries),
            wait=wait_exponential(multiplier=0.2, min=0.2, max=2),
            retry=retry_if_exception_type(stripe.APIConnectionError),
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    return await asyncio.to_thread(fn, api_key=self._secret_key, **params)
        except stripe.StripeError as e:
            logger.error(
                "gateway_call_failed",
                operation=operation,
                error=type(e).__name__,
                message=str(e),
            )
            raise GatewayCallFailure(operation, str(e)) from e

    async def create_one_off_checkout(self, request: OneOffCheckout) -> CheckoutSession:
        metadata = request.metadata.to_gateway()
        params: dict[str, Any] = {
            "mode": "payment",
            "line_items": [
                {
                    "price_data": {
                        "currency": request.currency,
                        "unit_amount": request.amount_cents,
                        "product_data": {"name": request.product_name},
                    },
                    "quantity": 1,
                }
            ],
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
            "client_reference_id": f"{request.metadata.user_id}:{request.metadata.tournament_id}",
            "metadata": metadata,
            "payment_intent_data": {"metadata": metadata},
            "allow_promotion_codes": False,
            "idempotency_key": request.idempotency_key,
        }
        if request.payer_contact:
            params["customer_email"] = request.payer_contact
        if request.expires_at is not None:
            params["expires_at"] = int(request.expires_at.timestamp())

        session = await self._call(
            "create_one_off_checkout",
            stripe.checkout.Session.create,
            **params,
        )
        logger.info(
            "gateway_checkout_created",
            session_id=session.id,
            tournament_id=request.metadata.tournament_id,
            user_id=request.metadata.user_id,
            amount_cents=request.amount_cents,
        )
        return CheckoutSession(session_id=session.id, url=session.url)

    async def create_subscription_checkout(self, request: SubscriptionCheckout) -> CheckoutSession:
        metadata = request.metadata()
        params: dict[str, Any] = {
            "mode": "subscription",
            "allow_promotion_codes": True,
            "billing_address_collection": "auto",
            "line_items": [{"price": request.price_ref, "quantity": 1}],
            "success_url": request.success_url,
            "cancel_url": request.cancel_url,
            "client_reference_id": request.user_id,
            "subscription_data": {"metadata": metadata},
            "metadata": metadata,
        }
        if request.customer_ref:
            params["customer"] = request.customer_ref
        elif request.payer_contact:
            params["customer_email"] = request.payer_contact
        if request.request_id:
            params["idempotency_key"] = f"subscription-checkout:{request.request_id}"

        session = await self._call(
            "create_subscription_checkout",
            stripe.checkout.Session.create,
            **params,
        )
        return CheckoutSession(session_id=session.id, url=session.url)

    async def create_billing_portal_session(self, customer_ref: str, return_url: str) -> str:
        session = await self._call(
            "create_billing_portal_session",
            stripe.billing_portal.Session.create,
            customer=customer_ref,
            return_url=return_url,
        )
        return session.url

    async def create_refund(
        self,
        payment_reference: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        refund = await self._call(
            "create_refund",
            stripe.Refund.create,
            payment_intent=payment_reference,
            reason="requested_by_customer",
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        logger.info("gateway_refund_created", refund_id=refund.id, payment_reference=payment_reference)
        return refund.id

    async def expire_checkout(self, session_id: str) -> None:
        await self._call(
            "expire_checkout",
            stripe.checkout.Session.expire,
            session=session_id,
        )
        logger.info("gateway_checkout_expired", session_id=session_id)
