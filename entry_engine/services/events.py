"""Typed gateway events.

Raw webhook payloads are parsed once into a closed set of event kinds, each
with its own frozen payload. Anything the engine does not act on parses to
`Ignored` and is still acknowledged.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar, Union

from entry_engine.services.gateway import ENTRY_METADATA_TYPE
from entry_engine.utils.clock import from_epoch
from entry_engine.utils.errors import ValidationError
from entry_engine.utils.json_utils import json_loads

DEFAULT_SUBSCRIPTION_TIER = "small"
PAID_CHECKOUT_STATUSES = ("paid", "no_payment_required")


class GatewayEventKind(str, Enum):
    ENTRY_CHECKOUT_COMPLETED = "entry_checkout_completed"
    SUBSCRIPTION_CHECKOUT_COMPLETED = "subscription_checkout_completed"
    SUBSCRIPTION_CHANGED = "subscription_changed"
    SUBSCRIPTION_DELETED = "subscription_deleted"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    CHECKOUT_EXPIRED = "checkout_expired"
    CHARGE_REFUNDED = "charge_refunded"
    IGNORED = "ignored"


@dataclass(frozen=True)
class EntryCheckoutCompleted:
    kind: ClassVar[GatewayEventKind] = GatewayEventKind.ENTRY_CHECKOUT_COMPLETED

    session_id: str
    tournament_id: str | None
    user_id: str | None
    entry_id: str | None
    amount_cents: int | None
    attempt: int | None
    payment_reference: str | None
    waitlist_row_id: int | None = None


@dataclass(frozen=True)
class SubscriptionCheckoutCompleted:
    kind: ClassVar[GatewayEventKind] = GatewayEventKind.SUBSCRIPTION_CHECKOUT_COMPLETED

    user_id: str | None
    tier: str
    customer_ref: str | None
    subscription_ref: str | None
    email: str | None = None


@dataclass(frozen=True)
class SubscriptionChanged:
    kind: ClassVar[GatewayEventKind] = GatewayEventKind.SUBSCRIPTION_CHANGED

    user_id: str | None
    tier: str | None
    status: str
    customer_ref: str | None
    subscription_ref: str | None
    period_end: datetime | None = None


@dataclass(frozen=True)
class SubscriptionDeleted:
    kind: ClassVar[GatewayEventKind] = GatewayEventKind.SUBSCRIPTION_DELETED

    user_id: str | None
    customer_ref: str | None
    subscription_ref: str | None
    period_end: datetime | None = None


@dataclass(frozen=True)
class InvoicePaymentFailed:
    kind: ClassVar[GatewayEventKind] = GatewayEventKind.INVOICE_PAYMENT_FAILED

    user_id: str | None
    customer_ref: str | None
    subscription_ref: str | None


@dataclass(frozen=True)
class CheckoutExpired:
    kind: ClassVar[GatewayEventKind] = GatewayEventKind.CHECKOUT_EXPIRED

    session_id: str
    entry_id: str | None
    tournament_id: str | None
    user_id: str | None


@dataclass(frozen=True)
class ChargeRefunded:
    kind: ClassVar[GatewayEventKind] = GatewayEventKind.CHARGE_REFUNDED

    payment_reference: str


@dataclass(frozen=True)
class Ignored:
    kind: ClassVar[GatewayEventKind] = GatewayEventKind.IGNORED

    reason: str


EventPayload = Union[
    EntryCheckoutCompleted,
    SubscriptionCheckoutCompleted,
    SubscriptionChanged,
    SubscriptionDeleted,
    InvoicePaymentFailed,
    CheckoutExpired,
    ChargeRefunded,
    Ignored,
]


@dataclass(frozen=True)
class GatewayEvent:
    event_id: str
    event_type: str
    created_at: datetime
    payload: EventPayload

    @property
    def kind(self) -> GatewayEventKind:
        return self.payload.kind


# ============================================================
# Parsing
# ============================================================


def _str(value: Any) -> str | None:
    if value is None or value == "":
        return None
    return str(value)


def _int(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _ref(value: Any) -> str | None:
    """Gateway references arrive as an id or an expanded object."""
    if isinstance(value, dict):
        return _str(value.get("id"))
    return _str(value)


def _member_id(metadata: dict[str, Any], fallback: Any = None) -> str | None:
    return _str(metadata.get("userId")) or _str(metadata.get("operatorId")) or _str(fallback)


def _period_end(obj: dict[str, Any]) -> datetime | None:
    if obj.get("current_period_end") is not None:
        return from_epoch(obj["current_period_end"])
    items = (obj.get("items") or {}).get("data") or []
    if items and items[0].get("current_period_end") is not None:
        return from_epoch(items[0]["current_period_end"])
    return None


def _parse_checkout_completed(obj: dict[str, Any]) -> EventPayload:
    metadata = obj.get("metadata") or {}
    mode = obj.get("mode")

    if mode == "payment":
        if metadata.get("type") != ENTRY_METADATA_TYPE:
            return Ignored("payment_not_tournament_entry")
        if obj.get("payment_status") not in PAID_CHECKOUT_STATUSES:
            return Ignored("payment_not_settled")
        return EntryCheckoutCompleted(
            session_id=str(obj["id"]),
            tournament_id=_str(metadata.get("tournamentId")),
            user_id=_str(metadata.get("userId")),
            entry_id=_str(metadata.get("entryId")),
            amount_cents=_int(metadata.get("amountCents")),
            attempt=_int(metadata.get("attempt")),
            payment_reference=_ref(obj.get("payment_intent")),
            waitlist_row_id=_int(metadata.get("waitlistRowId")),
        )

    if mode == "subscription":
        details = obj.get("customer_details") or {}
        return SubscriptionCheckoutCompleted(
            user_id=_member_id(metadata, obj.get("client_reference_id")),
            tier=_str(metadata.get("tier")) or DEFAULT_SUBSCRIPTION_TIER,
            customer_ref=_ref(obj.get("customer")),
            subscription_ref=_ref(obj.get("subscription")),
            email=_str(details.get("email")) or _str(obj.get("customer_email")),
        )

    return Ignored(f"checkout_mode_{mode}")


def _parse_payload(event_type: str, obj: dict[str, Any]) -> EventPayload:
    metadata = obj.get("metadata") or {}

    if event_type == "checkout.session.completed":
        return _parse_checkout_completed(obj)

    if event_type == "checkout.session.expired":
        if obj.get("mode") != "payment" or metadata.get("type") != ENTRY_METADATA_TYPE:
            return Ignored("expired_not_tournament_entry")
        return CheckoutExpired(
            session_id=str(obj["id"]),
            entry_id=_str(metadata.get("entryId")),
            tournament_id=_str(metadata.get("tournamentId")),
            user_id=_str(metadata.get("userId")),
        )

    if event_type in ("customer.subscription.created", "customer.subscription.updated"):
        return SubscriptionChanged(
            user_id=_member_id(metadata),
            tier=_str(metadata.get("tier")),
            status=_str(obj.get("status")) or "unknown",
            customer_ref=_ref(obj.get("customer")),
            subscription_ref=_str(obj.get("id")),
            period_end=_period_end(obj),
        )

    if event_type == "customer.subscription.deleted":
        return SubscriptionDeleted(
            user_id=_member_id(metadata),
            customer_ref=_ref(obj.get("customer")),
            subscription_ref=_str(obj.get("id")),
            period_end=_period_end(obj),
        )

    if event_type == "invoice.payment_failed":
        details = obj.get("subscription_details") or (
            (obj.get("parent") or {}).get("subscription_details") or {}
        )
        member_metadata = {**(details.get("metadata") or {}), **metadata}
        return InvoicePaymentFailed(
            user_id=_member_id(member_metadata),
            customer_ref=_ref(obj.get("customer")),
            subscription_ref=_ref(obj.get("subscription")) or _ref(details.get("subscription")),
        )

    if event_type == "charge.refunded":
        if not obj.get("refunded"):
            return Ignored("partial_refund")
        payment_reference = _ref(obj.get("payment_intent"))
        if payment_reference is None:
            return Ignored("refund_without_payment_intent")
        return ChargeRefunded(payment_reference=payment_reference)

    return Ignored(f"unhandled_type_{event_type}")


def parse_event(payload: bytes | str) -> GatewayEvent:
    """Parse a verified webhook body.

    Raises:
        ValidationError: If the body is not a well-formed gateway event
    """
    try:
        raw = json_loads(payload)
    except ValueError as e:
        raise ValidationError("Webhook body is not valid JSON") from e

    if not isinstance(raw, dict):
        raise ValidationError("Webhook body must be an object")

    event_id = _str(raw.get("id"))
    event_type = _str(raw.get("type"))
    created = raw.get("created")
    obj = (raw.get("data") or {}).get("object")
    if event_id is None or event_type is None or not isinstance(created, (int, float)) or not isinstance(obj, dict):
        raise ValidationError(
            "Webhook event is missing id, type, created or data.object",
            {"eventId": event_id, "type": event_type},
        )

    try:
        payload_obj = _parse_payload(event_type, obj)
    except KeyError as e:
        raise ValidationError(
            f"Webhook event is missing field {e.args[0]}",
            {"eventId": event_id, "type": event_type},
        ) from e

    return GatewayEvent(
        event_id=event_id,
        event_type=event_type,
        created_at=from_epoch(created),
        payload=payload_obj,
    )
