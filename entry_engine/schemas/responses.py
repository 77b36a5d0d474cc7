"""API response schemas."""

from datetime import datetime
from typing import Literal

from pydantic import Field

from entry_engine.schemas.common import BaseSchema


# =============================================================================
# Entries
# =============================================================================


class EntryResponse(BaseSchema):
    id: str
    tournament_id: str = Field(..., alias="tournamentId")
    user_id: str = Field(..., alias="userId")
    amount_cents: int = Field(..., alias="amountCents")
    status: str
    attempt: int
    checkout_url: str | None = Field(None, alias="checkoutUrl")
    hold_expires_at: datetime | None = Field(None, alias="holdExpiresAt")
    created_at: datetime = Field(..., alias="createdAt")


class ReservationResponse(BaseSchema):
    """200 body of POST /entries; exactly one outcome flag is set."""

    already_registered: bool | None = Field(None, alias="alreadyRegistered")
    comped: bool | None = None
    checkout_url: str | None = Field(None, alias="checkoutUrl")
    amount_cents: int | None = Field(None, alias="amountCents")
    entry: EntryResponse | None = None


class WaitlistedResponse(BaseSchema):
    """202 body when the user was queued."""

    waitlisted: Literal[True] = True
    row_id: int = Field(..., alias="rowId")
    position: int


class CapacityFullResponse(BaseSchema):
    """409 body when the tournament is full and the user did not opt in."""

    capacity_full: Literal[True] = Field(True, alias="capacityFull")
    max_slots: int = Field(..., alias="maxSlots")
    current: int
    waitlist_available: bool = Field(True, alias="waitlistAvailable")


# =============================================================================
# Waitlist
# =============================================================================


class WaitlistRowResponse(BaseSchema):
    id: int
    tournament_id: str = Field(..., alias="tournamentId")
    user_id: str = Field(..., alias="userId")
    status: str
    offer_url: str | None = Field(None, alias="offerUrl")
    offer_expires_at: datetime | None = Field(None, alias="offerExpiresAt")
    offer_count: int = Field(..., alias="offerCount")
    cancel_reason: str | None = Field(None, alias="cancelReason")
    created_at: datetime = Field(..., alias="createdAt")


class WaitlistListResponse(BaseSchema):
    count: int
    rows: list[WaitlistRowResponse]


class PromotionResponse(BaseSchema):
    ok: bool
    promoted: str | None = None
    reason: str | None = None
    user_id: str | None = Field(None, alias="userId")
    url: str | None = None
    expires_at: datetime | None = Field(None, alias="expiresAt")


# =============================================================================
# Webhooks
# =============================================================================


class WebhookAckResponse(BaseSchema):
    received: Literal[True] = True
    event_id: str = Field(..., alias="eventId")
    kind: str
    outcome: str


# =============================================================================
# Membership
# =============================================================================


class MembershipStatusResponse(BaseSchema):
    user_id: str = Field(..., alias="userId")
    role: str
    status: str
    email: str | None = None
    customer_ref: str | None = Field(None, alias="customerRef")
    subscription_ref: str | None = Field(None, alias="subscriptionRef")
    period_end: datetime | None = Field(None, alias="periodEnd")


class UrlResponse(BaseSchema):
    url: str


# =============================================================================
# Admin
# =============================================================================


class TournamentSnapshotResponse(BaseSchema):
    tournament_id: str = Field(..., alias="tournamentId")
    hall_id: str | None = Field(None, alias="hallId")
    max_slots: int = Field(..., alias="maxSlots")
    held: int
    confirmed: int
    is_open: bool = Field(..., alias="isOpen")
    waiting: int


class HallSettingsResponse(BaseSchema):
    hall_id: str = Field(..., alias="hallId")
    base_fee_cents: int | None = Field(None, alias="baseFeeCents")
    nonmember_fee_cents: int | None = Field(None, alias="nonmemberFeeCents")
    revenue_split_pct: float | None = Field(None, alias="revenueSplitPct")


class CancelEntryResponse(BaseSchema):
    canceled: Literal[True] = True
    promotion: PromotionResponse | None = None
