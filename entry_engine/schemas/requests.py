"""API request schemas."""

from pydantic import Field

from entry_engine.schemas.common import BaseSchema


# =============================================================================
# Entries & Waitlist
# =============================================================================


class EntryRequest(BaseSchema):
    """Tournament entry attempt."""

    user_id: str = Field(..., min_length=1, max_length=100, alias="userId")
    tournament_id: str = Field(..., min_length=1, max_length=100, alias="tournamentId")
    payer_contact: str | None = Field(
        None,
        max_length=255,
        alias="payerContact",
        description="Email prefilled on the checkout page",
    )
    join_waitlist_if_full: bool = Field(False, alias="joinWaitlistIfFull")


class WaitlistJoinRequest(BaseSchema):
    user_id: str = Field(..., min_length=1, max_length=100, alias="userId")


# =============================================================================
# Membership
# =============================================================================


class MembershipCheckoutRequest(BaseSchema):
    """Subscription checkout for a membership tier."""

    user_id: str = Field(..., min_length=1, max_length=100, alias="userId")
    tier: str = Field(..., min_length=1, max_length=20)
    email: str | None = Field(None, max_length=255)


class MembershipPortalRequest(BaseSchema):
    user_id: str = Field(..., min_length=1, max_length=100, alias="userId")
    return_url: str | None = Field(None, max_length=1000, alias="returnUrl")


# =============================================================================
# Admin
# =============================================================================


class TournamentUpdateRequest(BaseSchema):
    max_slots: int | None = Field(None, gt=0, le=10000, alias="maxSlots")
    hall_id: str | None = Field(None, min_length=1, max_length=100, alias="hallId")


class HallSettingsRequest(BaseSchema):
    """Fee overrides in cents; null falls back to the global fee."""

    base_fee_cents: int | None = Field(None, ge=0, alias="baseFeeCents")
    nonmember_fee_cents: int | None = Field(None, ge=0, alias="nonmemberFeeCents")
    revenue_split_pct: float | None = Field(None, ge=0.0, le=1.0, alias="revenueSplitPct")
