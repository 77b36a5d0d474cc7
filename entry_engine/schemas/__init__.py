"""Pydantic request/response schemas."""

from entry_engine.schemas.common import BaseSchema, ErrorDetail, ErrorResponse
from entry_engine.schemas.requests import (
    EntryRequest,
    HallSettingsRequest,
    MembershipCheckoutRequest,
    MembershipPortalRequest,
    TournamentUpdateRequest,
    WaitlistJoinRequest,
)
from entry_engine.schemas.responses import (
    CancelEntryResponse,
    CapacityFullResponse,
    EntryResponse,
    HallSettingsResponse,
    MembershipStatusResponse,
    PromotionResponse,
    ReservationResponse,
    TournamentSnapshotResponse,
    UrlResponse,
    WaitlistedResponse,
    WaitlistListResponse,
    WaitlistRowResponse,
    WebhookAckResponse,
)

__all__ = [
    # Common
    "BaseSchema",
    "ErrorDetail",
    "ErrorResponse",
    # Requests
    "EntryRequest",
    "WaitlistJoinRequest",
    "MembershipCheckoutRequest",
    "MembershipPortalRequest",
    "TournamentUpdateRequest",
    "HallSettingsRequest",
    # Responses
    "EntryResponse",
    "ReservationResponse",
    "WaitlistedResponse",
    "CapacityFullResponse",
    "WaitlistRowResponse",
    "WaitlistListResponse",
    "PromotionResponse",
    "WebhookAckResponse",
    "MembershipStatusResponse",
    "UrlResponse",
    "TournamentSnapshotResponse",
    "HallSettingsResponse",
    "CancelEntryResponse",
]
