"""Database models."""

from entry_engine.models.base import Base, TimestampMixin, UUIDMixin
from entry_engine.models.entry import (
    CONFIRMED_STATUSES,
    SLOT_HOLDING_STATUSES,
    TERMINAL_STATUSES,
    EntryStatus,
    TournamentEntry,
)
from entry_engine.models.gateway_event import ProcessedGatewayEvent
from entry_engine.models.membership import MembershipRole, MembershipStatus
from entry_engine.models.tournament import HallSetting, Tournament
from entry_engine.models.waitlist import ACTIVE_WAITLIST_STATUSES, WaitlistRow, WaitlistStatus

__all__ = [
    # Base
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    # Capacity
    "Tournament",
    "HallSetting",
    # Entries
    "TournamentEntry",
    "EntryStatus",
    "SLOT_HOLDING_STATUSES",
    "CONFIRMED_STATUSES",
    "TERMINAL_STATUSES",
    # Waitlist
    "WaitlistRow",
    "WaitlistStatus",
    "ACTIVE_WAITLIST_STATUSES",
    # Membership
    "MembershipStatus",
    "MembershipRole",
    # Reconciliation
    "ProcessedGatewayEvent",
]
