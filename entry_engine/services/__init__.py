"""Reservation engine services."""

from entry_engine.services.capacity import CapacityLedger
from entry_engine.services.entries import EntryStore
from entry_engine.services.fee_policy import FeeDefaults, HallFeeOverrides, compute_fee_cents
from entry_engine.services.gateway import (
    CheckoutSession,
    EntryCheckoutMetadata,
    OneOffCheckout,
    PaymentGateway,
    StripeGateway,
    SubscriptionCheckout,
)
from entry_engine.services.halls import HallSettingsService
from entry_engine.services.membership import MembershipService, MembershipView
from entry_engine.services.promotion import PromotionOutcome, PromotionResult, PromotionScheduler
from entry_engine.services.reconciliation import (
    ReconciliationEngine,
    ReconciliationOutcome,
    ReconciliationResult,
)
from entry_engine.services.reservation import (
    ReservationOutcome,
    ReservationResult,
    ReservationService,
    TournamentSnapshot,
)
from entry_engine.services.revenue import RevenueReport
from entry_engine.services.waitlist import WaitlistQueue

__all__ = [
    # Fees
    "FeeDefaults",
    "HallFeeOverrides",
    "compute_fee_cents",
    "HallSettingsService",
    # Gateway
    "PaymentGateway",
    "StripeGateway",
    "OneOffCheckout",
    "SubscriptionCheckout",
    "EntryCheckoutMetadata",
    "CheckoutSession",
    # Capacity & entries
    "CapacityLedger",
    "EntryStore",
    "ReservationService",
    "ReservationResult",
    "ReservationOutcome",
    "TournamentSnapshot",
    # Waitlist
    "WaitlistQueue",
    "PromotionScheduler",
    "PromotionResult",
    "PromotionOutcome",
    # Reconciliation
    "ReconciliationEngine",
    "ReconciliationResult",
    "ReconciliationOutcome",
    # Membership & reporting
    "MembershipService",
    "MembershipView",
    "RevenueReport",
]
