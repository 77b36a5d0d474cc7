"""Reconciliation of payment gateway events.

Events are delivered at least once, possibly duplicated and out of order.
Effects are applied exactly once:

1. The signature is verified before the body is even parsed.
2. A processed-event row is inserted in the same transaction as the
   effects, so an event id is either fully applied or not at all.
3. Every entry transition is conditional on the current status, so
   replaying an event under a new id still changes nothing twice.

Events that reference a missing or already-terminal record are logged and
acknowledged instead of being retried forever. Any other failure rolls the
transaction back and surfaces as a server error so the gateway retries.
"""

from dataclasses import dataclass
from enum import Enum

import stripe
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from entry_engine.config import Settings
from entry_engine.logging_config import get_logger, log_context
from entry_engine.models.entry import EntryStatus, TournamentEntry
from entry_engine.models.gateway_event import ProcessedGatewayEvent
from entry_engine.services.capacity import CapacityLedger
from entry_engine.services.entries import EntryStore
from entry_engine.services.events import (
    ChargeRefunded,
    CheckoutExpired,
    EntryCheckoutCompleted,
    GatewayEvent,
    Ignored,
    InvoicePaymentFailed,
    SubscriptionChanged,
    SubscriptionCheckoutCompleted,
    SubscriptionDeleted,
    parse_event,
)
from entry_engine.services.gateway import PaymentGateway
from entry_engine.services.membership import MembershipService
from entry_engine.services.promotion import PromotionScheduler
from entry_engine.services.waitlist import WaitlistQueue
from entry_engine.utils.clock import Clock, utcnow
from entry_engine.utils.errors import (
    GatewayAuthenticityError,
    GatewayNotConfiguredError,
    ReconciliationConflict,
)
from entry_engine.utils.locks import TournamentLockManager, locked_transaction

logger = get_logger(__name__)

SIGNATURE_TOLERANCE_SECONDS = 300
CANCELED_SUBSCRIPTION_TIER = "small"


class ReconciliationOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    DUPLICATE = "duplicate"
    STALE = "stale"
    IGNORED = "ignored"
    CONFLICT = "conflict"


@dataclass(frozen=True)
class ReconciliationResult:
    event_id: str
    kind: str
    outcome: ReconciliationOutcome
    reason: str | None = None


class ReconciliationEngine:
    """Applies verified gateway events to entry and membership state."""

    def __init__(
        self,
        db: AsyncSession,
        settings: Settings,
        gateway: PaymentGateway,
        lock_manager: TournamentLockManager,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.settings = settings
        self.lock_manager = lock_manager

        self.entries = EntryStore(db)
        self.capacity = CapacityLedger(db, settings)
        self.waitlist = WaitlistQueue(db)
        self.membership = MembershipService(db)
        self.promotion = PromotionScheduler(db, settings, gateway, lock_manager, clock)

    # ============================================================
    # Verification
    # ============================================================

    def verify(self, payload: bytes, signature: str | None) -> None:
        """Check the webhook signature.

        Raises:
            GatewayNotConfiguredError: If no signing secret is configured
            GatewayAuthenticityError: If the signature is missing or wrong
        """
        secret = self.settings.stripe_webhook_secret
        if not secret:
            raise GatewayNotConfiguredError()
        if not signature:
            logger.warning("webhook_rejected", reason="missing_signature")
            raise GatewayAuthenticityError("missing signature header")

        try:
            stripe.WebhookSignature.verify_header(
                payload.decode("utf-8"),
                signature,
                secret,
                tolerance=SIGNATURE_TOLERANCE_SECONDS,
            )
        except (stripe.SignatureVerificationError, UnicodeDecodeError) as e:
            logger.warning("webhook_rejected", reason=str(e))
            raise GatewayAuthenticityError(str(e)) from e

    async def handle(self, payload: bytes, signature: str | None) -> ReconciliationResult:
        """Verify, parse and apply one webhook delivery."""
        self.verify(payload, signature)
        return await self.apply(parse_event(payload))

    # ============================================================
    # Application
    # ============================================================

    async def apply(self, event: GatewayEvent) -> ReconciliationResult:
        with log_context(event_id=event.event_id, event_type=event.event_type):
            return await self._apply(event)

    async def _apply(self, event: GatewayEvent) -> ReconciliationResult:
        if await self._is_processed(event.event_id):
            return self._duplicate(event)

        promote_tournament_id: str | None = None
        try:
            outcome, promote_tournament_id = await self._dispatch(event)
        except ReconciliationConflict as e:
            await self.db.rollback()
            logger.warning("reconciliation_conflict", reason=e.message, **e.details)
            try:
                self._record(event, ReconciliationOutcome.CONFLICT)
                await self.db.commit()
            except IntegrityError:
                await self.db.rollback()
                return self._duplicate(event)
            return ReconciliationResult(
                event.event_id,
                event.kind.value,
                ReconciliationOutcome.CONFLICT,
                e.message,
            )
        except IntegrityError:
            # Lost a race with a concurrent delivery of the same event id
            await self.db.rollback()
            if await self._is_processed(event.event_id):
                return self._duplicate(event)
            raise

        logger.info("webhook_applied", kind=event.kind.value, outcome=outcome.value)

        if promote_tournament_id is not None:
            await self.promotion.promote_after_release(promote_tournament_id)

        return ReconciliationResult(event.event_id, event.kind.value, outcome)

    async def _dispatch(self, event: GatewayEvent) -> tuple[ReconciliationOutcome, str | None]:
        """Apply and commit the event. Returns the outcome and a tournament to promote."""
        match event.payload:
            case EntryCheckoutCompleted() as payload:
                return await self._entry_paid(event, payload), None
            case CheckoutExpired() as payload:
                return await self._checkout_expired(event, payload)
            case ChargeRefunded() as payload:
                return await self._charge_refunded(event, payload)
            case SubscriptionCheckoutCompleted() as payload:
                return await self._subscription_checkout(event, payload), None
            case SubscriptionChanged() as payload:
                return await self._subscription_changed(event, payload), None
            case SubscriptionDeleted() as payload:
                return await self._subscription_deleted(event, payload), None
            case InvoicePaymentFailed() as payload:
                return await self._invoice_failed(event, payload), None
            case Ignored() as payload:
                logger.info("webhook_ignored", reason=payload.reason)
                self._record(event, ReconciliationOutcome.IGNORED)
                await self.db.commit()
                return ReconciliationOutcome.IGNORED, None
        raise TypeError(f"unhandled gateway event payload: {event.payload!r}")

    # ============================================================
    # Entry events
    # ============================================================

    async def _find_entry(
        self,
        session_id: str | None,
        entry_id: str | None,
        tournament_id: str | None,
        user_id: str | None,
    ) -> TournamentEntry | None:
        if entry_id:
            entry = await self.entries.get_by_id(entry_id)
            if entry is not None:
                return entry
        if session_id:
            entry = await self.entries.get_by_session(session_id)
            if entry is not None:
                return entry
        if tournament_id and user_id:
            return await self.entries.get(tournament_id, user_id)
        return None

    async def _entry_paid(self, event: GatewayEvent, payload: EntryCheckoutCompleted) -> ReconciliationOutcome:
        found = await self._find_entry(
            payload.session_id,
            payload.entry_id,
            payload.tournament_id,
            payload.user_id,
        )
        if found is None:
            raise ReconciliationConflict(
                "entry_missing",
                {"session_id": payload.session_id, "user_id": payload.user_id},
            )

        async with locked_transaction(self.lock_manager, self.db, found.tournament_id):
            entry = await self.entries.get_by_id(found.id)
            details = {"entry_id": entry.id, "status": entry.status, "session_id": payload.session_id}

            if entry.status == EntryStatus.PAID.value:
                if entry.checkout_session_id == payload.session_id:
                    self._record(event, ReconciliationOutcome.ALREADY_APPLIED)
                    return ReconciliationOutcome.ALREADY_APPLIED
                raise ReconciliationConflict("entry_already_paid", details)
            if entry.status != EntryStatus.PENDING.value:
                raise ReconciliationConflict("entry_not_pending", details)
            if entry.checkout_session_id and entry.checkout_session_id != payload.session_id:
                raise ReconciliationConflict("session_mismatch", details)
            if payload.attempt is not None and payload.attempt != entry.attempt:
                raise ReconciliationConflict("stale_attempt", details)
            if payload.amount_cents is not None and payload.amount_cents != entry.amount_cents:
                raise ReconciliationConflict("amount_mismatch", details)

            if not await self.entries.mark_paid(entry.id, payload.payment_reference, payload.session_id):
                raise ReconciliationConflict("entry_not_pending", details)

            row = await self.waitlist.get_active(entry.tournament_id, entry.user_id)
            if row is not None:
                await self.waitlist.mark_converted(row.id)
            await self.capacity.refresh_open(entry.tournament_id)

            self._record(event, ReconciliationOutcome.APPLIED)

        logger.info(
            "entry_paid",
            tournament_id=entry.tournament_id,
            user_id=entry.user_id,
            entry_id=entry.id,
            payment_reference=payload.payment_reference,
        )
        return ReconciliationOutcome.APPLIED

    async def _checkout_expired(
        self,
        event: GatewayEvent,
        payload: CheckoutExpired,
    ) -> tuple[ReconciliationOutcome, str | None]:
        found = await self._find_entry(
            payload.session_id,
            payload.entry_id,
            payload.tournament_id,
            payload.user_id,
        )
        if found is None:
            raise ReconciliationConflict("entry_missing", {"session_id": payload.session_id})

        async with locked_transaction(self.lock_manager, self.db, found.tournament_id):
            entry = await self.entries.get_by_id(found.id)
            stale = entry.status != EntryStatus.PENDING.value or (
                entry.checkout_session_id is not None
                and entry.checkout_session_id != payload.session_id
            )
            if stale:
                # Hold already reclaimed or superseded by a newer attempt
                self._record(event, ReconciliationOutcome.ALREADY_APPLIED)
                return ReconciliationOutcome.ALREADY_APPLIED, None

            await self.promotion.release_slot(entry.id, "checkout_expired")
            self._record(event, ReconciliationOutcome.APPLIED)

        logger.info(
            "checkout_expired",
            tournament_id=entry.tournament_id,
            user_id=entry.user_id,
            entry_id=entry.id,
        )
        return ReconciliationOutcome.APPLIED, entry.tournament_id

    async def _charge_refunded(
        self,
        event: GatewayEvent,
        payload: ChargeRefunded,
    ) -> tuple[ReconciliationOutcome, str | None]:
        found = await self.entries.get_by_payment_reference(payload.payment_reference)
        if found is None:
            raise ReconciliationConflict(
                "entry_missing",
                {"payment_reference": payload.payment_reference},
            )

        async with locked_transaction(self.lock_manager, self.db, found.tournament_id):
            entry = await self.entries.get_by_id(found.id)
            if entry.status == EntryStatus.REFUNDED.value:
                self._record(event, ReconciliationOutcome.ALREADY_APPLIED)
                return ReconciliationOutcome.ALREADY_APPLIED, None
            if not await self.promotion.release_slot(entry.id, "refunded", refund=True):
                raise ReconciliationConflict(
                    "entry_not_refundable",
                    {"entry_id": entry.id, "status": entry.status},
                )
            self._record(event, ReconciliationOutcome.APPLIED)

        logger.info(
            "entry_refunded",
            tournament_id=entry.tournament_id,
            user_id=entry.user_id,
            entry_id=entry.id,
        )
        return ReconciliationOutcome.APPLIED, entry.tournament_id

    # ============================================================
    # Membership events
    # ============================================================

    async def _resolve_member(self, user_id: str | None, customer_ref: str | None) -> str:
        if user_id:
            return user_id
        if customer_ref:
            row = await self.membership.get_by_customer(customer_ref)
            if row is not None:
                return row.user_id
        raise ReconciliationConflict("membership_missing", {"customer_ref": customer_ref})

    async def _commit_membership(self, event: GatewayEvent, applied: bool) -> ReconciliationOutcome:
        outcome = ReconciliationOutcome.APPLIED if applied else ReconciliationOutcome.STALE
        self._record(event, outcome)
        await self.db.commit()
        return outcome

    async def _subscription_checkout(
        self,
        event: GatewayEvent,
        payload: SubscriptionCheckoutCompleted,
    ) -> ReconciliationOutcome:
        if not payload.user_id:
            raise ReconciliationConflict("membership_missing", {"customer_ref": payload.customer_ref})
        applied = await self.membership.apply_subscription(
            payload.user_id,
            payload.tier,
            "active",
            event.created_at,
            customer_ref=payload.customer_ref,
            subscription_ref=payload.subscription_ref,
            email=payload.email,
        )
        return await self._commit_membership(event, applied)

    async def _subscription_changed(
        self,
        event: GatewayEvent,
        payload: SubscriptionChanged,
    ) -> ReconciliationOutcome:
        user_id = await self._resolve_member(payload.user_id, payload.customer_ref)
        applied = await self.membership.apply_subscription(
            user_id,
            payload.tier,
            payload.status,
            event.created_at,
            customer_ref=payload.customer_ref,
            subscription_ref=payload.subscription_ref,
            period_end=payload.period_end,
        )
        return await self._commit_membership(event, applied)

    async def _subscription_deleted(
        self,
        event: GatewayEvent,
        payload: SubscriptionDeleted,
    ) -> ReconciliationOutcome:
        user_id = await self._resolve_member(payload.user_id, payload.customer_ref)
        applied = await self.membership.apply_subscription(
            user_id,
            CANCELED_SUBSCRIPTION_TIER,
            "canceled",
            event.created_at,
            subscription_ref=payload.subscription_ref,
            period_end=payload.period_end,
        )
        return await self._commit_membership(event, applied)

    async def _invoice_failed(
        self,
        event: GatewayEvent,
        payload: InvoicePaymentFailed,
    ) -> ReconciliationOutcome:
        user_id = await self._resolve_member(payload.user_id, payload.customer_ref)
        applied = await self.membership.mark_past_due(user_id, event.created_at)
        return await self._commit_membership(event, applied)

    # ============================================================
    # Ledger
    # ============================================================

    async def _is_processed(self, event_id: str) -> bool:
        return await self.db.get(ProcessedGatewayEvent, event_id) is not None

    def _record(self, event: GatewayEvent, outcome: ReconciliationOutcome) -> None:
        self.db.add(
            ProcessedGatewayEvent(
                event_id=event.event_id,
                kind=event.kind.value,
                outcome=outcome.value,
            )
        )

    def _duplicate(self, event: GatewayEvent) -> ReconciliationResult:
        logger.info("webhook_duplicate", kind=event.kind.value)
        return ReconciliationResult(event.event_id, event.kind.value, ReconciliationOutcome.DUPLICATE)
