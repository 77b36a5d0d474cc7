"""Tournament entry reservation service.

The read-count/decide/reserve sequence for a tournament runs under the
per-tournament lock, and the slot itself is taken with a conditional
increment. A paid entry first holds its slot as `pending`; the lock is
released before the gateway is called, and a failed gateway call gives the
slot back. The entry only becomes `paid` through reconciliation.
"""

from dataclasses import dataclass
from datetime import timedelta
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from entry_engine.config import Settings
from entry_engine.logging_config import get_logger, log_context
from entry_engine.models.entry import EntryStatus, TournamentEntry
from entry_engine.services.capacity import CapacityLedger
from entry_engine.services.entries import EntryStore
from entry_engine.services.fee_policy import FeeDefaults, compute_fee_cents
from entry_engine.services.gateway import (
    EntryCheckoutMetadata,
    OneOffCheckout,
    PaymentGateway,
    entry_checkout_request,
)
from entry_engine.services.halls import HallSettingsService
from entry_engine.services.membership import MembershipService
from entry_engine.services.promotion import (
    ADMIN_CANCEL_REASON,
    PromotionResult,
    PromotionScheduler,
)
from entry_engine.services.waitlist import WaitlistQueue
from entry_engine.utils.clock import Clock, utcnow
from entry_engine.utils.errors import (
    EntryEngineError,
    EntryNotFoundError,
    HoldReleasedError,
    TournamentNotFoundError,
    ValidationError,
)
from entry_engine.utils.locks import TournamentLockManager, locked_transaction

logger = get_logger(__name__)


class ReservationOutcome(str, Enum):
    ALREADY_REGISTERED = "already_registered"
    COMPED = "comped"
    CHECKOUT = "checkout"
    WAITLISTED = "waitlisted"
    FULL = "full"


@dataclass(frozen=True)
class ReservationResult:
    outcome: ReservationOutcome
    entry: TournamentEntry | None = None
    checkout_url: str | None = None
    amount_cents: int | None = None
    waitlist_row_id: int | None = None
    waitlist_position: int | None = None
    max_slots: int | None = None
    current: int | None = None


@dataclass(frozen=True)
class TournamentSnapshot:
    tournament_id: str
    hall_id: str | None
    max_slots: int
    held: int
    confirmed: int
    is_open: bool
    waiting: int


class ReservationService:
    """Entry attempts, waitlist joins and admin cancellations."""

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
        self.gateway = gateway
        self.lock_manager = lock_manager
        self.clock = clock

        self.capacity = CapacityLedger(db, settings)
        self.entries = EntryStore(db)
        self.waitlist = WaitlistQueue(db)
        self.membership = MembershipService(db)
        self.halls = HallSettingsService(db)
        self.promotion = PromotionScheduler(db, settings, gateway, lock_manager, clock)
        self.fee_defaults = FeeDefaults.from_settings(settings)

    async def attempt_reserve(
        self,
        tournament_id: str,
        user_id: str,
        payer_contact: str | None = None,
        join_waitlist_if_full: bool = False,
    ) -> ReservationResult:
        """Reserve a slot for a user.

        Args:
            tournament_id: Tournament to enter (created on first reference)
            user_id: Entrant
            payer_contact: Email passed to the checkout page
            join_waitlist_if_full: Enqueue instead of rejecting when full

        Returns:
            ReservationResult; a full tournament is a result, not an error

        Raises:
            ValidationError: If an identifier is missing
            GatewayCallFailure: If the checkout could not be created
            LockUnavailableError: If the tournament is busy
            HoldReleasedError: If the hold was released before the checkout
                could be attached
        """
        if not tournament_id or not user_id:
            raise ValidationError(
                "userId and tournamentId required",
                {"tournamentId": tournament_id, "userId": user_id},
            )
        with log_context(tournament_id=tournament_id, user_id=user_id):
            return await self._reserve(tournament_id, user_id, payer_contact, join_waitlist_if_full)

    async def _reserve(
        self,
        tournament_id: str,
        user_id: str,
        payer_contact: str | None,
        join_waitlist_if_full: bool,
    ) -> ReservationResult:
        async with locked_transaction(self.lock_manager, self.db, tournament_id):
            tournament = await self.capacity.ensure_tournament(tournament_id)
            await self.promotion.expire_lapsed(tournament_id)

            existing = await self.entries.get(tournament_id, user_id)
            if existing is not None and existing.holds_slot:
                return ReservationResult(
                    ReservationOutcome.ALREADY_REGISTERED,
                    entry=existing,
                    checkout_url=existing.checkout_url
                    if existing.status == EntryStatus.PENDING.value
                    else None,
                    amount_cents=existing.amount_cents,
                )

            if not await self.capacity.try_hold(tournament_id):
                return await self._reject_full(tournament_id, user_id, join_waitlist_if_full)

            role = await self.membership.get_role(user_id)
            overrides = await self.halls.fee_overrides(tournament.hall_id)
            amount_cents = compute_fee_cents(role, overrides, self.fee_defaults)

            if amount_cents == 0:
                entry = await self.entries.create_or_restart(
                    tournament_id, user_id, 0, EntryStatus.COMPED
                )
                await self._convert_waitlist_row(tournament_id, user_id)
                logger.info("entry_comped", role=role, via="direct")
                return ReservationResult(
                    ReservationOutcome.COMPED,
                    entry=entry,
                    amount_cents=0,
                )

            hold_expires_at = self.clock() + timedelta(minutes=self.settings.checkout_hold_minutes)
            entry = await self.entries.create_or_restart(
                tournament_id,
                user_id,
                amount_cents,
                EntryStatus.PENDING,
                hold_expires_at=hold_expires_at,
            )
            if not payer_contact:
                payer_contact = (await self.membership.get_status(user_id)).email
            metadata = EntryCheckoutMetadata(
                tournament_id=tournament_id,
                user_id=user_id,
                entry_id=entry.id,
                amount_cents=amount_cents,
                attempt=entry.attempt,
            )
            request = entry_checkout_request(self.settings, metadata, payer_contact, hold_expires_at)

        return await self._start_checkout(entry, request)

    async def _reject_full(
        self,
        tournament_id: str,
        user_id: str,
        join_waitlist_if_full: bool,
    ) -> ReservationResult:
        await self.capacity.refresh_open(tournament_id)
        tournament = await self.capacity.get(tournament_id)
        logger.info(
            "capacity_full",
            max_slots=tournament.max_slots,
            held=tournament.held_count,
            join_waitlist=join_waitlist_if_full,
        )
        if join_waitlist_if_full:
            row, position = await self.waitlist.enqueue(tournament_id, user_id)
            return ReservationResult(
                ReservationOutcome.WAITLISTED,
                waitlist_row_id=row.id,
                waitlist_position=position,
            )
        return ReservationResult(
            ReservationOutcome.FULL,
            max_slots=tournament.max_slots,
            current=tournament.held_count,
        )

    async def _start_checkout(self, entry: TournamentEntry, request: OneOffCheckout) -> ReservationResult:
        try:
            session = await self.gateway.create_one_off_checkout(request)
        except EntryEngineError:
            logger.error(
                "entry_checkout_failed",
                entry_id=entry.id,
                amount_cents=entry.amount_cents,
            )
            await self.promotion.release_and_promote(entry.tournament_id, entry.id, "gateway_error")
            raise

        async with locked_transaction(self.lock_manager, self.db, entry.tournament_id):
            attached = await self.entries.attach_checkout(entry.id, session.session_id, session.url)
        if not attached:
            await self._discard_checkout(entry, session.session_id)
        logger.info(
            "checkout_created",
            entry_id=entry.id,
            session_id=session.session_id,
            amount_cents=entry.amount_cents,
            hold_expires_at=request.expires_at.isoformat(),
        )
        return ReservationResult(
            ReservationOutcome.CHECKOUT,
            entry=await self.entries.get_by_id(entry.id),
            checkout_url=session.url,
            amount_cents=entry.amount_cents,
        )

    async def _discard_checkout(self, entry: TournamentEntry, session_id: str) -> None:
        """The hold was released during the gateway call; close the session."""
        logger.warning(
            "checkout_hold_lost",
            entry_id=entry.id,
            session_id=session_id,
        )
        try:
            await self.gateway.expire_checkout(session_id)
        except EntryEngineError as e:
            logger.error(
                "checkout_expire_failed",
                entry_id=entry.id,
                session_id=session_id,
                error=e.message,
            )
        raise HoldReleasedError(entry.tournament_id, entry.user_id)

    async def _convert_waitlist_row(self, tournament_id: str, user_id: str) -> None:
        row = await self.waitlist.get_active(tournament_id, user_id)
        if row is not None:
            await self.waitlist.mark_converted(row.id)

    async def join_waitlist(self, tournament_id: str, user_id: str) -> tuple[int, int]:
        """Explicitly queue for a tournament.

        Returns:
            (row id, 1-based position)
        """
        if not tournament_id or not user_id:
            raise ValidationError(
                "userId and tournamentId required",
                {"tournamentId": tournament_id, "userId": user_id},
            )
        async with locked_transaction(self.lock_manager, self.db, tournament_id):
            await self.capacity.ensure_tournament(tournament_id)
            row, position = await self.waitlist.enqueue(tournament_id, user_id)
        return row.id, position

    async def cancel_entry(self, tournament_id: str, user_id: str) -> PromotionResult | None:
        """Cancel a slot-holding entry and promote from the waitlist.

        Paid entries are refunded through the gateway first; comped and
        pending entries are released locally.

        Raises:
            EntryNotFoundError: If the user holds no slot
            GatewayCallFailure: If the refund fails; nothing changes locally
        """
        entry = await self.entries.get(tournament_id, user_id)
        if entry is None or not entry.holds_slot:
            raise EntryNotFoundError(tournament_id, user_id)

        refund = entry.status in (EntryStatus.PAID.value, EntryStatus.COMPED.value)
        if entry.status == EntryStatus.PAID.value and entry.payment_reference:
            await self.gateway.create_refund(
                entry.payment_reference,
                idempotency_key=f"entry-refund:{entry.id}:{entry.attempt}",
                metadata={
                    "tournamentId": tournament_id,
                    "userId": user_id,
                    "entryId": entry.id,
                },
            )

        logger.info(
            "entry_canceled",
            tournament_id=tournament_id,
            user_id=user_id,
            previous_status=entry.status,
        )
        return await self.promotion.release_and_promote(
            tournament_id,
            entry.id,
            ADMIN_CANCEL_REASON,
            refund=refund,
        )

    async def configure(
        self,
        tournament_id: str,
        max_slots: int | None = None,
        hall_id: str | None = None,
    ) -> TournamentSnapshot:
        """Set capacity or hall. Raising the cap does not promote by itself."""
        async with locked_transaction(self.lock_manager, self.db, tournament_id):
            await self.capacity.configure(tournament_id, max_slots=max_slots, hall_id=hall_id)
        return await self.snapshot(tournament_id)

    async def snapshot(self, tournament_id: str) -> TournamentSnapshot:
        tournament = await self.capacity.get(tournament_id)
        if tournament is None:
            raise TournamentNotFoundError(tournament_id)
        return TournamentSnapshot(
            tournament_id=tournament.id,
            hall_id=tournament.hall_id,
            max_slots=tournament.max_slots,
            held=tournament.held_count,
            confirmed=await self.entries.count_confirmed(tournament_id),
            is_open=tournament.is_open,
            waiting=await self.waitlist.count_waiting(tournament_id),
        )
