"""Waitlist promotion scheduler.

Promotion runs whenever a slot frees. Offers expire lazily: there is no
background timer, expired offers are found at the start of the next
promotion or reservation pass for the tournament. An expired offer goes
back to `waiting` at its original FIFO position until it has used up
`waitlist_max_offers`, after which it is superseded (canceled). Either way
the row changes status and a log line is written.

Local state is mutated under the per-tournament lock and committed before
the lock is released. The gateway is called after the lock is released.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from sqlalchemy.ext.asyncio import AsyncSession

from entry_engine.config import Settings
from entry_engine.logging_config import get_logger
from entry_engine.models.entry import EntryStatus
from entry_engine.models.tournament import Tournament
from entry_engine.models.waitlist import WaitlistRow, WaitlistStatus
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
from entry_engine.services.waitlist import WaitlistQueue
from entry_engine.utils.clock import Clock, utcnow
from entry_engine.utils.errors import EntryEngineError
from entry_engine.utils.locks import TournamentLockManager, locked_transaction

logger = get_logger(__name__)

ADMIN_CANCEL_REASON = "canceled_by_admin"


class PromotionOutcome(str, Enum):
    TOURNAMENT_MISSING = "tournament_missing"
    STILL_FULL = "still_full"
    NO_WAITLIST = "no_waitlist"
    COMPED = "comped"
    OFFERED = "offered"


@dataclass(frozen=True)
class PromotionResult:
    outcome: PromotionOutcome
    user_id: str | None = None
    url: str | None = None
    expires_at: datetime | None = None

    @property
    def promoted(self) -> bool:
        return self.outcome in (PromotionOutcome.COMPED, PromotionOutcome.OFFERED)


@dataclass(frozen=True)
class _PendingOffer:
    request: OneOffCheckout
    entry_id: str
    row_id: int


class PromotionScheduler:
    """Pops the waitlist and comps or offers freed slots."""

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
        self.fee_defaults = FeeDefaults.from_settings(settings)

    # ============================================================
    # Lazy expiry
    # ============================================================

    async def expire_lapsed(self, tournament_id: str) -> int:
        """Reclaim lapsed direct holds and expired offers.

        Caller holds the tournament lock. Returns the number of slots freed.
        """
        cutoff = self.clock() - timedelta(minutes=self.settings.hold_grace_minutes)
        freed = 0

        for entry in await self.entries.list_lapsed_holds(tournament_id, cutoff):
            if await self.entries.mark_failed(entry.id, "hold_expired"):
                await self.capacity.release(tournament_id)
                freed += 1
                logger.info(
                    "hold_reclaimed",
                    tournament_id=tournament_id,
                    user_id=entry.user_id,
                    entry_id=entry.id,
                )

        for row in await self.waitlist.list_expired_offers(tournament_id, cutoff):
            entry = await self.entries.get(tournament_id, row.user_id)
            if entry is not None and entry.waitlist_row_id == row.id:
                if entry.status == EntryStatus.PAID.value:
                    await self.waitlist.mark_converted(row.id)
                    continue
                if await self.entries.mark_failed(entry.id, "offer_expired"):
                    await self.capacity.release(tournament_id)
                    freed += 1
            await self._retire_offer(row)

        if freed:
            await self.capacity.refresh_open(tournament_id)
        return freed

    async def _retire_offer(self, row: WaitlistRow) -> None:
        """An unconverted offer lapsed: requeue the row or supersede it."""
        if row.offer_count >= self.settings.waitlist_max_offers:
            if await self.waitlist.cancel(row.id, "offer_expired"):
                logger.info(
                    "offer_superseded",
                    tournament_id=row.tournament_id,
                    user_id=row.user_id,
                    row_id=row.id,
                    offer_count=row.offer_count,
                )
            return

        if await self.waitlist.return_to_waiting(row.id):
            logger.info(
                "offer_expired",
                tournament_id=row.tournament_id,
                user_id=row.user_id,
                row_id=row.id,
                offer_count=row.offer_count,
            )

    # ============================================================
    # Promotion
    # ============================================================

    async def promote_next(self, tournament_id: str) -> PromotionResult:
        """Offer or comp the next freed slot to the oldest waiting row.

        Raises:
            GatewayCallFailure: If the offer checkout cannot be created; the
                slot is released and the row returns to waiting
        """
        async with locked_transaction(self.lock_manager, self.db, tournament_id):
            tournament = await self.capacity.get(tournament_id)
            if tournament is None:
                return PromotionResult(PromotionOutcome.TOURNAMENT_MISSING)
            await self.expire_lapsed(tournament_id)
            selected = await self._select_and_hold(tournament_id)

        if isinstance(selected, PromotionResult):
            return selected
        return await self._send_offer(selected)

    async def _select_and_hold(self, tournament_id: str) -> PromotionResult | _PendingOffer:
        while True:
            tournament = await self.capacity.get(tournament_id)
            if tournament.is_full:
                return PromotionResult(PromotionOutcome.STILL_FULL)

            row = await self.waitlist.next_waiting(tournament_id)
            if row is None:
                return PromotionResult(PromotionOutcome.NO_WAITLIST)

            existing = await self.entries.get(tournament_id, row.user_id)
            if existing is not None and existing.holds_slot:
                # Entered directly while waiting
                await self.waitlist.mark_converted(row.id)
                logger.info(
                    "waitlist_row_already_entered",
                    tournament_id=tournament_id,
                    user_id=row.user_id,
                    row_id=row.id,
                )
                continue

            if not await self.capacity.try_hold(tournament_id):
                return PromotionResult(PromotionOutcome.STILL_FULL)
            return await self._promote_row(tournament, row)

    async def _promote_row(self, tournament: Tournament, row: WaitlistRow) -> PromotionResult | _PendingOffer:
        role = await self.membership.get_role(row.user_id)
        overrides = await self.halls.fee_overrides(tournament.hall_id)
        amount_cents = compute_fee_cents(role, overrides, self.fee_defaults)

        if amount_cents == 0:
            await self.entries.create_or_restart(
                tournament.id,
                row.user_id,
                0,
                EntryStatus.COMPED,
                waitlist_row_id=row.id,
            )
            await self.waitlist.mark_converted(row.id)
            logger.info(
                "entry_comped",
                tournament_id=tournament.id,
                user_id=row.user_id,
                via="waitlist",
            )
            return PromotionResult(PromotionOutcome.COMPED, user_id=row.user_id)

        expires_at = self.clock() + timedelta(hours=self.settings.waitlist_offer_ttl_hours)
        entry = await self.entries.create_or_restart(
            tournament.id,
            row.user_id,
            amount_cents,
            EntryStatus.PENDING,
            hold_expires_at=expires_at,
            waitlist_row_id=row.id,
        )
        await self.waitlist.mark_offered(row.id, expires_at)
        await self.capacity.reopen(tournament.id)

        status = await self.membership.get_status(row.user_id)
        metadata = EntryCheckoutMetadata(
            tournament_id=tournament.id,
            user_id=row.user_id,
            entry_id=entry.id,
            amount_cents=amount_cents,
            attempt=entry.attempt,
            waitlist_row_id=row.id,
        )
        request = entry_checkout_request(self.settings, metadata, status.email, expires_at)
        return _PendingOffer(request=request, entry_id=entry.id, row_id=row.id)

    async def _send_offer(self, offer: _PendingOffer) -> PromotionResult:
        metadata = offer.request.metadata
        try:
            session = await self.gateway.create_one_off_checkout(offer.request)
        except EntryEngineError:
            async with locked_transaction(self.lock_manager, self.db, metadata.tournament_id):
                if await self.entries.mark_failed(offer.entry_id, "gateway_error"):
                    await self.capacity.release(metadata.tournament_id)
                await self.waitlist.return_to_waiting(offer.row_id, count_offer=False)
                await self.capacity.refresh_open(metadata.tournament_id)
            logger.error(
                "offer_gateway_failed",
                tournament_id=metadata.tournament_id,
                user_id=metadata.user_id,
                row_id=offer.row_id,
            )
            raise

        async with locked_transaction(self.lock_manager, self.db, metadata.tournament_id):
            await self.entries.attach_checkout(offer.entry_id, session.session_id, session.url)
            await self.waitlist.set_offer_url(offer.row_id, session.url)

        logger.info(
            "offer_created",
            tournament_id=metadata.tournament_id,
            user_id=metadata.user_id,
            row_id=offer.row_id,
            amount_cents=metadata.amount_cents,
            expires_at=offer.request.expires_at.isoformat(),
        )
        return PromotionResult(
            PromotionOutcome.OFFERED,
            user_id=metadata.user_id,
            url=session.url,
            expires_at=offer.request.expires_at,
        )

    # ============================================================
    # Slot release
    # ============================================================

    async def release_slot(self, entry_id: str, reason: str, refund: bool = False) -> bool:
        """Move a slot-holding entry out of the ledger and free its slot.

        Caller holds the tournament lock and commits. Pending entries fail,
        refunds apply to any slot-holding entry. An unconverted offer's row
        is requeued or superseded, or canceled outright when an admin
        cancels the offer.

        Returns:
            False if the entry was missing or already released
        """
        entry = await self.entries.get_by_id(entry_id)
        if entry is None:
            return False

        was_pending = entry.status == EntryStatus.PENDING.value
        if refund:
            changed = await self.entries.mark_refunded(entry.id, reason)
        else:
            changed = await self.entries.mark_failed(entry.id, reason)
        if not changed:
            return False

        await self.capacity.release(entry.tournament_id)

        if was_pending and entry.waitlist_row_id is not None:
            row = await self.waitlist.get(entry.waitlist_row_id)
            if row is not None and row.status == WaitlistStatus.OFFERED.value:
                if reason == ADMIN_CANCEL_REASON:
                    await self.waitlist.cancel(row.id, reason)
                    logger.info(
                        "offer_canceled",
                        tournament_id=row.tournament_id,
                        user_id=row.user_id,
                        row_id=row.id,
                    )
                else:
                    await self._retire_offer(row)
        return True

    async def promote_after_release(self, tournament_id: str) -> PromotionResult | None:
        """Run promotion for a freed slot; failures are logged, never raised."""
        try:
            result = await self.promote_next(tournament_id)
        except EntryEngineError as e:
            logger.error(
                "promotion_failed",
                tournament_id=tournament_id,
                error_code=e.code,
                error=e.message,
            )
            return None
        logger.info(
            "promotion_completed",
            tournament_id=tournament_id,
            outcome=result.outcome.value,
            user_id=result.user_id,
        )
        return result

    async def release_and_promote(
        self,
        tournament_id: str,
        entry_id: str,
        reason: str,
        refund: bool = False,
    ) -> PromotionResult | None:
        """Free an entry's slot, then hand it to the waitlist."""
        async with locked_transaction(self.lock_manager, self.db, tournament_id):
            released = await self.release_slot(entry_id, reason, refund=refund)
        if not released:
            return None
        return await self.promote_after_release(tournament_id)

    async def withdraw(self, tournament_id: str, user_id: str) -> WaitlistRow:
        """Leave the waitlist; an outstanding offer gives its slot back.

        Raises:
            WaitlistRowNotFoundError: If the user has no active row
        """
        freed = False
        async with locked_transaction(self.lock_manager, self.db, tournament_id):
            row, previous_status = await self.waitlist.withdraw(tournament_id, user_id)
            if previous_status == WaitlistStatus.OFFERED.value:
                entry = await self.entries.get(tournament_id, user_id)
                if entry is not None and entry.waitlist_row_id == row.id:
                    if await self.entries.mark_failed(entry.id, "offer_withdrawn"):
                        await self.capacity.release(tournament_id)
                        freed = True
                await self.capacity.refresh_open(tournament_id)

        if freed:
            await self.promote_after_release(tournament_id)
        return row
