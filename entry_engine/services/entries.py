"""Entry record store.

Every status transition is a conditional UPDATE on the current status, so
two writers racing on the same entry cannot both win.
"""

from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entry_engine.models.entry import (
    CONFIRMED_STATUSES,
    SLOT_HOLDING_STATUSES,
    EntryStatus,
    TournamentEntry,
)


class EntryStore:
    """Persistence for per (tournament, user) entries."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, tournament_id: str, user_id: str) -> TournamentEntry | None:
        result = await self.db.execute(
            select(TournamentEntry)
            .where(
                TournamentEntry.tournament_id == tournament_id,
                TournamentEntry.user_id == user_id,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_id(self, entry_id: str) -> TournamentEntry | None:
        return await self.db.get(TournamentEntry, entry_id, populate_existing=True)

    async def get_by_session(self, session_id: str) -> TournamentEntry | None:
        result = await self.db.execute(
            select(TournamentEntry)
            .where(TournamentEntry.checkout_session_id == session_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_by_payment_reference(self, payment_reference: str) -> TournamentEntry | None:
        result = await self.db.execute(
            select(TournamentEntry)
            .where(TournamentEntry.payment_reference == payment_reference)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_or_restart(
        self,
        tournament_id: str,
        user_id: str,
        amount_cents: int,
        status: EntryStatus,
        hold_expires_at: datetime | None = None,
        waitlist_row_id: int | None = None,
    ) -> TournamentEntry:
        """Create the user's entry, or restart their terminal one.

        The caller holds the tournament lock and has already checked that
        the user holds no slot.
        """
        entry = await self.get(tournament_id, user_id)
        if entry is None:
            entry = TournamentEntry(
                tournament_id=tournament_id,
                user_id=user_id,
                attempt=1,
            )
            self.db.add(entry)
        else:
            if entry.holds_slot:
                raise ValueError(f"entry {entry.id} already holds a slot")
            entry.attempt += 1

        entry.amount_cents = amount_cents
        entry.status = status.value
        entry.hold_expires_at = hold_expires_at
        entry.waitlist_row_id = waitlist_row_id
        entry.payment_reference = None
        entry.checkout_session_id = None
        entry.checkout_url = None
        entry.failure_reason = None
        await self.db.flush()
        return entry

    async def attach_checkout(self, entry_id: str, session_id: str, url: str) -> bool:
        """Store the gateway session on a still-pending entry."""
        result = await self.db.execute(
            update(TournamentEntry)
            .where(
                TournamentEntry.id == entry_id,
                TournamentEntry.status == EntryStatus.PENDING.value,
            )
            .values(checkout_session_id=session_id, checkout_url=url)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_paid(
        self,
        entry_id: str,
        payment_reference: str | None,
        session_id: str | None = None,
    ) -> bool:
        """pending -> paid. A session id is only stored if none was attached yet."""
        result = await self.db.execute(
            update(TournamentEntry)
            .where(
                TournamentEntry.id == entry_id,
                TournamentEntry.status == EntryStatus.PENDING.value,
            )
            .values(
                status=EntryStatus.PAID.value,
                payment_reference=payment_reference,
                checkout_session_id=func.coalesce(TournamentEntry.checkout_session_id, session_id),
                hold_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_failed(self, entry_id: str, reason: str) -> bool:
        """pending -> failed. Returns False when the entry already moved on."""
        result = await self.db.execute(
            update(TournamentEntry)
            .where(
                TournamentEntry.id == entry_id,
                TournamentEntry.status == EntryStatus.PENDING.value,
            )
            .values(
                status=EntryStatus.FAILED.value,
                failure_reason=reason,
                hold_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_refunded(self, entry_id: str, reason: str | None = None) -> bool:
        """Any slot-holding status -> refunded."""
        result = await self.db.execute(
            update(TournamentEntry)
            .where(
                TournamentEntry.id == entry_id,
                TournamentEntry.status.in_(SLOT_HOLDING_STATUSES),
            )
            .values(
                status=EntryStatus.REFUNDED.value,
                failure_reason=reason,
                hold_expires_at=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def list_lapsed_holds(self, tournament_id: str, cutoff: datetime) -> list[TournamentEntry]:
        """Pending direct holds whose expiry is before cutoff.

        Holds created by waitlist offers are expired through their
        waitlist row instead.
        """
        result = await self.db.execute(
            select(TournamentEntry)
            .where(
                TournamentEntry.tournament_id == tournament_id,
                TournamentEntry.status == EntryStatus.PENDING.value,
                TournamentEntry.waitlist_row_id.is_(None),
                TournamentEntry.hold_expires_at.is_not(None),
                TournamentEntry.hold_expires_at < cutoff,
            )
            .order_by(TournamentEntry.created_at)
        )
        return list(result.scalars().all())

    async def count_confirmed(self, tournament_id: str) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(TournamentEntry)
            .where(
                TournamentEntry.tournament_id == tournament_id,
                TournamentEntry.status.in_(CONFIRMED_STATUSES),
            )
        )
        return result.scalar_one()
