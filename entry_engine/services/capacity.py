"""Capacity ledger.

tournaments.held_count is the single authoritative count of slots consumed
by entries in a slot-holding status. It is never read-then-written: every
change is one conditional UPDATE, and is_open is recomputed inside that same
statement. Callers additionally hold the per-tournament lock.
"""

from sqlalchemy import or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from entry_engine.config import Settings
from entry_engine.logging_config import get_logger
from entry_engine.models.tournament import Tournament
from entry_engine.models.waitlist import WaitlistRow, WaitlistStatus
from entry_engine.utils.errors import ValidationError

logger = get_logger(__name__)


def _has_open_offer():
    return (
        select(WaitlistRow.id)
        .where(
            WaitlistRow.tournament_id == Tournament.id,
            WaitlistRow.status == WaitlistStatus.OFFERED.value,
        )
        .correlate(Tournament)
        .exists()
    )


class CapacityLedger:
    """Per-tournament slot count and open flag."""

    def __init__(self, db: AsyncSession, settings: Settings):
        self.db = db
        self.default_cap = settings.tournament_default_cap

    async def get(self, tournament_id: str) -> Tournament | None:
        return await self.db.get(Tournament, tournament_id, populate_existing=True)

    async def ensure_tournament(self, tournament_id: str) -> Tournament:
        """Return the tournament, creating it with the default cap on first reference.

        Must run before any other write in the unit of work: losing a
        creation race rolls the session back before re-reading.
        """
        tournament = await self.get(tournament_id)
        if tournament is not None:
            return tournament

        tournament = Tournament(
            id=tournament_id,
            max_slots=self.default_cap,
            is_open=True,
            held_count=0,
        )
        self.db.add(tournament)
        try:
            await self.db.flush()
        except IntegrityError:
            await self.db.rollback()
            tournament = await self.get(tournament_id)
            if tournament is None:
                raise
            return tournament

        logger.info(
            "tournament_created",
            tournament_id=tournament_id,
            max_slots=self.default_cap,
        )
        return tournament

    async def try_hold(self, tournament_id: str) -> bool:
        """Consume one slot if one is free. Returns False when full."""
        result = await self.db.execute(
            update(Tournament)
            .where(
                Tournament.id == tournament_id,
                Tournament.held_count < Tournament.max_slots,
            )
            .values(
                held_count=Tournament.held_count + 1,
                is_open=or_(Tournament.held_count + 1 < Tournament.max_slots, _has_open_offer()),
            )
            .execution_options(synchronize_session=False)
        )
        held = result.rowcount == 1
        if held:
            logger.info("slot_held", tournament_id=tournament_id)
        return held

    async def release(self, tournament_id: str) -> bool:
        """Return one slot to the pool and reopen the tournament."""
        result = await self.db.execute(
            update(Tournament)
            .where(
                Tournament.id == tournament_id,
                Tournament.held_count > 0,
            )
            .values(held_count=Tournament.held_count - 1, is_open=True)
            .execution_options(synchronize_session=False)
        )
        released = result.rowcount == 1
        if released:
            logger.info("slot_released", tournament_id=tournament_id)
        else:
            logger.warning("slot_release_underflow", tournament_id=tournament_id)
        return released

    async def refresh_open(self, tournament_id: str) -> None:
        """Recompute is_open: open while a slot is free or an offer is outstanding."""
        await self.db.execute(
            update(Tournament)
            .where(Tournament.id == tournament_id)
            .values(
                is_open=or_(Tournament.held_count < Tournament.max_slots, _has_open_offer()),
            )
            .execution_options(synchronize_session=False)
        )

    async def reopen(self, tournament_id: str) -> None:
        """Force the tournament open so an outstanding offer can be fulfilled."""
        await self.db.execute(
            update(Tournament)
            .where(Tournament.id == tournament_id)
            .values(is_open=True)
            .execution_options(synchronize_session=False)
        )

    async def configure(
        self,
        tournament_id: str,
        max_slots: int | None = None,
        hall_id: str | None = None,
    ) -> Tournament:
        """Update capacity or hall; the cap may not drop below held slots."""
        tournament = await self.ensure_tournament(tournament_id)
        values: dict = {}
        if hall_id is not None:
            values["hall_id"] = hall_id

        if max_slots is not None:
            if max_slots <= 0:
                raise ValidationError("max_slots must be positive", {"maxSlots": max_slots})
            result = await self.db.execute(
                update(Tournament)
                .where(
                    Tournament.id == tournament_id,
                    Tournament.held_count <= max_slots,
                )
                .values(max_slots=max_slots, **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ValidationError(
                    "max_slots cannot be lower than the slots already held",
                    {"maxSlots": max_slots, "held": tournament.held_count},
                )
            await self.refresh_open(tournament_id)
        elif values:
            await self.db.execute(
                update(Tournament)
                .where(Tournament.id == tournament_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

        logger.info(
            "tournament_configured",
            tournament_id=tournament_id,
            max_slots=max_slots,
            hall_id=hall_id,
        )
        return await self.get(tournament_id)

