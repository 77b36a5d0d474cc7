"""FIFO waitlist queue.

Order is (created_at, id): the autoincrement id breaks ties between rows
created in the same microsecond. Row transitions are conditional UPDATEs on
the current status:

    waiting -> offered -> converted
       ^          |
       +----------+   (offer expired, re-selectable)
    waiting | offered -> canceled
"""

from datetime import datetime

from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from entry_engine.logging_config import get_logger
from entry_engine.models.waitlist import ACTIVE_WAITLIST_STATUSES, WaitlistRow, WaitlistStatus
from entry_engine.utils.errors import WaitlistRowNotFoundError

logger = get_logger(__name__)


def _fifo_order():
    return (WaitlistRow.created_at, WaitlistRow.id)


class WaitlistQueue:
    """Per-tournament FIFO of users waiting for a slot."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def get(self, row_id: int) -> WaitlistRow | None:
        return await self.db.get(WaitlistRow, row_id, populate_existing=True)

    async def get_active(self, tournament_id: str, user_id: str) -> WaitlistRow | None:
        result = await self.db.execute(
            select(WaitlistRow)
            .where(
                WaitlistRow.tournament_id == tournament_id,
                WaitlistRow.user_id == user_id,
                WaitlistRow.status.in_(ACTIVE_WAITLIST_STATUSES),
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def enqueue(self, tournament_id: str, user_id: str) -> tuple[WaitlistRow, int]:
        """Append the user, or return their existing active row.

        Returns:
            (row, 1-based position among active rows)
        """
        row = await self.get_active(tournament_id, user_id)
        if row is None:
            row = WaitlistRow(
                tournament_id=tournament_id,
                user_id=user_id,
                status=WaitlistStatus.WAITING.value,
            )
            self.db.add(row)
            await self.db.flush()
            position = await self.position(row)
            logger.info(
                "waitlisted",
                tournament_id=tournament_id,
                user_id=user_id,
                row_id=row.id,
                position=position,
            )
            return row, position

        return row, await self.position(row)

    async def position(self, row: WaitlistRow) -> int:
        """1-based place of an active row among the active rows ahead of it."""
        result = await self.db.execute(
            select(func.count())
            .select_from(WaitlistRow)
            .where(
                WaitlistRow.tournament_id == row.tournament_id,
                WaitlistRow.status.in_(ACTIVE_WAITLIST_STATUSES),
                or_(
                    WaitlistRow.created_at < row.created_at,
                    and_(
                        WaitlistRow.created_at == row.created_at,
                        WaitlistRow.id < row.id,
                    ),
                ),
            )
        )
        return result.scalar_one() + 1

    async def next_waiting(self, tournament_id: str) -> WaitlistRow | None:
        result = await self.db.execute(
            select(WaitlistRow)
            .where(
                WaitlistRow.tournament_id == tournament_id,
                WaitlistRow.status == WaitlistStatus.WAITING.value,
            )
            .order_by(*_fifo_order())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_rows(
        self,
        tournament_id: str,
        statuses: tuple[str, ...] | None = None,
    ) -> list[WaitlistRow]:
        query = select(WaitlistRow).where(WaitlistRow.tournament_id == tournament_id)
        if statuses:
            query = query.where(WaitlistRow.status.in_(statuses))
        result = await self.db.execute(
            query.order_by(*_fifo_order()).execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def list_expired_offers(self, tournament_id: str, now: datetime) -> list[WaitlistRow]:
        result = await self.db.execute(
            select(WaitlistRow)
            .where(
                WaitlistRow.tournament_id == tournament_id,
                WaitlistRow.status == WaitlistStatus.OFFERED.value,
                WaitlistRow.offer_expires_at < now,
            )
            .order_by(*_fifo_order())
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    async def count_waiting(self, tournament_id: str) -> int:
        result = await self.db.execute(
            select(func.count())
            .select_from(WaitlistRow)
            .where(
                WaitlistRow.tournament_id == tournament_id,
                WaitlistRow.status == WaitlistStatus.WAITING.value,
            )
        )
        return result.scalar_one()

    async def mark_offered(self, row_id: int, expires_at: datetime) -> bool:
        result = await self.db.execute(
            update(WaitlistRow)
            .where(
                WaitlistRow.id == row_id,
                WaitlistRow.status == WaitlistStatus.WAITING.value,
            )
            .values(
                status=WaitlistStatus.OFFERED.value,
                offer_expires_at=expires_at,
                offer_count=WaitlistRow.offer_count + 1,
                offer_url=None,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def set_offer_url(self, row_id: int, url: str) -> bool:
        result = await self.db.execute(
            update(WaitlistRow)
            .where(
                WaitlistRow.id == row_id,
                WaitlistRow.status == WaitlistStatus.OFFERED.value,
            )
            .values(offer_url=url)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def return_to_waiting(self, row_id: int, count_offer: bool = True) -> bool:
        """offered -> waiting; the row keeps its original FIFO position.

        count_offer=False takes back an offer that never reached the user.
        """
        values = {
            "status": WaitlistStatus.WAITING.value,
            "offer_url": None,
            "offer_expires_at": None,
        }
        if not count_offer:
            values["offer_count"] = WaitlistRow.offer_count - 1
        result = await self.db.execute(
            update(WaitlistRow)
            .where(
                WaitlistRow.id == row_id,
                WaitlistRow.status == WaitlistStatus.OFFERED.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def mark_converted(self, row_id: int) -> bool:
        result = await self.db.execute(
            update(WaitlistRow)
            .where(
                WaitlistRow.id == row_id,
                WaitlistRow.status.in_(ACTIVE_WAITLIST_STATUSES),
            )
            .values(status=WaitlistStatus.CONVERTED.value)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def cancel(self, row_id: int, reason: str) -> bool:
        result = await self.db.execute(
            update(WaitlistRow)
            .where(
                WaitlistRow.id == row_id,
                WaitlistRow.status.in_(ACTIVE_WAITLIST_STATUSES),
            )
            .values(status=WaitlistStatus.CANCELED.value, cancel_reason=reason)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def withdraw(self, tournament_id: str, user_id: str) -> tuple[WaitlistRow, str]:
        """Cancel the user's active row.

        Returns the canceled row and its status before cancellation, so the
        caller can unwind an outstanding offer.

        Raises:
            WaitlistRowNotFoundError: If the user has no active row
        """
        row = await self.get_active(tournament_id, user_id)
        if row is None:
            raise WaitlistRowNotFoundError(tournament_id, user_id)

        previous_status = row.status
        await self.cancel(row.id, "withdrawn")
        logger.info(
            "waitlist_withdrawn",
            tournament_id=tournament_id,
            user_id=user_id,
            row_id=row.id,
            previous_status=previous_status,
        )
        return await self.get(row.id), previous_status
