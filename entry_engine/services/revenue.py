"""Paid-entry revenue reporting.

Read-only: the hall revenue split is a reporting figure and never feeds the
reservation path. Paid time is the entry's last update, which is when
reconciliation marked it paid.
"""

import csv
import io
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from entry_engine.config import Settings
from entry_engine.models.entry import EntryStatus, TournamentEntry
from entry_engine.models.tournament import HallSetting, Tournament
from entry_engine.utils.clock import Clock, ensure_utc, utcnow

DEFAULT_REPORT_DAYS = 30

SUMMARY_HEADER = [
    "hall_id",
    "paid_count",
    "gross_cents",
    "gross_usd",
    "operator_pct",
    "operator_share_usd",
    "platform_share_usd",
]
DETAIL_HEADER = ["tournament_id", "user_id", "amount_cents", "amount_usd", "paid_at", "hall_id"]


def _usd(cents: int | Decimal) -> str:
    return str((Decimal(cents) / 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


@dataclass(frozen=True)
class HallRevenue:
    hall_id: str | None
    paid_count: int
    gross_cents: int
    operator_pct: float

    @property
    def operator_cents(self) -> Decimal:
        return Decimal(self.gross_cents) * Decimal(str(self.operator_pct))

    @property
    def platform_cents(self) -> Decimal:
        return Decimal(self.gross_cents) - self.operator_cents


@dataclass(frozen=True)
class RevenueLine:
    tournament_id: str
    user_id: str
    amount_cents: int
    paid_at: datetime
    hall_id: str | None


class RevenueReport:
    def __init__(self, db: AsyncSession, settings: Settings, clock: Clock = utcnow):
        self.db = db
        self.default_split = settings.operator_revenue_split_pct
        self.clock = clock

    def window(self, start: datetime | None, end: datetime | None) -> tuple[datetime, datetime]:
        end = ensure_utc(end) or self.clock()
        start = ensure_utc(start) or end - timedelta(days=DEFAULT_REPORT_DAYS)
        return start, end

    def _paid_between(self, start: datetime, end: datetime):
        return (
            TournamentEntry.status == EntryStatus.PAID.value,
            TournamentEntry.updated_at >= start,
            TournamentEntry.updated_at <= end,
        )

    async def summary_by_hall(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        hall_id: str | None = None,
    ) -> list[HallRevenue]:
        start, end = self.window(start, end)
        query = (
            select(
                Tournament.hall_id,
                func.count(TournamentEntry.id),
                func.coalesce(func.sum(TournamentEntry.amount_cents), 0),
                HallSetting.revenue_split_pct,
            )
            .join(Tournament, Tournament.id == TournamentEntry.tournament_id)
            .outerjoin(HallSetting, HallSetting.hall_id == Tournament.hall_id)
            .where(*self._paid_between(start, end))
            .group_by(Tournament.hall_id, HallSetting.revenue_split_pct)
            .order_by(Tournament.hall_id)
        )
        if hall_id:
            query = query.where(Tournament.hall_id == hall_id)

        result = await self.db.execute(query)
        return [
            HallRevenue(
                hall_id=row_hall,
                paid_count=count,
                gross_cents=int(gross),
                operator_pct=split if split is not None else self.default_split,
            )
            for row_hall, count, gross, split in result.all()
        ]

    async def detail(
        self,
        start: datetime | None = None,
        end: datetime | None = None,
        hall_id: str | None = None,
    ) -> list[RevenueLine]:
        start, end = self.window(start, end)
        query = (
            select(TournamentEntry, Tournament.hall_id)
            .join(Tournament, Tournament.id == TournamentEntry.tournament_id)
            .where(*self._paid_between(start, end))
            .order_by(TournamentEntry.updated_at, TournamentEntry.id)
        )
        if hall_id:
            query = query.where(Tournament.hall_id == hall_id)

        result = await self.db.execute(query)
        return [
            RevenueLine(
                tournament_id=entry.tournament_id,
                user_id=entry.user_id,
                amount_cents=entry.amount_cents,
                paid_at=ensure_utc(entry.updated_at),
                hall_id=row_hall,
            )
            for entry, row_hall in result.all()
        ]


def summary_csv(rows: list[HallRevenue]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(SUMMARY_HEADER)
    for row in rows:
        writer.writerow(
            [
                row.hall_id or "",
                row.paid_count,
                row.gross_cents,
                _usd(row.gross_cents),
                f"{row.operator_pct:.2f}",
                _usd(row.operator_cents),
                _usd(row.platform_cents),
            ]
        )
    return buffer.getvalue()


def detail_csv(rows: list[RevenueLine]) -> str:
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(DETAIL_HEADER)
    for row in rows:
        writer.writerow(
            [
                row.tournament_id,
                row.user_id,
                row.amount_cents,
                _usd(row.amount_cents),
                row.paid_at.isoformat(),
                row.hall_id or "",
            ]
        )
    return buffer.getvalue()
