"""Tournament capacity and hall settings models."""

from sqlalchemy import CheckConstraint, Float, Integer, String, Boolean
from sqlalchemy.orm import Mapped, mapped_column

from entry_engine.models.base import Base, TimestampMixin


class Tournament(Base, TimestampMixin):
    """Capacity record for one tournament.

    held_count is the single authoritative number of slots consumed by
    entries in a slot-holding status (pending, paid, comped). It only changes
    through conditional UPDATE statements in CapacityLedger.
    """

    __tablename__ = "tournaments"
    __table_args__ = (
        CheckConstraint("max_slots > 0", name="ck_tournaments_max_slots_positive"),
        CheckConstraint("held_count >= 0", name="ck_tournaments_held_nonnegative"),
        CheckConstraint("held_count <= max_slots", name="ck_tournaments_held_within_cap"),
    )

    # External identifier supplied by the league application
    id: Mapped[str] = mapped_column(String(100), primary_key=True)

    hall_id: Mapped[str | None] = mapped_column(
        String(100),
        nullable=True,
        index=True,
    )
    max_slots: Mapped[int] = mapped_column(Integer, nullable=False)
    is_open: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    held_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    def __repr__(self) -> str:
        return f"<Tournament {self.id} {self.held_count}/{self.max_slots} open={self.is_open}>"

    @property
    def is_full(self) -> bool:
        return self.held_count >= self.max_slots


class HallSetting(Base, TimestampMixin):
    """Per-hall fee overrides and revenue split (reporting only)."""

    __tablename__ = "hall_settings"

    hall_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    base_fee_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    nonmember_fee_cents: Mapped[int | None] = mapped_column(Integer, nullable=True)
    revenue_split_pct: Mapped[float | None] = mapped_column(Float, nullable=True)
