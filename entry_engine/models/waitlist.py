"""Waitlist model."""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, ForeignKey, Index, Integer, String, text
from sqlalchemy.orm import Mapped, mapped_column

from entry_engine.models.base import Base, TimestampMixin


class WaitlistStatus(str, Enum):
    """Waitlist row status."""

    WAITING = "waiting"
    OFFERED = "offered"
    CONVERTED = "converted"
    CANCELED = "canceled"


ACTIVE_WAITLIST_STATUSES = (WaitlistStatus.WAITING.value, WaitlistStatus.OFFERED.value)


class WaitlistRow(Base, TimestampMixin):
    """FIFO waitlist row; order is (created_at, id)."""

    __tablename__ = "tournament_waitlist"
    __table_args__ = (
        Index("ix_waitlist_tournament_status_created", "tournament_id", "status", "created_at"),
        # At most one active row per (tournament, user)
        Index(
            "uq_waitlist_active_user",
            "tournament_id",
            "user_id",
            unique=True,
            postgresql_where=text("status IN ('waiting', 'offered')"),
            sqlite_where=text("status IN ('waiting', 'offered')"),
        ),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tournament_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20),
        default=WaitlistStatus.WAITING.value,
        nullable=False,
    )

    offer_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    offer_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    offer_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    cancel_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)

    def __repr__(self) -> str:
        return f"<WaitlistRow {self.id} {self.tournament_id}/{self.user_id} {self.status}>"
