"""Tournament entry model."""

from datetime import datetime
from enum import Enum

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from entry_engine.models.base import Base, TimestampMixin, UUIDMixin


class EntryStatus(str, Enum):
    """Entry status.

    pending -> paid | failed; any slot-holding status -> refunded.
    """

    PENDING = "pending"  # Slot held, awaiting payment
    PAID = "paid"
    COMPED = "comped"  # Zero-fee entry for top tiers
    REFUNDED = "refunded"
    FAILED = "failed"  # Checkout failed, expired or was withdrawn


SLOT_HOLDING_STATUSES = (EntryStatus.PENDING.value, EntryStatus.PAID.value, EntryStatus.COMPED.value)
CONFIRMED_STATUSES = (EntryStatus.PAID.value, EntryStatus.COMPED.value)
TERMINAL_STATUSES = (EntryStatus.FAILED.value, EntryStatus.REFUNDED.value)


class TournamentEntry(Base, UUIDMixin, TimestampMixin):
    """One user's entry into one tournament."""

    __tablename__ = "tournament_entries"
    __table_args__ = (
        UniqueConstraint("tournament_id", "user_id", name="uq_entries_tournament_user"),
        CheckConstraint("amount_cents >= 0", name="ck_entries_amount_nonnegative"),
    )

    tournament_id: Mapped[str] = mapped_column(
        String(100),
        ForeignKey("tournaments.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[str] = mapped_column(String(100), nullable=False, index=True)

    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    status: Mapped[str] = mapped_column(
        String(20),
        default=EntryStatus.PENDING.value,
        nullable=False,
        index=True,
    )

    # Gateway references
    payment_reference: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
        comment="Gateway payment intent id once paid",
    )
    checkout_session_id: Mapped[str | None] = mapped_column(
        String(255),
        nullable=True,
        index=True,
    )
    checkout_url: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    # Pending holds lapse lazily after this instant (plus grace)
    hold_expires_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Set when the entry was created by a waitlist offer
    waitlist_row_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    failure_reason: Mapped[str | None] = mapped_column(String(100), nullable=True)
    attempt: Mapped[int] = mapped_column(Integer, default=1, nullable=False)

    def __repr__(self) -> str:
        return f"<TournamentEntry {self.tournament_id}/{self.user_id} {self.status}>"

    @property
    def holds_slot(self) -> bool:
        return self.status in SLOT_HOLDING_STATUSES
