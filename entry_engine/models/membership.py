"""Membership status model (fed by subscription events)."""

from datetime import datetime
from enum import Enum

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from entry_engine.models.base import Base, TimestampMixin


class MembershipRole(str, Enum):
    """Role tiers; anything unknown is priced as nonmember."""

    NONMEMBER = "nonmember"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    MEGA = "mega"


class MembershipStatus(Base, TimestampMixin):
    """Current membership for a user."""

    __tablename__ = "membership_statuses"

    user_id: Mapped[str] = mapped_column(String(100), primary_key=True)
    role: Mapped[str] = mapped_column(
        String(20),
        default=MembershipRole.NONMEMBER.value,
        nullable=False,
    )
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    customer_ref: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    subscription_ref: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Gateway subscription status (active, past_due, canceled, ...)
    status: Mapped[str] = mapped_column(String(30), default="none", nullable=False)
    period_end: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Creation time of the last applied subscription event; older events are ignored
    last_event_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
