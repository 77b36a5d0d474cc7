"""Processed gateway event ledger."""

from datetime import datetime

from sqlalchemy import DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from entry_engine.models.base import Base
from entry_engine.utils.clock import utcnow


class ProcessedGatewayEvent(Base):
    """One row per applied gateway event id.

    Inserted in the same transaction as the event's effects, so a row exists
    if and only if the effects were committed.
    """

    __tablename__ = "gateway_events"

    event_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    kind: Mapped[str] = mapped_column(String(50), nullable=False)
    outcome: Mapped[str] = mapped_column(String(50), nullable=False)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )
