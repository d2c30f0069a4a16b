"""
Module: capital_kernel.models.schedule
Responsibility: ORM persistence for deal-level scheduling records that feed
    the calendar: closing schedule events and meetings.
Architecture position: Kernel > Models.  May import from db/base.py only.

These rows belong to the Deal, not to any allocation, and carry no
financial invariants.  They are read-only inputs to CalendarAggregator.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import Date, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from capital_kernel.db.base import TrackedBase, UUIDString


class ClosingScheduleEvent(TrackedBase):
    """A milestone on a deal's closing timeline (first close, funding, ...)."""

    __tablename__ = "closing_schedule_events"

    __table_args__ = (
        Index("idx_closing_event_deal", "deal_id"),
        Index("idx_closing_event_date", "scheduled_date"),
    )

    deal_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
    )

    # ClosingEventType value
    event_type: Mapped[str] = mapped_column(String(30), nullable=False)

    event_name: Mapped[str] = mapped_column(String(255), nullable=False)

    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)

    actual_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    target_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    # AmountType value; None when no target amount
    amount_type: Mapped[str | None] = mapped_column(String(20), nullable=True)

    actual_amount: Mapped[Decimal | None] = mapped_column(nullable=True)

    # ScheduleStatus value
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="scheduled")

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    def __repr__(self) -> str:
        return f"<ClosingScheduleEvent {self.event_name} {self.scheduled_date}>"


class Meeting(TrackedBase):
    """A meeting about a deal."""

    __tablename__ = "meetings"

    __table_args__ = (
        Index("idx_meeting_deal", "deal_id"),
        Index("idx_meeting_date", "meeting_at"),
    )

    deal_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
    )

    title: Mapped[str] = mapped_column(String(255), nullable=False)

    meeting_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    attendees: Mapped[str | None] = mapped_column(Text, nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # ScheduleStatus value
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="scheduled")

    def __repr__(self) -> str:
        return f"<Meeting {self.title} {self.meeting_at}>"
