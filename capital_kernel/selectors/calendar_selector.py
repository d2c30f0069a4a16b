"""
Calendar Aggregator.

Merges capital calls, closing schedule events and meetings into one
chronologically ordered, month-grouped feed of ``CalendarEvent``s.

Key design decisions:
- Read-only and idempotent: the feed is rebuilt from the source rows on
  every call and never persisted.
- Kind filters are applied before any source is queried; status and date
  filters are applied to the source rows before any name is resolved.
- Deal and fund names are resolved through BatchQueryGateway in chunked
  queries.  A reference that cannot be resolved leaves the title without
  the name and is reported in ``CalendarFeed.unresolved``.
- Capital calls are dated by their due date, closing events by their
  actual date when known (scheduled date otherwise), meetings by the
  calendar date of their start in the configured time zone.
"""

from __future__ import annotations

from collections import Counter
from datetime import date
from typing import Iterable
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from capital_config.schema import EngineConfig
from capital_kernel.domain.calendar import (
    CalendarEvent,
    CalendarFeed,
    UnresolvedReference,
    build_feed,
)
from capital_kernel.domain.dates import calendar_date
from capital_kernel.domain.statuses import AmountType, EventKind
from capital_kernel.logging_config import get_logger
from capital_kernel.models.allocation import FundAllocation
from capital_kernel.models.capital_call import CapitalCall
from capital_kernel.models.schedule import ClosingScheduleEvent, Meeting
from capital_kernel.selectors.base import BaseSelector
from capital_kernel.selectors.batch_selector import BatchQueryGateway

logger = get_logger("selectors.calendar")


class CalendarAggregator(BaseSelector[CapitalCall]):
    """Builds the calendar feed for one deal or for all deals."""

    def __init__(self, session: Session, config: EngineConfig | None = None):
        super().__init__(session)
        self.config = config or EngineConfig()
        self.gateway = BatchQueryGateway(session, self.config.batch)

    def events(
        self,
        deal_id: UUID | None = None,
        kinds: Iterable[EventKind | str] | None = None,
        statuses: Iterable[str] | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> CalendarFeed:
        """
        Ordered, month-grouped calendar feed.

        Args:
            deal_id: Restrict to one deal; None for all deals.
            kinds: Event kinds to include; None for all.
            statuses: Display statuses to include; None for all.
            start: Earliest event date, inclusive.
            end: Latest event date, inclusive.
        """
        kind_set = {EventKind(k) for k in kinds} if kinds is not None else set(EventKind)

        calls = self._capital_calls(deal_id) if EventKind.CAPITAL_CALL in kind_set else []
        closings = self._closings(deal_id) if EventKind.CLOSING in kind_set else []
        meetings = self._meetings(deal_id) if EventKind.MEETING in kind_set else []

        # Names are resolved only for rows that survive the status and date filters.
        status_set = (
            {str(getattr(s, "value", s)) for s in statuses} if statuses is not None else None
        )

        def wanted(event_date: date, status: str) -> bool:
            if status_set is not None and status not in status_set:
                return False
            if start is not None and event_date < start:
                return False
            return end is None or event_date <= end

        calls = [c for c in calls if wanted(c.due_date, c.status)]
        closings = [c for c in closings if wanted(c.actual_date or c.scheduled_date, c.status)]
        meetings = [m for m in meetings if wanted(self._meeting_date(m), m.status)]

        allocation_ids = [call.allocation_id for call in calls]
        deal_ids = [row.deal_id for row in closings] + [row.deal_id for row in meetings]
        resolved = self.gateway.batch_fetch(
            allocation_ids=allocation_ids,
            deal_ids=deal_ids,
            include_related=True,
        )

        events: list[CalendarEvent] = []
        unresolved: list[UnresolvedReference] = []

        for call in calls:
            event, missing = self._call_event(call, resolved, len(events))
            events.append(event)
            unresolved.extend(missing)
        for closing in closings:
            event, missing = self._closing_event(closing, resolved, len(events))
            events.append(event)
            unresolved.extend(missing)
        for meeting in meetings:
            event, missing = self._meeting_event(meeting, resolved, len(events))
            events.append(event)
            unresolved.extend(missing)

        feed = build_feed(
            events,
            kinds=kind_set,
            statuses=statuses,
            start=start,
            end=end,
            unresolved=unresolved,
        )
        logger.debug(
            "calendar_feed_built",
            extra={
                "deal_id": deal_id,
                "source_events": len(events),
                "events": len(feed.events),
                "months": len(feed.months),
                "unresolved": len(feed.unresolved),
            },
        )
        return feed

    def count_upcoming(self, as_of: date, deal_id: UUID | None = None) -> dict[EventKind, int]:
        """Per-kind count of events dated on or after ``as_of``."""
        counts = Counter(event.kind for event in self.events(deal_id=deal_id, start=as_of).events)
        return {kind: counts.get(kind, 0) for kind in EventKind}

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def _capital_calls(self, deal_id: UUID | None) -> list[CapitalCall]:
        stmt = select(CapitalCall).order_by(CapitalCall.due_date, CapitalCall.id)
        if deal_id is not None:
            stmt = stmt.join(
                FundAllocation, FundAllocation.id == CapitalCall.allocation_id
            ).where(FundAllocation.deal_id == deal_id)
        return list(self.session.scalars(stmt).all())

    def _closings(self, deal_id: UUID | None) -> list[ClosingScheduleEvent]:
        stmt = select(ClosingScheduleEvent).order_by(
            ClosingScheduleEvent.scheduled_date, ClosingScheduleEvent.id
        )
        if deal_id is not None:
            stmt = stmt.where(ClosingScheduleEvent.deal_id == deal_id)
        return list(self.session.scalars(stmt).all())

    def _meetings(self, deal_id: UUID | None) -> list[Meeting]:
        stmt = select(Meeting).order_by(Meeting.meeting_at, Meeting.id)
        if deal_id is not None:
            stmt = stmt.where(Meeting.deal_id == deal_id)
        return list(self.session.scalars(stmt).all())

    # ------------------------------------------------------------------
    # Mapping
    # ------------------------------------------------------------------

    def _meeting_date(self, meeting: Meeting) -> date:
        return calendar_date(meeting.meeting_at, self.config.dates.timezone)

    def _call_event(self, call, resolved, sequence):
        missing: list[UnresolvedReference] = []
        allocation = resolved.allocations.get(call.allocation_id)
        deal = fund = None
        if allocation is None:
            missing.append(UnresolvedReference(call.id, "allocation", call.allocation_id))
        else:
            deal = resolved.deals.get(allocation.deal_id)
            fund = resolved.funds.get(allocation.fund_id)
            if deal is None:
                missing.append(UnresolvedReference(call.id, "deal", allocation.deal_id))
            if fund is None:
                missing.append(UnresolvedReference(call.id, "fund", allocation.fund_id))

        title = f"Capital Call: {deal.name}" if deal is not None else "Capital Call"
        event = CalendarEvent(
            id=call.id,
            kind=EventKind.CAPITAL_CALL,
            title=title,
            date=call.due_date,
            status=call.status,
            deal_id=allocation.deal_id if allocation is not None else None,
            amount=call.call_amount,
            amount_type=AmountType.ABSOLUTE,
            details=(
                ("allocation_id", call.allocation_id),
                ("fund_name", fund.name if fund is not None else None),
                ("call_date", call.call_date),
                ("due_date", call.due_date),
                ("requested_value", call.requested_value),
                ("requested_amount_type", AmountType(call.amount_type)),
                ("paid_amount", call.paid_amount),
            ),
            sequence=sequence,
        )
        return event, missing

    def _closing_event(self, closing, resolved, sequence):
        missing: list[UnresolvedReference] = []
        deal = resolved.deals.get(closing.deal_id)
        if deal is None:
            missing.append(UnresolvedReference(closing.id, "deal", closing.deal_id))
        title = f"{closing.event_name}: {deal.name}" if deal is not None else closing.event_name
        event = CalendarEvent(
            id=closing.id,
            kind=EventKind.CLOSING,
            title=title,
            date=closing.actual_date or closing.scheduled_date,
            status=closing.status,
            deal_id=closing.deal_id,
            amount=closing.target_amount,
            amount_type=AmountType(closing.amount_type) if closing.amount_type else None,
            details=(
                ("event_type", closing.event_type),
                ("scheduled_date", closing.scheduled_date),
                ("actual_date", closing.actual_date),
                ("actual_amount", closing.actual_amount),
            ),
            sequence=sequence,
        )
        return event, missing

    def _meeting_event(self, meeting, resolved, sequence):
        missing: list[UnresolvedReference] = []
        deal = resolved.deals.get(meeting.deal_id)
        if deal is None:
            missing.append(UnresolvedReference(meeting.id, "deal", meeting.deal_id))
        event = CalendarEvent(
            id=meeting.id,
            kind=EventKind.MEETING,
            title=meeting.title,
            date=self._meeting_date(meeting),
            status=meeting.status,
            deal_id=meeting.deal_id,
            details=(
                ("deal_name", deal.name if deal is not None else None),
                ("starts_at", meeting.meeting_at),
                ("attendees", meeting.attendees),
            ),
            sequence=sequence,
        )
        return event, missing
