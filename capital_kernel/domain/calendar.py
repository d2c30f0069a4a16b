"""
Calendar projection -- pure merge, filter, sort and grouping.

Responsibility:
    Defines the uniform ``CalendarEvent`` shape that capital calls, closing
    schedule events and meetings are mapped into, and the pure functions
    that turn a list of them into an ordered, month-grouped ``CalendarFeed``.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.  The mapping from ORM
    rows lives in selectors/calendar_selector.py.

Ordering:
    Ascending by date; ties are broken by source kind (capital call, then
    closing, then meeting) and then by the order the aggregator produced
    the events.  The sort is total, so the feed is deterministic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Iterable
from uuid import UUID

from capital_kernel.domain.dates import month_key, month_label
from capital_kernel.domain.statuses import AmountType, EventKind


@dataclass(frozen=True)
class CalendarEvent:
    """One entry of the calendar feed; a read-only projection."""

    id: UUID
    kind: EventKind
    title: str
    date: date
    status: str
    deal_id: UUID | None = None
    amount: Decimal | None = None
    amount_type: AmountType | None = None
    # Source-specific display fields, e.g. ("due_date", ...), ("attendees", ...)
    details: tuple[tuple[str, object], ...] = ()
    sequence: int = 0

    def detail(self, key: str, default: object = None) -> object:
        for k, v in self.details:
            if k == key:
                return v
        return default

    @property
    def sort_key(self) -> tuple[date, int, int]:
        return (self.date, self.kind.rank, self.sequence)


@dataclass(frozen=True)
class CalendarMonth:
    key: str
    label: str
    events: tuple[CalendarEvent, ...]


@dataclass(frozen=True)
class UnresolvedReference:
    """An event whose related deal or fund could not be loaded."""

    event_id: UUID
    entity_type: str
    entity_id: UUID


@dataclass(frozen=True)
class CalendarFeed:
    events: tuple[CalendarEvent, ...]
    months: tuple[CalendarMonth, ...]
    unresolved: tuple[UnresolvedReference, ...] = field(default=())

    def __len__(self) -> int:
        return len(self.events)


def filter_events(
    events: Iterable[CalendarEvent],
    kinds: Iterable[EventKind | str] | None = None,
    statuses: Iterable[str] | None = None,
    start: date | None = None,
    end: date | None = None,
) -> list[CalendarEvent]:
    """Keep events matching every given criterion; ``start``/``end`` inclusive."""
    kind_set = {EventKind(k) for k in kinds} if kinds is not None else None
    status_set = {str(getattr(s, "value", s)) for s in statuses} if statuses is not None else None
    kept = []
    for event in events:
        if kind_set is not None and event.kind not in kind_set:
            continue
        if status_set is not None and event.status not in status_set:
            continue
        if start is not None and event.date < start:
            continue
        if end is not None and event.date > end:
            continue
        kept.append(event)
    return kept


def sort_events(events: Iterable[CalendarEvent]) -> list[CalendarEvent]:
    return sorted(events, key=lambda e: e.sort_key)


def group_by_month(events: Iterable[CalendarEvent]) -> tuple[CalendarMonth, ...]:
    """Group already-sorted events into calendar months, preserving order."""
    groups: dict[str, list[CalendarEvent]] = {}
    labels: dict[str, str] = {}
    for event in events:
        key = month_key(event.date)
        groups.setdefault(key, []).append(event)
        labels.setdefault(key, month_label(event.date))
    return tuple(
        CalendarMonth(key=key, label=labels[key], events=tuple(groups[key]))
        for key in sorted(groups)
    )


def build_feed(
    events: Iterable[CalendarEvent],
    kinds: Iterable[EventKind | str] | None = None,
    statuses: Iterable[str] | None = None,
    start: date | None = None,
    end: date | None = None,
    unresolved: Iterable[UnresolvedReference] = (),
) -> CalendarFeed:
    """Filter, then sort, then group."""
    ordered = sort_events(filter_events(events, kinds, statuses, start, end))
    return CalendarFeed(
        events=tuple(ordered),
        months=group_by_month(ordered),
        unresolved=tuple(unresolved),
    )
