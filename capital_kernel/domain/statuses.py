"""
Closed status and kind vocabularies.

Every status column in the engine stores one of these enum values.  Code
compares against the enum members, never against ad hoc string literals.
The full allocation lifecycle (including ``partially_paid``) is required;
there is no degraded vocabulary.
"""

from enum import Enum


class AllocationStatus(str, Enum):
    """Lifecycle of a fund allocation; derived, never set directly.

    Contract: see domain/status_rules.derive_allocation_status.
    """

    COMMITTED = "committed"
    CALLED = "called"
    PARTIALLY_PAID = "partially_paid"
    FUNDED = "funded"
    DEFAULTED = "defaulted"


class CapitalCallStatus(str, Enum):
    """Lifecycle of a capital call."""

    SCHEDULED = "scheduled"
    CALLED = "called"
    PARTIALLY_PAID = "partially_paid"
    PAID = "paid"
    DEFAULTED = "defaulted"


# A call in one of these states is "open": issued and awaiting money.
OPEN_CALL_STATUSES: frozenset[CapitalCallStatus] = frozenset(
    {CapitalCallStatus.CALLED, CapitalCallStatus.PARTIALLY_PAID}
)

VALID_CALL_TRANSITIONS: dict[CapitalCallStatus, frozenset[CapitalCallStatus]] = {
    CapitalCallStatus.SCHEDULED: frozenset(
        {
            CapitalCallStatus.CALLED,
            CapitalCallStatus.PARTIALLY_PAID,
            CapitalCallStatus.PAID,
            CapitalCallStatus.DEFAULTED,
        }
    ),
    CapitalCallStatus.CALLED: frozenset(
        {
            CapitalCallStatus.PARTIALLY_PAID,
            CapitalCallStatus.PAID,
            CapitalCallStatus.DEFAULTED,
        }
    ),
    CapitalCallStatus.PARTIALLY_PAID: frozenset(
        {CapitalCallStatus.PAID, CapitalCallStatus.DEFAULTED}
    ),
    CapitalCallStatus.PAID: frozenset(),
    CapitalCallStatus.DEFAULTED: frozenset(),
}


def can_transition_call(
    from_status: CapitalCallStatus, to_status: CapitalCallStatus
) -> bool:
    return to_status in VALID_CALL_TRANSITIONS[from_status]


class AmountType(str, Enum):
    """How a requested amount is expressed."""

    PERCENTAGE = "percentage"
    ABSOLUTE = "absolute"


class ScheduleStatus(str, Enum):
    """Status vocabulary of closing events and meetings."""

    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    DELAYED = "delayed"
    CANCELLED = "cancelled"


class ClosingEventType(str, Enum):
    FIRST_CLOSING = "first_closing"
    SECOND_CLOSING = "second_closing"
    FINAL_CLOSING = "final_closing"
    EXTENSION = "extension"
    FUNDING = "funding"
    OTHER = "other"


class EventKind(str, Enum):
    """Source kind of a calendar event.

    Declaration order is the tie-break order for events on the same date.
    """

    CAPITAL_CALL = "capital_call"
    CLOSING = "closing"
    MEETING = "meeting"

    @property
    def rank(self) -> int:
        return _KIND_RANK[self]


_KIND_RANK = {kind: index for index, kind in enumerate(EventKind)}
