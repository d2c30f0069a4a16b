"""Pure domain layer: statuses, derivation rule, dates, amounts, calendar, DTOs."""

from capital_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from capital_kernel.domain.status_rules import (
    AllocationAmounts,
    derive_allocation_status,
    payment_progress,
)
from capital_kernel.domain.statuses import (
    OPEN_CALL_STATUSES,
    VALID_CALL_TRANSITIONS,
    AllocationStatus,
    AmountType,
    CapitalCallStatus,
    ClosingEventType,
    EventKind,
    ScheduleStatus,
)

__all__ = [
    "Clock",
    "SystemClock",
    "DeterministicClock",
    "AllocationAmounts",
    "derive_allocation_status",
    "payment_progress",
    "AllocationStatus",
    "CapitalCallStatus",
    "AmountType",
    "ScheduleStatus",
    "ClosingEventType",
    "EventKind",
    "OPEN_CALL_STATUSES",
    "VALID_CALL_TRANSITIONS",
]
