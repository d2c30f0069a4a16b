"""
DTOs -- Pure domain data transfer objects.

Responsibility:
    Immutable result shapes returned by the kernel services and the
    facade: payment results, integrity and repair reports, batch fetch
    results, and detached views of allocations and capital calls.

Architecture position:
    Kernel > Domain -- pure, zero I/O.  ``from_model()`` class methods are
    boundary converters invoked only from the service layer.

Audit relevance:
    PaymentResult carries before/after amounts and statuses so every
    payment response documents the transition it caused.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import TYPE_CHECKING, Generic, TypeVar
from uuid import UUID

from capital_kernel.domain.statuses import (
    AllocationStatus,
    AmountType,
    CapitalCallStatus,
)

if TYPE_CHECKING:
    from capital_kernel.models.allocation import FundAllocation
    from capital_kernel.models.capital_call import CapitalCall

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Entity views
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class AllocationView:
    id: UUID
    fund_id: UUID
    deal_id: UUID
    committed_amount: Decimal
    paid_amount: Decimal
    status: AllocationStatus
    security_type: str | None
    allocation_date: date | None
    defaulted: bool
    version: int

    @property
    def outstanding_amount(self) -> Decimal:
        return self.committed_amount - self.paid_amount

    @classmethod
    def from_model(cls, model: FundAllocation) -> AllocationView:
        return cls(
            id=model.id,
            fund_id=model.fund_id,
            deal_id=model.deal_id,
            committed_amount=model.committed_amount,
            paid_amount=model.paid_amount,
            status=AllocationStatus(model.status),
            security_type=model.security_type,
            allocation_date=model.allocation_date,
            defaulted=model.defaulted,
            version=model.version,
        )


@dataclass(frozen=True)
class CapitalCallView:
    id: UUID
    allocation_id: UUID
    call_amount: Decimal
    amount_type: AmountType
    requested_value: Decimal
    call_date: date
    due_date: date
    status: CapitalCallStatus
    paid_amount: Decimal
    paid_date: date | None
    notes: str | None

    @property
    def unpaid_amount(self) -> Decimal:
        return self.call_amount - self.paid_amount

    @classmethod
    def from_model(cls, model: CapitalCall) -> CapitalCallView:
        return cls(
            id=model.id,
            allocation_id=model.allocation_id,
            call_amount=model.call_amount,
            amount_type=AmountType(model.amount_type),
            requested_value=model.requested_value,
            call_date=model.call_date,
            due_date=model.due_date,
            status=CapitalCallStatus(model.status),
            paid_amount=model.paid_amount,
            paid_date=model.paid_date,
            notes=model.notes,
        )


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of one processed payment.

    ``amount`` is what was credited to the allocation.  When overpayments
    are allowed and the request exceeded the remaining commitment,
    ``excess_amount`` is the part queued for review and
    ``flagged_for_review`` is True.
    """

    allocation_id: UUID
    payment_id: UUID | None
    amount: Decimal
    previous_paid_amount: Decimal
    new_paid_amount: Decimal
    previous_status: AllocationStatus
    new_status: AllocationStatus
    payment_percentage: Decimal
    remaining_amount: Decimal
    capital_call_id: UUID | None = None
    excess_amount: Decimal = Decimal("0")
    flagged_for_review: bool = False


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class IntegrityIssue:
    invariant: str
    message: str


@dataclass(frozen=True)
class AllocationIssueReport:
    allocation_id: UUID
    issues: tuple[IntegrityIssue, ...]

    @property
    def invariants(self) -> frozenset[str]:
        return frozenset(issue.invariant for issue in self.issues)


@dataclass(frozen=True)
class IntegrityReport:
    total_allocations: int
    valid_allocations: int
    invalid_allocations: tuple[AllocationIssueReport, ...]

    @property
    def is_clean(self) -> bool:
        return not self.invalid_allocations


@dataclass(frozen=True)
class RepairedAllocation:
    allocation_id: UUID
    previous_paid_amount: Decimal
    new_paid_amount: Decimal
    previous_status: AllocationStatus | str
    new_status: AllocationStatus


@dataclass(frozen=True)
class RepairError:
    allocation_id: UUID
    reason: str


@dataclass(frozen=True)
class RepairReport:
    repaired: tuple[RepairedAllocation, ...]
    errors: tuple[RepairError, ...]

    @property
    def repaired_count(self) -> int:
        return len(self.repaired)


# ---------------------------------------------------------------------------
# Batch fetch
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class FetchResult(Generic[T]):
    """Entities found by id, and the ids that could not be found."""

    found: dict[UUID, T]
    missing: frozenset[UUID] = field(default=frozenset())


@dataclass(frozen=True)
class BatchFetchResult:
    """Result of BatchQueryGateway.batch_fetch.

    A missing entity is reported in the ``missing_*`` sets; it is never
    replaced by a placeholder.
    """

    allocations: dict[UUID, object]
    deals: dict[UUID, object]
    funds: dict[UUID, object]
    missing_allocations: frozenset[UUID] = field(default=frozenset())
    missing_deals: frozenset[UUID] = field(default=frozenset())
    missing_funds: frozenset[UUID] = field(default=frozenset())
    fetch_count: int = 0

    @property
    def missing(self) -> dict[str, frozenset[UUID]]:
        return {
            "allocation": self.missing_allocations,
            "deal": self.missing_deals,
            "fund": self.missing_funds,
        }

    @property
    def is_complete(self) -> bool:
        return not (self.missing_allocations or self.missing_deals or self.missing_funds)
