"""
Status Derivation Rule -- the single source of allocation status.

Responsibility:
    Maps an allocation's amounts (plus whether a call is open and whether it
    is administratively defaulted) to its lifecycle status.  Every writer of
    ``FundAllocation.status`` goes through AllocationStore, which verifies the
    status against ``derive_allocation_status``; the integrity verifier uses
    the same function to detect drift.

Architecture position:
    Kernel > Domain -- pure functional core, zero I/O.

Invariants enforced:
    paid_within_commitment -- amounts outside [0, committed] are rejected
        rather than mapped to any status.
    status_derived -- this function IS the derivation.

Failure modes:
    - InvariantViolationError for paid < 0 or paid > committed.
"""

from dataclasses import dataclass
from decimal import Decimal

from capital_kernel.domain.amounts import payment_percentage
from capital_kernel.domain.statuses import AllocationStatus
from capital_kernel.exceptions import InvariantViolationError
from capital_kernel.invariants import AllocationInvariant

_ZERO = Decimal("0")


@dataclass(frozen=True)
class AllocationAmounts:
    """The inputs of the derivation rule."""

    committed_amount: Decimal
    paid_amount: Decimal
    has_open_call: bool = False
    defaulted: bool = False

    @property
    def outstanding_amount(self) -> Decimal:
        return self.committed_amount - self.paid_amount


def derive_allocation_status(
    committed_amount: Decimal,
    paid_amount: Decimal,
    has_open_call: bool = False,
    defaulted: bool = False,
    allocation_id: object = None,
) -> AllocationStatus:
    """
    Derive the allocation lifecycle status.

    Rules, in order:
        defaulted                       -> DEFAULTED
        paid < 0 or paid > committed    -> InvariantViolationError
        paid == 0, open call            -> CALLED
        paid == 0, no open call         -> COMMITTED
        0 < paid < committed            -> PARTIALLY_PAID
        paid == committed               -> FUNDED
    """
    if defaulted:
        return AllocationStatus.DEFAULTED

    if paid_amount < _ZERO or paid_amount > committed_amount:
        raise InvariantViolationError(
            invariant=AllocationInvariant.PAID_WITHIN_COMMITMENT.value,
            entity_id=allocation_id,
            detail=f"paid {paid_amount} outside [0, {committed_amount}]",
        )

    if paid_amount == _ZERO:
        return AllocationStatus.CALLED if has_open_call else AllocationStatus.COMMITTED
    if paid_amount < committed_amount:
        return AllocationStatus.PARTIALLY_PAID
    return AllocationStatus.FUNDED


def derive_from(amounts: AllocationAmounts, allocation_id: object = None) -> AllocationStatus:
    return derive_allocation_status(
        amounts.committed_amount,
        amounts.paid_amount,
        amounts.has_open_call,
        amounts.defaulted,
        allocation_id=allocation_id,
    )


@dataclass(frozen=True)
class PaymentProgress:
    paid_percentage: Decimal
    remaining_amount: Decimal


def payment_progress(committed_amount: Decimal, paid_amount: Decimal) -> PaymentProgress:
    """Paid percentage (2 dp, half-up) and remaining amount."""
    return PaymentProgress(
        paid_percentage=payment_percentage(committed_amount, paid_amount),
        remaining_amount=committed_amount - paid_amount,
    )
