"""
Allocation Invariants Contract.

These invariants are structural law. They hold after every committed
mutation; no configuration toggle may relax them.

This module exists solely to declare the invariants explicitly. The
enforcement is distributed across AllocationStore (write-time range and
status checks), the derivation rule in domain/status_rules.py,
PaymentProcessor, CapitalCallScheduler and the Payment immutability
listeners. IntegrityService re-checks them after the fact.
"""

from enum import Enum, unique


@unique
class AllocationInvariant(str, Enum):
    """Non-configurable invariants over fund allocations."""

    POSITIVE_COMMITMENT = "positive_commitment"
    """committed_amount > 0, fixed at creation."""

    PAID_WITHIN_COMMITMENT = "paid_within_commitment"
    """0 <= paid_amount <= committed_amount. Enforced by
    AllocationStore.apply_payment_delta before flush."""

    STATUS_DERIVED = "status_derived"
    """status == derive_allocation_status(committed, paid, has_open_call,
    defaulted). AllocationStore rejects any other status."""

    LEDGER_RECONCILES = "ledger_reconciles"
    """Sum of Payment rows equals the cached paid_amount. Payments are
    append-only (db/immutability.py)."""

    CALL_WITHIN_OUTSTANDING = "call_within_outstanding"
    """A capital call, normalized to currency, never exceeds the
    allocation's outstanding amount at issuance time."""


ALL_ALLOCATION_INVARIANTS: frozenset[AllocationInvariant] = frozenset(
    AllocationInvariant
)

# The kernel package may not import from these packages. It may read
# capital_config.schema types, which are passed in at construction.
FORBIDDEN_KERNEL_IMPORTS: tuple[str, ...] = ("capital_services",)
