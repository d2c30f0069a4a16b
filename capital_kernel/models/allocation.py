"""
Module: capital_kernel.models.allocation
Responsibility: ORM persistence for FundAllocation -- one fund's capital
    commitment to one deal and its running financial totals.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, domain/, or outer layers.

Invariants enforced:
    positive_commitment    -- committed_amount > 0 (CHECK constraint), fixed
                              at creation (db/immutability.py).
    paid_within_commitment -- 0 <= paid_amount <= committed_amount (CHECK
                              constraint; AllocationStore checks first).
    status_derived         -- status is written only by AllocationStore,
                              which verifies it against the derivation rule.
    Lost updates           -- ``version`` is the mapper's version_id_col; an
                              UPDATE that matches zero rows raises
                              StaleDataError (surfaced as
                              ConcurrencyConflictError).

Failure modes:
    - IntegrityError on a second allocation for the same fund/deal pair
      (uq_allocation_fund_deal).
    - IntegrityError if a CHECK constraint would be violated by a write that
      bypassed the store.

Audit relevance:
    paid_amount is a cache of the Payment ledger.  IntegrityService compares
    the two and its repair pass restores the cache from the ledger.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    Date,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from capital_kernel.db.base import TrackedBase, UUIDString


class FundAllocation(TrackedBase):
    """
    A commitment of capital from one fund to one deal.

    Contract:
        committed_amount is fixed at creation.  paid_amount and status move
        only through AllocationStore.apply_payment_delta (payments, repair,
        status re-sync) and AllocationStore.set_defaulted (administrative
        default / reinstatement).

    Guarantees:
        - At most one allocation per (fund_id, deal_id).
        - Every UPDATE increments ``version``.

    Non-goals:
        - Does not compute status itself; see domain/status_rules.py.
    """

    __tablename__ = "fund_allocations"

    __table_args__ = (
        UniqueConstraint("fund_id", "deal_id", name="uq_allocation_fund_deal"),
        CheckConstraint("committed_amount > 0", name="ck_allocation_committed_positive"),
        CheckConstraint(
            "paid_amount >= 0 AND paid_amount <= committed_amount",
            name="ck_allocation_paid_within_commitment",
        ),
        Index("idx_allocation_deal", "deal_id"),
        Index("idx_allocation_status", "status"),
    )

    fund_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("funds.id", ondelete="RESTRICT"),
        nullable=False,
    )

    deal_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("deals.id", ondelete="RESTRICT"),
        nullable=False,
    )

    committed_amount: Mapped[Decimal] = mapped_column(nullable=False)

    paid_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    # AllocationStatus value
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    security_type: Mapped[str | None] = mapped_column(String(50), nullable=True)

    allocation_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Administrative flag; while set, status derives to defaulted
    defaulted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    defaulted_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    @property
    def outstanding_amount(self) -> Decimal:
        """committed_amount - paid_amount."""
        return self.committed_amount - self.paid_amount

    def __repr__(self) -> str:
        return (
            f"<FundAllocation {self.id} {self.paid_amount}/{self.committed_amount} "
            f"{self.status}>"
        )
