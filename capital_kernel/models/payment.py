"""
Module: capital_kernel.models.payment
Responsibility: ORM persistence for the append-only Payment ledger and the
    OverpaymentReview queue.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    ledger_reconciles -- SUM(payments.amount) per allocation equals the
        allocation's cached paid_amount.  Payments are never updated or
        deleted (db/immutability.py), so the ledger is authoritative.

Failure modes:
    - ImmutabilityViolationError on any UPDATE/DELETE of a Payment.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from capital_kernel.db.base import TrackedBase, UUIDString


class Payment(TrackedBase):
    """
    Money received against an allocation, optionally attributed to a call.

    Guarantees:
        - amount > 0.
        - Immutable from creation.
    """

    __tablename__ = "payments"

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payment_amount_positive"),
        Index("idx_payment_allocation", "allocation_id"),
        Index("idx_payment_capital_call", "capital_call_id"),
    )

    allocation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("fund_allocations.id", ondelete="RESTRICT"),
        nullable=False,
    )

    capital_call_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("capital_calls.id", ondelete="RESTRICT"),
        nullable=True,
    )

    amount: Mapped[Decimal] = mapped_column(nullable=False)

    paid_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    # PaymentInstrument value
    instrument: Mapped[str] = mapped_column(String(20), nullable=False)

    def __repr__(self) -> str:
        return f"<Payment {self.id} {self.amount} -> {self.allocation_id}>"


class OverpaymentReview(TrackedBase):
    """
    The excess of a capped payment, queued for manual review.

    Written only when overpayments are allowed by configuration.  The
    accepted part of the payment is recorded as a normal Payment; the excess
    is recorded here and is never credited to the allocation.
    """

    __tablename__ = "overpayment_reviews"

    __table_args__ = (
        Index("idx_overpayment_review_allocation", "allocation_id"),
        Index("idx_overpayment_review_resolved", "resolved"),
    )

    allocation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("fund_allocations.id", ondelete="RESTRICT"),
        nullable=False,
    )

    # The accepted part; None when nothing could be accepted
    payment_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("payments.id", ondelete="RESTRICT"),
        nullable=True,
    )

    capital_call_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    requested_amount: Mapped[Decimal] = mapped_column(nullable=False)

    excess_amount: Mapped[Decimal] = mapped_column(nullable=False)

    description: Mapped[str] = mapped_column(Text, nullable=False, default="")

    resolved: Mapped[bool] = mapped_column(nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<OverpaymentReview {self.id} excess={self.excess_amount}>"
