"""
Module: capital_kernel.models.capital_call
Responsibility: ORM persistence for CapitalCall -- a scheduled or issued
    request for part of an allocation's commitment.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    call_within_outstanding -- call_amount (currency) never exceeds the
        owning allocation's outstanding amount at issuance time.  Enforced
        by CapitalCallScheduler before insert.
    due_date >= call_date (CHECK constraint).

Audit relevance:
    paid_amount and paid_date are a read-only projection of the Payment rows
    attributed to this call.  PaymentProcessor recomputes them on every
    attributed payment; nothing else writes them.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, Date, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from capital_kernel.db.base import TrackedBase, UUIDString


class CapitalCall(TrackedBase):
    """
    A request for capital against one allocation.

    Contract:
        ``call_amount`` is always in currency.  When the caller asked for a
        percentage, ``requested_value`` keeps the percentage and
        ``amount_type`` is ``percentage``.

    Guarantees:
        - status moves only along VALID_CALL_TRANSITIONS
          (domain/statuses.py); ``paid`` and ``defaulted`` are terminal.
    """

    __tablename__ = "capital_calls"

    __table_args__ = (
        CheckConstraint("call_amount > 0", name="ck_capital_call_amount_positive"),
        CheckConstraint("due_date >= call_date", name="ck_capital_call_due_after_call"),
        Index("idx_capital_call_allocation", "allocation_id"),
        Index("idx_capital_call_due_date", "due_date"),
        Index("idx_capital_call_status", "status"),
    )

    allocation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("fund_allocations.id", ondelete="RESTRICT"),
        nullable=False,
    )

    call_amount: Mapped[Decimal] = mapped_column(nullable=False)

    # AmountType value
    amount_type: Mapped[str] = mapped_column(String(20), nullable=False)

    # The caller's input: a percentage or a currency amount
    requested_value: Mapped[Decimal] = mapped_column(nullable=False)

    call_date: Mapped[date] = mapped_column(Date, nullable=False)

    due_date: Mapped[date] = mapped_column(Date, nullable=False)

    # CapitalCallStatus value
    status: Mapped[str] = mapped_column(String(20), nullable=False)

    paid_amount: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))

    paid_date: Mapped[date | None] = mapped_column(Date, nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def unpaid_amount(self) -> Decimal:
        return self.call_amount - self.paid_amount

    def __repr__(self) -> str:
        return f"<CapitalCall {self.id} {self.call_amount} due {self.due_date} {self.status}>"
