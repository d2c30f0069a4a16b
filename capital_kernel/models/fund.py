"""
Module: capital_kernel.models.fund
Responsibility: ORM persistence for the two external identities an allocation
    joins: the investing Fund and the Deal it invests in.
Architecture position: Kernel > Models.  May import from db/base.py only.
    MUST NOT import from services/, selectors/, domain/, or outer layers.

Deal pipeline management lives outside the engine; these rows are consumed
through their data contract (name, stage) only.  A deal's ``stage`` decides
whether it accepts new allocations (see AllocationConfig.investable_stages).
"""

from sqlalchemy import Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from capital_kernel.db.base import TrackedBase


class Fund(TrackedBase):
    """An investment vehicle that commits capital to deals."""

    __tablename__ = "funds"

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    vintage_year: Mapped[int | None] = mapped_column(Integer, nullable=True)

    def __repr__(self) -> str:
        return f"<Fund {self.name}>"


class Deal(TrackedBase):
    """
    A private investment opportunity.

    Contract:
        ``stage`` is a free-form pipeline stage name owned by the deal
        tracking application (e.g. ``sourcing``, ``closing``, ``closed``).
        Closing schedule events and meetings hang off the deal.
    """

    __tablename__ = "deals"

    __table_args__ = (Index("idx_deal_stage", "stage"),)

    name: Mapped[str] = mapped_column(String(255), nullable=False)

    stage: Mapped[str] = mapped_column(String(50), nullable=False)

    sector: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def __repr__(self) -> str:
        return f"<Deal {self.name} ({self.stage})>"
