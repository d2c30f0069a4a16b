"""
AllocationStore -- persisted fund allocations and their running totals.

Responsibility:
    Creates allocations and is the ONLY writer of ``paid_amount``,
    ``status`` and the ``defaulted`` flag.  Every write verifies the
    resulting amounts against the paid-within-commitment range and the
    resulting status against the canonical derivation rule, so no caller
    can persist an inconsistent allocation.

Architecture position:
    Kernel > Services -- imperative shell, flush-only.

Invariants enforced:
    positive_commitment    -- create() rejects committed_amount <= 0.
    paid_within_commitment -- apply_payment_delta() rejects results outside
                              [0, committed_amount].
    status_derived         -- apply_payment_delta() / set_defaulted() reject a
                              status that differs from the derivation.

Concurrency:
    Writers load the row with SELECT ... FOR UPDATE (get_for_update), which
    serializes writers on the same allocation on PostgreSQL.  The mapper's
    version column additionally turns any lost update into StaleDataError,
    surfaced here as ConcurrencyConflictError.  Different allocations never
    contend.

Failure modes:
    - AllocationNotFoundError, FundNotFoundError, DealNotFoundError
    - InvalidAmountError, DealNotInvestableError, DuplicateAllocationError
    - InvariantViolationError
    - ConcurrencyConflictError
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from capital_config.schema import AllocationConfig
from capital_kernel.domain.amounts import ZERO, require_positive, to_decimal
from capital_kernel.domain.status_rules import derive_allocation_status
from capital_kernel.domain.statuses import OPEN_CALL_STATUSES, AllocationStatus
from capital_kernel.exceptions import (
    AllocationNotFoundError,
    ConcurrencyConflictError,
    DealNotFoundError,
    DealNotInvestableError,
    DuplicateAllocationError,
    FundNotFoundError,
    InvariantViolationError,
)
from capital_kernel.invariants import AllocationInvariant
from capital_kernel.logging_config import get_logger
from capital_kernel.models.allocation import FundAllocation
from capital_kernel.models.capital_call import CapitalCall
from capital_kernel.models.fund import Deal, Fund
from capital_kernel.services.base import BaseService

logger = get_logger("services.allocation_store")


@dataclass(frozen=True)
class AllocationFilter:
    fund_id: UUID | None = None
    deal_id: UUID | None = None
    status: AllocationStatus | None = None


class AllocationStore(BaseService[FundAllocation]):
    """
    Persisted fund allocations.

    Contract:
        Flush-only.  Returned rows belong to the caller's session.

    Guarantees:
        - committed_amount never changes after create().
        - paid_amount and status change together, in one flush, and only to
          values that satisfy the allocation invariants.
    """

    def __init__(
        self,
        session: Session,
        config: AllocationConfig | None = None,
        actor_id: UUID | None = None,
    ):
        super().__init__(session, actor_id)
        self.config = config or AllocationConfig()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, allocation_id: UUID) -> FundAllocation:
        allocation = self.session.get(FundAllocation, allocation_id)
        if allocation is None:
            raise AllocationNotFoundError(str(allocation_id))
        return allocation

    def get_for_update(self, allocation_id: UUID) -> FundAllocation:
        """Load with a row lock, refreshing any stale identity-map copy."""
        allocation = self.session.execute(
            select(FundAllocation)
            .where(FundAllocation.id == allocation_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if allocation is None:
            raise AllocationNotFoundError(str(allocation_id))
        return allocation

    def list(self, filter: AllocationFilter | None = None) -> list[FundAllocation]:
        stmt = select(FundAllocation)
        if filter is not None:
            if filter.fund_id is not None:
                stmt = stmt.where(FundAllocation.fund_id == filter.fund_id)
            if filter.deal_id is not None:
                stmt = stmt.where(FundAllocation.deal_id == filter.deal_id)
            if filter.status is not None:
                stmt = stmt.where(FundAllocation.status == AllocationStatus(filter.status).value)
        stmt = stmt.order_by(FundAllocation.created_at, FundAllocation.id)
        return list(self.session.scalars(stmt).all())

    def stored_status(self, allocation: FundAllocation) -> AllocationStatus:
        """The persisted status; a value outside the enum needs repair first."""
        try:
            return AllocationStatus(allocation.status)
        except ValueError:
            raise InvariantViolationError(
                invariant=AllocationInvariant.STATUS_DERIVED.value,
                entity_id=allocation.id,
                detail=f"stored status {allocation.status!r} is not a known status; run repair",
            ) from None

    def has_open_call(self, allocation_id: UUID) -> bool:
        open_statuses = [status.value for status in OPEN_CALL_STATUSES]
        return bool(
            self.session.scalar(
                select(
                    exists().where(
                        CapitalCall.allocation_id == allocation_id,
                        CapitalCall.status.in_(open_statuses),
                    )
                )
            )
        )

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(
        self,
        fund_id: UUID,
        deal_id: UUID,
        committed_amount: Decimal,
        security_type: str | None = None,
        allocation_date: date | None = None,
        notes: str | None = None,
    ) -> FundAllocation:
        """
        Create an allocation in the ``committed`` state.

        Raises:
            InvalidAmountError: committed_amount <= 0.
            FundNotFoundError / DealNotFoundError: unknown reference.
            DealNotInvestableError: the deal's stage does not accept
                allocations.
            DuplicateAllocationError: the fund already holds this deal.
        """
        amount = require_positive(committed_amount, "committed_amount")

        if self.session.get(Fund, fund_id) is None:
            raise FundNotFoundError(str(fund_id))
        deal = self.session.get(Deal, deal_id)
        if deal is None:
            raise DealNotFoundError(str(deal_id))
        if deal.stage not in self.config.investable_stages:
            raise DealNotInvestableError(str(deal_id), deal.stage)

        duplicate = self.session.scalar(
            select(FundAllocation.id).where(
                FundAllocation.fund_id == fund_id,
                FundAllocation.deal_id == deal_id,
            )
        )
        if duplicate is not None:
            raise DuplicateAllocationError(str(fund_id), str(deal_id))

        allocation = FundAllocation(
            fund_id=fund_id,
            deal_id=deal_id,
            committed_amount=amount,
            paid_amount=ZERO,
            status=derive_allocation_status(amount, ZERO).value,
            security_type=security_type,
            allocation_date=allocation_date,
            notes=notes,
            defaulted=False,
            created_by_id=self.actor_id,
        )
        self.session.add(allocation)
        try:
            self.session.flush()
        except IntegrityError as exc:
            raise DuplicateAllocationError(str(fund_id), str(deal_id)) from exc

        logger.info(
            "allocation_created",
            extra={
                "allocation_id": str(allocation.id),
                "fund_id": str(fund_id),
                "deal_id": str(deal_id),
                "committed_amount": str(amount),
            },
        )
        return allocation

    def apply_payment_delta(
        self,
        allocation_id: UUID,
        delta: Decimal,
        new_status: AllocationStatus,
        expected_version: int | None = None,
    ) -> FundAllocation:
        """
        Atomically add ``delta`` to paid_amount and store ``new_status``.

        ``delta`` may be negative (repair restores the ledger sum) or zero
        (status re-sync after a capital-call change).  ``expected_version``
        makes the update a compare-and-swap against the version the caller
        based its decision on.

        Raises:
            AllocationNotFoundError: unknown id.
            InvariantViolationError: the result leaves [0, committed] or
                new_status is not the derived status.
            ConcurrencyConflictError: a concurrent writer got there first.
        """
        delta = to_decimal(delta, "delta")
        allocation = self.get_for_update(allocation_id)
        if expected_version is not None and allocation.version != expected_version:
            raise ConcurrencyConflictError("FundAllocation", str(allocation.id))
        new_paid = allocation.paid_amount + delta

        if new_paid < ZERO or new_paid > allocation.committed_amount:
            raise InvariantViolationError(
                invariant=AllocationInvariant.PAID_WITHIN_COMMITMENT.value,
                entity_id=allocation.id,
                detail=(
                    f"paid {allocation.paid_amount} + {delta} = {new_paid} "
                    f"outside [0, {allocation.committed_amount}]"
                ),
            )

        self._check_status(
            allocation,
            new_paid,
            AllocationStatus(new_status),
            defaulted=allocation.defaulted,
        )

        previous_paid = allocation.paid_amount
        previous_status = allocation.status
        allocation.paid_amount = new_paid
        allocation.status = AllocationStatus(new_status).value
        allocation.updated_by_id = self.actor_id
        self._flush(allocation)

        logger.debug(
            "allocation_delta_applied",
            extra={
                "allocation_id": str(allocation.id),
                "delta": str(delta),
                "previous_paid_amount": str(previous_paid),
                "new_paid_amount": str(new_paid),
                "previous_status": previous_status,
                "new_status": allocation.status,
            },
        )
        return allocation

    def set_defaulted(
        self,
        allocation_id: UUID,
        defaulted: bool,
        new_status: AllocationStatus,
        reason: str | None = None,
    ) -> FundAllocation:
        """Set or clear the administrative default flag."""
        allocation = self.get_for_update(allocation_id)
        self._check_status(
            allocation,
            allocation.paid_amount,
            AllocationStatus(new_status),
            defaulted=defaulted,
        )
        allocation.defaulted = defaulted
        allocation.defaulted_reason = reason if defaulted else None
        allocation.status = AllocationStatus(new_status).value
        allocation.updated_by_id = self.actor_id
        self._flush(allocation)
        return allocation

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_status(
        self,
        allocation: FundAllocation,
        paid_amount: Decimal,
        new_status: AllocationStatus,
        defaulted: bool,
    ) -> None:
        expected = derive_allocation_status(
            allocation.committed_amount,
            paid_amount,
            has_open_call=self.has_open_call(allocation.id),
            defaulted=defaulted,
            allocation_id=allocation.id,
        )
        if new_status is not expected:
            raise InvariantViolationError(
                invariant=AllocationInvariant.STATUS_DERIVED.value,
                entity_id=allocation.id,
                detail=f"status {new_status.value} does not match derived {expected.value}",
            )

    def _flush(self, allocation: FundAllocation) -> None:
        try:
            self.session.flush()
        except StaleDataError as exc:
            logger.warning(
                "allocation_version_conflict",
                extra={"allocation_id": str(allocation.id)},
            )
            raise ConcurrencyConflictError("FundAllocation", str(allocation.id)) from exc
