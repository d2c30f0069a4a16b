"""
IntegrityService -- allocation invariant verification and repair.

Responsibility:
    ``verify_all_allocations_integrity()`` streams every allocation through
    BatchQueryGateway, re-derives its status, re-sums its Payment ledger and
    reports every mismatch.  ``repair_allocation_statuses()`` restores the
    cached paid_amount from the ledger and re-applies the derivation rule.

Architecture position:
    Kernel > Services.  Verification is read-only; repair is flush-only and
    isolates each allocation in its own SAVEPOINT.

Invariants enforced:
    Checked after the fact: positive_commitment, paid_within_commitment,
    status_derived, ledger_reconciles.

Concurrency:
    Verification takes no locks and may run alongside live traffic.  Repair
    locks each allocation exactly as PaymentProcessor does
    (AllocationStore.get_for_update), so the two never race on one row.

Failure modes:
    - Repair never raises for a single bad allocation: the SAVEPOINT is
      rolled back and the allocation is reported in RepairReport.errors.

Audit relevance:
    The Payment ledger is authoritative.  Every repair is logged as
    ``allocation_repaired`` with before/after amounts and statuses; anything
    that needs a human (e.g. a ledger sum above the commitment) is reported,
    never forced.  Running repair twice changes nothing the second time.
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from capital_config.schema import EngineConfig
from capital_kernel.domain.amounts import ZERO
from capital_kernel.domain.dtos import (
    AllocationIssueReport,
    IntegrityIssue,
    IntegrityReport,
    RepairedAllocation,
    RepairError,
    RepairReport,
)
from capital_kernel.domain.status_rules import derive_allocation_status
from capital_kernel.domain.statuses import AllocationStatus
from capital_kernel.exceptions import CapitalKernelError
from capital_kernel.invariants import AllocationInvariant
from capital_kernel.logging_config import get_logger
from capital_kernel.models.allocation import FundAllocation
from capital_kernel.models.payment import Payment
from capital_kernel.selectors.batch_selector import BatchQueryGateway
from capital_kernel.services.allocation_store import AllocationStore
from capital_kernel.services.base import BaseService

logger = get_logger("services.integrity")


def check_allocation(
    allocation: FundAllocation,
    ledger_total: Decimal,
    has_open_call: bool,
) -> list[IntegrityIssue]:
    """Every invariant the allocation violates, in a stable order."""
    issues: list[IntegrityIssue] = []
    committed = allocation.committed_amount
    paid = allocation.paid_amount

    if committed <= ZERO:
        issues.append(
            IntegrityIssue(
                AllocationInvariant.POSITIVE_COMMITMENT.value,
                f"committed amount {committed} is not positive",
            )
        )

    if paid < ZERO or paid > committed:
        issues.append(
            IntegrityIssue(
                AllocationInvariant.PAID_WITHIN_COMMITMENT.value,
                f"paid amount {paid} outside [0, {committed}]",
            )
        )
    else:
        derived = derive_allocation_status(
            committed, paid, has_open_call, allocation.defaulted
        )
        if allocation.status != derived.value:
            issues.append(
                IntegrityIssue(
                    AllocationInvariant.STATUS_DERIVED.value,
                    f"stored status {allocation.status} but derived {derived.value}",
                )
            )

    if ledger_total != paid:
        issues.append(
            IntegrityIssue(
                AllocationInvariant.LEDGER_RECONCILES.value,
                f"ledger sum {ledger_total} but cached paid amount {paid}",
            )
        )
    return issues


class IntegrityService(BaseService[FundAllocation]):
    """Verifies and repairs allocation invariants."""

    def __init__(
        self,
        session: Session,
        config: EngineConfig | None = None,
        actor_id: UUID | None = None,
    ):
        super().__init__(session, actor_id)
        self.config = config or EngineConfig()
        self.gateway = BatchQueryGateway(session, self.config.batch)
        self.store = AllocationStore(session, self.config.allocations, self.actor_id)

    # ------------------------------------------------------------------
    # Verification
    # ------------------------------------------------------------------

    def verify_allocation(self, allocation_id: UUID) -> AllocationIssueReport:
        allocation = self.store.get(allocation_id)
        totals = self.gateway.fetch_payment_totals([allocation.id])
        open_ids = self.gateway.fetch_open_call_ids([allocation.id])
        issues = check_allocation(allocation, totals[allocation.id], allocation.id in open_ids)
        return AllocationIssueReport(allocation_id=allocation.id, issues=tuple(issues))

    def verify_all_allocations_integrity(self) -> IntegrityReport:
        """Check every allocation; read-only."""
        total = 0
        invalid: list[AllocationIssueReport] = []

        for page in self.gateway.iter_allocation_pages():
            ids = [allocation.id for allocation in page]
            totals = self.gateway.fetch_payment_totals(ids)
            open_ids = self.gateway.fetch_open_call_ids(ids)
            for allocation in page:
                total += 1
                issues = check_allocation(
                    allocation, totals[allocation.id], allocation.id in open_ids
                )
                if issues:
                    report = AllocationIssueReport(allocation.id, tuple(issues))
                    invalid.append(report)
                    logger.warning(
                        "allocation_integrity_violation",
                        extra={
                            "allocation_id": str(allocation.id),
                            "invariants": sorted(report.invariants),
                        },
                    )

        report = IntegrityReport(
            total_allocations=total,
            valid_allocations=total - len(invalid),
            invalid_allocations=tuple(invalid),
        )
        logger.info(
            "integrity_verified",
            extra={
                "total_allocations": report.total_allocations,
                "valid_allocations": report.valid_allocations,
                "invalid_allocations": len(report.invalid_allocations),
                "fetch_count": self.gateway.fetch_count,
            },
        )
        return report

    # ------------------------------------------------------------------
    # Repair
    # ------------------------------------------------------------------

    def repair_allocation_statuses(self) -> RepairReport:
        """
        Restore every inconsistent allocation from the Payment ledger.

        Only allocations reported by verification are touched.  Each one is
        re-read under its row lock, so the repair is based on current data.
        """
        candidates = [
            issue_report.allocation_id
            for issue_report in self.verify_all_allocations_integrity().invalid_allocations
        ]

        repaired: list[RepairedAllocation] = []
        errors: list[RepairError] = []
        for allocation_id in candidates:
            try:
                with self.session.begin_nested():
                    outcome = self._repair_one(allocation_id)
            except (CapitalKernelError, SQLAlchemyError) as exc:
                logger.error(
                    "allocation_repair_failed",
                    extra={"allocation_id": str(allocation_id)},
                    exc_info=True,
                )
                errors.append(RepairError(allocation_id, f"{type(exc).__name__}: {exc}"))
                continue
            if isinstance(outcome, RepairError):
                errors.append(outcome)
            elif outcome is not None:
                repaired.append(outcome)

        logger.info(
            "integrity_repair_completed",
            extra={
                "candidates": len(candidates),
                "repaired_count": len(repaired),
                "error_count": len(errors),
            },
        )
        return RepairReport(repaired=tuple(repaired), errors=tuple(errors))

    def _repair_one(self, allocation_id: UUID) -> RepairedAllocation | RepairError | None:
        allocation = self.store.get_for_update(allocation_id)
        committed = allocation.committed_amount
        ledger_total = self._ledger_total(allocation.id)

        if committed <= ZERO:
            return self._manual_review(allocation, f"committed amount {committed} is not positive")
        if ledger_total < ZERO or ledger_total > committed:
            return self._manual_review(
                allocation,
                f"ledger sum {ledger_total} outside [0, {committed}]; manual review required",
            )

        derived = derive_allocation_status(
            committed,
            ledger_total,
            has_open_call=self.store.has_open_call(allocation.id),
            defaulted=allocation.defaulted,
            allocation_id=allocation.id,
        )
        previous_paid = allocation.paid_amount
        previous_status = allocation.status
        if previous_paid == ledger_total and previous_status == derived.value:
            return None

        self.store.apply_payment_delta(allocation.id, ledger_total - previous_paid, derived)

        outcome = RepairedAllocation(
            allocation_id=allocation.id,
            previous_paid_amount=previous_paid,
            new_paid_amount=ledger_total,
            previous_status=_as_status(previous_status),
            new_status=derived,
        )
        logger.info(
            "allocation_repaired",
            extra={
                "allocation_id": str(allocation.id),
                "previous_paid_amount": str(previous_paid),
                "new_paid_amount": str(ledger_total),
                "previous_status": previous_status,
                "new_status": derived.value,
            },
        )
        return outcome

    def _ledger_total(self, allocation_id: UUID) -> Decimal:
        total = self.session.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.allocation_id == allocation_id
            )
        )
        return Decimal(total)

    def _manual_review(self, allocation: FundAllocation, reason: str) -> RepairError:
        logger.warning(
            "allocation_requires_manual_review",
            extra={"allocation_id": str(allocation.id), "reason": reason},
        )
        return RepairError(allocation.id, reason)


def _as_status(value: str) -> AllocationStatus | str:
    try:
        return AllocationStatus(value)
    except ValueError:
        return value
