"""
PaymentProcessor -- records money received against an allocation.

Responsibility:
    Validates a payment, appends it to the immutable Payment ledger,
    re-derives the allocation status through the canonical rule and applies
    the new total through AllocationStore -- all inside the caller's
    transaction.  Also owns the administrative default / reinstatement
    actions and the capital-call paid projection.

Architecture position:
    Kernel > Services -- imperative shell, flush-only.

Invariants enforced:
    paid_within_commitment -- a payment never takes paid_amount above
        committed_amount; the excess is rejected, or (when configured)
        capped and queued for review.
    ledger_reconciles -- the Payment row and the paid_amount increment are
        flushed in the same transaction.
    status_derived -- the new status comes from derive_allocation_status
        and AllocationStore re-verifies it.

Failure modes:
    - AllocationNotFoundError / CapitalCallNotFoundError
    - InvalidAmountError (amount <= 0)
    - OverpaymentRejectedError
    - AllocationDefaultedError
    - InvalidCallTransitionError (payment attributed to a closed call)
    - ConcurrencyConflictError (version contention; retry the whole call)

Audit relevance:
    ``payment_processed`` is logged with before/after amounts and statuses;
    ``overpayment_flagged_for_review`` whenever an excess is queued.
"""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from capital_config.schema import EngineConfig, PaymentInstrument
from capital_kernel.domain.amounts import ZERO, payment_percentage, require_positive
from capital_kernel.domain.clock import Clock, SystemClock
from capital_kernel.domain.dates import calendar_date, normalize_to_noon_utc
from capital_kernel.domain.dtos import PaymentResult
from capital_kernel.domain.status_rules import derive_allocation_status
from capital_kernel.domain.statuses import (
    AllocationStatus,
    CapitalCallStatus,
    can_transition_call,
)
from capital_kernel.exceptions import (
    AllocationDefaultedError,
    CapitalCallNotFoundError,
    InvalidCallTransitionError,
    OverpaymentRejectedError,
)
from capital_kernel.logging_config import get_logger
from capital_kernel.models.allocation import FundAllocation
from capital_kernel.models.capital_call import CapitalCall
from capital_kernel.models.payment import OverpaymentReview, Payment
from capital_kernel.services.allocation_store import AllocationStore
from capital_kernel.services.base import BaseService

logger = get_logger("services.payment_processor")


class PaymentProcessor(BaseService[Payment]):
    """
    Records payments and keeps allocation totals and statuses in step.

    Contract:
        Flush-only; the caller commits.  One call to process_payment()
        produces at most one Payment row and exactly one allocation update.

    Guarantees:
        - A rejected payment leaves no trace in the session.
        - With overpayments allowed, the accepted part is recorded as a
          Payment and the excess as an OverpaymentReview; nothing is
          silently truncated.
    """

    def __init__(
        self,
        session: Session,
        config: EngineConfig | None = None,
        clock: Clock | None = None,
        actor_id: UUID | None = None,
    ):
        super().__init__(session, actor_id)
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self.store = AllocationStore(session, self.config.allocations, self.actor_id)

    def process_payment(
        self,
        allocation_id: UUID,
        amount: Decimal,
        description: str = "",
        capital_call_id: UUID | None = None,
        instrument: PaymentInstrument | str | None = None,
        paid_at: date | datetime | None = None,
    ) -> PaymentResult:
        """
        Record ``amount`` against the allocation.

        Args:
            capital_call_id: Attribute the payment to this call; the payment
                may not exceed the call's unpaid amount.
            instrument: Defaults to the configured payment instrument.
            paid_at: Defaults to the clock's current time.  A bare date is
                pinned to ``dates.normalized_hour_utc`` on that calendar day.
        """
        requested = require_positive(amount, "amount")
        allocation = self.store.get_for_update(allocation_id)
        if allocation.defaulted:
            raise AllocationDefaultedError(str(allocation.id))
        previous_status = self.store.stored_status(allocation)

        call = None
        limit = allocation.outstanding_amount
        if capital_call_id is not None:
            call = self._get_call_for_payment(allocation, capital_call_id)
            limit = min(limit, call.unpaid_amount)

        excess = ZERO
        accepted = requested
        if requested > limit:
            if not self.config.payments.allow_overpayments:
                logger.warning(
                    "overpayment_rejected",
                    extra={
                        "allocation_id": str(allocation.id),
                        "amount": str(requested),
                        "remaining_amount": str(limit),
                    },
                )
                raise OverpaymentRejectedError(
                    str(allocation.id), requested, limit, capital_call_id
                )
            accepted = max(limit, ZERO)
            excess = requested - accepted

        previous_paid = allocation.paid_amount
        loaded_version = allocation.version
        now = self._payment_timestamp(paid_at)

        payment = None
        if accepted > ZERO:
            payment = Payment(
                allocation_id=allocation.id,
                capital_call_id=call.id if call is not None else None,
                amount=accepted,
                paid_at=now,
                description=description or "",
                instrument=PaymentInstrument(
                    instrument or self.config.payments.default_payment_instrument
                ).value,
                created_by_id=self.actor_id,
            )
            self.session.add(payment)
            self.session.flush()

            if call is not None:
                self.project_call_payments(call, now)

            new_status = derive_allocation_status(
                allocation.committed_amount,
                previous_paid + accepted,
                has_open_call=self.store.has_open_call(allocation.id),
                allocation_id=allocation.id,
            )
            allocation = self.store.apply_payment_delta(
                allocation.id, accepted, new_status, expected_version=loaded_version
            )

        if excess > ZERO:
            self._flag_for_review(allocation, payment, call, requested, excess, description)

        result = PaymentResult(
            allocation_id=allocation.id,
            payment_id=payment.id if payment is not None else None,
            amount=accepted,
            previous_paid_amount=previous_paid,
            new_paid_amount=allocation.paid_amount,
            previous_status=previous_status,
            new_status=self.store.stored_status(allocation),
            payment_percentage=payment_percentage(
                allocation.committed_amount, allocation.paid_amount
            ),
            remaining_amount=allocation.outstanding_amount,
            capital_call_id=call.id if call is not None else None,
            excess_amount=excess,
            flagged_for_review=excess > ZERO,
        )

        logger.info(
            "payment_processed",
            extra={
                "allocation_id": str(result.allocation_id),
                "payment_id": str(result.payment_id) if result.payment_id else None,
                "capital_call_id": str(result.capital_call_id) if result.capital_call_id else None,
                "amount": str(result.amount),
                "previous_paid_amount": str(result.previous_paid_amount),
                "new_paid_amount": str(result.new_paid_amount),
                "previous_status": result.previous_status.value,
                "new_status": result.new_status.value,
                "excess_amount": str(result.excess_amount),
            },
        )
        return result

    def sync_status(self, allocation_id: UUID) -> FundAllocation:
        """Re-derive status after a capital-call change; amounts unchanged."""
        allocation = self.store.get_for_update(allocation_id)
        derived = derive_allocation_status(
            allocation.committed_amount,
            allocation.paid_amount,
            has_open_call=self.store.has_open_call(allocation.id),
            defaulted=allocation.defaulted,
            allocation_id=allocation.id,
        )
        if derived.value == allocation.status:
            return allocation
        previous = allocation.status
        allocation = self.store.apply_payment_delta(allocation.id, ZERO, derived)
        logger.info(
            "allocation_status_synced",
            extra={
                "allocation_id": str(allocation.id),
                "previous_status": previous,
                "new_status": derived.value,
            },
        )
        return allocation

    def mark_defaulted(self, allocation_id: UUID, reason: str) -> FundAllocation:
        """Administrative default; blocks payments until reinstate()."""
        allocation = self.store.get_for_update(allocation_id)
        if allocation.defaulted:
            return allocation
        previous = allocation.status
        allocation = self.store.set_defaulted(
            allocation.id, True, AllocationStatus.DEFAULTED, reason=reason
        )
        logger.warning(
            "allocation_defaulted",
            extra={
                "allocation_id": str(allocation.id),
                "previous_status": previous,
                "reason": reason,
            },
        )
        return allocation

    def reinstate(self, allocation_id: UUID) -> FundAllocation:
        """Clear the default flag; status re-derives from the amounts."""
        allocation = self.store.get_for_update(allocation_id)
        if not allocation.defaulted:
            return allocation
        derived = derive_allocation_status(
            allocation.committed_amount,
            allocation.paid_amount,
            has_open_call=self.store.has_open_call(allocation.id),
            allocation_id=allocation.id,
        )
        allocation = self.store.set_defaulted(allocation.id, False, derived)
        logger.info(
            "allocation_reinstated",
            extra={"allocation_id": str(allocation.id), "new_status": derived.value},
        )
        return allocation

    def payment_history(self, allocation_id: UUID) -> list[Payment]:
        """The allocation's ledger, oldest first."""
        self.store.get(allocation_id)
        return list(
            self.session.scalars(
                select(Payment)
                .where(Payment.allocation_id == allocation_id)
                .order_by(Payment.paid_at, Payment.created_at, Payment.id)
            ).all()
        )

    def project_call_payments(self, call: CapitalCall, as_of: datetime) -> CapitalCall:
        """
        Recompute a call's paid_amount / paid_date from its attributed payments.

        An open call moves to partially_paid or paid as money arrives.
        """
        total = self.session.scalar(
            select(func.coalesce(func.sum(Payment.amount), 0)).where(
                Payment.capital_call_id == call.id
            )
        )
        total = Decimal(total)
        call.paid_amount = total
        if total > ZERO:
            call.paid_date = calendar_date(as_of, self.config.dates.timezone)
        current = CapitalCallStatus(call.status)
        target = None
        if total >= call.call_amount:
            target = CapitalCallStatus.PAID
        elif total > ZERO:
            target = CapitalCallStatus.PARTIALLY_PAID
        if target is not None and target is not current and can_transition_call(current, target):
            call.status = target.value
        call.updated_by_id = self.actor_id
        self.session.flush()
        return call

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _payment_timestamp(self, paid_at: date | datetime | None) -> datetime:
        if paid_at is None:
            return self.clock.now()
        if isinstance(paid_at, datetime):
            return paid_at
        return normalize_to_noon_utc(
            paid_at, self.config.dates.timezone, self.config.dates.normalized_hour_utc
        )

    def _get_call_for_payment(self, allocation: FundAllocation, capital_call_id: UUID) -> CapitalCall:
        call = self.session.execute(
            select(CapitalCall)
            .where(CapitalCall.id == capital_call_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if call is None or call.allocation_id != allocation.id:
            raise CapitalCallNotFoundError(str(capital_call_id))
        status = CapitalCallStatus(call.status)
        if status in (CapitalCallStatus.PAID, CapitalCallStatus.DEFAULTED):
            raise InvalidCallTransitionError(
                str(call.id), status.value, CapitalCallStatus.PAID.value
            )
        return call

    def _flag_for_review(self, allocation, payment, call, requested, excess, description):
        review = OverpaymentReview(
            allocation_id=allocation.id,
            payment_id=payment.id if payment is not None else None,
            capital_call_id=call.id if call is not None else None,
            requested_amount=requested,
            excess_amount=excess,
            description=description or "",
            resolved=False,
            created_by_id=self.actor_id,
        )
        self.session.add(review)
        self.session.flush()
        logger.warning(
            "overpayment_flagged_for_review",
            extra={
                "allocation_id": str(allocation.id),
                "review_id": str(review.id),
                "requested_amount": str(requested),
                "excess_amount": str(excess),
            },
        )
        return review
