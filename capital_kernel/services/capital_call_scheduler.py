"""
CapitalCallScheduler -- creates and advances capital calls.

Responsibility:
    Schedules single calls and call series against an allocation, computes
    due dates from the configured lead time, moves calls along their status
    transitions, and re-derives the owning allocation's status in the same
    transaction whenever a call opens or closes.

Architecture position:
    Kernel > Services -- imperative shell, flush-only.

Invariants enforced:
    call_within_outstanding -- a call, normalized to currency, may not
        exceed the allocation's outstanding amount at issuance time
        (OverCallAttemptError).  The allocation row is locked for the check,
        which runs when a call is created and again when a scheduled call
        is issued.
    Call transitions follow VALID_CALL_TRANSITIONS; paid and defaulted are
        terminal.
    Completing a call with an amount goes through PaymentProcessor in the
        same transaction; the call's paid fields are a projection of the
        attributed payments, never a second record of them.

Failure modes:
    - AllocationNotFoundError / CapitalCallNotFoundError
    - InvalidAmountError, InvalidDateError
    - OverCallAttemptError
    - AllocationDefaultedError
    - InvalidCallTransitionError
"""

from __future__ import annotations

from datetime import date
from decimal import ROUND_DOWN, Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from capital_config.schema import CallFrequency, EngineConfig
from capital_kernel.domain import dates
from capital_kernel.domain.amounts import HUNDRED, ZERO, normalize_call_amount, require_positive
from capital_kernel.domain.clock import Clock, SystemClock
from capital_kernel.domain.dtos import PaymentResult
from capital_kernel.domain.statuses import (
    OPEN_CALL_STATUSES,
    AmountType,
    CapitalCallStatus,
    can_transition_call,
)
from capital_kernel.exceptions import (
    AllocationDefaultedError,
    CapitalCallNotFoundError,
    InvalidAmountError,
    InvalidCallTransitionError,
    InvalidDateError,
    OverCallAttemptError,
    ValidationError,
)
from capital_kernel.logging_config import get_logger
from capital_kernel.models.allocation import FundAllocation
from capital_kernel.models.capital_call import CapitalCall
from capital_kernel.services.allocation_store import AllocationStore
from capital_kernel.services.base import BaseService
from capital_kernel.services.payment_processor import PaymentProcessor

logger = get_logger("services.capital_call_scheduler")


class CapitalCallScheduler(BaseService[CapitalCall]):
    """
    Capital-call lifecycle.

    Contract:
        Flush-only.  Every method that changes a call's status leaves the
        owning allocation's status re-derived before returning.
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
        self.payments = PaymentProcessor(session, self.config, self.clock, self.actor_id)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, capital_call_id: UUID) -> CapitalCall:
        call = self.session.get(CapitalCall, capital_call_id)
        if call is None:
            raise CapitalCallNotFoundError(str(capital_call_id))
        return call

    def list_for_allocation(self, allocation_id: UUID) -> list[CapitalCall]:
        return list(
            self.session.scalars(
                select(CapitalCall)
                .where(CapitalCall.allocation_id == allocation_id)
                .order_by(CapitalCall.call_date, CapitalCall.created_at, CapitalCall.id)
            ).all()
        )

    def today(self) -> date:
        return self.clock.today(self.config.dates.timezone)

    def reminder_dates(self, call: CapitalCall) -> list[date]:
        """Configured reminder dates before the due date, not before the call date."""
        return dates.reminder_dates(
            call.due_date,
            self.config.timing.reminder_days_before,
            not_before=call.call_date,
        )

    def is_overdue(self, call: CapitalCall, as_of: date | None = None) -> bool:
        """An unpaid, non-defaulted call past its due date plus grace days."""
        status = CapitalCallStatus(call.status)
        if status not in OPEN_CALL_STATUSES and status is not CapitalCallStatus.SCHEDULED:
            return False
        return dates.is_overdue(
            call.due_date,
            as_of or self.today(),
            self.config.timing.payment_grace_days,
        )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def schedule(
        self,
        allocation_id: UUID,
        amount: Decimal,
        amount_type: AmountType = AmountType.ABSOLUTE,
        call_date: date | None = None,
        due_date: date | None = None,
        notes: str | None = None,
    ) -> CapitalCall:
        """
        Create a capital call.

        ``due_date`` defaults to ``call_date + timing.default_lead_days``.
        A call dated today or earlier is issued immediately (``called``);
        a future call is ``scheduled`` until issue().
        """
        amount_type = AmountType(amount_type)
        allocation = self.store.get_for_update(allocation_id)
        if allocation.defaulted:
            raise AllocationDefaultedError(str(allocation.id))

        call_amount = normalize_call_amount(
            amount,
            amount_type,
            allocation.committed_amount,
            self.config.payments.currency_precision,
        )
        self._check_within_outstanding(allocation, call_amount)

        today = self.today()
        call_date = call_date or today
        if due_date is None:
            due_date = dates.compute_due_date(call_date, self.config.timing.default_lead_days)
        elif due_date < call_date:
            raise InvalidDateError(
                "due_date", f"{due_date} precedes call date {call_date}"
            )

        status = CapitalCallStatus.CALLED if call_date <= today else CapitalCallStatus.SCHEDULED
        call = CapitalCall(
            allocation_id=allocation.id,
            call_amount=call_amount,
            amount_type=amount_type.value,
            requested_value=require_positive(amount, "call_amount"),
            call_date=call_date,
            due_date=due_date,
            status=status.value,
            paid_amount=ZERO,
            notes=notes,
            created_by_id=self.actor_id,
        )
        self.session.add(call)
        self.session.flush()
        self.payments.sync_status(allocation.id)

        logger.info(
            "capital_call_scheduled",
            extra={
                "capital_call_id": str(call.id),
                "allocation_id": str(allocation.id),
                "call_amount": str(call_amount),
                "amount_type": amount_type.value,
                "call_date": call_date,
                "due_date": due_date,
                "status": status.value,
            },
        )
        return call

    def schedule_series(
        self,
        allocation_id: UUID,
        first_call_date: date,
        call_count: int,
        frequency: CallFrequency | str | None = None,
        percentage_per_call: Decimal | None = None,
        notes: str | None = None,
    ) -> list[CapitalCall]:
        """
        Schedule ``call_count`` percentage calls spaced by ``frequency``.

        Every call but the last requests ``percentage_per_call`` (default:
        100 / call_count, rounded down to 2 dp); the last call requests the
        remainder, so the series sums to 100% of the commitment.
        """
        if call_count < 1:
            raise ValidationError("call_count", f"must be >= 1, got {call_count}")
        frequency = CallFrequency(frequency or self.config.timing.default_call_frequency)

        if percentage_per_call is None:
            per_call = (HUNDRED / call_count).quantize(Decimal("0.01"), rounding=ROUND_DOWN)
        else:
            per_call = require_positive(percentage_per_call, "percentage_per_call")
        last = HUNDRED - per_call * (call_count - 1)
        if last <= ZERO:
            raise InvalidAmountError(
                "percentage_per_call",
                per_call,
                f"{call_count} calls would exceed 100%",
            )

        calls = []
        for index in range(call_count):
            percentage = last if index == call_count - 1 else per_call
            calls.append(
                self.schedule(
                    allocation_id,
                    percentage,
                    AmountType.PERCENTAGE,
                    call_date=dates.add_months(first_call_date, index * frequency.months),
                    notes=notes,
                )
            )
        logger.info(
            "capital_call_series_scheduled",
            extra={
                "allocation_id": str(allocation_id),
                "call_count": call_count,
                "frequency": frequency.value,
                "first_call_date": first_call_date,
            },
        )
        return calls

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def issue(self, capital_call_id: UUID) -> CapitalCall:
        """scheduled -> called."""
        return self.update_status(capital_call_id, CapitalCallStatus.CALLED)

    def mark_defaulted(self, capital_call_id: UUID) -> CapitalCall:
        return self.update_status(capital_call_id, CapitalCallStatus.DEFAULTED)

    def update_status(
        self, capital_call_id: UUID, new_status: CapitalCallStatus | str
    ) -> CapitalCall:
        """Move a call along VALID_CALL_TRANSITIONS and re-derive its allocation."""
        new_status = CapitalCallStatus(new_status)
        if new_status is CapitalCallStatus.CALLED:
            # Allocation row first, matching the lock order of payments.
            allocation = self.store.get_for_update(self.get(capital_call_id).allocation_id)
        call = self._get_for_update(capital_call_id)
        current = CapitalCallStatus(call.status)
        if not can_transition_call(current, new_status):
            raise InvalidCallTransitionError(str(call.id), current.value, new_status.value)
        if new_status is CapitalCallStatus.CALLED:
            if allocation.defaulted:
                raise AllocationDefaultedError(str(allocation.id))
            self._check_within_outstanding(allocation, call.unpaid_amount)

        call.status = new_status.value
        call.updated_by_id = self.actor_id
        self.session.flush()
        self.payments.sync_status(call.allocation_id)

        logger.info(
            "capital_call_status_changed",
            extra={
                "capital_call_id": str(call.id),
                "allocation_id": str(call.allocation_id),
                "previous_status": current.value,
                "new_status": new_status.value,
            },
        )
        return call

    def mark_completed(
        self,
        capital_call_id: UUID,
        actual_amount: Decimal | None = None,
        description: str | None = None,
    ) -> tuple[CapitalCall, PaymentResult | None]:
        """
        Complete a call.

        With ``actual_amount``, the money is recorded through
        PaymentProcessor against the call (one Payment, one allocation
        update) before the call is closed as ``paid``.
        """
        call = self._get_for_update(capital_call_id)
        current = CapitalCallStatus(call.status)
        if not can_transition_call(current, CapitalCallStatus.PAID):
            raise InvalidCallTransitionError(
                str(call.id), current.value, CapitalCallStatus.PAID.value
            )

        result = None
        if actual_amount is not None:
            result = self.payments.process_payment(
                call.allocation_id,
                actual_amount,
                description=description or f"Capital call {call.id}",
                capital_call_id=call.id,
            )

        if CapitalCallStatus(call.status) is not CapitalCallStatus.PAID:
            self.update_status(call.id, CapitalCallStatus.PAID)
        else:
            self.payments.sync_status(call.allocation_id)

        logger.info(
            "capital_call_completed",
            extra={
                "capital_call_id": str(call.id),
                "allocation_id": str(call.allocation_id),
                "paid_amount": str(call.paid_amount),
                "payment_id": str(result.payment_id) if result and result.payment_id else None,
            },
        )
        return call, result

    def _check_within_outstanding(self, allocation: FundAllocation, call_amount: Decimal) -> None:
        outstanding = allocation.outstanding_amount
        if call_amount > outstanding:
            logger.warning(
                "over_call_rejected",
                extra={
                    "allocation_id": str(allocation.id),
                    "call_amount": str(call_amount),
                    "outstanding_amount": str(outstanding),
                },
            )
            raise OverCallAttemptError(str(allocation.id), call_amount, outstanding)

    def _get_for_update(self, capital_call_id: UUID) -> CapitalCall:
        call = self.session.execute(
            select(CapitalCall)
            .where(CapitalCall.id == capital_call_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if call is None:
            raise CapitalCallNotFoundError(str(capital_call_id))
        return call
