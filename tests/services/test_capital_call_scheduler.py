"""
Tests for CapitalCallScheduler.

The deterministic clock reads 2024-01-01, so calls dated on or before that
day are issued immediately and later calls stay scheduled.
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from capital_kernel.domain.statuses import AmountType, CapitalCallStatus
from capital_kernel.exceptions import (
    AllocationDefaultedError,
    CapitalCallNotFoundError,
    InvalidAmountError,
    InvalidCallTransitionError,
    InvalidDateError,
    OverCallAttemptError,
    ValidationError,
)


class TestSchedule:

    def test_call_dated_today_is_issued(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(allocation.id, Decimal("25000"), notes="Q1 call")

        assert call.status == CapitalCallStatus.CALLED.value
        assert call.call_date == date(2024, 1, 1)
        assert call.due_date == date(2024, 1, 31)
        assert call.call_amount == Decimal("25000")
        assert call.requested_value == Decimal("25000")
        assert call.amount_type == "absolute"
        assert call.notes == "Q1 call"
        assert allocation.status == "called"

    def test_future_call_is_scheduled(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(
            allocation.id, Decimal("25000"), call_date=date(2024, 3, 1)
        )
        assert call.status == CapitalCallStatus.SCHEDULED.value
        assert call.due_date == date(2024, 3, 31)
        assert allocation.status == "committed"

    def test_percentage_normalized_against_commitment(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(
            allocation.id, Decimal("12.5"), AmountType.PERCENTAGE
        )
        assert call.call_amount == Decimal("12500")
        assert call.requested_value == Decimal("12.5")
        assert call.amount_type == "percentage"

    def test_explicit_due_date(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(
            allocation.id, Decimal("100"), due_date=date(2024, 1, 10)
        )
        assert call.due_date == date(2024, 1, 10)

    def test_due_date_before_call_date_rejected(self, capital_call_scheduler, allocation):
        with pytest.raises(InvalidDateError):
            capital_call_scheduler.schedule(
                allocation.id,
                Decimal("100"),
                call_date=date(2024, 2, 1),
                due_date=date(2024, 1, 31),
            )

    def test_over_call_rejected(self, capital_call_scheduler, payment_processor, allocation):
        payment_processor.process_payment(allocation.id, Decimal("60000"))
        with pytest.raises(OverCallAttemptError) as exc_info:
            capital_call_scheduler.schedule(allocation.id, Decimal("40000.01"))
        assert Decimal(exc_info.value.outstanding_amount) == Decimal("40000")
        assert capital_call_scheduler.list_for_allocation(allocation.id) == []

    def test_percentage_against_partly_paid_allocation(
        self, capital_call_scheduler, payment_processor, create_allocation
    ):
        allocation = create_allocation(Decimal("200000"))
        payment_processor.process_payment(allocation.id, Decimal("50000"))

        call = capital_call_scheduler.schedule(allocation.id, Decimal("70"), AmountType.PERCENTAGE)
        assert call.call_amount == Decimal("140000")

        with pytest.raises(OverCallAttemptError):
            capital_call_scheduler.schedule(allocation.id, Decimal("80"), AmountType.PERCENTAGE)

    def test_call_of_full_outstanding_accepted(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(allocation.id, Decimal("100"), AmountType.PERCENTAGE)
        assert call.call_amount == Decimal("100000")

    @pytest.mark.parametrize(
        "amount, amount_type",
        [
            (Decimal("0"), AmountType.ABSOLUTE),
            (Decimal("-1"), AmountType.PERCENTAGE),
            (Decimal("100.01"), AmountType.PERCENTAGE),
        ],
    )
    def test_invalid_amounts(self, capital_call_scheduler, allocation, amount, amount_type):
        with pytest.raises(InvalidAmountError):
            capital_call_scheduler.schedule(allocation.id, amount, amount_type)

    def test_defaulted_allocation_rejected(self, capital_call_scheduler, payment_processor, allocation):
        payment_processor.mark_defaulted(allocation.id, "missed call")
        with pytest.raises(AllocationDefaultedError):
            capital_call_scheduler.schedule(allocation.id, Decimal("100"))

    def test_scheduling_logged(self, capital_call_scheduler, allocation, captured_logs):
        call = capital_call_scheduler.schedule(allocation.id, Decimal("100"))
        entries = [r for r in captured_logs() if r["message"] == "capital_call_scheduled"]
        assert entries[0]["capital_call_id"] == str(call.id)
        assert entries[0]["status"] == "called"


class TestScheduleSeries:

    def test_quarterly_series_sums_to_commitment(self, capital_call_scheduler, allocation):
        calls = capital_call_scheduler.schedule_series(
            allocation.id, date(2024, 1, 1), call_count=4
        )
        assert [c.call_date for c in calls] == [
            date(2024, 1, 1),
            date(2024, 4, 1),
            date(2024, 7, 1),
            date(2024, 10, 1),
        ]
        assert sum(c.call_amount for c in calls) == Decimal("100000")
        assert [c.status for c in calls] == ["called", "scheduled", "scheduled", "scheduled"]

    def test_last_call_takes_remainder(self, capital_call_scheduler, allocation):
        calls = capital_call_scheduler.schedule_series(
            allocation.id, date(2024, 2, 1), call_count=3, frequency="monthly"
        )
        assert [c.requested_value for c in calls] == [
            Decimal("33.33"),
            Decimal("33.33"),
            Decimal("33.34"),
        ]
        assert sum(c.call_amount for c in calls) == Decimal("100000")
        assert calls[2].call_date == date(2024, 4, 1)

    def test_explicit_percentage(self, capital_call_scheduler, allocation):
        calls = capital_call_scheduler.schedule_series(
            allocation.id,
            date(2024, 2, 1),
            call_count=3,
            frequency="annual",
            percentage_per_call=Decimal("40"),
        )
        assert [c.call_amount for c in calls] == [
            Decimal("40000"),
            Decimal("40000"),
            Decimal("20000"),
        ]
        assert calls[1].call_date == date(2025, 2, 1)

    def test_percentages_above_total_rejected(self, capital_call_scheduler, allocation):
        with pytest.raises(InvalidAmountError):
            capital_call_scheduler.schedule_series(
                allocation.id, date(2024, 2, 1), call_count=3, percentage_per_call=Decimal("50")
            )

    def test_call_count_must_be_positive(self, capital_call_scheduler, allocation):
        with pytest.raises(ValidationError):
            capital_call_scheduler.schedule_series(allocation.id, date(2024, 2, 1), call_count=0)


class TestTransitions:

    def test_issue_opens_call(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(
            allocation.id, Decimal("1000"), call_date=date(2024, 2, 1)
        )
        capital_call_scheduler.issue(call.id)
        assert call.status == "called"
        assert allocation.status == "called"

    def test_issue_rechecks_outstanding(
        self, capital_call_scheduler, payment_processor, allocation
    ):
        call = capital_call_scheduler.schedule(
            allocation.id, Decimal("80"), AmountType.PERCENTAGE, call_date=date(2099, 1, 1)
        )
        assert call.status == "scheduled"
        payment_processor.process_payment(allocation.id, Decimal("50000"))

        with pytest.raises(OverCallAttemptError) as exc_info:
            capital_call_scheduler.issue(call.id)

        assert Decimal(exc_info.value.call_amount) == Decimal("80000")
        assert Decimal(exc_info.value.outstanding_amount) == Decimal("50000")
        assert call.status == "scheduled"

    def test_issue_within_outstanding_after_payment(
        self, capital_call_scheduler, payment_processor, allocation
    ):
        call = capital_call_scheduler.schedule(
            allocation.id, Decimal("40000"), call_date=date(2099, 1, 1)
        )
        payment_processor.process_payment(allocation.id, Decimal("50000"))

        capital_call_scheduler.issue(call.id)
        assert call.status == "called"

    def test_issue_on_defaulted_allocation_rejected(
        self, capital_call_scheduler, payment_processor, allocation
    ):
        call = capital_call_scheduler.schedule(
            allocation.id, Decimal("1000"), call_date=date(2099, 1, 1)
        )
        payment_processor.mark_defaulted(allocation.id, "missed call")
        with pytest.raises(AllocationDefaultedError):
            capital_call_scheduler.issue(call.id)

    def test_cannot_reopen_paid_call(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(allocation.id, Decimal("1000"))
        capital_call_scheduler.update_status(call.id, CapitalCallStatus.PAID)
        with pytest.raises(InvalidCallTransitionError) as exc_info:
            capital_call_scheduler.update_status(call.id, "called")
        assert exc_info.value.from_status == "paid"

    def test_defaulted_call_closes_it(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(allocation.id, Decimal("1000"))
        capital_call_scheduler.mark_defaulted(call.id)
        assert call.status == "defaulted"
        assert allocation.status == "committed"

    def test_unknown_call(self, capital_call_scheduler):
        with pytest.raises(CapitalCallNotFoundError):
            capital_call_scheduler.issue(uuid4())


class TestMarkCompleted:

    def test_with_amount_records_payment(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(allocation.id, Decimal("25000"))

        completed, result = capital_call_scheduler.mark_completed(call.id, Decimal("25000"))

        assert completed.status == "paid"
        assert completed.paid_amount == Decimal("25000")
        assert result.capital_call_id == call.id
        assert result.new_paid_amount == Decimal("25000")
        assert allocation.paid_amount == Decimal("25000")
        assert allocation.status == "partially_paid"
        assert len(capital_call_scheduler.payments.payment_history(allocation.id)) == 1

    def test_short_payment_still_closes_call(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(allocation.id, Decimal("25000"))
        completed, result = capital_call_scheduler.mark_completed(call.id, Decimal("20000"))
        assert completed.status == "paid"
        assert completed.paid_amount == Decimal("20000")
        assert allocation.status == "partially_paid"

    def test_without_amount(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(allocation.id, Decimal("25000"))
        completed, result = capital_call_scheduler.mark_completed(call.id)
        assert result is None
        assert completed.status == "paid"
        assert allocation.paid_amount == Decimal("0")
        assert allocation.status == "committed"

    def test_completed_call_cannot_complete_again(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(allocation.id, Decimal("25000"))
        capital_call_scheduler.mark_completed(call.id, Decimal("25000"))
        with pytest.raises(InvalidCallTransitionError):
            capital_call_scheduler.mark_completed(call.id, Decimal("1"))
        assert allocation.paid_amount == Decimal("25000")


class TestReminders:

    def test_reminder_dates(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(allocation.id, Decimal("100"))
        assert capital_call_scheduler.reminder_dates(call) == [
            date(2024, 1, 24),
            date(2024, 1, 28),
            date(2024, 1, 30),
        ]

    def test_overdue_after_grace(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(allocation.id, Decimal("100"))
        assert not capital_call_scheduler.is_overdue(call, date(2024, 2, 7))
        assert capital_call_scheduler.is_overdue(call, date(2024, 2, 8))

    def test_paid_call_never_overdue(self, capital_call_scheduler, allocation):
        call = capital_call_scheduler.schedule(allocation.id, Decimal("100"))
        capital_call_scheduler.mark_completed(call.id, Decimal("100"))
        assert not capital_call_scheduler.is_overdue(call, date(2025, 1, 1))

    def test_today_uses_clock(self, capital_call_scheduler):
        assert capital_call_scheduler.today() == date(2024, 1, 1)
