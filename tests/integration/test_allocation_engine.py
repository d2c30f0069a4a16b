"""
End-to-end tests through the AllocationEngine facade.

Each facade call runs in its own session and transaction.  Seed data is
committed through the ``session`` fixture first; after that the test only
talks to the facade, so the two never hold the database at the same time
unless a test opens a reader on purpose.
"""

from dataclasses import replace
from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select, update

from capital_kernel.db.engine import begin_read_only
from capital_kernel.domain.statuses import AllocationStatus, CapitalCallStatus, EventKind
from capital_kernel.exceptions import (
    AllocationDefaultedError,
    AllocationNotFoundError,
    AmbiguousAllocationError,
    ConcurrencyConflictError,
    DealNotFoundError,
    OverpaymentRejectedError,
)
from capital_kernel.models.allocation import FundAllocation
from capital_kernel.services.payment_processor import PaymentProcessor
from capital_services import AllocationEngine


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def engine(session_factory, engine_config, deterministic_clock, sleeps):
    return AllocationEngine(session_factory, engine_config, deterministic_clock, sleep=sleeps.append)


@pytest.fixture
def seeded(session, create_fund, create_deal):
    """A fund and an investable deal, committed."""
    fund = create_fund("Fund I")
    deal = create_deal("Acme Corp")
    session.commit()
    return fund.id, deal.id


class TestLifecycle:

    def test_commit_call_pay_fund(self, engine, seeded, test_actor_id):
        fund_id, deal_id = seeded

        allocation = engine.create_allocation(
            fund_id, deal_id, Decimal("100000"), security_type="equity", actor_id=test_actor_id
        )
        assert allocation.status is AllocationStatus.COMMITTED
        assert allocation.outstanding_amount == Decimal("100000")

        call = engine.create_capital_call(deal_id, Decimal("25"), "percentage")
        assert call.call_amount == Decimal("25000")
        assert call.status is CapitalCallStatus.CALLED
        assert call.due_date == date(2024, 1, 31)
        assert engine.get_allocation(allocation.id).status is AllocationStatus.CALLED

        completion = engine.complete_capital_call(call.id, Decimal("25000"))
        assert completion.capital_call.status is CapitalCallStatus.PAID
        assert completion.payment.new_status is AllocationStatus.PARTIALLY_PAID

        final = engine.process_payment(allocation.id, Decimal("75000"), "Wire 2")
        assert final.new_status is AllocationStatus.FUNDED
        assert final.remaining_amount == Decimal("0")

        report = engine.verify_integrity()
        assert report.is_clean
        assert report.total_allocations == 1

    def test_calendar_through_facade(self, engine, seeded):
        fund_id, deal_id = seeded
        engine.create_allocation(fund_id, deal_id, Decimal("100000"))
        engine.create_capital_call(deal_id, Decimal("10000"), "absolute", due_date=date(2024, 2, 1))

        feed = engine.calendar_events(deal_id=deal_id, kinds=[EventKind.CAPITAL_CALL])

        assert [e.title for e in feed.events] == ["Capital Call: Acme Corp"]
        assert [m.label for m in feed.months] == ["February 2024"]

    def test_series_through_facade(self, engine, seeded):
        fund_id, deal_id = seeded
        allocation = engine.create_allocation(fund_id, deal_id, Decimal("90000"))

        calls = engine.schedule_capital_call_series(
            allocation.id, date(2024, 3, 1), call_count=3, frequency="quarterly"
        )

        assert [c.call_date for c in calls] == [date(2024, 3, 1), date(2024, 6, 1), date(2024, 9, 1)]
        assert engine.list_capital_calls(allocation.id) == calls

    def test_default_and_reinstate(self, engine, seeded):
        fund_id, deal_id = seeded
        allocation = engine.create_allocation(fund_id, deal_id, Decimal("1000"))

        assert engine.default_allocation(allocation.id, "missed call").status is AllocationStatus.DEFAULTED
        with pytest.raises(AllocationDefaultedError):
            engine.process_payment(allocation.id, Decimal("100"))

        assert engine.reinstate_allocation(allocation.id).status is AllocationStatus.COMMITTED
        assert engine.process_payment(allocation.id, Decimal("100")).amount == Decimal("100")


class TestAtomicity:

    def test_failed_completion_changes_nothing(self, engine, seeded):
        fund_id, deal_id = seeded
        allocation = engine.create_allocation(fund_id, deal_id, Decimal("100000"))
        call = engine.create_capital_call(deal_id, Decimal("25000"), "absolute")

        with pytest.raises(OverpaymentRejectedError):
            engine.complete_capital_call(call.id, Decimal("30000"))

        [unchanged] = engine.list_capital_calls(allocation.id)
        assert unchanged.status is CapitalCallStatus.CALLED
        assert unchanged.paid_amount == Decimal("0")
        assert engine.get_allocation(allocation.id).paid_amount == Decimal("0")

    def test_business_errors_are_not_retried(self, engine, seeded, captured_logs):
        fund_id, deal_id = seeded
        allocation = engine.create_allocation(fund_id, deal_id, Decimal("100"))

        with pytest.raises(OverpaymentRejectedError):
            engine.process_payment(allocation.id, Decimal("101"))

        assert not any(r["message"] == "operation_conflict_retrying" for r in captured_logs())


class TestAllocationResolution:

    def test_ambiguous_deal_requires_fund(self, engine, session, create_fund, create_deal):
        deal = create_deal("Shared Deal")
        fund_a = create_fund("Fund A")
        fund_b = create_fund("Fund B")
        deal_id, fund_a_id, fund_b_id = deal.id, fund_a.id, fund_b.id
        session.commit()

        engine.create_allocation(fund_a_id, deal_id, Decimal("1000"))
        allocation_b = engine.create_allocation(fund_b_id, deal_id, Decimal("2000"))

        with pytest.raises(AmbiguousAllocationError) as exc_info:
            engine.create_capital_call(deal_id, Decimal("10"), "percentage")
        assert exc_info.value.allocation_count == 2

        call = engine.create_capital_call(deal_id, Decimal("10"), "percentage", fund_id=fund_b_id)
        assert call.allocation_id == allocation_b.id
        assert call.call_amount == Decimal("200")

    def test_unknown_deal(self, engine, seeded):
        with pytest.raises(DealNotFoundError):
            engine.create_capital_call(uuid4(), Decimal("10"), "absolute")

    def test_deal_without_allocation(self, engine, seeded):
        _, deal_id = seeded
        with pytest.raises(AllocationNotFoundError):
            engine.create_capital_call(deal_id, Decimal("10"), "absolute")


class TestRetry:

    def test_conflict_retried_then_succeeds(self, engine, seeded, monkeypatch, sleeps, captured_logs):
        fund_id, deal_id = seeded
        allocation = engine.create_allocation(fund_id, deal_id, Decimal("1000"))
        original = PaymentProcessor.process_payment
        failures = {"remaining": 2}

        def contended(self, *args, **kwargs):
            if failures["remaining"]:
                failures["remaining"] -= 1
                raise ConcurrencyConflictError("FundAllocation", str(allocation.id))
            return original(self, *args, **kwargs)

        monkeypatch.setattr(PaymentProcessor, "process_payment", contended)

        result = engine.process_payment(allocation.id, Decimal("400"))

        assert result.new_paid_amount == Decimal("400")
        assert len(sleeps) == 2
        retries = [r for r in captured_logs() if r["message"] == "operation_conflict_retrying"]
        assert [r["attempt"] for r in retries] == [1, 2]
        assert retries[0]["operation"] == "process_payment"
        assert retries[0]["correlation_id"] == retries[1]["correlation_id"]

    def test_retries_exhausted(self, engine, seeded, monkeypatch, sleeps, captured_logs):
        fund_id, deal_id = seeded
        allocation = engine.create_allocation(fund_id, deal_id, Decimal("1000"))

        def always_contended(self, *args, **kwargs):
            raise ConcurrencyConflictError("FundAllocation", str(allocation.id))

        monkeypatch.setattr(PaymentProcessor, "process_payment", always_contended)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            engine.process_payment(allocation.id, Decimal("400"))

        assert exc_info.value.attempts == 3
        assert exc_info.value.entity_id == str(allocation.id)
        assert len(sleeps) == 2
        assert any(r["message"] == "operation_retries_exhausted" for r in captured_logs())
        assert engine.get_allocation(allocation.id).paid_amount == Decimal("0")

    def test_single_attempt_when_retries_disabled(
        self, session_factory, engine_config, deterministic_clock, seeded, monkeypatch
    ):
        config = replace(engine_config, concurrency=replace(engine_config.concurrency, max_retries=0))
        engine = AllocationEngine(session_factory, config, deterministic_clock, sleep=lambda s: None)
        fund_id, deal_id = seeded
        allocation = engine.create_allocation(fund_id, deal_id, Decimal("1000"))
        calls = []

        def contended(self, *args, **kwargs):
            calls.append(1)
            raise ConcurrencyConflictError("FundAllocation", str(allocation.id))

        monkeypatch.setattr(PaymentProcessor, "process_payment", contended)

        with pytest.raises(ConcurrencyConflictError) as exc_info:
            engine.process_payment(allocation.id, Decimal("1"))
        assert exc_info.value.attempts == 1
        assert len(calls) == 1


def test_repair_through_facade(engine, seeded, session):
    fund_id, deal_id = seeded
    allocation = engine.create_allocation(fund_id, deal_id, Decimal("1000"))
    engine.process_payment(allocation.id, Decimal("400"))

    session.execute(
        update(FundAllocation)
        .where(FundAllocation.id == allocation.id)
        .values(status=AllocationStatus.FUNDED.value)
        .execution_options(synchronize_session=False)
    )
    session.commit()

    assert engine.verify_allocation(allocation.id).invariants == {"status_derived"}
    report = engine.repair_integrity()
    assert report.repaired_count == 1
    assert engine.get_allocation(allocation.id).status is AllocationStatus.PARTIALLY_PAID
    assert engine.verify_integrity().is_clean


def test_open_reader_does_not_block_payment(engine, seeded, session_factory):
    fund_id, deal_id = seeded
    allocation = engine.create_allocation(fund_id, deal_id, Decimal("100000"))

    reader = session_factory()
    try:
        begin_read_only(reader)
        assert reader.scalars(select(FundAllocation)).all()

        result = engine.process_payment(allocation.id, Decimal("1000"))
        assert engine.verify_integrity().is_clean
    finally:
        reader.close()

    assert result.new_paid_amount == Decimal("1000")
    assert engine.get_allocation(allocation.id).paid_amount == Decimal("1000")
