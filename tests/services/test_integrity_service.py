"""
Tests for IntegrityService verification and repair.

Rows are corrupted with bulk UPDATE statements, which bypass the mapper
listeners and the version counter the same way an out-of-band SQL fix
would.
"""

from dataclasses import replace
from datetime import datetime, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import update

from capital_kernel.domain.statuses import AllocationStatus
from capital_kernel.exceptions import AllocationNotFoundError
from capital_kernel.models.allocation import FundAllocation
from capital_kernel.models.payment import Payment
from capital_kernel.services.integrity_service import IntegrityService


def _corrupt(session, allocation, **values):
    session.execute(
        update(FundAllocation)
        .where(FundAllocation.id == allocation.id)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    session.expire_all()


def _raw_payment(session, allocation, amount, actor_id):
    session.add(
        Payment(
            allocation_id=allocation.id,
            amount=amount,
            paid_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            description="imported",
            instrument="wire",
            created_by_id=actor_id,
        )
    )
    session.flush()


class TestVerify:

    def test_consistent_data_is_clean(self, integrity_service, payment_processor, create_allocation):
        a = create_allocation(Decimal("1000"))
        b = create_allocation(Decimal("2000"))
        create_allocation(Decimal("3000"))
        payment_processor.process_payment(a.id, Decimal("1000"))
        payment_processor.process_payment(b.id, Decimal("500"))

        report = integrity_service.verify_all_allocations_integrity()

        assert report.is_clean
        assert report.total_allocations == 3
        assert report.valid_allocations == 3

    def test_no_allocations(self, integrity_service):
        report = integrity_service.verify_all_allocations_integrity()
        assert report.total_allocations == 0
        assert report.is_clean

    def test_wrong_status_reported(self, session, integrity_service, allocation, captured_logs):
        _corrupt(session, allocation, status=AllocationStatus.FUNDED.value)

        report = integrity_service.verify_all_allocations_integrity()

        assert not report.is_clean
        assert report.valid_allocations == 0
        [issue_report] = report.invalid_allocations
        assert issue_report.allocation_id == allocation.id
        assert issue_report.invariants == {"status_derived"}
        assert any(r["message"] == "allocation_integrity_violation" for r in captured_logs())

    def test_cache_drift_reported(self, session, integrity_service, payment_processor, allocation):
        payment_processor.process_payment(allocation.id, Decimal("40000"))
        _corrupt(session, allocation, paid_amount=Decimal("50000"))

        report = integrity_service.verify_allocation(allocation.id)

        assert report.invariants == {"ledger_reconciles"}

    def test_verify_allocation_unknown(self, integrity_service):
        with pytest.raises(AllocationNotFoundError):
            integrity_service.verify_allocation(uuid4())

    def test_open_call_considered(self, session, integrity_service, capital_call_scheduler, allocation):
        capital_call_scheduler.schedule(allocation.id, Decimal("1000"))
        assert integrity_service.verify_allocation(allocation.id).issues == ()

        _corrupt(session, allocation, status=AllocationStatus.COMMITTED.value)
        assert integrity_service.verify_allocation(allocation.id).invariants == {"status_derived"}

    def test_verification_spans_pages(self, session, engine_config, test_actor_id, create_allocation):
        config = replace(engine_config, batch=replace(engine_config.batch, chunk_size=2))
        allocations = [create_allocation(Decimal("100")) for _ in range(5)]
        _corrupt(session, allocations[4], status=AllocationStatus.FUNDED.value)

        service = IntegrityService(session, config, test_actor_id)
        report = service.verify_all_allocations_integrity()

        assert report.total_allocations == 5
        assert len(report.invalid_allocations) == 1


class TestRepair:

    def test_restores_paid_amount_from_ledger(self, session, integrity_service, payment_processor, allocation):
        payment_processor.process_payment(allocation.id, Decimal("40000"))
        _corrupt(
            session,
            allocation,
            paid_amount=Decimal("100000"),
            status=AllocationStatus.FUNDED.value,
        )

        report = integrity_service.repair_allocation_statuses()

        assert report.repaired_count == 1
        assert report.errors == ()
        [repaired] = report.repaired
        assert repaired.previous_paid_amount == Decimal("100000")
        assert repaired.new_paid_amount == Decimal("40000")
        assert repaired.previous_status is AllocationStatus.FUNDED
        assert repaired.new_status is AllocationStatus.PARTIALLY_PAID

        refreshed = session.get(FundAllocation, allocation.id)
        assert refreshed.paid_amount == Decimal("40000")
        assert refreshed.status == "partially_paid"
        assert integrity_service.verify_all_allocations_integrity().is_clean

    def test_repair_is_idempotent(self, session, integrity_service, allocation):
        _corrupt(session, allocation, status=AllocationStatus.CALLED.value)

        first = integrity_service.repair_allocation_statuses()
        second = integrity_service.repair_allocation_statuses()

        assert first.repaired_count == 1
        assert second.repaired_count == 0
        assert second.errors == ()

    def test_unknown_status_value_repaired(self, session, integrity_service, allocation):
        _corrupt(session, allocation, status="pending")

        report = integrity_service.repair_allocation_statuses()

        assert report.repaired[0].previous_status == "pending"
        assert report.repaired[0].new_status is AllocationStatus.COMMITTED

    def test_ledger_above_commitment_needs_manual_review(
        self, session, integrity_service, create_allocation, test_actor_id, captured_logs
    ):
        allocation = create_allocation(Decimal("1000"))
        _raw_payment(session, allocation, Decimal("1500"), test_actor_id)

        report = integrity_service.repair_allocation_statuses()

        assert report.repaired_count == 0
        [error] = report.errors
        assert error.allocation_id == allocation.id
        assert "manual review" in error.reason
        assert session.get(FundAllocation, allocation.id).paid_amount == Decimal("0")
        assert any(r["message"] == "allocation_requires_manual_review" for r in captured_logs())

    def test_bad_allocation_does_not_block_others(
        self, session, integrity_service, create_allocation, test_actor_id
    ):
        bad = create_allocation(Decimal("1000"))
        good = create_allocation(Decimal("1000"))
        _raw_payment(session, bad, Decimal("2000"), test_actor_id)
        _raw_payment(session, good, Decimal("250"), test_actor_id)

        report = integrity_service.repair_allocation_statuses()

        assert [r.allocation_id for r in report.repaired] == [good.id]
        assert [e.allocation_id for e in report.errors] == [bad.id]
        assert session.get(FundAllocation, good.id).status == "partially_paid"

    def test_repair_logged(self, session, integrity_service, allocation, captured_logs):
        _corrupt(session, allocation, status=AllocationStatus.FUNDED.value)
        integrity_service.repair_allocation_statuses()
        messages = [r["message"] for r in captured_logs()]
        assert "allocation_repaired" in messages
        assert "integrity_repair_completed" in messages
