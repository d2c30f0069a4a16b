"""
capital_services.allocation_engine -- Transactional API facade.

Responsibility:
    The logical API surface of the reconciliation engine.  Every public
    method is one logical operation: it opens a fresh session, wires the
    kernel services for that session, runs the operation, commits, and
    returns detached frozen results.

Architecture position:
    Services -- the only layer that owns transaction boundaries.  Kernel
    services below are flush-only.

Invariants enforced:
    - One operation, one transaction: a capital call's completion and the
      payment it records commit together or not at all.
    - Contention is retried by re-running the whole operation in a new
      session, never by resuming partway.

Failure modes:
    - Any CapitalKernelError raised by the kernel propagates unchanged
      after rollback.
    - ConcurrencyConflictError once ``concurrency.max_retries`` attempts
      have failed on version or lock contention.

Usage:
    engine = AllocationEngine(get_session_factory(), get_active_config())
    result = engine.process_payment(allocation_id, Decimal("40000"), "Wire 1")
"""

from __future__ import annotations

import time
import uuid
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import TypeVar
from uuid import UUID

from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session, sessionmaker

from capital_config.schema import CallFrequency, EngineConfig
from capital_kernel.db.engine import apply_lock_timeout, begin_read_only
from capital_kernel.domain.calendar import CalendarFeed
from capital_kernel.domain.clock import Clock, SystemClock
from capital_kernel.domain.dtos import (
    AllocationIssueReport,
    AllocationView,
    CapitalCallView,
    IntegrityReport,
    PaymentResult,
    RepairReport,
)
from capital_kernel.domain.statuses import AmountType, EventKind
from capital_kernel.exceptions import (
    AllocationNotFoundError,
    AmbiguousAllocationError,
    ConcurrencyConflictError,
    DealNotFoundError,
)
from capital_kernel.logging_config import LogContext, get_logger
from capital_kernel.models.fund import Deal
from capital_kernel.selectors.calendar_selector import CalendarAggregator
from capital_kernel.services.allocation_store import AllocationFilter, AllocationStore
from capital_kernel.services.capital_call_scheduler import CapitalCallScheduler
from capital_kernel.services.integrity_service import IntegrityService
from capital_kernel.services.payment_processor import PaymentProcessor

logger = get_logger("services.allocation_engine")

R = TypeVar("R")


@dataclass(frozen=True)
class CapitalCallCompletion:
    """A completed call plus the payment recorded for it, if any."""

    capital_call: CapitalCallView
    payment: PaymentResult | None


class _UnitOfWork:
    """Kernel services bound to one session and one actor."""

    def __init__(self, session: Session, config: EngineConfig, clock: Clock, actor_id: UUID | None):
        self.session = session
        self.store = AllocationStore(session, config.allocations, actor_id)
        self.payments = PaymentProcessor(session, config, clock, actor_id)
        self.scheduler = CapitalCallScheduler(session, config, clock, actor_id)
        self.integrity = IntegrityService(session, config, actor_id)
        self.calendar = CalendarAggregator(session, config)


class AllocationEngine:
    """Fund allocation / capital-call reconciliation API.

    Contract:
        Receives a session factory, an EngineConfig and an optional Clock.
        Each public method runs in its own transaction with bounded retry
        and returns immutable values (never live ORM rows).
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        config: EngineConfig | None = None,
        clock: Clock | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self.config = config or EngineConfig()
        self.clock = clock or SystemClock()
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Allocations
    # ------------------------------------------------------------------

    def create_allocation(
        self,
        fund_id: UUID,
        deal_id: UUID,
        committed_amount: Decimal,
        security_type: str | None = None,
        allocation_date: date | None = None,
        notes: str | None = None,
        actor_id: UUID | None = None,
    ) -> AllocationView:
        def op(uow: _UnitOfWork) -> AllocationView:
            allocation = uow.store.create(
                fund_id,
                deal_id,
                committed_amount,
                security_type=security_type,
                allocation_date=allocation_date,
                notes=notes,
            )
            return AllocationView.from_model(allocation)

        return self._run_in_transaction("create_allocation", op, actor_id)

    def get_allocation(self, allocation_id: UUID) -> AllocationView:
        return self._run_in_transaction(
            "get_allocation",
            lambda uow: AllocationView.from_model(uow.store.get(allocation_id)),
            read_only=True,
        )

    def default_allocation(
        self, allocation_id: UUID, reason: str, actor_id: UUID | None = None
    ) -> AllocationView:
        return self._run_in_transaction(
            "default_allocation",
            lambda uow: AllocationView.from_model(uow.payments.mark_defaulted(allocation_id, reason)),
            actor_id,
            allocation_id=allocation_id,
        )

    def reinstate_allocation(self, allocation_id: UUID, actor_id: UUID | None = None) -> AllocationView:
        return self._run_in_transaction(
            "reinstate_allocation",
            lambda uow: AllocationView.from_model(uow.payments.reinstate(allocation_id)),
            actor_id,
            allocation_id=allocation_id,
        )

    # ------------------------------------------------------------------
    # Capital calls
    # ------------------------------------------------------------------

    def create_capital_call(
        self,
        deal_id: UUID,
        amount: Decimal,
        amount_type: AmountType | str,
        due_date: date | None = None,
        notes: str | None = None,
        fund_id: UUID | None = None,
        call_date: date | None = None,
        actor_id: UUID | None = None,
    ) -> CapitalCallView:
        """
        Issue a capital call against a deal.

        The deal's allocation is resolved from ``fund_id`` when given;
        otherwise the deal must have exactly one allocation.
        """

        def op(uow: _UnitOfWork) -> CapitalCallView:
            allocation_id = self._resolve_allocation(uow, deal_id, fund_id)
            call = uow.scheduler.schedule(
                allocation_id,
                amount,
                AmountType(amount_type),
                call_date=call_date,
                due_date=due_date,
                notes=notes,
            )
            return CapitalCallView.from_model(call)

        return self._run_in_transaction("create_capital_call", op, actor_id)

    def schedule_capital_call_series(
        self,
        allocation_id: UUID,
        first_call_date: date,
        call_count: int,
        frequency: CallFrequency | str | None = None,
        percentage_per_call: Decimal | None = None,
        notes: str | None = None,
        actor_id: UUID | None = None,
    ) -> list[CapitalCallView]:
        def op(uow: _UnitOfWork) -> list[CapitalCallView]:
            calls = uow.scheduler.schedule_series(
                allocation_id,
                first_call_date,
                call_count,
                frequency=frequency,
                percentage_per_call=percentage_per_call,
                notes=notes,
            )
            return [CapitalCallView.from_model(call) for call in calls]

        return self._run_in_transaction(
            "schedule_capital_call_series", op, actor_id, allocation_id=allocation_id
        )

    def complete_capital_call(
        self,
        call_id: UUID,
        actual_amount: Decimal | None = None,
        actor_id: UUID | None = None,
    ) -> CapitalCallCompletion:
        """Close a call as paid, recording ``actual_amount`` as its payment."""

        def op(uow: _UnitOfWork) -> CapitalCallCompletion:
            call, payment = uow.scheduler.mark_completed(call_id, actual_amount)
            return CapitalCallCompletion(CapitalCallView.from_model(call), payment)

        return self._run_in_transaction("complete_capital_call", op, actor_id)

    def list_capital_calls(self, allocation_id: UUID) -> list[CapitalCallView]:
        return self._run_in_transaction(
            "list_capital_calls",
            lambda uow: [
                CapitalCallView.from_model(call)
                for call in uow.scheduler.list_for_allocation(allocation_id)
            ],
            read_only=True,
        )

    # ------------------------------------------------------------------
    # Payments
    # ------------------------------------------------------------------

    def process_payment(
        self,
        allocation_id: UUID,
        amount: Decimal,
        description: str = "",
        capital_call_id: UUID | None = None,
        actor_id: UUID | None = None,
        paid_at: date | datetime | None = None,
    ) -> PaymentResult:
        return self._run_in_transaction(
            "process_payment",
            lambda uow: uow.payments.process_payment(
                allocation_id,
                amount,
                description=description,
                capital_call_id=capital_call_id,
                paid_at=paid_at,
            ),
            actor_id,
            allocation_id=allocation_id,
        )

    # ------------------------------------------------------------------
    # Integrity
    # ------------------------------------------------------------------

    def verify_integrity(self) -> IntegrityReport:
        return self._run_in_transaction(
            "verify_integrity",
            lambda uow: uow.integrity.verify_all_allocations_integrity(),
            read_only=True,
        )

    def verify_allocation(self, allocation_id: UUID) -> AllocationIssueReport:
        return self._run_in_transaction(
            "verify_allocation",
            lambda uow: uow.integrity.verify_allocation(allocation_id),
            allocation_id=allocation_id,
            read_only=True,
        )

    def repair_integrity(self, actor_id: UUID | None = None) -> RepairReport:
        return self._run_in_transaction(
            "repair_integrity",
            lambda uow: uow.integrity.repair_allocation_statuses(),
            actor_id,
        )

    # ------------------------------------------------------------------
    # Calendar
    # ------------------------------------------------------------------

    def calendar_events(
        self,
        deal_id: UUID | None = None,
        kinds: Iterable[EventKind | str] | None = None,
        statuses: Iterable[str] | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> CalendarFeed:
        return self._run_in_transaction(
            "calendar_events",
            lambda uow: uow.calendar.events(
                deal_id=deal_id, kinds=kinds, statuses=statuses, start=start, end=end
            ),
            read_only=True,
        )

    # ------------------------------------------------------------------
    # Transaction handling
    # ------------------------------------------------------------------

    def _resolve_allocation(
        self, uow: _UnitOfWork, deal_id: UUID, fund_id: UUID | None
    ) -> UUID:
        if uow.session.get(Deal, deal_id) is None:
            raise DealNotFoundError(str(deal_id))
        candidates = uow.store.list(AllocationFilter(deal_id=deal_id, fund_id=fund_id))
        if not candidates:
            raise AllocationNotFoundError(f"deal={deal_id} fund={fund_id}")
        if len(candidates) > 1:
            raise AmbiguousAllocationError(str(deal_id), len(candidates))
        return candidates[0].id

    def _run_in_transaction(
        self,
        operation_name: str,
        fn: Callable[[_UnitOfWork], R],
        actor_id: UUID | None = None,
        allocation_id: UUID | None = None,
        read_only: bool = False,
    ) -> R:
        """
        Run ``fn`` in a fresh session per attempt; commit on success.

        ``read_only`` operations begin as readers and do not take the SQLite
        write lock.
        """
        concurrency = self.config.concurrency
        attempts = max(1, concurrency.max_retries)
        correlation_id = str(uuid.uuid4())

        with LogContext.bind(
            correlation_id=correlation_id,
            operation=operation_name,
            actor_id=str(actor_id) if actor_id else None,
            allocation_id=str(allocation_id) if allocation_id else None,
        ):
            last_error: Exception | None = None
            for attempt in range(1, attempts + 1):
                session = self._session_factory()
                try:
                    if read_only:
                        begin_read_only(session)
                    apply_lock_timeout(session, concurrency.lock_timeout_ms)
                    uow = _UnitOfWork(session, self.config, self.clock, actor_id)
                    result = fn(uow)
                    session.commit()
                    return result
                except (ConcurrencyConflictError, OperationalError) as exc:
                    session.rollback()
                    last_error = exc
                    logger.warning(
                        "operation_conflict_retrying",
                        extra={
                            "attempt": attempt,
                            "max_attempts": attempts,
                            "error": type(exc).__name__,
                        },
                    )
                except Exception:
                    session.rollback()
                    raise
                finally:
                    session.close()

                if attempt < attempts:
                    self._sleep(concurrency.retry_backoff_ms * attempt / 1000.0)

            logger.error(
                "operation_retries_exhausted",
                extra={"attempts": attempts, "error": type(last_error).__name__},
            )
            entity_type, entity_id = "operation", operation_name
            if isinstance(last_error, ConcurrencyConflictError):
                entity_type, entity_id = last_error.entity_type, last_error.entity_id
            raise ConcurrencyConflictError(entity_type, entity_id, attempts) from last_error
