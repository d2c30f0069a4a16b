"""
Batch Query Gateway.

Resolves many allocation / deal / fund ids (and the payment and capital-call
aggregates the verifier needs) in bounded-size chunks instead of one query
per id.

Key design decisions:
- Chunk size comes from BatchConfig; a request for N ids issues
  ceil(N / chunk_size) queries, plus one single-id query per id the chunk
  response did not contain.
- A chunk query that raises is rolled back to a SAVEPOINT and degrades to
  single-id fetches for that chunk; the caller still gets every row that
  exists.
- Ids that are still absent after the fallback are reported as missing.
  There are no placeholder rows and no "Unknown" defaults.
- ``fetch_count`` counts every round-trip issued, so callers and tests can
  observe the bound.
- Read-only and stateless apart from the counter: safe to retry.
"""

from __future__ import annotations

from collections import defaultdict
from decimal import Decimal
from typing import Iterable, Iterator, Sequence, TypeVar
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from capital_config.schema import BatchConfig
from capital_kernel.db.base import Base
from capital_kernel.domain.dtos import BatchFetchResult, FetchResult
from capital_kernel.domain.statuses import OPEN_CALL_STATUSES
from capital_kernel.logging_config import get_logger
from capital_kernel.models.allocation import FundAllocation
from capital_kernel.models.capital_call import CapitalCall
from capital_kernel.models.fund import Deal, Fund
from capital_kernel.models.payment import Payment
from capital_kernel.selectors.base import BaseSelector

logger = get_logger("selectors.batch")

M = TypeVar("M", bound=Base)

_ZERO = Decimal("0")


def _unique(ids: Iterable[UUID | None]) -> list[UUID]:
    """Deduplicate preserving first-seen order; drop None."""
    seen: dict[UUID, None] = {}
    for value in ids:
        if value is not None:
            seen.setdefault(value, None)
    return list(seen)


def chunked(items: Sequence[UUID], size: int) -> Iterator[Sequence[UUID]]:
    for start in range(0, len(items), size):
        yield items[start : start + size]


class BatchQueryGateway(BaseSelector[FundAllocation]):
    """
    Chunked multi-entity fetcher.

    Contract:
        Returned ORM rows belong to the caller's session and are treated as
        read-only by every caller.

    Guarantees:
        - batch_fetch over N ids of one entity type issues at most
          ceil(N / chunk_size) chunk queries plus one query per id absent
          from its chunk's response.
        - Every requested id ends up either in the result map or in the
          matching ``missing_*`` set.
    """

    def __init__(self, session: Session, config: BatchConfig | None = None):
        super().__init__(session)
        self.config = config or BatchConfig()
        self.fetch_count = 0

    @property
    def chunk_size(self) -> int:
        return self.config.chunk_size if self.config.enable_batch_queries else 1

    def reset_fetch_count(self) -> None:
        self.fetch_count = 0

    # ------------------------------------------------------------------
    # Entity fetches
    # ------------------------------------------------------------------

    def batch_fetch(
        self,
        allocation_ids: Iterable[UUID] = (),
        deal_ids: Iterable[UUID] = (),
        fund_ids: Iterable[UUID] = (),
        include_related: bool = False,
    ) -> BatchFetchResult:
        """
        Fetch allocations, deals and funds by id.

        Args:
            include_related: Also resolve the deal and fund of every fetched
                allocation.
        """
        start_count = self.fetch_count
        allocations = self.fetch_by_ids(FundAllocation, allocation_ids)

        deal_list = list(deal_ids)
        fund_list = list(fund_ids)
        if include_related:
            for allocation in allocations.found.values():
                deal_list.append(allocation.deal_id)
                fund_list.append(allocation.fund_id)

        deals = self.fetch_by_ids(Deal, deal_list)
        funds = self.fetch_by_ids(Fund, fund_list)

        result = BatchFetchResult(
            allocations=allocations.found,
            deals=deals.found,
            funds=funds.found,
            missing_allocations=allocations.missing,
            missing_deals=deals.missing,
            missing_funds=funds.missing,
            fetch_count=self.fetch_count - start_count,
        )
        if not result.is_complete:
            logger.warning(
                "batch_fetch_incomplete",
                extra={
                    "missing_allocations": len(result.missing_allocations),
                    "missing_deals": len(result.missing_deals),
                    "missing_funds": len(result.missing_funds),
                },
            )
        return result

    def fetch_by_ids(self, model: type[M], ids: Iterable[UUID]) -> FetchResult[M]:
        """Chunked primary-key fetch with single-id fallback."""
        wanted = _unique(ids)
        found: dict[UUID, M] = {}

        if self.config.enable_batch_queries:
            for chunk in chunked(wanted, self.config.chunk_size):
                try:
                    with self.session.begin_nested():
                        self.fetch_count += 1
                        rows = self.session.scalars(
                            select(model).where(model.id.in_(chunk))
                        ).all()
                except SQLAlchemyError as exc:
                    logger.warning(
                        "batch_chunk_failed",
                        extra={
                            "entity_type": model.__name__,
                            "chunk_size": len(chunk),
                            "error": str(exc),
                        },
                    )
                    continue
                for row in rows:
                    found[row.id] = row

        for entity_id in wanted:
            if entity_id in found:
                continue
            row = self._fetch_one(model, entity_id)
            if row is not None:
                found[entity_id] = row

        missing = frozenset(entity_id for entity_id in wanted if entity_id not in found)
        return FetchResult(found=found, missing=missing)

    def _fetch_one(self, model: type[M], entity_id: UUID) -> M | None:
        self.fetch_count += 1
        return self.session.scalars(
            select(model).where(model.id == entity_id)
        ).one_or_none()

    def iter_allocation_pages(
        self, page_size: int | None = None
    ) -> Iterator[list[FundAllocation]]:
        """Stream every allocation in pages, keyset-paginated by id."""
        size = page_size or self.config.chunk_size
        last_id: UUID | None = None
        while True:
            stmt = select(FundAllocation).order_by(FundAllocation.id).limit(size)
            if last_id is not None:
                stmt = stmt.where(FundAllocation.id > last_id)
            self.fetch_count += 1
            page = list(self.session.scalars(stmt).all())
            if not page:
                return
            yield page
            if len(page) < size:
                return
            last_id = page[-1].id

    def iter_allocations(self, page_size: int | None = None) -> Iterator[FundAllocation]:
        for page in self.iter_allocation_pages(page_size):
            yield from page

    # ------------------------------------------------------------------
    # Aggregates
    # ------------------------------------------------------------------

    def fetch_payment_totals(self, allocation_ids: Iterable[UUID]) -> dict[UUID, Decimal]:
        """Ledger sum per allocation; allocations without payments map to 0."""
        wanted = _unique(allocation_ids)
        totals = {allocation_id: _ZERO for allocation_id in wanted}
        for chunk in chunked(wanted, self.chunk_size):
            self.fetch_count += 1
            rows = self.session.execute(
                select(Payment.allocation_id, func.sum(Payment.amount))
                .where(Payment.allocation_id.in_(chunk))
                .group_by(Payment.allocation_id)
            ).all()
            for allocation_id, total in rows:
                totals[allocation_id] = Decimal(total) if total is not None else _ZERO
        return totals

    def fetch_open_call_ids(self, allocation_ids: Iterable[UUID]) -> set[UUID]:
        """Ids of allocations that have at least one open capital call."""
        wanted = _unique(allocation_ids)
        open_statuses = [status.value for status in OPEN_CALL_STATUSES]
        result: set[UUID] = set()
        for chunk in chunked(wanted, self.chunk_size):
            self.fetch_count += 1
            result.update(
                self.session.scalars(
                    select(CapitalCall.allocation_id)
                    .where(CapitalCall.allocation_id.in_(chunk))
                    .where(CapitalCall.status.in_(open_statuses))
                    .distinct()
                ).all()
            )
        return result

    def fetch_capital_calls(self, allocation_ids: Iterable[UUID]) -> dict[UUID, list[CapitalCall]]:
        """Capital calls per allocation, ordered by due date."""
        wanted = _unique(allocation_ids)
        calls: dict[UUID, list[CapitalCall]] = defaultdict(list)
        for chunk in chunked(wanted, self.chunk_size):
            self.fetch_count += 1
            rows = self.session.scalars(
                select(CapitalCall)
                .where(CapitalCall.allocation_id.in_(chunk))
                .order_by(CapitalCall.due_date, CapitalCall.id)
            ).all()
            for call in rows:
                calls[call.allocation_id].append(call)
        return dict(calls)
