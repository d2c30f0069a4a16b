"""Read-only query selectors."""

from capital_kernel.selectors.batch_selector import BatchQueryGateway
from capital_kernel.selectors.calendar_selector import CalendarAggregator

__all__ = ["BatchQueryGateway", "CalendarAggregator"]
