"""Write services (flush-only; callers own the transaction)."""

from capital_kernel.services.allocation_store import AllocationFilter, AllocationStore
from capital_kernel.services.capital_call_scheduler import CapitalCallScheduler
from capital_kernel.services.integrity_service import IntegrityService
from capital_kernel.services.payment_processor import PaymentProcessor

__all__ = [
    "AllocationFilter",
    "AllocationStore",
    "CapitalCallScheduler",
    "IntegrityService",
    "PaymentProcessor",
]
