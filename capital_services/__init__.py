"""
capital_services -- Transactional API facade over the capital kernel.

Dependency direction:
    capital_services -> capital_kernel   (allowed)
    capital_kernel   -> capital_services (FORBIDDEN)
"""

from capital_services.allocation_engine import AllocationEngine, CapitalCallCompletion

__all__ = [
    "AllocationEngine",
    "CapitalCallCompletion",
]
