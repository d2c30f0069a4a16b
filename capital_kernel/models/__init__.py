"""ORM models for the capital kernel."""

from capital_kernel.models.allocation import FundAllocation
from capital_kernel.models.capital_call import CapitalCall
from capital_kernel.models.fund import Deal, Fund
from capital_kernel.models.payment import OverpaymentReview, Payment
from capital_kernel.models.schedule import ClosingScheduleEvent, Meeting

__all__ = [
    "Fund",
    "Deal",
    "FundAllocation",
    "CapitalCall",
    "Payment",
    "OverpaymentReview",
    "ClosingScheduleEvent",
    "Meeting",
]
