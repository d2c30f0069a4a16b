"""
Typed Exception Hierarchy for the Capital Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Allocation totals are money. Callers must be able to tell a malformed
request from a business-rule rejection from a corrupted row without
parsing message strings:

    try:
        processor.process_payment(allocation_id, amount, "Q1 call")
    except OverpaymentRejectedError as e:   # Typed catch
        respond(code=e.code, remaining=e.remaining_amount)
    except ConcurrencyConflictError:
        retry_whole_operation()

Every exception:
  1. Has a TYPED class (catch by type, not message)
  2. Has a CODE class attribute (machine-readable, API-safe)
  3. Carries its context as attributes (not just a message string)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    CapitalKernelError (base)
    |
    +-- ValidationError
    |   +-- InvalidAmountError
    |   +-- InvalidDateError
    |   +-- AmbiguousAllocationError
    |   +-- DealNotInvestableError
    |
    +-- NotFoundError
    |   +-- AllocationNotFoundError
    |   +-- CapitalCallNotFoundError
    |   +-- DealNotFoundError
    |   +-- FundNotFoundError
    |
    +-- InvariantViolationError
    |
    +-- BusinessRuleError
    |   +-- OverCallAttemptError
    |   +-- OverpaymentRejectedError
    |   +-- AllocationDefaultedError
    |   +-- InvalidCallTransitionError
    |   +-- DuplicateAllocationError
    |
    +-- ConcurrencyConflictError
    |
    +-- ImmutabilityViolationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category        | Code                        | When Raised
----------------|-----------------------------|-----------------------------------------
Validation      | INVALID_AMOUNT              | Amount <= 0, malformed, out of range
                | INVALID_DATE                | Due date before call date, bad range
                | AMBIGUOUS_ALLOCATION        | Deal has several allocations, no fund
                | DEAL_NOT_INVESTABLE         | Deal stage does not accept allocations
----------------|-----------------------------|-----------------------------------------
Not found       | ALLOCATION_NOT_FOUND        | Unknown allocation id
                | CAPITAL_CALL_NOT_FOUND      | Unknown capital call id
                | DEAL_NOT_FOUND              | Unknown deal id
                | FUND_NOT_FOUND              | Unknown fund id
----------------|-----------------------------|-----------------------------------------
Invariant       | INVARIANT_VIOLATION         | Write would break amount/status rules
----------------|-----------------------------|-----------------------------------------
Business rule   | OVER_CALL_ATTEMPT           | Call exceeds outstanding amount
                | OVERPAYMENT_REJECTED        | Payment exceeds remaining commitment
                | ALLOCATION_DEFAULTED        | Write against a defaulted allocation
                | INVALID_CALL_TRANSITION     | Capital call status move not allowed
                | DUPLICATE_ALLOCATION        | Fund already allocated to this deal
----------------|-----------------------------|-----------------------------------------
Concurrency     | CONCURRENCY_CONFLICT        | Lock timeout / stale version, retries
                |                             | exhausted
----------------|-----------------------------|-----------------------------------------
Immutability    | IMMUTABILITY_VIOLATION      | UPDATE/DELETE of a Payment row

===============================================================================
HANDLING PATTERNS
===============================================================================

1. VALIDATION / NOT FOUND: surface immediately, the ``field`` attribute
   names the offending input.

2. INVARIANT VIOLATION: the transaction is aborted. Never "fix" at write
   time; the Repair operation is the only correcting path.

3. CONCURRENCY CONFLICT: retry the WHOLE logical operation in a fresh
   transaction. Never resume partway.

===============================================================================
"""

from decimal import Decimal


class CapitalKernelError(Exception):
    """
    Base exception for all capital kernel errors.

    All subclasses must have a `code` class attribute
    for machine-readable error identification.
    """

    code: str = "CAPITAL_KERNEL_ERROR"


# Validation exceptions


class ValidationError(CapitalKernelError):
    """Malformed or out-of-range input."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, field: str, reason: str):
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class InvalidAmountError(ValidationError):
    """Monetary amount is missing, non-positive, or out of range."""

    code: str = "INVALID_AMOUNT"

    def __init__(self, field: str, amount: object, reason: str):
        self.amount = str(amount)
        super().__init__(field, f"{reason} (got {amount})")


class InvalidDateError(ValidationError):
    """Date input is inconsistent (e.g. due date precedes call date)."""

    code: str = "INVALID_DATE"


class AmbiguousAllocationError(ValidationError):
    """Deal-level request cannot be resolved to a single allocation."""

    code: str = "AMBIGUOUS_ALLOCATION"

    def __init__(self, deal_id: str, allocation_count: int):
        self.deal_id = deal_id
        self.allocation_count = allocation_count
        super().__init__(
            "fund_id",
            f"deal {deal_id} has {allocation_count} allocations; "
            "a fund must be specified",
        )


class DealNotInvestableError(ValidationError):
    """Deal is not in a stage that accepts fund allocations."""

    code: str = "DEAL_NOT_INVESTABLE"

    def __init__(self, deal_id: str, stage: str):
        self.deal_id = deal_id
        self.stage = stage
        super().__init__("deal_id", f"deal {deal_id} is in stage '{stage}'")


# Not-found exceptions


class NotFoundError(CapitalKernelError):
    """Base exception for unknown identifiers."""

    code: str = "NOT_FOUND"


class AllocationNotFoundError(NotFoundError):
    """Allocation with given ID was not found."""

    code: str = "ALLOCATION_NOT_FOUND"

    def __init__(self, allocation_id: str):
        self.allocation_id = str(allocation_id)
        super().__init__(f"Allocation not found: {allocation_id}")


class CapitalCallNotFoundError(NotFoundError):
    """Capital call with given ID was not found."""

    code: str = "CAPITAL_CALL_NOT_FOUND"

    def __init__(self, capital_call_id: str):
        self.capital_call_id = str(capital_call_id)
        super().__init__(f"Capital call not found: {capital_call_id}")


class DealNotFoundError(NotFoundError):
    """Deal with given ID was not found."""

    code: str = "DEAL_NOT_FOUND"

    def __init__(self, deal_id: str):
        self.deal_id = str(deal_id)
        super().__init__(f"Deal not found: {deal_id}")


class FundNotFoundError(NotFoundError):
    """Fund with given ID was not found."""

    code: str = "FUND_NOT_FOUND"

    def __init__(self, fund_id: str):
        self.fund_id = str(fund_id)
        super().__init__(f"Fund not found: {fund_id}")


# Invariant exceptions


class InvariantViolationError(CapitalKernelError):
    """
    A write would break an allocation invariant.

    Always rejected; the surrounding transaction must be rolled back.
    """

    code: str = "INVARIANT_VIOLATION"

    def __init__(self, invariant: str, entity_id: str | None, detail: str):
        self.invariant = invariant
        self.entity_id = str(entity_id) if entity_id is not None else None
        self.detail = detail
        super().__init__(
            f"Invariant '{invariant}' violated for {entity_id}: {detail}"
        )


# Business-rule exceptions


class BusinessRuleError(CapitalKernelError):
    """Request is well-formed but rejected by a business rule."""

    code: str = "BUSINESS_RULE_ERROR"


class OverCallAttemptError(BusinessRuleError):
    """Capital call would request more than the outstanding commitment."""

    code: str = "OVER_CALL_ATTEMPT"

    def __init__(
        self,
        allocation_id: str,
        call_amount: Decimal,
        outstanding_amount: Decimal,
    ):
        self.allocation_id = str(allocation_id)
        self.call_amount = str(call_amount)
        self.outstanding_amount = str(outstanding_amount)
        super().__init__(
            f"Capital call of {call_amount} exceeds outstanding "
            f"{outstanding_amount} on allocation {allocation_id}"
        )


class OverpaymentRejectedError(BusinessRuleError):
    """Payment would push paid above the committed (or called) amount."""

    code: str = "OVERPAYMENT_REJECTED"

    def __init__(
        self,
        allocation_id: str,
        amount: Decimal,
        remaining_amount: Decimal,
        capital_call_id: str | None = None,
    ):
        self.allocation_id = str(allocation_id)
        self.amount = str(amount)
        self.remaining_amount = str(remaining_amount)
        self.capital_call_id = str(capital_call_id) if capital_call_id else None
        target = (
            f"capital call {capital_call_id}"
            if capital_call_id
            else f"allocation {allocation_id}"
        )
        super().__init__(
            f"Payment of {amount} exceeds remaining {remaining_amount} "
            f"on {target}"
        )


class AllocationDefaultedError(BusinessRuleError):
    """Allocation is defaulted; payments need an explicit reinstatement."""

    code: str = "ALLOCATION_DEFAULTED"

    def __init__(self, allocation_id: str):
        self.allocation_id = str(allocation_id)
        super().__init__(
            f"Allocation {allocation_id} is defaulted; reinstate it first"
        )


class InvalidCallTransitionError(BusinessRuleError):
    """Capital call status transition is not permitted."""

    code: str = "INVALID_CALL_TRANSITION"

    def __init__(self, capital_call_id: str, from_status: str, to_status: str):
        self.capital_call_id = str(capital_call_id)
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Capital call {capital_call_id} cannot move from "
            f"{from_status} to {to_status}"
        )


class DuplicateAllocationError(BusinessRuleError):
    """The fund already holds an allocation in this deal."""

    code: str = "DUPLICATE_ALLOCATION"

    def __init__(self, fund_id: str, deal_id: str):
        self.fund_id = str(fund_id)
        self.deal_id = str(deal_id)
        super().__init__(f"Fund {fund_id} is already allocated to deal {deal_id}")


# Concurrency exceptions


class ConcurrencyConflictError(CapitalKernelError):
    """
    Lock or version contention on an allocation row.

    Callers retry the whole logical operation, never just the write.
    """

    code: str = "CONCURRENCY_CONFLICT"

    def __init__(self, entity_type: str, entity_id: str, attempts: int = 1):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.attempts = attempts
        super().__init__(
            f"Concurrency conflict on {entity_type} {entity_id} "
            f"after {attempts} attempt(s)"
        )


# Immutability exceptions


class ImmutabilityViolationError(CapitalKernelError):
    """Attempt to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(
            f"Cannot modify {entity_type} {entity_id}: {reason}"
        )
