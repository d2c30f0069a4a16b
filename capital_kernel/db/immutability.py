"""
ORM-Level Immutability Enforcement.

The Payment ledger is the authoritative record of money received.  Repair
recomputes cached allocation totals FROM it, so the ledger itself must never
change after the fact: payments are append-only, and a correction is a new
row, never an edit.

SQLAlchemy fires mapper events before UPDATE/DELETE statements reach the
database.  The listeners registered here intercept those events:

    session.flush()
         |
         v
    [before_update] --> _check_*_immutability() --> ImmutabilityViolationError
         |
         v
    [before_delete] --> _check_*_delete() --------> ImmutabilityViolationError
         |
         v
    SQL sent to database (only if checks pass)

If a check fails, ImmutabilityViolationError aborts the flush and the
caller's transaction rolls back.

Protected entities:

Entity              | Rule
--------------------|------------------------------------------------------
Payment             | Never updated, never deleted
OverpaymentReview   | Never deleted (review outcome fields may change)
FundAllocation      | committed_amount fixed after creation; row not deleted
                    | while capital calls or payments reference it

Usage:

    from capital_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # Called once at startup

To temporarily disable (TESTS ONLY):

    from capital_kernel.db.immutability import unregister_immutability_listeners
    unregister_immutability_listeners()
"""

from sqlalchemy import event, func, select
from sqlalchemy.orm.attributes import get_history

from capital_kernel.exceptions import ImmutabilityViolationError
from capital_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _blocked(entity_type: str, entity_id, operation: str, reason: str, **extra):
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "operation": operation,
            **extra,
        },
    )
    raise ImmutabilityViolationError(
        entity_type=entity_type,
        entity_id=str(entity_id),
        reason=reason,
    )


def _check_payment_immutability(mapper, connection, target):
    """Payments are append-only."""
    _blocked("Payment", target.id, "UPDATE", "Payments are append-only and cannot be modified")


def _check_payment_delete(mapper, connection, target):
    _blocked("Payment", target.id, "DELETE", "Payments are append-only and cannot be deleted")


def _check_overpayment_review_delete(mapper, connection, target):
    _blocked(
        "OverpaymentReview",
        target.id,
        "DELETE",
        "Overpayment reviews are audit records and cannot be deleted",
    )


def _check_allocation_immutability(mapper, connection, target):
    """committed_amount is fixed at creation."""
    history = get_history(target, "committed_amount")
    if not history.deleted or not history.added:
        return
    if history.deleted[0] == history.added[0]:
        return
    _blocked(
        "FundAllocation",
        target.id,
        "UPDATE",
        "committed_amount is fixed at creation",
        field="committed_amount",
    )


def _check_allocation_delete(mapper, connection, target):
    """An allocation owns its calls and payments; it outlives them."""
    from capital_kernel.models.capital_call import CapitalCall
    from capital_kernel.models.payment import Payment

    for model in (Payment, CapitalCall):
        count = connection.execute(
            select(func.count())
            .select_from(model)
            .where(model.allocation_id == target.id)
        ).scalar_one()
        if count:
            _blocked(
                "FundAllocation",
                target.id,
                "DELETE",
                f"allocation is referenced by {count} {model.__tablename__} row(s)",
            )


def _listeners():
    from capital_kernel.models.allocation import FundAllocation
    from capital_kernel.models.payment import OverpaymentReview, Payment

    return (
        (Payment, "before_update", _check_payment_immutability),
        (Payment, "before_delete", _check_payment_delete),
        (OverpaymentReview, "before_delete", _check_overpayment_review_delete),
        (FundAllocation, "before_update", _check_allocation_immutability),
        (FundAllocation, "before_delete", _check_allocation_delete),
    )


def register_immutability_listeners():
    """
    Register all immutability enforcement event listeners.

    Idempotent: a listener that is already registered is not added twice.
    """
    for target, event_name, listener_fn in _listeners():
        if not event.contains(target, event_name, listener_fn):
            event.listen(target, event_name, listener_fn)


def _safe_remove_listener(target, event_name, listener_fn):
    """Remove an event listener, ignoring it if not registered."""
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners():
    """
    Remove immutability enforcement event listeners.

    WARNING: Only use this in tests that must write a corrupt ledger on
    purpose (e.g. to exercise repair).
    """
    for target, event_name, listener_fn in _listeners():
        _safe_remove_listener(target, event_name, listener_fn)
