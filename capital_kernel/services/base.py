"""
BaseService -- abstract base for all kernel services.

Responsibility:
    Provides the common constructor and session-handling contract for
    every write service in the kernel layer.  Services receive a
    SQLAlchemy ``Session`` and use ``session.flush()`` -- never
    ``session.commit()``.

Architecture position:
    Kernel > Services -- imperative shell.

Invariants enforced:
    Transaction boundaries: services flush within the caller's transaction
    and never commit or rollback it.  The caller (the AllocationEngine
    facade, ``session_scope()``, or a test) owns commit/rollback, so a
    payment, the allocation update and the capital-call projection are
    one atomic unit.  Repair uses SAVEPOINTs (``begin_nested``), which are
    nested inside the caller's transaction, not replacements for it.
"""

from abc import ABC
from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy.orm import Session

from capital_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)

# Recorded as the actor of writes made without an explicit actor (repair
# runs, scripted maintenance).
SYSTEM_ACTOR_ID = UUID("00000000-0000-0000-0000-000000000000")


class BaseService(ABC, Generic[ModelType]):
    """
    Abstract base class for all kernel services.

    Contract:
        Accepts a SQLAlchemy ``Session`` from the caller and uses
        ``session.flush()`` to persist changes within the active
        transaction.

    Non-goals:
        - Does NOT manage transaction lifecycle (commit/rollback).
        - Does NOT provide read-only query methods beyond what writers
          need -- those belong in ``capital_kernel/selectors/``.
    """

    def __init__(self, session: Session, actor_id: UUID | None = None):
        """
        Args:
            session: SQLAlchemy session for database operations.
            actor_id: Recorded as created_by_id / updated_by_id on writes;
                defaults to SYSTEM_ACTOR_ID.
        """
        self.session = session
        self.actor_id = actor_id or SYSTEM_ACTOR_ID
