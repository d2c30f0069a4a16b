"""
Module: capital_kernel.selectors.base
Responsibility: Abstract base class for all read-only query selectors.
Architecture position: Kernel > Selectors.  May import from db/, models/ and
    domain/.  MUST NOT import from services/ or outer layers.

Invariants enforced:
    - Read-only access: Selectors accept a Session from the caller but MUST
      NOT call session.add(), session.delete(), session.commit(), or
      session.flush().
    - Session ownership: Selectors do NOT create or manage their own
      sessions; the caller owns the session and its transaction scope.

Audit relevance:
    The integrity verifier reads exclusively through selectors, so a
    verification run can never alter the data it reports on.
"""

from abc import ABC
from typing import Generic, TypeVar

from sqlalchemy.orm import Session

from capital_kernel.db.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class BaseSelector(ABC, Generic[ModelType]):
    """
    Abstract base class for all selectors.

    Contract:
        Selectors accept a Session from the caller, perform read-only
        queries, and return DTOs, computed results, or loaded rows that
        callers treat as read-only.

    Non-goals:
        - BaseSelector does NOT define any query methods.
    """

    def __init__(self, session: Session):
        self.session = session
