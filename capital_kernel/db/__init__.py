"""Database layer - engine, base classes, and ORM-level immutability."""

from capital_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from capital_kernel.db.engine import (
    begin_read_only,
    create_tables,
    get_engine,
    get_session,
    get_session_factory,
    session_scope,
)

__all__ = [
    "get_engine",
    "get_session",
    "get_session_factory",
    "session_scope",
    "begin_read_only",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
]
