"""Database layer - engine, base classes, types, and immutability."""

from refinery_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from refinery_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session_factory,
    session_scope,
)
from refinery_kernel.db.types import UTCDateTime, round_quantity, to_decimal

__all__ = [
    "get_engine",
    "get_session_factory",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "UTCDateTime",
    "to_decimal",
    "round_quantity",
]
