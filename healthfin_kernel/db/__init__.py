"""Database layer - engine, base classes and column types."""

from healthfin_kernel.db.base import UUID, Base, TrackedBase, UUIDString
from healthfin_kernel.db.engine import create_tables, get_engine, get_session
from healthfin_kernel.db.types import Money, PayloadHash

__all__ = [
    "get_engine",
    "get_session",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UUID",
    "Money",
    "PayloadHash",
]
