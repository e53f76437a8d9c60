"""Database layer - engine, base classes, types, and named locks."""

from ledger_kernel.db.base import UUID, Base, TrackedBase, UTCDateTime, UUIDString
from ledger_kernel.db.engine import (
    create_tables,
    get_engine,
    get_session_factory,
    init_engine_from_url,
    session_scope,
)
from ledger_kernel.db.locks import acquire_transaction_lock, lock_key_from_name, try_lease
from ledger_kernel.db.types import Money, round_money

__all__ = [
    "get_engine",
    "get_session_factory",
    "init_engine_from_url",
    "session_scope",
    "create_tables",
    "Base",
    "TrackedBase",
    "UUIDString",
    "UTCDateTime",
    "UUID",
    "Money",
    "round_money",
    "acquire_transaction_lock",
    "lock_key_from_name",
    "try_lease",
]
