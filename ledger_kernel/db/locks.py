"""
Module: ledger_kernel.db.locks
Responsibility: Named mutual-exclusion derived deterministically from a
    string key.  Used for accrual-run de-duplication, per-organisation period
    creation, and per-task scheduler leases.
Architecture position: Kernel > DB.  No model imports.

Two flavours:
    acquire_transaction_lock(session, name)
        Blocking.  Held until the session's outermost transaction commits or
        rolls back.  PostgreSQL: pg_advisory_xact_lock.  Other dialects: a
        process-wide mutex table keyed by the same hash.

    try_lease(engine, name)
        Non-blocking context manager yielding True when the lease was taken.
        Held for the body only and always released on exit.  PostgreSQL:
        pg_try_advisory_lock / pg_advisory_unlock on a dedicated connection.
        Other dialects: non-blocking in-process mutex.

The in-process fallback only serialises threads of one process; multi-process
deployments must run on PostgreSQL.
"""

from __future__ import annotations

import threading
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, SessionTransaction

from ledger_kernel.logging_config import get_logger

logger = get_logger("db.locks")

_FNV_OFFSET_BASIS = 2166136261
_FNV_PRIME = 16777619

_HELD_KEY = "ledger_kernel.held_locks"
_HOOK_KEY = "ledger_kernel.lock_hook_installed"


def lock_key_from_name(name: str) -> int:
    """FNV-1a 32-bit hash of ``name`` as a signed 32-bit integer."""
    h = _FNV_OFFSET_BASIS
    for byte in name.encode("utf-8"):
        h ^= byte
        h = (h * _FNV_PRIME) & 0xFFFFFFFF
    return h - 0x100000000 if h & 0x80000000 else h


# ---------------------------------------------------------------------------
# In-process lock table
# ---------------------------------------------------------------------------

class _LocalLock:
    """A mutex plus the number of threads holding or waiting for it."""

    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = threading.Lock()
        self.users = 0


# Entries live only while someone holds or waits on them.
_table_guard = threading.Lock()
_local_locks: dict[int, _LocalLock] = {}


def _checkout(key: int) -> threading.Lock:
    with _table_guard:
        entry = _local_locks.get(key)
        if entry is None:
            entry = _local_locks[key] = _LocalLock()
        entry.users += 1
        return entry.lock


def _checkin(key: int) -> None:
    with _table_guard:
        entry = _local_locks[key]
        entry.users -= 1
        if entry.users == 0:
            del _local_locks[key]


def _acquire_local(key: int, blocking: bool = True) -> bool:
    lock = _checkout(key)
    if lock.acquire(blocking=blocking):
        return True
    _checkin(key)
    return False


def _release_local(key: int) -> None:
    with _table_guard:
        entry = _local_locks[key]
        entry.lock.release()
        entry.users -= 1
        if entry.users == 0:
            del _local_locks[key]


def _release_on_root_end(session: Session, transaction: SessionTransaction) -> None:
    if transaction.parent is not None:
        return
    for key in session.info.pop(_HELD_KEY, ()):
        _release_local(key)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def acquire_transaction_lock(session: Session, name: str) -> None:
    """
    Block until the named lock is held by this session's transaction.

    Re-acquiring a name already held by the same transaction is a no-op.
    """
    key = lock_key_from_name(name)

    if session.get_bind().dialect.name == "postgresql":
        session.execute(text("SELECT pg_advisory_xact_lock(:key)"), {"key": key})
        logger.debug("transaction_lock_acquired", extra={"lock_name": name})
        return

    if not session.in_transaction():
        session.begin()

    held: set[int] = session.info.setdefault(_HELD_KEY, set())
    if key in held:
        return

    if not session.info.get(_HOOK_KEY):
        event.listen(session, "after_transaction_end", _release_on_root_end)
        session.info[_HOOK_KEY] = True

    _acquire_local(key)
    held.add(key)
    logger.debug("transaction_lock_acquired", extra={"lock_name": name})


@contextmanager
def try_lease(engine: Engine, name: str) -> Iterator[bool]:
    """
    Try to take the named lease without waiting.

    Usage:
        with try_lease(engine, "scheduled_task:foo") as acquired:
            if not acquired:
                return
            ...
    """
    key = lock_key_from_name(name)

    if engine.dialect.name == "postgresql":
        with engine.connect() as conn:
            acquired = bool(
                conn.execute(
                    text("SELECT pg_try_advisory_lock(:key)"), {"key": key}
                ).scalar()
            )
            conn.commit()
            try:
                yield acquired
            finally:
                if acquired:
                    conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
                    conn.commit()
        return

    acquired = _acquire_local(key, blocking=False)
    try:
        yield acquired
    finally:
        if acquired:
            _release_local(key)
