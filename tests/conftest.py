"""
Pytest fixtures for the ledger test suite.

Provides:
- File-backed SQLite engine per test (tmp_path), tables created once per test
- Session factory for components that own their transactions
- Deterministic clock, organisation / actor ids
- A seeded chart of accounts and two monthly periods
- Structured log capture

Environment Variables:
- DATABASE_URL: run against another database (e.g. PostgreSQL) instead of
  the per-test SQLite file.  The database must be empty.

SQLite allows one writer at a time: tests commit their setup before calling
a component that opens its own sessions.
"""

import json
import logging
import os
from datetime import date, datetime, timezone
from io import StringIO
from uuid import UUID, uuid4

import pytest

from ledger_kernel.db.engine import (
    create_tables,
    drop_tables,
    get_session_factory,
    init_engine_from_url,
    reset_engine,
)
from ledger_kernel.domain.clock import DeterministicClock
from ledger_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from ledger_kernel.models.account import AccountType
from ledger_kernel.services.account_service import AccountService
from ledger_kernel.services.period_service import PeriodService

# Test actor ID for all test operations
TEST_ACTOR_ID = uuid4()


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture ledger_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, ...):
            ...
            logs = captured_logs()
            assert any(r["message"] == "journal_posted" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("ledger_kernel")
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)


# =============================================================================
# Database
# =============================================================================


@pytest.fixture
def engine(tmp_path):
    url = os.environ.get("DATABASE_URL") or f"sqlite:///{tmp_path / 'ledger.db'}"
    eng = init_engine_from_url(url)
    create_tables()
    yield eng
    if os.environ.get("DATABASE_URL"):
        drop_tables()
    reset_engine()


@pytest.fixture
def session_factory(engine):
    return get_session_factory()


@pytest.fixture
def session(session_factory):
    """A plain session.  Commit before handing control to a component."""
    s = session_factory()
    try:
        yield s
    finally:
        s.rollback()
        s.close()


@pytest.fixture
def clock():
    return DeterministicClock(fixed_time=datetime(2026, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def org_id() -> UUID:
    return uuid4()


@pytest.fixture
def actor_id() -> UUID:
    return TEST_ACTOR_ID


# =============================================================================
# Seed data
# =============================================================================


STANDARD_ACCOUNTS = (
    ("1000", "Cash", AccountType.ASSET),
    ("1100", "Accounts Receivable", AccountType.ASSET),
    ("2100", "Accrued Liabilities", AccountType.LIABILITY),
    ("4000", "Revenue", AccountType.REVENUE),
    ("6000", "Rent Expense", AccountType.EXPENSE),
    ("6100", "Utilities Expense", AccountType.EXPENSE),
)


@pytest.fixture
def accounts(session_factory, org_id, actor_id) -> dict[str, UUID]:
    """Standard postable accounts plus a non-postable header, keyed by code."""
    session = session_factory()
    try:
        service = AccountService(session)
        header = service.create_account(
            org_id, actor_id, "1", "Assets", AccountType.ASSET, is_postable=False,
        )
        ids = {"1": header.id}
        for code, name, account_type in STANDARD_ACCOUNTS:
            parent_id = header.id if account_type == AccountType.ASSET else None
            ids[code] = service.create_account(
                org_id, actor_id, code, name, account_type, parent_id=parent_id,
            ).id
        session.commit()
    finally:
        session.close()
    return ids


@pytest.fixture
def periods(session_factory, org_id, actor_id, clock):
    """January and February 2026, both open."""
    session = session_factory()
    try:
        service = PeriodService(session, clock)
        jan = service.create_period(
            org_id, actor_id, "2026-01", date(2026, 1, 1), date(2026, 1, 31),
        )
        feb = service.create_period(
            org_id, actor_id, "2026-02", date(2026, 2, 1), date(2026, 2, 28),
        )
        session.commit()
    finally:
        session.close()
    return {"jan": jan, "feb": feb}


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "postgres: mark test as requiring PostgreSQL"
    )
