"""ORM models for the ledger kernel."""

from ledger_kernel.models.account import (
    Account,
    AccountStatus,
    AccountType,
    NormalBalance,
)
from ledger_kernel.models.fiscal_period import FiscalPeriod, PeriodStatus
from ledger_kernel.models.journal import (
    JournalEntry,
    JournalEntryStatus,
    JournalEntryType,
    JournalLine,
)
from ledger_kernel.models.ledger_balance import LedgerBalance
from ledger_kernel.models.system_actor import SystemActor

__all__ = [
    "Account",
    "AccountStatus",
    "AccountType",
    "NormalBalance",
    "FiscalPeriod",
    "PeriodStatus",
    "JournalEntry",
    "JournalEntryStatus",
    "JournalEntryType",
    "JournalLine",
    "LedgerBalance",
    "SystemActor",
]
