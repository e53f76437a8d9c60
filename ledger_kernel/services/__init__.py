"""Kernel services: flush-only, caller owns the transaction."""

from ledger_kernel.services.account_service import AccountService
from ledger_kernel.services.journal_service import JournalService
from ledger_kernel.services.period_service import PeriodService
from ledger_kernel.services.system_actor_service import SystemActorService

__all__ = [
    "AccountService",
    "JournalService",
    "PeriodService",
    "SystemActorService",
]
