"""
Data Transfer Objects for the ledger kernel.

Responsibility:
    Frozen value objects that cross the service boundary: caller input
    (JournalDraft, JournalLineInput) and service results (entry/period
    snapshots, post/void outcomes, trial-balance rows).  Services return
    these, never ORM instances.

Architecture position:
    Kernel > Domain.  Imports only the enums defined beside the models.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from ledger_kernel.models.account import AccountStatus, AccountType, NormalBalance
from ledger_kernel.models.fiscal_period import PeriodStatus
from ledger_kernel.models.journal import JournalEntryStatus, JournalEntryType


# =============================================================================
# Input
# =============================================================================


@dataclass(frozen=True)
class JournalLineInput:
    """One requested journal line.  Exactly one of debit/credit must be > 0."""

    account_id: UUID
    debit: Decimal | int | str | None = None
    credit: Decimal | int | str | None = None
    description: str | None = None


@dataclass(frozen=True)
class JournalDraft:
    """
    Payload for JournalService.create_draft.

    Contract:
        ``lines`` keeps caller order; lines are numbered 1..n in that order.
    """

    period_id: UUID
    entry_date: date
    lines: tuple[JournalLineInput, ...]
    entry_type: JournalEntryType = JournalEntryType.GENERAL
    memo: str | None = None
    idempotency_key: str | None = None


# =============================================================================
# Snapshots
# =============================================================================


@dataclass(frozen=True)
class AccountInfo:
    id: UUID
    organization_id: UUID
    code: str
    name: str
    account_type: AccountType
    normal_balance: NormalBalance
    is_postable: bool
    status: AccountStatus
    parent_id: UUID | None = None

    @property
    def can_post(self) -> bool:
        return self.is_postable and self.status == AccountStatus.ACTIVE


@dataclass(frozen=True)
class FiscalPeriodInfo:
    """
    Immutable snapshot of a period.

    Non-goals:
        - Does NOT lock anything; PeriodService does that.
    """

    id: UUID
    organization_id: UUID
    period_code: str
    start_date: date
    end_date: date
    status: PeriodStatus
    closed_at: datetime | None = None
    closed_by_id: UUID | None = None

    @property
    def is_open(self) -> bool:
        return self.status == PeriodStatus.OPEN

    def contains_date(self, check_date: date) -> bool:
        return self.start_date <= check_date <= self.end_date


@dataclass(frozen=True)
class JournalLineInfo:
    line_no: int
    account_id: UUID
    debit: Decimal
    credit: Decimal
    description: str | None = None


@dataclass(frozen=True)
class JournalEntryInfo:
    id: UUID
    organization_id: UUID
    period_id: UUID
    entry_type: JournalEntryType
    entry_date: date
    status: JournalEntryStatus
    memo: str | None
    idempotency_key: str | None
    lines: tuple[JournalLineInfo, ...] = field(default_factory=tuple)
    posted_at: datetime | None = None
    voided_at: datetime | None = None
    void_reason: str | None = None
    reversal_of_id: UUID | None = None
    reversed_by_id: UUID | None = None

    @property
    def total_debits(self) -> Decimal:
        return sum((line.debit for line in self.lines), Decimal("0"))

    @property
    def total_credits(self) -> Decimal:
        return sum((line.credit for line in self.lines), Decimal("0"))


# =============================================================================
# Results
# =============================================================================


@dataclass(frozen=True)
class DraftResult:
    """Outcome of create_draft.  ``idempotent`` marks a replayed key."""

    journal_id: UUID
    status: JournalEntryStatus
    idempotent: bool = False


@dataclass(frozen=True)
class PostResult:
    journal_id: UUID
    status: JournalEntryStatus


@dataclass(frozen=True)
class VoidResult:
    journal_id: UUID
    status: JournalEntryStatus
    reversal_journal_id: UUID


@dataclass(frozen=True)
class ReversalResult:
    """Outcome of reverse_into_period (original stays posted)."""

    original_journal_id: UUID
    reversal_journal_id: UUID
    period_id: UUID
    idempotent: bool = False


@dataclass(frozen=True)
class TrialBalanceRow:
    account_id: UUID
    account_code: str
    account_name: str
    account_type: AccountType
    normal_balance: NormalBalance
    debit_total: Decimal
    credit_total: Decimal

    @property
    def net(self) -> Decimal:
        """Debit minus credit."""
        return self.debit_total - self.credit_total


@dataclass(frozen=True)
class AccountActivityRow:
    journal_id: UUID
    entry_date: date
    status: JournalEntryStatus
    memo: str | None
    line_no: int
    description: str | None
    debit: Decimal
    credit: Decimal
