"""
ledger_services._accrual_types -- enums and DTOs for the Accrual Runner.

Responsibility:
    Frozen dataclasses for accrual rule input, rule / run snapshots and
    run outcomes.  Kept apart from the ORM so callers (scheduler jobs,
    period close) depend on values, not on tables.

Invariants enforced:
    - All DTOs are frozen.
    - Amounts are Decimal, never float.
"""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class AccrualRuleType(str, Enum):
    REVERSING = "REVERSING"
    RECURRING = "RECURRING"
    DEFERRAL = "DEFERRAL"
    DERIVED = "DERIVED"


class AccrualFrequency(str, Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"
    PERIOD_END = "PERIOD_END"
    ON_DEMAND = "ON_DEMAND"


# Frequencies picked up by run_due_accruals
SCHEDULED_FREQUENCIES = (
    AccrualFrequency.DAILY,
    AccrualFrequency.WEEKLY,
    AccrualFrequency.MONTHLY,
)


class ReverseTiming(str, Enum):
    NEXT_PERIOD_START = "NEXT_PERIOD_START"


class AccrualRuleStatus(str, Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class AccrualRunStatus(str, Enum):
    """Run lifecycle.  running is the only non-terminal state."""

    RUNNING = "running"
    POSTED = "posted"
    FAILED = "failed"
    REVERSED = "reversed"
    SKIPPED = "skipped"

    @property
    def is_terminal_success(self) -> bool:
        """A run in one of these states is never re-executed."""
        return self in (
            AccrualRunStatus.POSTED,
            AccrualRunStatus.REVERSED,
            AccrualRunStatus.SKIPPED,
        )


class LineDirection(str, Enum):
    DEBIT = "debit"
    CREDIT = "credit"


@dataclass(frozen=True)
class AccrualRuleLineInput:
    account_id: UUID
    dc: LineDirection
    amount: Decimal | int | str
    description: str | None = None


@dataclass(frozen=True)
class AccrualRuleInput:
    """Payload for AccrualService.create_rule."""

    code: str
    name: str
    rule_type: AccrualRuleType
    frequency: AccrualFrequency
    lines: tuple[AccrualRuleLineInput, ...]
    auto_reverse: bool = False
    reverse_timing: ReverseTiming | None = None
    start_date: date | None = None
    end_date: date | None = None
    status: AccrualRuleStatus = AccrualRuleStatus.ACTIVE
    is_required: bool = False


@dataclass(frozen=True)
class AccrualRuleLineInfo:
    line_no: int
    account_id: UUID
    dc: LineDirection
    amount: Decimal
    description: str | None = None


@dataclass(frozen=True)
class AccrualRuleInfo:
    id: UUID
    organization_id: UUID
    code: str
    name: str
    rule_type: AccrualRuleType
    frequency: AccrualFrequency
    auto_reverse: bool
    reverse_timing: ReverseTiming | None
    start_date: date | None
    end_date: date | None
    status: AccrualRuleStatus
    is_required: bool
    lines: tuple[AccrualRuleLineInfo, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class AccrualRunPostingInfo:
    journal_entry_id: UUID
    reversal_journal_entry_id: UUID | None = None
    reversal_failed_at: datetime | None = None
    reversal_failure_reason: str | None = None
    reversal_failure_count: int = 0


@dataclass(frozen=True)
class AccrualRunInfo:
    id: UUID
    organization_id: UUID
    rule_id: UUID
    period_id: UUID
    as_of_date: date
    status: AccrualRunStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    postings: tuple[AccrualRunPostingInfo, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class RunOutcome:
    """
    Result of running one rule for one date.

    Exactly one shape applies:
        - skipped=True with a reason (and run_id when a prior run exists),
        - a run_id with status posted,
        - a run_id with status failed and error text (batch runners only;
          run_one itself raises).
    """

    rule_id: UUID
    skipped: bool = False
    reason: str | None = None
    run_id: UUID | None = None
    status: AccrualRunStatus | None = None
    journal_id: UUID | None = None
    error: str | None = None

    @property
    def failed(self) -> bool:
        return self.status == AccrualRunStatus.FAILED


@dataclass(frozen=True)
class ReversalBatchResult:
    reversed_count: int
    failed_count: int
