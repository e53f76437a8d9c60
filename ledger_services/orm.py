"""
SQLAlchemy ORM persistence models for the Accrual Runner.

Responsibility
--------------
``AccrualRuleModel`` / ``AccrualRuleLineModel`` hold the reusable posting
template; ``AccrualRunModel`` records one execution of a rule for a
(period, as-of date); ``AccrualRunPostingModel`` links a run to the journal
entry it produced and carries the auto-reversal bookkeeping.

Architecture position
---------------------
**Services layer** -- consumed by ``AccrualService`` and ``AccrualRunner``.
Inherits from ``TrackedBase`` (kernel db layer).

Invariants enforced
-------------------
* (organization_id, code) is unique per rule.
* (run_id, journal_entry_id) is unique per posting link, so re-linking a
  run is an idempotent no-op.
* At most one non-duplicate run per (rule, period, as_of_date) is NOT a
  table constraint; AccrualRunner enforces it under a named lock.
* Rule amounts are Decimal (Numeric(38,9)); enums stored as strings.
"""

from datetime import date, datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    Boolean,
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import TrackedBase, UTCDateTime, UUIDString

from ledger_services._accrual_types import (
    AccrualFrequency,
    AccrualRuleInfo,
    AccrualRuleLineInfo,
    AccrualRuleStatus,
    AccrualRuleType,
    AccrualRunInfo,
    AccrualRunPostingInfo,
    AccrualRunStatus,
    LineDirection,
    ReverseTiming,
)

# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


class AccrualRuleModel(TrackedBase):
    """
    Accrual posting template.

    Guarantees:
        - Lines balance to the cent (validated on create, re-checked on run).
        - REVERSING rules have auto_reverse=True.
    """

    __tablename__ = "accrual_rules"

    __table_args__ = (
        UniqueConstraint("organization_id", "code", name="uq_accrual_rule_org_code"),
        Index("idx_accrual_rule_org_status_freq", "organization_id", "status", "frequency"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    code: Mapped[str] = mapped_column(String(50), nullable=False)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    rule_type: Mapped[str] = mapped_column(String(20), nullable=False)
    frequency: Mapped[str] = mapped_column(String(20), nullable=False)
    auto_reverse: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    reverse_timing: Mapped[str | None] = mapped_column(String(30), nullable=True)
    start_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    end_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active")
    is_required: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    lines: Mapped[list["AccrualRuleLineModel"]] = relationship(
        back_populates="rule",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="AccrualRuleLineModel.line_no",
    )

    def to_dto(self) -> AccrualRuleInfo:
        return AccrualRuleInfo(
            id=self.id,
            organization_id=self.organization_id,
            code=self.code,
            name=self.name,
            rule_type=AccrualRuleType(self.rule_type),
            frequency=AccrualFrequency(self.frequency),
            auto_reverse=self.auto_reverse,
            reverse_timing=ReverseTiming(self.reverse_timing) if self.reverse_timing else None,
            start_date=self.start_date,
            end_date=self.end_date,
            status=AccrualRuleStatus(self.status),
            is_required=self.is_required,
            lines=tuple(line.to_dto() for line in self.lines),
        )


class AccrualRuleLineModel(TrackedBase):
    """Fixed-amount template line.  ``amount_type`` is always ``fixed``."""

    __tablename__ = "accrual_rule_lines"

    __table_args__ = (
        UniqueConstraint("rule_id", "line_no", name="uq_accrual_rule_line_no"),
    )

    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("accrual_rules.id"), nullable=False
    )
    line_no: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("accounts.id"), nullable=False
    )
    dc: Mapped[str] = mapped_column(String(10), nullable=False)
    amount_type: Mapped[str] = mapped_column(String(20), nullable=False, default="fixed")
    amount_value: Mapped[Decimal] = mapped_column(Numeric(38, 9), nullable=False)
    description: Mapped[str | None] = mapped_column(String(300), nullable=True)

    rule: Mapped["AccrualRuleModel"] = relationship(back_populates="lines")

    def to_dto(self) -> AccrualRuleLineInfo:
        return AccrualRuleLineInfo(
            line_no=self.line_no,
            account_id=self.account_id,
            dc=LineDirection(self.dc),
            amount=self.amount_value,
            description=self.description,
        )


# ---------------------------------------------------------------------------
# Runs
# ---------------------------------------------------------------------------


class AccrualRunModel(TrackedBase):
    """
    One execution of a rule for (period, as_of_date).

    Lifecycle: running -> posted | failed; posted -> reversed; skipped is
    terminal.  A failed run is retried by re-invocation, which reuses the
    row.
    """

    __tablename__ = "accrual_runs"

    __table_args__ = (
        Index("idx_accrual_run_key", "organization_id", "rule_id", "period_id", "as_of_date"),
        Index("idx_accrual_run_org_period_status", "organization_id", "period_id", "status"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    rule_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("accrual_rules.id"), nullable=False
    )
    period_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("fiscal_periods.id"), nullable=False
    )
    as_of_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="running")
    started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    postings: Mapped[list["AccrualRunPostingModel"]] = relationship(
        back_populates="run",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    def to_dto(self) -> AccrualRunInfo:
        return AccrualRunInfo(
            id=self.id,
            organization_id=self.organization_id,
            rule_id=self.rule_id,
            period_id=self.period_id,
            as_of_date=self.as_of_date,
            status=AccrualRunStatus(self.status),
            started_at=self.started_at,
            completed_at=self.completed_at,
            error=self.error,
            postings=tuple(p.to_dto() for p in self.postings),
        )


class AccrualRunPostingModel(TrackedBase):
    """Run -> journal link plus reversal bookkeeping."""

    __tablename__ = "accrual_run_postings"

    __table_args__ = (
        UniqueConstraint("run_id", "journal_entry_id", name="uq_accrual_run_posting"),
    )

    run_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("accrual_runs.id"), nullable=False
    )
    journal_entry_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("journal_entries.id"), nullable=False
    )
    reversal_journal_entry_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("journal_entries.id"), nullable=True
    )
    reversal_failed_at: Mapped[datetime | None] = mapped_column(
        UTCDateTime(), nullable=True
    )
    reversal_failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    reversal_failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    run: Mapped["AccrualRunModel"] = relationship(back_populates="postings")

    def to_dto(self) -> AccrualRunPostingInfo:
        return AccrualRunPostingInfo(
            journal_entry_id=self.journal_entry_id,
            reversal_journal_entry_id=self.reversal_journal_entry_id,
            reversal_failed_at=self.reversal_failed_at,
            reversal_failure_reason=self.reversal_failure_reason,
            reversal_failure_count=self.reversal_failure_count,
        )
