"""
Module: ledger_kernel.models.fiscal_period
Responsibility: ORM persistence for accounting periods -- controls which date
    ranges accept postings.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - (organization_id, period_code) is unique.
    - Date ranges of one organisation never overlap; checked by
      PeriodService under a per-organisation named lock.
    - Lifecycle is open -> closed -> open (reopen is an administrative
      override).
"""

from datetime import date, datetime
from enum import Enum
from uuid import UUID

from sqlalchemy import Date, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UTCDateTime, UUIDString
from ledger_kernel.db.types import enum_value


class PeriodStatus(str, Enum):
    OPEN = "open"
    CLOSED = "closed"


class FiscalPeriod(TrackedBase):
    """
    Accounting period for one organisation.

    Guarantees:
        - start_date <= end_date (enforced by the service layer).
        - Both bounds are inclusive.
    """

    __tablename__ = "fiscal_periods"

    __table_args__ = (
        UniqueConstraint("organization_id", "period_code", name="uq_period_org_code"),
        Index("idx_period_org_dates", "organization_id", "start_date", "end_date"),
        Index("idx_period_org_status", "organization_id", "status"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    # Period identifier (e.g., "2026-01", "FY2026-Q1")
    period_code: Mapped[str] = mapped_column(String(50), nullable=False)

    start_date: Mapped[date] = mapped_column(Date, nullable=False)

    end_date: Mapped[date] = mapped_column(Date, nullable=False)

    status: Mapped[PeriodStatus] = mapped_column(
        String(20),
        default=PeriodStatus.OPEN,
        nullable=False,
    )

    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    closed_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    reopened_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    reopened_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return f"<FiscalPeriod {self.period_code}: {enum_value(self.status)}>"

    @property
    def is_open(self) -> bool:
        return self.status == PeriodStatus.OPEN

    @property
    def is_closed(self) -> bool:
        return self.status == PeriodStatus.CLOSED

    def contains_date(self, check_date: date) -> bool:
        """Check if a date falls within this period."""
        return self.start_date <= check_date <= self.end_date
