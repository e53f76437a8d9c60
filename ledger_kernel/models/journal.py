"""
Module: ledger_kernel.models.journal
Responsibility: ORM persistence for journal entries and their lines.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - (organization_id, idempotency_key) is unique; NULL keys never collide.
    - Lines of one entry are numbered 1..n (uq_journal_line_no).
    - Each line carries exactly one non-zero side (checked by JournalService).
    - Status moves draft -> posted -> voided; voided is terminal.

Audit relevance:
    Posted entries are never edited or deleted.  A void is recorded as a
    separate reversal entry plus void stamps on the original.
"""

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID

from sqlalchemy import (
    Date,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import TrackedBase, UTCDateTime, UUIDString


class JournalEntryType(str, Enum):
    GENERAL = "GENERAL"
    ADJUSTMENT = "ADJUSTMENT"
    CLOSING = "CLOSING"


class JournalEntryStatus(str, Enum):
    DRAFT = "draft"
    POSTED = "posted"
    VOIDED = "voided"


class JournalEntry(TrackedBase):
    """
    Journal entry header.

    Contract:
        entry_date always falls inside the referenced period.  Reversal
        entries point back at the entry they offset via reversal_of_id; a
        voided original points forward via reversed_by_id.
    """

    __tablename__ = "journal_entries"

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "idempotency_key", name="uq_journal_org_idempotency"
        ),
        Index("idx_journal_org_period_status", "organization_id", "period_id", "status"),
        Index("idx_journal_reversal_of", "reversal_of_id"),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    entry_type: Mapped[JournalEntryType] = mapped_column(
        String(20),
        default=JournalEntryType.GENERAL,
        nullable=False,
    )

    period_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("fiscal_periods.id"),
        nullable=False,
    )

    entry_date: Mapped[date] = mapped_column(Date, nullable=False)

    memo: Mapped[str | None] = mapped_column(String(1000), nullable=True)

    status: Mapped[JournalEntryStatus] = mapped_column(
        String(20),
        default=JournalEntryStatus.DRAFT,
        nullable=False,
    )

    idempotency_key: Mapped[str | None] = mapped_column(String(120), nullable=True)

    posted_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    posted_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    voided_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    voided_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    void_reason: Mapped[str | None] = mapped_column(String(300), nullable=True)

    reversal_of_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("journal_entries.id"),
        nullable=True,
    )

    reversed_by_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("journal_entries.id"),
        nullable=True,
    )

    lines: Mapped[list["JournalLine"]] = relationship(
        back_populates="entry",
        cascade="all, delete-orphan",
        lazy="selectin",
        order_by="JournalLine.line_no",
    )

    def __repr__(self) -> str:
        return f"<JournalEntry {self.id}: {self.status}>"

    @property
    def is_draft(self) -> bool:
        return self.status == JournalEntryStatus.DRAFT

    @property
    def is_posted(self) -> bool:
        return self.status == JournalEntryStatus.POSTED

    @property
    def total_debits(self) -> Decimal:
        return sum((line.debit for line in self.lines), Decimal("0"))

    @property
    def total_credits(self) -> Decimal:
        return sum((line.credit for line in self.lines), Decimal("0"))


class JournalLine(TrackedBase):
    """
    One side of a journal entry.

    Guarantees:
        - Exactly one of debit / credit is greater than zero.
        - Amounts are base currency, 2-decimal fixed point.
    """

    __tablename__ = "journal_lines"

    __table_args__ = (
        UniqueConstraint("journal_entry_id", "line_no", name="uq_journal_line_no"),
        Index("idx_line_account", "account_id"),
    )

    journal_entry_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("journal_entries.id"),
        nullable=False,
    )

    line_no: Mapped[int] = mapped_column(Integer, nullable=False)

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("accounts.id"),
        nullable=False,
    )

    description: Mapped[str | None] = mapped_column(String(300), nullable=True)

    debit: Mapped[Decimal] = mapped_column(Numeric(38, 9), default=Decimal("0"), nullable=False)

    credit: Mapped[Decimal] = mapped_column(Numeric(38, 9), default=Decimal("0"), nullable=False)

    entry: Mapped["JournalEntry"] = relationship(back_populates="lines")

    def __repr__(self) -> str:
        return f"<JournalLine {self.line_no}: Dr {self.debit} Cr {self.credit}>"
