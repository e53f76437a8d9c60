"""
Module: ledger_kernel.models.ledger_balance
Responsibility: Running debit/credit totals per (organisation, period, account).
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - One row per (organization_id, period_id, account_id).
    - Totals only ever grow, by additive merge inside the posting
      transaction (JournalService._merge_balances).  Voids are corrected by
      posting a reversal, never by decrementing.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Numeric, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import Base, UTCDateTime, UUIDString


class LedgerBalance(Base):
    """Aggregated general-ledger balance; derived data, no actor columns."""

    __tablename__ = "ledger_balances"

    __table_args__ = (
        UniqueConstraint(
            "organization_id", "period_id", "account_id", name="uq_ledger_balance_key"
        ),
    )

    organization_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    period_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("fiscal_periods.id"),
        nullable=False,
    )

    account_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("accounts.id"),
        nullable=False,
    )

    debit_total: Mapped[Decimal] = mapped_column(Numeric(38, 9), default=Decimal("0"), nullable=False)

    credit_total: Mapped[Decimal] = mapped_column(Numeric(38, 9), default=Decimal("0"), nullable=False)

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        onupdate=func.now(),
        nullable=False,
    )
