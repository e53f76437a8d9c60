"""
Module: ledger_kernel.selectors.ledger_selector
Responsibility: Read-side ledger inquiry: trial balance, general-ledger
    balances, account activity, and a line-level recomputation of the stored
    balances for reconciliation.
Architecture position: Kernel > Selectors.  Read-only.

Invariants relied on:
    - ledger_balances rows are the running totals written by JournalService.
      Every posted line, and every line of an entry later voided, has been
      merged exactly once.  recompute_period_totals() re-derives the same
      numbers from journal_lines so the two can be compared.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import and_, distinct, func, select
from sqlalchemy.orm import Session

from ledger_kernel.domain.dtos import AccountActivityRow, TrialBalanceRow
from ledger_kernel.exceptions import AccountNotFoundError
from ledger_kernel.models.account import Account, AccountType, NormalBalance
from ledger_kernel.models.fiscal_period import FiscalPeriod
from ledger_kernel.models.journal import JournalEntry, JournalEntryStatus, JournalLine
from ledger_kernel.models.ledger_balance import LedgerBalance
from ledger_kernel.selectors.base import BaseSelector

_ZERO = Decimal("0")

# Entries whose lines have hit the ledger (a voided entry keeps its effect;
# its reversal offsets it).
_LEDGER_STATUSES = (JournalEntryStatus.POSTED.value, JournalEntryStatus.VOIDED.value)


class LedgerSelector(BaseSelector[LedgerBalance]):
    """
    Ledger inquiry.

    Guarantees:
        - Column selects only; never returns ORM instances, never stale
          identity-map values.
    """

    def __init__(self, session: Session):
        super().__init__(session)

    def trial_balance(self, organization_id: UUID, period_id: UUID) -> list[TrialBalanceRow]:
        """
        Every account of the organisation with its totals for the period
        (zero when the account has no balance row), ordered by code.
        """
        query = (
            select(
                Account.id,
                Account.code,
                Account.name,
                Account.account_type,
                Account.normal_balance,
                LedgerBalance.debit_total,
                LedgerBalance.credit_total,
            )
            .outerjoin(
                LedgerBalance,
                and_(
                    LedgerBalance.account_id == Account.id,
                    LedgerBalance.organization_id == organization_id,
                    LedgerBalance.period_id == period_id,
                ),
            )
            .where(Account.organization_id == organization_id)
            .order_by(Account.code)
        )
        return [self._row(r) for r in self.session.execute(query).all()]

    def gl_balances(self, organization_id: UUID, period_id: UUID) -> list[TrialBalanceRow]:
        """Only accounts that have a balance row for the period."""
        query = (
            select(
                Account.id,
                Account.code,
                Account.name,
                Account.account_type,
                Account.normal_balance,
                LedgerBalance.debit_total,
                LedgerBalance.credit_total,
            )
            .join(Account, LedgerBalance.account_id == Account.id)
            .where(
                LedgerBalance.organization_id == organization_id,
                LedgerBalance.period_id == period_id,
            )
            .order_by(Account.code)
        )
        return [self._row(r) for r in self.session.execute(query).all()]

    def account_activity(
        self,
        organization_id: UUID,
        account_id: UUID,
        from_date: date,
        to_date: date,
    ) -> list[AccountActivityRow]:
        """
        Posted and voided lines hitting ``account_id`` with an entry date in
        [from_date, to_date], ordered by date.

        Raises:
            AccountNotFoundError: account not in the organisation.
        """
        exists = self.session.execute(
            select(Account.id).where(
                Account.organization_id == organization_id,
                Account.id == account_id,
            )
        ).scalar_one_or_none()
        if exists is None:
            raise AccountNotFoundError(str(account_id))

        query = (
            select(
                JournalEntry.id,
                JournalEntry.entry_date,
                JournalEntry.status,
                JournalEntry.memo,
                JournalLine.line_no,
                JournalLine.description,
                JournalLine.debit,
                JournalLine.credit,
            )
            .join(JournalEntry, JournalLine.journal_entry_id == JournalEntry.id)
            .where(
                JournalEntry.organization_id == organization_id,
                JournalLine.account_id == account_id,
                JournalEntry.status.in_(_LEDGER_STATUSES),
                JournalEntry.entry_date >= from_date,
                JournalEntry.entry_date <= to_date,
            )
            .order_by(JournalEntry.entry_date, JournalEntry.created_at, JournalLine.line_no)
        )
        return [
            AccountActivityRow(
                journal_id=r.id,
                entry_date=r.entry_date,
                status=JournalEntryStatus(r.status),
                memo=r.memo,
                line_no=r.line_no,
                description=r.description,
                debit=r.debit,
                credit=r.credit,
            )
            for r in self.session.execute(query).all()
        ]

    def recompute_period_totals(
        self, organization_id: UUID, period_id: UUID
    ) -> dict[UUID, tuple[Decimal, Decimal]]:
        """``{account_id: (debits, credits)}`` summed from journal lines."""
        query = (
            select(
                JournalLine.account_id,
                func.sum(JournalLine.debit),
                func.sum(JournalLine.credit),
            )
            .join(JournalEntry, JournalLine.journal_entry_id == JournalEntry.id)
            .where(
                JournalEntry.organization_id == organization_id,
                JournalEntry.period_id == period_id,
                JournalEntry.status.in_(_LEDGER_STATUSES),
            )
            .group_by(JournalLine.account_id)
        )
        return {
            account_id: (Decimal(debits or _ZERO), Decimal(credits or _ZERO))
            for account_id, debits, credits in self.session.execute(query).all()
        }

    def list_organization_ids(self) -> list[UUID]:
        """Organisations known to the ledger (those with at least one period)."""
        return list(
            self.session.execute(
                select(distinct(FiscalPeriod.organization_id)).order_by(
                    FiscalPeriod.organization_id
                )
            ).scalars().all()
        )

    @staticmethod
    def _row(r) -> TrialBalanceRow:
        return TrialBalanceRow(
            account_id=r.id,
            account_code=r.code,
            account_name=r.name,
            account_type=AccountType(r.account_type),
            normal_balance=NormalBalance(r.normal_balance),
            debit_total=r.debit_total if r.debit_total is not None else _ZERO,
            credit_total=r.credit_total if r.credit_total is not None else _ZERO,
        )
