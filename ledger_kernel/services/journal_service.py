"""
JournalService -- the Journal Engine.

Responsibility:
    Owns the journal state machine ``draft --post--> posted --void--> voided``:
    draft creation with idempotency, posting with additive ledger-balance
    merge, void-by-reversal, and cross-period reversal for accruals.

Architecture position:
    Kernel > Services -- imperative shell.  Uses PeriodService for period
    and date validation and AccountService as the account directory.
    Called by outer callers (invoices, bills, payments), by the accrual
    runner, and directly through ``session_scope()``.

Invariants enforced:
    - sum(debit) == sum(credit) to the cent, checked at draft, at post and
      on every reversal.  Unbalanced input is rejected, never rounded.
    - Entry date inside an open period, checked at draft and again at post
      (the period may have closed in between).
    - Only postable+active accounts on draft and post.
    - Idempotency key replay returns the existing entry from inside the
      same transaction that would have created it; a concurrent insert
      that loses the unique-constraint race also resolves to the winner.
    - The journal row is locked FOR UPDATE for post and void, so a second
      concurrent post sees ``posted`` and fails with NotDraftError.
    - Ledger balances only grow, merged additively in the posting
      transaction.  History is never rewritten: a void posts a reversal.
    - Flush-only: post+merge and reversal+void are atomic in the caller's
      transaction.

Failure modes:
    - InvalidJournalLineError, UnbalancedEntryError, InvalidAccountError
    - PeriodNotFoundError, PeriodNotOpenError, EntryDateOutOfRangeError
    - JournalNotFoundError, NotDraftError, EntryNotPostedError,
      EntryAlreadyReversedError
    - InternalInconsistencyError if a reversal would not balance.

Audit relevance:
    journal_draft_created / journal_posted / journal_voided /
    journal_reversed records carry organization_id, journal_id, actor_id
    and totals.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.db.types import ZERO, enum_value, parse_money
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import (
    DraftResult,
    JournalDraft,
    JournalEntryInfo,
    JournalLineInfo,
    JournalLineInput,
    PostResult,
    ReversalResult,
    VoidResult,
)
from ledger_kernel.exceptions import (
    EntryAlreadyReversedError,
    EntryNotPostedError,
    InternalInconsistencyError,
    InvalidAccountError,
    InvalidJournalLineError,
    JournalNotFoundError,
    NotDraftError,
    UnbalancedEntryError,
    ValidationError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.account import AccountStatus
from ledger_kernel.models.journal import (
    JournalEntry,
    JournalEntryStatus,
    JournalEntryType,
    JournalLine,
)
from ledger_kernel.models.ledger_balance import LedgerBalance
from ledger_kernel.services.account_service import AccountService
from ledger_kernel.services.base import BaseService
from ledger_kernel.services.period_service import PeriodService

logger = get_logger("services.journal")

MAX_MEMO_LENGTH = 500
MAX_IDEMPOTENCY_KEY_LENGTH = 120
MAX_REASON_LENGTH = 300
MAX_LINE_DESCRIPTION_LENGTH = 300
REVERSAL_LINE_PREFIX = "REV: "
MIN_LINES = 2


def _reversal_description(description: str | None) -> str:
    """``REV: `` plus the original description, cut to the column length."""
    text = f"{REVERSAL_LINE_PREFIX}{description or ''}".rstrip()
    return text[:MAX_LINE_DESCRIPTION_LENGTH]


class JournalService(BaseService[JournalEntry]):
    """
    Journal Engine.

    Contract:
        Every public method takes the organisation id first and returns a
        frozen result DTO.  All writes flush within the caller's
        transaction; a raised error means the caller must roll back.

    Guarantees:
        - ``create_draft`` with a known idempotency key returns the
          existing entry with ``idempotent=True`` and writes nothing.
        - ``post_draft`` merges balances exactly once per entry.
        - ``void_by_reversal`` either voids and posts the reversal, or
          (after rollback) leaves the original posted and unvoided.

    Non-goals:
        - No multi-currency: amounts are base currency.
        - Does NOT write audit records; callers do.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        periods: PeriodService | None = None,
        accounts: AccountService | None = None,
    ):
        super().__init__(session)
        self._clock = clock or SystemClock()
        self._periods = periods or PeriodService(session, self._clock)
        self._accounts = accounts or AccountService(session)

    # -------------------------------------------------------------------------
    # Draft
    # -------------------------------------------------------------------------

    def create_draft(
        self,
        organization_id: UUID,
        actor_id: UUID,
        draft: JournalDraft,
    ) -> DraftResult:
        """
        Create a draft journal entry.

        Order of checks: payload shape, idempotency replay, period open and
        date in range, accounts postable, balance.

        Raises:
            ValidationError family, PeriodNotFoundError, PeriodNotOpenError,
            EntryDateOutOfRangeError.
        """
        entry_type = self._coerce_entry_type(draft.entry_type)
        if draft.memo is not None and len(draft.memo) > MAX_MEMO_LENGTH:
            raise ValidationError(f"memo exceeds {MAX_MEMO_LENGTH} characters")
        if (
            draft.idempotency_key is not None
            and len(draft.idempotency_key) > MAX_IDEMPOTENCY_KEY_LENGTH
        ):
            raise ValidationError(
                f"idempotency_key exceeds {MAX_IDEMPOTENCY_KEY_LENGTH} characters"
            )
        lines = self._normalize_lines(draft.lines)

        if draft.idempotency_key:
            existing = self._get_by_idempotency_key(organization_id, draft.idempotency_key)
            if existing is not None:
                logger.info(
                    "journal_idempotent_replay",
                    extra={
                        "journal_id": str(existing.id),
                        "idempotency_key": draft.idempotency_key,
                    },
                )
                return DraftResult(
                    journal_id=existing.id,
                    status=JournalEntryStatus(existing.status),
                    idempotent=True,
                )

        self._periods.validate_posting_date(organization_id, draft.period_id, draft.entry_date)
        self._validate_accounts(organization_id, (line.account_id for line in lines))
        self._validate_balance(lines)

        entry = JournalEntry(
            organization_id=organization_id,
            entry_type=entry_type,
            period_id=draft.period_id,
            entry_date=draft.entry_date,
            memo=draft.memo,
            status=JournalEntryStatus.DRAFT,
            idempotency_key=draft.idempotency_key,
            created_by_id=actor_id,
        )
        entry.lines = [
            JournalLine(
                line_no=i,
                account_id=line.account_id,
                debit=line.debit,
                credit=line.credit,
                description=line.description,
                created_by_id=actor_id,
            )
            for i, line in enumerate(lines, start=1)
        ]

        try:
            with self.session.begin_nested():
                self.session.add(entry)
                self.session.flush()
        except IntegrityError:
            if not draft.idempotency_key:
                raise
            # Concurrent create with the same key won the insert.
            existing = self._get_by_idempotency_key(organization_id, draft.idempotency_key)
            if existing is None:
                raise
            logger.info(
                "journal_idempotent_race_resolved",
                extra={"journal_id": str(existing.id)},
            )
            return DraftResult(
                journal_id=existing.id,
                status=JournalEntryStatus(existing.status),
                idempotent=True,
            )

        logger.info(
            "journal_draft_created",
            extra={
                "organization_id": str(organization_id),
                "journal_id": str(entry.id),
                "period_id": str(draft.period_id),
                "line_count": len(lines),
                "total": str(sum((line.debit for line in lines), ZERO)),
                "actor_id": str(actor_id),
            },
        )
        return DraftResult(journal_id=entry.id, status=JournalEntryStatus.DRAFT)

    # -------------------------------------------------------------------------
    # Post
    # -------------------------------------------------------------------------

    def post_draft(
        self,
        organization_id: UUID,
        journal_id: UUID,
        actor_id: UUID,
    ) -> PostResult:
        """
        Post a draft: re-validate, merge balances, flip status.

        Raises:
            JournalNotFoundError, NotDraftError, PeriodNotOpenError,
            EntryDateOutOfRangeError, ValidationError family.
        """
        entry = self._lock_entry(organization_id, journal_id)
        if not entry.is_draft:
            raise NotDraftError(str(journal_id), enum_value(entry.status))

        self._periods.validate_posting_date(organization_id, entry.period_id, entry.entry_date)

        if not entry.lines:
            raise ValidationError("Journal has no lines")
        self._validate_accounts(organization_id, (line.account_id for line in entry.lines))
        self._validate_balance(entry.lines)

        self._merge_balances(organization_id, entry.period_id, entry.lines)

        entry.status = JournalEntryStatus.POSTED
        entry.posted_at = self._clock.now()
        entry.posted_by_id = actor_id
        entry.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "journal_posted",
            extra={
                "organization_id": str(organization_id),
                "journal_id": str(journal_id),
                "period_id": str(entry.period_id),
                "total": str(entry.total_debits),
                "actor_id": str(actor_id),
            },
        )
        return PostResult(journal_id=entry.id, status=JournalEntryStatus.POSTED)

    # -------------------------------------------------------------------------
    # Void / reverse
    # -------------------------------------------------------------------------

    def void_by_reversal(
        self,
        organization_id: UUID,
        journal_id: UUID,
        actor_id: UUID,
        reason: str,
    ) -> VoidResult:
        """
        Void a posted entry by posting its mirror image into the same period.

        The original keeps its ledger effect; the reversal nets it to zero.

        Raises:
            ValidationError: empty or over-long reason.
            JournalNotFoundError, EntryNotPostedError (includes already
            voided), PeriodNotOpenError.
        """
        reason = self._require_reason(reason)
        entry = self._lock_entry(organization_id, journal_id)
        if not entry.is_posted:
            raise EntryNotPostedError(str(journal_id), enum_value(entry.status))
        if entry.reversed_by_id is not None:
            raise EntryAlreadyReversedError(str(journal_id), str(entry.reversed_by_id))

        self._periods.validate_posting_date(organization_id, entry.period_id, entry.entry_date)

        reversal = self._post_reversal(
            entry,
            actor_id=actor_id,
            period_id=entry.period_id,
            entry_date=entry.entry_date,
            reason=reason,
            idempotency_key=None,
        )

        now = self._clock.now()
        entry.status = JournalEntryStatus.VOIDED
        entry.voided_at = now
        entry.voided_by_id = actor_id
        entry.void_reason = reason
        entry.reversed_by_id = reversal.id
        entry.memo = f"{entry.memo or ''} | Voided by reversal JE {reversal.id}"
        entry.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "journal_voided",
            extra={
                "organization_id": str(organization_id),
                "journal_id": str(journal_id),
                "reversal_journal_id": str(reversal.id),
                "reason": reason,
                "actor_id": str(actor_id),
            },
        )
        return VoidResult(
            journal_id=entry.id,
            status=JournalEntryStatus.VOIDED,
            reversal_journal_id=reversal.id,
        )

    def reverse_into_period(
        self,
        organization_id: UUID,
        journal_id: UUID,
        actor_id: UUID,
        target_period_id: UUID,
        reason: str,
        idempotency_key: str | None = None,
    ) -> ReversalResult:
        """
        Post the mirror image of a posted entry into another open period,
        dated at that period's start.  The original stays ``posted``.

        Used for auto-reversing accruals.  Replaying ``idempotency_key``
        returns the existing reversal.

        Raises:
            JournalNotFoundError, EntryNotPostedError,
            EntryAlreadyReversedError, PeriodNotFoundError,
            PeriodNotOpenError.
        """
        reason = self._require_reason(reason)

        if idempotency_key:
            existing = self._get_by_idempotency_key(organization_id, idempotency_key)
            if existing is not None:
                return ReversalResult(
                    original_journal_id=journal_id,
                    reversal_journal_id=existing.id,
                    period_id=existing.period_id,
                    idempotent=True,
                )

        entry = self._lock_entry(organization_id, journal_id)
        if not entry.is_posted:
            raise EntryNotPostedError(str(journal_id), enum_value(entry.status))
        if entry.reversed_by_id is not None:
            raise EntryAlreadyReversedError(str(journal_id), str(entry.reversed_by_id))

        target = self._periods.get_period(organization_id, target_period_id)
        self._periods.validate_posting_date(organization_id, target.id, target.start_date)

        reversal = self._post_reversal(
            entry,
            actor_id=actor_id,
            period_id=target.id,
            entry_date=target.start_date,
            reason=reason,
            idempotency_key=idempotency_key,
        )
        entry.reversed_by_id = reversal.id
        entry.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "journal_reversed",
            extra={
                "organization_id": str(organization_id),
                "journal_id": str(journal_id),
                "reversal_journal_id": str(reversal.id),
                "target_period_id": str(target.id),
            },
        )
        return ReversalResult(
            original_journal_id=entry.id,
            reversal_journal_id=reversal.id,
            period_id=target.id,
        )

    # -------------------------------------------------------------------------
    # Read
    # -------------------------------------------------------------------------

    def get_entry(self, organization_id: UUID, journal_id: UUID) -> JournalEntryInfo:
        entry = self.session.execute(
            select(JournalEntry).where(
                JournalEntry.organization_id == organization_id,
                JournalEntry.id == journal_id,
            )
        ).scalar_one_or_none()
        if entry is None:
            raise JournalNotFoundError(str(journal_id))
        return self._to_dto(entry)

    def list_entries(
        self,
        organization_id: UUID,
        period_id: UUID | None = None,
        status: JournalEntryStatus | None = None,
    ) -> list[JournalEntryInfo]:
        stmt = select(JournalEntry).where(JournalEntry.organization_id == organization_id)
        if period_id is not None:
            stmt = stmt.where(JournalEntry.period_id == period_id)
        if status is not None:
            stmt = stmt.where(JournalEntry.status == JournalEntryStatus(status).value)
        stmt = stmt.order_by(JournalEntry.entry_date, JournalEntry.created_at)
        return [self._to_dto(e) for e in self.session.execute(stmt).scalars().all()]

    @staticmethod
    def _to_dto(entry: JournalEntry) -> JournalEntryInfo:
        return JournalEntryInfo(
            id=entry.id,
            organization_id=entry.organization_id,
            period_id=entry.period_id,
            entry_type=JournalEntryType(entry.entry_type),
            entry_date=entry.entry_date,
            status=JournalEntryStatus(entry.status),
            memo=entry.memo,
            idempotency_key=entry.idempotency_key,
            lines=tuple(
                JournalLineInfo(
                    line_no=line.line_no,
                    account_id=line.account_id,
                    debit=line.debit,
                    credit=line.credit,
                    description=line.description,
                )
                for line in entry.lines
            ),
            posted_at=entry.posted_at,
            voided_at=entry.voided_at,
            void_reason=entry.void_reason,
            reversal_of_id=entry.reversal_of_id,
            reversed_by_id=entry.reversed_by_id,
        )

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    @staticmethod
    def _coerce_entry_type(entry_type: JournalEntryType | str) -> JournalEntryType:
        try:
            return JournalEntryType(entry_type)
        except ValueError:
            raise ValidationError(f"Unknown journal type: {entry_type}") from None

    @staticmethod
    def _require_reason(reason: str) -> str:
        reason = (reason or "").strip()
        if not reason:
            raise ValidationError("reason is required")
        if len(reason) > MAX_REASON_LENGTH:
            raise ValidationError(f"reason exceeds {MAX_REASON_LENGTH} characters")
        return reason

    @staticmethod
    def _normalize_lines(lines: Sequence[JournalLineInput]) -> list[JournalLineInput]:
        """Parse amounts and enforce one strictly positive side per line."""
        if len(lines) < MIN_LINES:
            raise InvalidJournalLineError(None, f"at least {MIN_LINES} lines are required")

        normalized: list[JournalLineInput] = []
        for i, line in enumerate(lines, start=1):
            try:
                debit = parse_money(line.debit)
                credit = parse_money(line.credit)
            except ValueError as exc:
                raise InvalidJournalLineError(i, str(exc)) from None
            if debit < ZERO or credit < ZERO:
                raise InvalidJournalLineError(i, "amounts must not be negative")
            if (debit > ZERO) == (credit > ZERO):
                raise InvalidJournalLineError(i, "must have either debit or credit")
            if line.description is not None and len(line.description) > MAX_LINE_DESCRIPTION_LENGTH:
                raise InvalidJournalLineError(
                    i, f"description exceeds {MAX_LINE_DESCRIPTION_LENGTH} characters"
                )
            normalized.append(
                JournalLineInput(
                    account_id=line.account_id,
                    debit=debit,
                    credit=credit,
                    description=line.description,
                )
            )
        return normalized

    @staticmethod
    def _validate_balance(lines: Iterable) -> None:
        debits = ZERO
        credits = ZERO
        for line in lines:
            debits += Decimal(line.debit)
            credits += Decimal(line.credit)
        if debits != credits:
            logger.warning(
                "unbalanced_entry_rejected",
                extra={"debits": str(debits), "credits": str(credits)},
            )
            raise UnbalancedEntryError(str(debits), str(credits))

    def _validate_accounts(self, organization_id: UUID, account_ids: Iterable[UUID]) -> None:
        ids = list(dict.fromkeys(account_ids))
        found = self._accounts.get_posting_status(organization_id, ids)
        for account_id in ids:
            if account_id not in found:
                raise InvalidAccountError(str(account_id), "account not found")
            is_postable, status = found[account_id]
            if not is_postable:
                raise InvalidAccountError(str(account_id), "account is not postable")
            if status != AccountStatus.ACTIVE:
                raise InvalidAccountError(str(account_id), "account is not active")

    def _get_by_idempotency_key(
        self, organization_id: UUID, idempotency_key: str
    ) -> JournalEntry | None:
        return self.session.execute(
            select(JournalEntry).where(
                JournalEntry.organization_id == organization_id,
                JournalEntry.idempotency_key == idempotency_key,
            )
        ).scalar_one_or_none()

    def _lock_entry(self, organization_id: UUID, journal_id: UUID) -> JournalEntry:
        entry = self.session.execute(
            select(JournalEntry)
            .where(
                JournalEntry.organization_id == organization_id,
                JournalEntry.id == journal_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if entry is None:
            raise JournalNotFoundError(str(journal_id))
        return entry

    def _post_reversal(
        self,
        original: JournalEntry,
        *,
        actor_id: UUID,
        period_id: UUID,
        entry_date: date,
        reason: str,
        idempotency_key: str | None,
    ) -> JournalEntry:
        """Insert and post the swapped-line mirror of ``original``."""
        now = self._clock.now()
        reversal = JournalEntry(
            organization_id=original.organization_id,
            entry_type=original.entry_type,
            period_id=period_id,
            entry_date=entry_date,
            memo=f"Reversal of JE {original.id}. Reason: {reason}",
            status=JournalEntryStatus.POSTED,
            idempotency_key=idempotency_key,
            posted_at=now,
            posted_by_id=actor_id,
            reversal_of_id=original.id,
            created_by_id=actor_id,
        )
        reversal.lines = [
            JournalLine(
                line_no=line.line_no,
                account_id=line.account_id,
                debit=line.credit,
                credit=line.debit,
                description=_reversal_description(line.description),
                created_by_id=actor_id,
            )
            for line in original.lines
        ]

        try:
            self._validate_balance(reversal.lines)
        except UnbalancedEntryError as exc:
            raise InternalInconsistencyError(
                "Reversal entry not balanced",
                journal_id=str(original.id),
                debits=exc.debits,
                credits=exc.credits,
            ) from exc

        self.session.add(reversal)
        self.session.flush()
        self._merge_balances(original.organization_id, period_id, reversal.lines)
        return reversal

    def _merge_balances(
        self,
        organization_id: UUID,
        period_id: UUID,
        lines: Iterable,
    ) -> None:
        """
        Add each account's debit/credit to its (org, period, account) row.

        Accounts are merged in a fixed order so concurrent postings touching
        the same accounts acquire row locks in the same order.
        """
        totals: dict[UUID, tuple[Decimal, Decimal]] = {}
        for line in lines:
            debit, credit = totals.get(line.account_id, (ZERO, ZERO))
            totals[line.account_id] = (debit + Decimal(line.debit), credit + Decimal(line.credit))

        now = self._clock.now()
        for account_id in sorted(totals, key=str):
            debit, credit = totals[account_id]
            if self._increment_balance(organization_id, period_id, account_id, debit, credit, now):
                continue
            try:
                with self.session.begin_nested():
                    self.session.add(
                        LedgerBalance(
                            organization_id=organization_id,
                            period_id=period_id,
                            account_id=account_id,
                            debit_total=debit,
                            credit_total=credit,
                            updated_at=now,
                        )
                    )
                    self.session.flush()
            except IntegrityError:
                # Another transaction created the row first; add onto it.
                if not self._increment_balance(
                    organization_id, period_id, account_id, debit, credit, now
                ):
                    raise

    def _increment_balance(
        self,
        organization_id: UUID,
        period_id: UUID,
        account_id: UUID,
        debit: Decimal,
        credit: Decimal,
        now,
    ) -> bool:
        result = self.session.execute(
            update(LedgerBalance)
            .where(
                LedgerBalance.organization_id == organization_id,
                LedgerBalance.period_id == period_id,
                LedgerBalance.account_id == account_id,
            )
            .values(
                debit_total=LedgerBalance.debit_total + debit,
                credit_total=LedgerBalance.credit_total + credit,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        return result.rowcount > 0
