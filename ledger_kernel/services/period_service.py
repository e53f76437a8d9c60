"""
PeriodService -- accounting period lifecycle and posting-date validation.

Responsibility:
    Manages the period lifecycle (open -> closed -> open) for one
    organisation at a time and validates that postings target an open
    period whose date range contains the entry date.

Architecture position:
    Kernel > Services -- imperative shell.
    Called by JournalService on every draft and post, by the accrual runner
    to resolve target periods, and by PeriodCloseOrchestrator
    (ledger_services) to drive close with its accrual guards.

Invariants enforced:
    - Periods of one organisation never overlap.  Creation serialises on a
      per-organisation named lock so the overlap check cannot race.
    - Only open periods accept postings; entry dates must be inside
      [start_date, end_date].
    - State transitions lock the period row (SELECT ... FOR UPDATE);
      posting validation takes a shared lock (FOR SHARE) so a close cannot
      slip in between validation and commit.
    - Flush-only: never commits.

Failure modes:
    - InvalidPeriodRangeError: start_date after end_date.
    - PeriodOverlapError / DuplicateCodeError on create.
    - PeriodNotFoundError, PeriodNotOpenError, PeriodNotClosedError,
      EntryDateOutOfRangeError, NoOpenPeriodError, OpenDraftsError.

Audit relevance:
    Create, close and reopen are logged with organization_id, period_code
    and actor_id.  Reopen is logged at WARNING: it is an administrative
    override with no guard beyond "must be closed".
"""

from datetime import date
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_kernel.db.locks import acquire_transaction_lock
from ledger_kernel.db.types import enum_value
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import FiscalPeriodInfo
from ledger_kernel.exceptions import (
    DuplicateCodeError,
    EntryDateOutOfRangeError,
    InvalidPeriodRangeError,
    NoOpenPeriodError,
    OpenDraftsError,
    PeriodNotClosedError,
    PeriodNotFoundError,
    PeriodNotOpenError,
    PeriodOverlapError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.fiscal_period import FiscalPeriod, PeriodStatus
from ledger_kernel.models.journal import JournalEntry, JournalEntryStatus
from ledger_kernel.services.base import BaseService

logger = get_logger("services.period")


class PeriodService(BaseService[FiscalPeriod]):
    """
    Service for the period lifecycle.

    Contract:
        Accepts period ids scoped by organisation and returns frozen
        ``FiscalPeriodInfo`` DTOs.  Lifecycle methods flush within the
        caller's transaction.

    Guarantees:
        - Concurrent close/reopen attempts serialise on the period row.
        - ``validate_posting_date`` holds a shared row lock until the
          caller's transaction ends.

    Non-goals:
        - Does NOT run period-end accruals or check accrual guards
          (PeriodCloseOrchestrator in ledger_services does that).
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        super().__init__(session)
        self._clock = clock or SystemClock()

    @staticmethod
    def to_dto(period: FiscalPeriod) -> FiscalPeriodInfo:
        return FiscalPeriodInfo(
            id=period.id,
            organization_id=period.organization_id,
            period_code=period.period_code,
            start_date=period.start_date,
            end_date=period.end_date,
            status=PeriodStatus(period.status),
            closed_at=period.closed_at,
            closed_by_id=period.closed_by_id,
        )

    # -------------------------------------------------------------------------
    # Create / read
    # -------------------------------------------------------------------------

    def create_period(
        self,
        organization_id: UUID,
        actor_id: UUID,
        period_code: str,
        start_date: date,
        end_date: date,
    ) -> FiscalPeriodInfo:
        """
        Create a new open period.

        Raises:
            InvalidPeriodRangeError: start_date > end_date.
            PeriodOverlapError: range overlaps an existing period of the org.
            DuplicateCodeError: period_code already used in the org.
        """
        if start_date > end_date:
            raise InvalidPeriodRangeError(str(start_date), str(end_date))

        acquire_transaction_lock(self.session, f"period_create:{organization_id}")

        self._validate_no_overlap(organization_id, period_code, start_date, end_date)

        period = FiscalPeriod(
            organization_id=organization_id,
            period_code=period_code,
            start_date=start_date,
            end_date=end_date,
            status=PeriodStatus.OPEN,
            created_by_id=actor_id,
        )

        try:
            with self.session.begin_nested():
                self.session.add(period)
                self.session.flush()
        except IntegrityError:
            raise DuplicateCodeError("Period", period_code) from None

        logger.info(
            "period_created",
            extra={
                "organization_id": str(organization_id),
                "period_code": period_code,
                "start_date": str(start_date),
                "end_date": str(end_date),
            },
        )
        return self.to_dto(period)

    def _validate_no_overlap(
        self,
        organization_id: UUID,
        new_period_code: str,
        start_date: date,
        end_date: date,
    ) -> None:
        """Two ranges overlap iff start1 <= end2 AND start2 <= end1."""
        overlapping = self.session.execute(
            select(FiscalPeriod)
            .where(
                FiscalPeriod.organization_id == organization_id,
                FiscalPeriod.start_date <= end_date,
                FiscalPeriod.end_date >= start_date,
            )
            .order_by(FiscalPeriod.start_date)
        ).scalars().first()

        if overlapping is not None:
            raise PeriodOverlapError(
                new_period_code=new_period_code,
                existing_period_code=overlapping.period_code,
                overlap_start=str(max(start_date, overlapping.start_date)),
                overlap_end=str(min(end_date, overlapping.end_date)),
            )

    def get_period(self, organization_id: UUID, period_id: UUID) -> FiscalPeriodInfo:
        return self.to_dto(self._require(organization_id, period_id))

    def list_periods(self, organization_id: UUID) -> list[FiscalPeriodInfo]:
        periods = self.session.execute(
            select(FiscalPeriod)
            .where(FiscalPeriod.organization_id == organization_id)
            .order_by(FiscalPeriod.start_date)
        ).scalars().all()
        return [self.to_dto(p) for p in periods]

    def find_open_period_covering(
        self, organization_id: UUID, for_date: date
    ) -> FiscalPeriodInfo | None:
        """Latest-starting open period containing ``for_date``, or None."""
        period = self.session.execute(
            select(FiscalPeriod)
            .where(
                FiscalPeriod.organization_id == organization_id,
                FiscalPeriod.status == PeriodStatus.OPEN.value,
                FiscalPeriod.start_date <= for_date,
                FiscalPeriod.end_date >= for_date,
            )
            .order_by(FiscalPeriod.start_date.desc())
            .limit(1)
        ).scalar_one_or_none()
        return self.to_dto(period) if period else None

    def find_open_period_for_date(
        self, organization_id: UUID, for_date: date
    ) -> FiscalPeriodInfo:
        """
        Same as ``find_open_period_covering`` but fails when nothing matches.

        Raises:
            NoOpenPeriodError: no open period covers ``for_date``.
        """
        period = self.find_open_period_covering(organization_id, for_date)
        if period is None:
            raise NoOpenPeriodError(str(for_date))
        return period

    def count_draft_entries(self, organization_id: UUID, period_id: UUID) -> int:
        return self.session.execute(
            select(func.count(JournalEntry.id)).where(
                JournalEntry.organization_id == organization_id,
                JournalEntry.period_id == period_id,
                JournalEntry.status == JournalEntryStatus.DRAFT.value,
            )
        ).scalar_one()

    # -------------------------------------------------------------------------
    # Posting validation
    # -------------------------------------------------------------------------

    def validate_posting_date(
        self,
        organization_id: UUID,
        period_id: UUID,
        entry_date: date,
    ) -> FiscalPeriodInfo:
        """
        Check that ``period_id`` is open and contains ``entry_date``.

        Takes a shared row lock on the period held until the caller's
        transaction ends.

        Raises:
            PeriodNotFoundError, PeriodNotOpenError, EntryDateOutOfRangeError.
        """
        period = self.session.execute(
            select(FiscalPeriod)
            .where(
                FiscalPeriod.organization_id == organization_id,
                FiscalPeriod.id == period_id,
            )
            .with_for_update(read=True)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()
        if period is None:
            raise PeriodNotFoundError(str(period_id))

        if not period.is_open:
            logger.warning(
                "posting_rejected_period_not_open",
                extra={"period_code": period.period_code, "status": enum_value(period.status)},
            )
            raise PeriodNotOpenError(period.period_code, enum_value(period.status))

        if not period.contains_date(entry_date):
            raise EntryDateOutOfRangeError(
                str(entry_date),
                period.period_code,
                str(period.start_date),
                str(period.end_date),
            )
        return self.to_dto(period)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def begin_close(self, organization_id: UUID, period_id: UUID) -> FiscalPeriodInfo:
        """
        Lock the period row and run the kernel-level close guards.

        Raises:
            PeriodNotFoundError: period missing.
            PeriodNotOpenError: period is not open.
            OpenDraftsError: draft journals exist in the period.
        """
        period = self._require(organization_id, period_id, for_update=True)
        if not period.is_open:
            raise PeriodNotOpenError(period.period_code, enum_value(period.status))

        drafts = self.count_draft_entries(organization_id, period_id)
        if drafts:
            logger.warning(
                "period_close_blocked",
                extra={"period_code": period.period_code, "draft_count": drafts},
            )
            raise OpenDraftsError(period.period_code, drafts)
        return self.to_dto(period)

    def mark_closed(
        self, organization_id: UUID, period_id: UUID, actor_id: UUID
    ) -> FiscalPeriodInfo:
        """Transition a locked, open period to closed."""
        period = self._require(organization_id, period_id, for_update=True)
        if not period.is_open:
            raise PeriodNotOpenError(period.period_code, enum_value(period.status))

        period.status = PeriodStatus.CLOSED
        period.closed_at = self._clock.now()
        period.closed_by_id = actor_id
        period.updated_by_id = actor_id
        self.session.flush()

        logger.info(
            "period_closed",
            extra={
                "organization_id": str(organization_id),
                "period_code": period.period_code,
                "actor_id": str(actor_id),
            },
        )
        return self.to_dto(period)

    def close_period(
        self, organization_id: UUID, period_id: UUID, actor_id: UUID
    ) -> FiscalPeriodInfo:
        """
        Close a period using only the kernel guards (not open, open drafts).

        Deployments with the accrual subsystem close through
        ``PeriodCloseOrchestrator`` instead, which adds the accrual guards.
        """
        self.begin_close(organization_id, period_id)
        return self.mark_closed(organization_id, period_id, actor_id)

    def reopen_period(
        self, organization_id: UUID, period_id: UUID, actor_id: UUID
    ) -> FiscalPeriodInfo:
        """
        Reopen a closed period.  No guard beyond "must be closed".

        Raises:
            PeriodNotFoundError, PeriodNotClosedError.
        """
        period = self._require(organization_id, period_id, for_update=True)
        if not period.is_closed:
            raise PeriodNotClosedError(period.period_code, enum_value(period.status))

        period.status = PeriodStatus.OPEN
        period.reopened_at = self._clock.now()
        period.reopened_by_id = actor_id
        period.updated_by_id = actor_id
        self.session.flush()

        logger.warning(
            "period_reopened",
            extra={
                "organization_id": str(organization_id),
                "period_code": period.period_code,
                "actor_id": str(actor_id),
            },
        )
        return self.to_dto(period)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _require(
        self,
        organization_id: UUID,
        period_id: UUID,
        for_update: bool = False,
    ) -> FiscalPeriod:
        stmt = select(FiscalPeriod).where(
            FiscalPeriod.organization_id == organization_id,
            FiscalPeriod.id == period_id,
        )
        if for_update:
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        period = self.session.execute(stmt).scalar_one_or_none()
        if period is None:
            raise PeriodNotFoundError(str(period_id))
        return period
