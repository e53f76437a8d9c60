"""
ledger_services.accrual_runner -- executes accrual rules through the Journal Engine.

Responsibility:
    Turn accrual rules into posted journal entries exactly once per
    (organisation, rule, period, as-of date), keep run bookkeeping, post
    auto-reversals into the following period, and answer the accrual
    guards used by period close.

Architecture position:
    Services -- owns its transaction boundaries (takes a session factory,
    not a session).  Composes AccrualService, PeriodService and
    JournalService, one short transaction per step.

Run protocol (run_one):
    1. Bounds: as-of outside [start_date, end_date] -> skipped, no run row.
    2. Period: explicit override (must exist; skipped if not open) or the
       open period covering the as-of date (skipped if none).
    3. Template balance re-check; imbalance is InternalInconsistencyError.
    4. Dedup gate, short transaction: named lock
       ``accrual_run:{org}:{rule}:{period}:{as_of}``; an existing run in a
       terminal state returns skipped "Already {status}", otherwise the run
       row is created (or reused) as ``running`` and committed.  The lock
       ends with that commit.
    5. Posting transaction: create draft + post with the deterministic key
       ``accrual:post:{rule}:{period}:{as_of}``, link the run to the entry
       (no-op when linked), mark the run ``posted``.
    6. On any failure in step 5: a fresh transaction locks the run and
       marks it ``failed`` with the error text, then the exception
       propagates.  A run a concurrent caller already took to ``posted``
       or ``reversed`` is left as is and the outcome is skipped.

    Between steps 4 and 5 a run can sit in ``running`` (crash window).  A
    later invocation reuses it, and the journal idempotency key makes the
    retry converge on the same entry.

Batch policy:
    run_due_accruals, run_period_end_accruals and run_reversals isolate
    failures per item.  The failing item is recorded (failed run / posting
    reversal-failure fields) and reported in the result; siblings still run.
"""

from collections.abc import Callable
from datetime import date
from uuid import UUID

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ledger_kernel.db.engine import session_scope
from ledger_kernel.db.locks import acquire_transaction_lock
from ledger_kernel.db.types import ZERO
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.domain.dtos import JournalDraft, JournalLineInput
from ledger_kernel.exceptions import InternalInconsistencyError, LedgerError, PeriodNotOpenError
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.fiscal_period import FiscalPeriod
from ledger_kernel.models.journal import JournalEntry, JournalEntryStatus, JournalEntryType
from ledger_kernel.services.journal_service import JournalService
from ledger_kernel.services.period_service import PeriodService
from ledger_services._accrual_types import (
    SCHEDULED_FREQUENCIES,
    AccrualFrequency,
    AccrualRuleInfo,
    AccrualRuleType,
    AccrualRunStatus,
    LineDirection,
    ReversalBatchResult,
    ReverseTiming,
    RunOutcome,
)
from ledger_services.accrual_schedule import is_due, within_bounds
from ledger_services.accrual_service import AccrualService
from ledger_services.orm import (
    AccrualRuleModel,
    AccrualRunModel,
    AccrualRunPostingModel,
)

logger = get_logger("services.accrual_runner")


def post_idempotency_key(rule_id: UUID, period_id: UUID, as_of: date) -> str:
    return f"accrual:post:{rule_id}:{period_id}:{as_of.isoformat()}"


def reverse_idempotency_key(run_id: UUID, period_id: UUID) -> str:
    return f"accrual:reverse:{run_id}:{period_id}"


def run_lock_name(organization_id: UUID, rule_id: UUID, period_id: UUID, as_of: date) -> str:
    return f"accrual_run:{organization_id}:{rule_id}:{period_id}:{as_of.isoformat()}"


class AccrualRunner:
    """
    Accrual Runner.

    Contract:
        Every public method opens and commits its own transactions through
        ``session_factory``.  Callers must not hold an open write
        transaction on the same database while calling in.

    Guarantees:
        - At most one run per (org, rule, period, as_of) reaches ``posted``.
        - A skipped outcome is returned, never raised, for "not in bounds",
          "no open period", "target period not open" and "already done".
        - Satisfies the ``AccrualChecker`` protocol of
          ``PeriodCloseOrchestrator``.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        clock: Clock | None = None,
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()

    # -------------------------------------------------------------------------
    # Single rule
    # -------------------------------------------------------------------------

    def run_one(
        self,
        organization_id: UUID,
        actor_id: UUID,
        rule_id: UUID,
        as_of_date: date,
        period_id_override: UUID | None = None,
    ) -> RunOutcome:
        """
        Run one rule for one as-of date.

        Raises:
            AccrualRuleNotFoundError, PeriodNotFoundError (override only),
            InternalInconsistencyError, or whatever the Journal Engine
            raised while posting (after the run is marked failed).
        """
        outcome, error = self._run(
            organization_id, actor_id, rule_id, as_of_date, period_id_override
        )
        if error is not None:
            raise error
        return outcome

    def _run(
        self,
        organization_id: UUID,
        actor_id: UUID,
        rule_id: UUID,
        as_of: date,
        period_id_override: UUID | None,
    ) -> tuple[RunOutcome, Exception | None]:
        with session_scope(self._session_factory) as session:
            rule = AccrualService(session).get_rule(organization_id, rule_id)

            reason = within_bounds(rule.start_date, rule.end_date, as_of)
            if reason:
                return self._skip(rule, as_of, reason), None

            periods = PeriodService(session, self._clock)
            if period_id_override is not None:
                period = periods.get_period(organization_id, period_id_override)
                if not period.is_open:
                    return self._skip(rule, as_of, "Target period not open"), None
            else:
                period = periods.find_open_period_covering(organization_id, as_of)
                if period is None:
                    return self._skip(rule, as_of, "No open period for date"), None

        lines = self._journal_lines(rule)

        # Dedup gate
        with session_scope(self._session_factory) as session:
            acquire_transaction_lock(
                session, run_lock_name(organization_id, rule.id, period.id, as_of)
            )
            run = session.execute(
                select(AccrualRunModel)
                .where(
                    AccrualRunModel.organization_id == organization_id,
                    AccrualRunModel.rule_id == rule.id,
                    AccrualRunModel.period_id == period.id,
                    AccrualRunModel.as_of_date == as_of,
                )
                .order_by(AccrualRunModel.created_at)
                .limit(1)
            ).scalar_one_or_none()

            if run is not None and AccrualRunStatus(run.status).is_terminal_success:
                status = AccrualRunStatus(run.status)
                logger.info(
                    "accrual_run_duplicate_skipped",
                    extra={"rule_code": rule.code, "run_id": str(run.id), "status": status.value},
                )
                return (
                    RunOutcome(
                        rule_id=rule.id,
                        skipped=True,
                        reason=f"Already {status.value}",
                        run_id=run.id,
                        status=status,
                    ),
                    None,
                )

            now = self._clock.now()
            if run is None:
                run = AccrualRunModel(
                    organization_id=organization_id,
                    rule_id=rule.id,
                    period_id=period.id,
                    as_of_date=as_of,
                    created_by_id=actor_id,
                )
                session.add(run)
            run.status = AccrualRunStatus.RUNNING.value
            run.started_at = now
            run.completed_at = None
            run.error = None
            run.updated_by_id = actor_id
            session.flush()
            run_id = run.id

        logger.info(
            "accrual_run_started",
            extra={
                "organization_id": str(organization_id),
                "rule_code": rule.code,
                "run_id": str(run_id),
                "period_id": str(period.id),
                "as_of_date": as_of.isoformat(),
            },
        )

        try:
            with session_scope(self._session_factory) as session:
                journal_id = self._post(session, organization_id, actor_id, rule, period.id, as_of, lines)
                self._link_posted(session, run_id, journal_id, actor_id)
        except Exception as exc:
            status = self._mark_failed(run_id, actor_id, exc)
            if status.is_terminal_success:
                # A duplicate caller lost the race; the run is already done.
                logger.info(
                    "accrual_run_duplicate_skipped",
                    extra={"rule_code": rule.code, "run_id": str(run_id), "status": status.value},
                )
                return (
                    RunOutcome(
                        rule_id=rule.id,
                        skipped=True,
                        reason=f"Already {status.value}",
                        run_id=run_id,
                        status=status,
                    ),
                    None,
                )
            logger.exception(
                "accrual_run_failed",
                extra={"rule_code": rule.code, "run_id": str(run_id), "error": str(exc)},
            )
            return (
                RunOutcome(
                    rule_id=rule.id,
                    run_id=run_id,
                    status=AccrualRunStatus.FAILED,
                    error=str(exc),
                ),
                exc,
            )

        logger.info(
            "accrual_run_posted",
            extra={
                "organization_id": str(organization_id),
                "rule_code": rule.code,
                "run_id": str(run_id),
                "journal_id": str(journal_id),
            },
        )
        return (
            RunOutcome(
                rule_id=rule.id,
                run_id=run_id,
                status=AccrualRunStatus.POSTED,
                journal_id=journal_id,
            ),
            None,
        )

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------

    def run_due_accruals(
        self,
        organization_id: UUID,
        actor_id: UUID,
        as_of_date: date,
    ) -> list[RunOutcome]:
        """
        Run every active DAILY / WEEKLY / MONTHLY rule due on ``as_of_date``.

        Rules outside their bounds or not due produce no outcome.  A failing
        rule yields a failed outcome and the batch continues.
        """
        with session_scope(self._session_factory) as session:
            rules = AccrualService(session).active_rules(organization_id, SCHEDULED_FREQUENCIES)

        due = [
            r for r in rules
            if within_bounds(r.start_date, r.end_date, as_of_date) is None
            and is_due(r.frequency, r.start_date, as_of_date)
        ]

        with LogContext.bind(organization_id=organization_id, actor_id=actor_id):
            outcomes = [
                self._run_isolated(organization_id, actor_id, rule, as_of_date, None)
                for rule in due
            ]

        logger.info(
            "accrual_due_batch_completed",
            extra={
                "organization_id": str(organization_id),
                "as_of_date": as_of_date.isoformat(),
                "rule_count": len(due),
                "failed_count": sum(1 for o in outcomes if o.failed),
            },
        )
        return outcomes

    def run_period_end_accruals(
        self,
        organization_id: UUID,
        actor_id: UUID,
        period_id: UUID,
        as_of_date_override: date | None = None,
    ) -> list[RunOutcome]:
        """
        Run every active PERIOD_END rule pinned to ``period_id``.

        The as-of date defaults to the period's end date.

        Raises:
            PeriodNotFoundError, PeriodNotOpenError.
        """
        with session_scope(self._session_factory) as session:
            period = PeriodService(session, self._clock).get_period(organization_id, period_id)
            if not period.is_open:
                raise PeriodNotOpenError(period.period_code, period.status.value)
            rules = AccrualService(session).active_rules(
                organization_id, (AccrualFrequency.PERIOD_END,)
            )

        as_of = as_of_date_override or period.end_date
        with LogContext.bind(organization_id=organization_id, actor_id=actor_id):
            outcomes = [
                self._run_isolated(organization_id, actor_id, rule, as_of, period.id)
                for rule in rules
            ]

        logger.info(
            "accrual_period_end_batch_completed",
            extra={
                "organization_id": str(organization_id),
                "period_code": period.period_code,
                "rule_count": len(rules),
                "failed_count": sum(1 for o in outcomes if o.failed),
            },
        )
        return outcomes

    def run_reversals(
        self,
        organization_id: UUID,
        actor_id: UUID,
        period_id: UUID,
    ) -> ReversalBatchResult:
        """
        Reverse posted auto-reversing accrual runs into ``period_id``.

        Candidates are posted runs of REVERSING rules with auto_reverse on,
        not yet reversed, whose accrual entry is still posted and whose own
        period ends before the target period starts.  An entry voided by
        other means is left alone.  Each reversal is dated at the target's start date and runs
        in its own transaction.

        Raises:
            PeriodNotFoundError, PeriodNotOpenError for the target period.
        """
        with session_scope(self._session_factory) as session:
            target = PeriodService(session, self._clock).get_period(organization_id, period_id)
            if not target.is_open:
                raise PeriodNotOpenError(target.period_code, target.status.value)
            candidates = self._reversal_candidates(session, organization_id, target.start_date)

        reversed_count = 0
        failed_count = 0
        for run_id, posting_id, journal_id, rule_code in candidates:
            try:
                with session_scope(self._session_factory) as session:
                    result = JournalService(session, self._clock).reverse_into_period(
                        organization_id,
                        journal_id,
                        actor_id,
                        target_period_id=target.id,
                        reason=f"Auto-reversal for accrual {rule_code}",
                        idempotency_key=reverse_idempotency_key(run_id, target.id),
                    )
                    if self._link_reversal(session, run_id, posting_id, result.reversal_journal_id, actor_id):
                        reversed_count += 1
            except Exception as exc:
                failed_count += 1
                self._record_reversal_failure(posting_id, actor_id, exc)
                logger.warning(
                    "accrual_reversal_failed",
                    extra={"run_id": str(run_id), "rule_code": rule_code, "error": str(exc)},
                )

        logger.info(
            "accrual_reversals_completed",
            extra={
                "organization_id": str(organization_id),
                "period_code": target.period_code,
                "reversed_count": reversed_count,
                "failed_count": failed_count,
            },
        )
        return ReversalBatchResult(reversed_count=reversed_count, failed_count=failed_count)

    # -------------------------------------------------------------------------
    # AccrualChecker
    # -------------------------------------------------------------------------

    def missing_required_accruals(
        self, session: Session, organization_id: UUID, period_id: UUID
    ) -> list[AccrualRuleInfo]:
        return AccrualService(session).missing_required_accruals(organization_id, period_id)

    def failed_run_count(self, session: Session, organization_id: UUID, period_id: UUID) -> int:
        return AccrualService(session).failed_run_count(organization_id, period_id)

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _run_isolated(
        self,
        organization_id: UUID,
        actor_id: UUID,
        rule: AccrualRuleInfo,
        as_of: date,
        period_id_override: UUID | None,
    ) -> RunOutcome:
        try:
            outcome, _ = self._run(organization_id, actor_id, rule.id, as_of, period_id_override)
        except LedgerError as exc:
            # Failed before a run row existed (e.g. corrupted template).
            logger.exception(
                "accrual_rule_failed",
                extra={"rule_code": rule.code, "error": str(exc)},
            )
            return RunOutcome(rule_id=rule.id, status=AccrualRunStatus.FAILED, error=str(exc))
        return outcome

    @staticmethod
    def _skip(rule: AccrualRuleInfo, as_of: date, reason: str) -> RunOutcome:
        logger.info(
            "accrual_run_skipped",
            extra={"rule_code": rule.code, "as_of_date": as_of.isoformat(), "reason": reason},
        )
        return RunOutcome(rule_id=rule.id, skipped=True, reason=reason)

    @staticmethod
    def _journal_lines(rule: AccrualRuleInfo) -> tuple[JournalLineInput, ...]:
        debits = sum((line.amount for line in rule.lines if line.dc == LineDirection.DEBIT), ZERO)
        credits = sum((line.amount for line in rule.lines if line.dc == LineDirection.CREDIT), ZERO)
        if debits != credits:
            raise InternalInconsistencyError(
                "Accrual rule lines are not balanced",
                rule_id=str(rule.id),
                debits=str(debits),
                credits=str(credits),
            )
        return tuple(
            JournalLineInput(
                account_id=line.account_id,
                debit=line.amount if line.dc == LineDirection.DEBIT else ZERO,
                credit=line.amount if line.dc == LineDirection.CREDIT else ZERO,
                description=line.description or rule.name,
            )
            for line in rule.lines
        )

    def _post(
        self,
        session: Session,
        organization_id: UUID,
        actor_id: UUID,
        rule: AccrualRuleInfo,
        period_id: UUID,
        as_of: date,
        lines: tuple[JournalLineInput, ...],
    ) -> UUID:
        journals = JournalService(session, self._clock)
        draft = journals.create_draft(
            organization_id,
            actor_id,
            JournalDraft(
                period_id=period_id,
                entry_date=as_of,
                lines=lines,
                entry_type=JournalEntryType.ADJUSTMENT,
                memo=f"{rule.code}: {rule.name} ({as_of.isoformat()})",
                idempotency_key=post_idempotency_key(rule.id, period_id, as_of),
            ),
        )
        if draft.status == JournalEntryStatus.DRAFT:
            journals.post_draft(organization_id, draft.journal_id, actor_id)
        return draft.journal_id

    def _link_posted(self, session: Session, run_id: UUID, journal_id: UUID, actor_id: UUID) -> None:
        run = session.execute(
            select(AccrualRunModel)
            .where(AccrualRunModel.id == run_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()
        if not any(p.journal_entry_id == journal_id for p in run.postings):
            run.postings.append(
                AccrualRunPostingModel(journal_entry_id=journal_id, created_by_id=actor_id)
            )
        if AccrualRunStatus(run.status).is_terminal_success:
            return
        run.status = AccrualRunStatus.POSTED.value
        run.completed_at = self._clock.now()
        run.error = None
        run.updated_by_id = actor_id
        session.flush()

    def _mark_failed(self, run_id: UUID, actor_id: UUID, exc: Exception) -> AccrualRunStatus:
        """Record the failure unless a concurrent caller already finished the run.

        Returns the run's status after the update.
        """
        with session_scope(self._session_factory) as session:
            run = session.execute(
                select(AccrualRunModel)
                .where(AccrualRunModel.id == run_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            ).scalar_one()
            current = AccrualRunStatus(run.status)
            if current.is_terminal_success:
                return current
            run.status = AccrualRunStatus.FAILED.value
            run.completed_at = self._clock.now()
            run.error = str(exc) or exc.__class__.__name__
            run.updated_by_id = actor_id
            return AccrualRunStatus.FAILED

    @staticmethod
    def _reversal_candidates(
        session: Session, organization_id: UUID, target_start: date
    ) -> list[tuple[UUID, UUID, UUID, str]]:
        rows = session.execute(
            select(
                AccrualRunModel.id,
                AccrualRunPostingModel.id,
                AccrualRunPostingModel.journal_entry_id,
                AccrualRuleModel.code,
            )
            .join(AccrualRuleModel, AccrualRuleModel.id == AccrualRunModel.rule_id)
            .join(AccrualRunPostingModel, AccrualRunPostingModel.run_id == AccrualRunModel.id)
            .join(FiscalPeriod, FiscalPeriod.id == AccrualRunModel.period_id)
            .join(JournalEntry, JournalEntry.id == AccrualRunPostingModel.journal_entry_id)
            .where(
                AccrualRunModel.organization_id == organization_id,
                AccrualRunModel.status == AccrualRunStatus.POSTED.value,
                AccrualRuleModel.rule_type == AccrualRuleType.REVERSING.value,
                AccrualRuleModel.auto_reverse.is_(True),
                or_(
                    AccrualRuleModel.reverse_timing.is_(None),
                    AccrualRuleModel.reverse_timing == ReverseTiming.NEXT_PERIOD_START.value,
                ),
                AccrualRunPostingModel.reversal_journal_entry_id.is_(None),
                JournalEntry.status == JournalEntryStatus.POSTED.value,
                FiscalPeriod.end_date < target_start,
            )
            .order_by(AccrualRunModel.as_of_date, AccrualRunModel.created_at)
        ).all()
        return [tuple(r) for r in rows]

    def _link_reversal(
        self,
        session: Session,
        run_id: UUID,
        posting_id: UUID,
        reversal_journal_id: UUID,
        actor_id: UUID,
    ) -> bool:
        posting = session.execute(
            select(AccrualRunPostingModel)
            .where(AccrualRunPostingModel.id == posting_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalar_one()
        if posting.reversal_journal_entry_id is not None:
            return False

        posting.reversal_journal_entry_id = reversal_journal_id
        posting.reversal_failed_at = None
        posting.reversal_failure_reason = None
        posting.updated_by_id = actor_id

        run = session.get(AccrualRunModel, run_id)
        if run.status == AccrualRunStatus.POSTED.value:
            run.status = AccrualRunStatus.REVERSED.value
            run.completed_at = self._clock.now()
            run.updated_by_id = actor_id
        session.flush()
        return True

    def _record_reversal_failure(self, posting_id: UUID, actor_id: UUID, exc: Exception) -> None:
        with session_scope(self._session_factory) as session:
            posting = session.get(AccrualRunPostingModel, posting_id)
            posting.reversal_failed_at = self._clock.now()
            posting.reversal_failure_reason = str(exc) or exc.__class__.__name__
            posting.reversal_failure_count = (posting.reversal_failure_count or 0) + 1
            posting.updated_by_id = actor_id
